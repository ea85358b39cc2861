"""Module 1 — Config & Constants"""
import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root (one level up from vibetrack/)
_ROOT = Path(__file__).parent.parent
load_dotenv(_ROOT / ".env")

# ─── Paths ────────────────────────────────────────────────────────────────────
ROOT_DIR = _ROOT
OUTPUT_DIR = ROOT_DIR / os.getenv("OUTPUT_DIR", "output")
ERRORS_LOG = OUTPUT_DIR / "errors.log"
# Empty means a fresh temp dir per ClipStore
SCRATCH_DIR = os.getenv("SCRATCH_DIR", "").strip()

# ─── External services ────────────────────────────────────────────────────────
SOUNDTRACK_BACKEND = os.getenv("SOUNDTRACK_BACKEND", "piapi").strip().lower()

STABLE_AUDIO_KEY = os.getenv("STABLE_AUDIO_KEY", "")
STABLE_AUDIO_URL = os.getenv(
    "STABLE_AUDIO_URL",
    "https://api.stability.ai/v2beta/audio/stable-audio-2/text-to-audio",
)

PIAPI_KEY = os.getenv("PIAPI_KEY", "")
PIAPI_URL = os.getenv("PIAPI_URL", "https://api.piapi.ai/api/v1/task").rstrip("/")
PIAPI_MODEL = os.getenv("PIAPI_MODEL", "music-u")

HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "120"))

# ─── Task polling ─────────────────────────────────────────────────────────────
POLL_INTERVAL = float(os.getenv("POLL_INTERVAL", "5"))
POLL_MAX_WAIT = float(os.getenv("POLL_MAX_WAIT", "300"))      # hard wall-clock ceiling
POLL_TICK_RETRIES = int(os.getenv("POLL_TICK_RETRIES", "2"))  # transient errors per tick
POLL_RETRY_DELAY = float(os.getenv("POLL_RETRY_DELAY", "0.5"))

# ─── Generation defaults ──────────────────────────────────────────────────────
DEFAULT_DURATION = int(os.getenv("DEFAULT_DURATION", "180"))
DEFAULT_STEPS = int(os.getenv("DEFAULT_STEPS", "30"))
DEFAULT_GENRE = os.getenv("DEFAULT_GENRE", "lo-fi house")
MAX_SNIPPET = 1200  # chars of source text folded into a prompt

# ─── Playback ─────────────────────────────────────────────────────────────────
LOOKAHEAD_WINDOW = float(os.getenv("LOOKAHEAD_WINDOW", "45"))
CROSSFADE_DURATION = float(os.getenv("CROSSFADE_DURATION", "6"))
CROSSFADE_STEPS = int(os.getenv("CROSSFADE_STEPS", "30"))
OUTPUT_LEVEL = float(os.getenv("OUTPUT_LEVEL", "1.0"))
WATCH_INTERVAL = 0.25  # playback watcher tick, seconds

# What to do when a clip ends before the next one is ready: "loop" | "stop"
END_POLICY = os.getenv("END_POLICY", "loop").strip().lower()
# Extra attempts for a failed look-ahead generation (0 = report and give up)
LOOKAHEAD_RETRIES = int(os.getenv("LOOKAHEAD_RETRIES", "0"))

APP_VERSION = "0.1.0"

# ─── Dev mode ─────────────────────────────────────────────────────────────────
DEV_MODE = os.getenv("DEV_MODE", "1").strip() in ("1", "true", "yes")
