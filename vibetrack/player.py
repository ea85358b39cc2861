"""Module 6 — Audio Playback voices"""
import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


def get_audio_duration(path: Path) -> float | None:
    """Get audio duration in seconds via afinfo (macOS) or ffprobe. None on failure."""
    try:
        if shutil.which("afinfo"):
            result = subprocess.run(
                ["afinfo", str(path)],
                capture_output=True, text=True, timeout=5,
            )
            match = re.search(r"estimated duration:\s+([\d.]+)\s+sec", result.stdout)
            return float(match.group(1)) if match else None
        if shutil.which("ffprobe"):
            result = subprocess.run(
                ["ffprobe", "-v", "error", "-show_entries", "format=duration",
                 "-of", "default=noprint_wrappers=1:nokey=1", str(path)],
                capture_output=True, text=True, timeout=5,
            )
            return float(result.stdout.strip())
    except (OSError, subprocess.SubprocessError, ValueError) as e:
        logger.debug("Could not read duration of %s: %s", path, e)
    return None


class Voice(Protocol):
    """One playable clip with its own volume. The scheduler mixes two of these."""

    def load(self, path: Path) -> Optional[float]: ...

    def play(self) -> None: ...

    def stop(self) -> None: ...

    def set_volume(self, level: float) -> None: ...

    def is_playing(self) -> bool: ...


VoiceFactory = Callable[[], Voice]


def default_voice_factory() -> VoiceFactory:
    """libVLC voices. Imported lazily so headless callers never load libvlc."""
    from .vlc_voice import VlcVoice

    return VlcVoice
