"""Error kinds, tagged outcomes and structured error logging (JSON to errors.log)."""
import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import ERRORS_LOG, OUTPUT_DIR, DEV_MODE

logger = logging.getLogger(__name__)


class SoundtrackError(Exception):
    """Base for every failure the engine reports to callers."""

    kind = "UpstreamError"
    # Transient failures may be retried inside a single poll tick
    transient = False

    def __init__(self, message: str = "", *, transient: Optional[bool] = None):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        if transient is not None:
            self.transient = transient


class AuthError(SoundtrackError):
    kind = "AuthError"


class RateLimited(SoundtrackError):
    kind = "RateLimited"
    transient = True


class UpstreamError(SoundtrackError):
    kind = "UpstreamError"


class GenerationTimeout(SoundtrackError):
    kind = "Timeout"


class InvalidResponse(SoundtrackError):
    kind = "InvalidResponse"


class StorageError(SoundtrackError):
    kind = "IOError"


class AlreadyRunning(SoundtrackError):
    kind = "AlreadyRunning"


class NoActiveSession(SoundtrackError):
    kind = "NoActiveSession"


class GenerationInFlight(SoundtrackError):
    kind = "GenerationInFlight"


def error_for_status(status_code: int, body: str, service: str) -> SoundtrackError:
    """Map a non-2xx HTTP status to an error kind."""
    detail = f"{service} HTTP {status_code}: {body[:200]}"
    if status_code in (401, 403):
        return AuthError(detail)
    if status_code == 429:
        return RateLimited(detail)
    return UpstreamError(detail, transient=status_code >= 500)


@dataclass(frozen=True)
class Outcome:
    """Tagged result of an engine operation. Never raised, always returned."""

    ok: bool
    kind: Optional[str] = None
    message: str = ""
    clip_location: Optional[str] = None
    genre: Optional[str] = None

    @classmethod
    def success(cls, clip_location: Optional[str] = None, genre: Optional[str] = None,
                message: str = "") -> "Outcome":
        return cls(True, None, message, clip_location, genre)

    @classmethod
    def failure(cls, err: SoundtrackError) -> "Outcome":
        return cls(False, err.kind, err.message)

    def to_dict(self) -> dict:
        if self.ok:
            return {"clipLocation": self.clip_location, "genre": self.genre}
        return {"errorKind": self.kind, "message": self.message}


_FRIENDLY_MESSAGES = {
    "start": "Couldn't start the soundtrack.",
    "generate_more": "Next clip failed — current music keeps playing.",
    "preflight": "Startup check failed.",
    "playback": "Playback hit a problem with a clip.",
}


def format_error(
    stage: str,
    genre: str = "",
    request: Optional[dict] = None,
    raw: str = "",
    kind: str = "",
) -> str:
    entry = {
        "timestamp": datetime.now().isoformat(),
        "stage": stage,
        "kind": kind,
        "genre": genre,
        "request": request,
        "error": raw,
        "python": sys.version.split()[0],
    }

    _append_to_log(entry)
    logger.error("Error at %s: %s", stage, raw)

    if DEV_MODE:
        return json.dumps(entry, indent=2)
    return _FRIENDLY_MESSAGES.get(stage, f"Something went wrong ({stage}).")


def _append_to_log(entry: dict):
    try:
        OUTPUT_DIR.mkdir(parents=True, exist_ok=True)
        with open(ERRORS_LOG, "a") as f:
            f.write(json.dumps(entry) + "\n")
    except OSError:
        logger.debug("Could not append to %s", ERRORS_LOG)
