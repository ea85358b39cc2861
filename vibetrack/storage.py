"""Clip storage — generated audio bytes on scratch disk, addressed by handle."""
import logging
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import SCRATCH_DIR
from .errors import StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClipHandle:
    """Opaque reference to one stored clip."""

    id: str
    path: Path
    duration: Optional[float] = None  # estimate; real length comes from decoding
    created_at: float = field(default_factory=time.time)

    @property
    def location(self) -> str:
        return str(self.path)


class ClipStore:
    def __init__(self, root: Optional[Path] = None):
        if root is None and SCRATCH_DIR:
            root = Path(SCRATCH_DIR).expanduser()
        self._owns_root = root is None
        self.root = Path(tempfile.mkdtemp(prefix="vibetrack-")) if root is None else Path(root)
        self._live: dict[str, ClipHandle] = {}

    def save(self, data: bytes, suffix: str = ".mp3", duration: Optional[float] = None) -> ClipHandle:
        """Write bytes to a fresh file. Same bytes twice give two handles."""
        clip_id = uuid.uuid4().hex
        path = self.root / f"clip-{clip_id}{suffix}"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Failed to write clip file: {e}") from e

        handle = ClipHandle(id=clip_id, path=path, duration=duration)
        self._live[clip_id] = handle
        logger.debug("Stored clip %s (%d bytes)", clip_id, len(data))
        return handle

    def release(self, handle: Optional[ClipHandle]):
        """Best-effort delete. Never raises: playback must not wait on cleanup."""
        if handle is None:
            return
        self._live.pop(handle.id, None)
        try:
            handle.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove clip %s: %s", handle.path, e)

    def is_live(self, handle: ClipHandle) -> bool:
        return handle.id in self._live

    @property
    def live_count(self) -> int:
        return len(self._live)

    def close(self):
        """Release every clip still held; drop the temp root if we made it."""
        for handle in list(self._live.values()):
            self.release(handle)
        if self._owns_root:
            shutil.rmtree(self.root, ignore_errors=True)
