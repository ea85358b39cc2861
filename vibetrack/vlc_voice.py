"""libVLC-backed Voice — one MediaPlayer per clip, volume set live."""
import logging
from pathlib import Path
from typing import Optional

import vlc

from .player import get_audio_duration

logger = logging.getLogger(__name__)

_instance: Optional[vlc.Instance] = None


def _vlc_instance() -> vlc.Instance:
    global _instance
    if _instance is None:
        _instance = vlc.Instance(["--intf", "dummy", "--quiet", "--no-video"])
        if _instance is None:
            raise RuntimeError("libVLC is not available")
    return _instance


class VlcVoice:
    _DONE_STATES = (vlc.State.Ended, vlc.State.Error, vlc.State.Stopped)

    def __init__(self, instance: Optional[vlc.Instance] = None):
        self._instance = instance or _vlc_instance()
        self._player = self._instance.media_player_new()
        self._path: Optional[Path] = None

    def load(self, path: Path) -> Optional[float]:
        """Attach the file. Returns its decoded duration when it can be read."""
        self._path = path
        self._player.set_media(self._instance.media_new(str(path)))
        return get_audio_duration(path)

    def play(self):
        if self._player.play() == -1:
            logger.error("libVLC refused to play %s", self._path)

    def stop(self):
        self._player.stop()
        self._player.release()

    def set_volume(self, level: float):
        self._player.audio_set_volume(int(round(max(0.0, min(1.0, level)) * 100)))

    def is_playing(self) -> bool:
        return self._player.get_state() not in self._DONE_STATES
