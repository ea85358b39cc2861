import asyncio
import typing

import pytest

import vibetrack.errors
from vibetrack.storage import ClipStore

from fakes import FakeClock, VoiceRecorder


@pytest.fixture(autouse=True)
def errors_log(tmp_path, monkeypatch: pytest.MonkeyPatch):

    """Keep the structured error log out of the project tree."""

    log_path = tmp_path / "output" / "errors.log"
    monkeypatch.setattr(vibetrack.errors, "OUTPUT_DIR", log_path.parent)
    monkeypatch.setattr(vibetrack.errors, "ERRORS_LOG", log_path)
    return log_path


@pytest.fixture
def store(tmp_path) -> ClipStore:

    """Clip store rooted in the test's temp dir."""

    return ClipStore(tmp_path / "clips")


@pytest.fixture
def clock() -> FakeClock:

    """Virtual clock starting at zero."""

    return FakeClock()


@pytest.fixture
def voices() -> VoiceRecorder:

    """Fake voice factory with 180 s clips."""

    return VoiceRecorder()


@pytest.fixture
def run_until() -> typing.Callable[..., typing.Awaitable[None]]:

    """Yield to the event loop until a condition holds."""

    async def _run_until(predicate: typing.Callable[[], bool], limit: int = 20000) -> None:
        for _ in range(limit):
            if predicate():
                return
            await asyncio.sleep(0)
        raise AssertionError("condition was never reached")

    return _run_until
