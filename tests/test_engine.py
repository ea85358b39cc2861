import asyncio
import json

import httpx
import pytest

from fakes import PIAPI_URL, FakeClock, FakePiapi, GatedBackend, StaticBackend, VoiceRecorder
from vibetrack.backends import TaskPollingBackend
from vibetrack.engine import SessionEngine
from vibetrack.errors import AuthError, UpstreamError
from vibetrack.scheduler import SchedulerState
from vibetrack.storage import ClipStore


def _log_entries(path):
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


@pytest.mark.asyncio
async def test_start_plays_the_first_clip(store: ClipStore, voices: VoiceRecorder) -> None:

    """start resolves once audio is playing, with the clip's location and genre."""

    backend = StaticBackend(store)
    engine = SessionEngine(backend, voice_factory=voices)

    outcome = await engine.start("lo-fi house")

    assert outcome.ok
    assert outcome.to_dict() == {"clipLocation": outcome.clip_location, "genre": "lo-fi house"}
    snap = engine.snapshot()
    assert snap["running"] and snap["current"] == outcome.clip_location
    assert snap["pending_next"] is None
    assert engine.scheduler.state is SchedulerState.PLAYING
    assert voices.created[0].playing
    assert backend.calls[0].genre == "lo-fi house"
    assert "lo-fi house" in backend.calls[0].prompt

    await engine.stop()


@pytest.mark.asyncio
async def test_second_start_is_rejected(store: ClipStore, voices: VoiceRecorder) -> None:

    """One session at a time; the running one is untouched."""

    backend = StaticBackend(store)
    engine = SessionEngine(backend, voice_factory=voices)
    first = await engine.start("ambient")

    second = await engine.start("jazz")

    assert second.kind == "AlreadyRunning"
    assert len(backend.calls) == 1
    assert engine.snapshot()["current"] == first.clip_location
    await engine.stop()


@pytest.mark.asyncio
async def test_start_failure_reports_its_kind(store: ClipStore, voices: VoiceRecorder, errors_log) -> None:

    """A failed first clip leaves no session and is logged for diagnosis."""

    engine = SessionEngine(StaticBackend(store, errors=[AuthError("bad key")]), voice_factory=voices)

    outcome = await engine.start("ambient")

    assert outcome.to_dict() == {"errorKind": "AuthError", "message": "bad key"}
    assert not engine.running
    assert voices.created == []
    entries = _log_entries(errors_log)
    assert entries[-1]["stage"] == "start"
    assert entries[-1]["kind"] == "AuthError"


@pytest.mark.asyncio
async def test_generate_more_needs_a_session(store: ClipStore, voices: VoiceRecorder) -> None:
    engine = SessionEngine(StaticBackend(store), voice_factory=voices)

    outcome = await engine.generate_more()

    assert outcome.kind == "NoActiveSession"


@pytest.mark.asyncio
async def test_only_one_generation_in_flight(store: ClipStore, voices: VoiceRecorder, run_until) -> None:

    """A second request while one is running is refused without a backend call."""

    backend = GatedBackend(store, open_calls=1)
    engine = SessionEngine(backend, voice_factory=voices)
    await engine.start("ambient")

    first = await engine.generate_more()
    second = await engine.generate_more()

    assert first.ok and first.message == "generating"
    assert second.kind == "GenerationInFlight"
    await run_until(lambda: len(backend.calls) == 2)

    backend.gate.set()
    await run_until(lambda: engine.snapshot()["pending_next"] is not None)

    assert not engine.snapshot()["generating"]
    assert len(backend.calls) == 2
    await engine.stop()


@pytest.mark.asyncio
async def test_failed_next_clip_keeps_current_playing(store: ClipStore, voices: VoiceRecorder, run_until,
                                                      errors_log) -> None:

    """A look-ahead failure is reported; the session and its clip are unaffected."""

    backend = StaticBackend(store, errors=[None, UpstreamError("upstream 502", transient=True)])
    engine = SessionEngine(backend, voice_factory=voices)
    started = await engine.start("ambient")

    await engine.generate_more()
    await run_until(lambda: not engine.snapshot()["generating"])

    assert engine.running
    assert engine.snapshot()["current"] == started.clip_location
    assert voices.created[0].playing and not voices.created[0].stopped
    assert _log_entries(errors_log)[-1]["stage"] == "generate_more"

    # The next request is allowed again
    assert (await engine.generate_more()).ok
    await engine.stop()


@pytest.mark.asyncio
async def test_lookahead_retry_recovers(store: ClipStore, voices: VoiceRecorder, run_until) -> None:

    """With a retry budget a transient failure is tried again before giving up."""

    backend = StaticBackend(store, errors=[None, UpstreamError("blip", transient=True), None])
    engine = SessionEngine(backend, voice_factory=voices, lookahead_retries=1)
    await engine.start("ambient")

    await engine.generate_more()
    await run_until(lambda: engine.snapshot()["pending_next"] is not None)

    assert len(backend.calls) == 3
    await engine.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent(store: ClipStore, voices: VoiceRecorder) -> None:

    """stop succeeds on a fresh engine and when called twice, and leaves no clips."""

    engine = SessionEngine(StaticBackend(store), voice_factory=voices)
    assert (await engine.stop()).ok

    await engine.start("ambient")
    assert (await engine.stop()).message == "stopped"
    assert (await engine.stop()).ok
    assert not engine.running
    assert voices.created[0].stopped
    assert store.live_count == 0


@pytest.mark.asyncio
async def test_stop_while_start_is_waiting(store: ClipStore, voices: VoiceRecorder, run_until) -> None:

    """The pending start resolves as NoActiveSession and no audio plays."""

    backend = GatedBackend(store, open_calls=0)
    engine = SessionEngine(backend, voice_factory=voices)
    starting = asyncio.create_task(engine.start("ambient"))
    await run_until(lambda: backend.calls)

    assert (await engine.stop()).ok
    outcome = await starting

    assert outcome.kind == "NoActiveSession"
    assert voices.created == []
    assert store.live_count == 0


@pytest.mark.asyncio
async def test_clip_from_a_superseded_session_is_discarded(store: ClipStore, voices: VoiceRecorder) -> None:

    """A result tagged with an old generation is released, never played."""

    engine = SessionEngine(StaticBackend(store), voice_factory=voices)
    await engine.start("ambient")
    stale_generation = engine.session.generation
    await engine.stop()
    await engine.start("jazz")

    late = store.save(b"late clip")

    assert engine.accept_clip(late, stale_generation) is False
    assert not late.path.exists()
    assert engine.snapshot()["pending_next"] is None
    await engine.stop()


@pytest.mark.asyncio
async def test_lookahead_drives_a_crossfade(store: ClipStore, clock: FakeClock, run_until) -> None:

    """Near the end of a clip the engine fetches the next one and fades it in."""

    voices = VoiceRecorder(duration=10.0, clock=clock)
    backend = StaticBackend(store)
    engine = SessionEngine(backend, voice_factory=voices, lookahead_window=5.0, crossfade_duration=2.0,
                           crossfade_steps=4, watch_interval=0.25, clock=clock, sleep=clock.sleep)
    first = await engine.start("ambient")

    await run_until(lambda: engine.scheduler.clips_played >= 2)

    snap = engine.snapshot()
    assert snap["clips_played"] == 2
    assert snap["current"] != first.clip_location
    assert snap["pending_next"] is None
    assert not voices.created[0].playing
    await engine.stop()
    assert store.live_count == 0


@pytest.mark.asyncio
async def test_task_backend_session(store: ClipStore, voices: VoiceRecorder, clock: FakeClock, run_until) -> None:

    """Start waits out the task polls; stop during the next task's polling ends it cleanly."""

    fake = FakePiapi(["processing", "processing", "completed"], ["processing"], hold_after={"t2": 2})
    backend = TaskPollingBackend(store, api_key="pk-test", url=PIAPI_URL, interval=2.0, max_wait=300.0,
                                 clock=clock, sleep=clock.sleep, transport=httpx.MockTransport(fake))
    engine = SessionEngine(backend, voice_factory=voices)

    outcome = await engine.start("lo-fi house")

    assert outcome.ok
    assert 4.0 <= clock.now <= 6.0

    await engine.generate_more()
    await run_until(lambda: fake.held.get("t2", 0) == 1)
    await engine.stop()

    fake.gate.set()
    for _ in range(50):
        await asyncio.sleep(0)
    assert fake.polls["t2"] == 2
    assert fake.downloads == 1
    assert store.live_count == 0


@pytest.mark.asyncio
async def test_stop_cancels_start_on_a_restarted_engine(store: ClipStore, voices: VoiceRecorder, run_until) -> None:

    """After one full session, a second start is still abandoned promptly by stop."""

    backend = GatedBackend(store, open_calls=1)
    engine = SessionEngine(backend, voice_factory=voices)
    assert (await engine.start("ambient")).ok
    await engine.stop()

    starting = asyncio.create_task(engine.start("jazz"))
    await run_until(lambda: len(backend.calls) == 2)
    await engine.stop()
    await run_until(starting.done)

    assert starting.result().kind == "NoActiveSession"
    assert not engine.running
    assert len(voices.created) == 1

    backend.gate.set()
    for _ in range(20):
        await asyncio.sleep(0)
    assert store.live_count == 0


@pytest.mark.asyncio
async def test_snapshot_reports_only_the_live_pending_clip(store: ClipStore, voices: VoiceRecorder) -> None:

    """A newer arrival replaces the pending clip; the snapshot never shows the released one."""

    engine = SessionEngine(StaticBackend(store), voice_factory=voices)
    await engine.start("ambient")
    generation = engine.session.generation
    older, newer = store.save(b"older"), store.save(b"newer")

    engine.accept_clip(older, generation)
    engine.accept_clip(newer, generation)

    assert engine.snapshot()["pending_next"] == newer.location
    assert engine.session.pending_next is newer
    assert not older.path.exists()
    await engine.stop()
