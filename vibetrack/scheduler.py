"""Crossfade scheduler — keeps one clip audible, asks for the next one early,
and blends the two when it arrives.

A watcher task ticks the playback clock. Inside the look-ahead window it asks
the engine for more music (once per pass over a clip). A clip that is ready
early waits as ``pending`` until the current one reaches its crossfade point;
one that arrives late is faded in straight away. If the current clip runs out
first, the end policy decides: ``loop`` replays it, ``stop`` ends the session.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .config import (
    CROSSFADE_DURATION,
    CROSSFADE_STEPS,
    DEFAULT_DURATION,
    END_POLICY,
    LOOKAHEAD_WINDOW,
    OUTPUT_LEVEL,
    WATCH_INTERVAL,
)
from .errors import format_error
from .player import Voice, VoiceFactory
from .storage import ClipHandle, ClipStore

logger = logging.getLogger(__name__)

END_POLICIES = ("loop", "stop")


class SchedulerState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PREGENERATING = "pregenerating"
    CROSSFADING = "crossfading"
    STOPPED = "stopped"


class CrossfadeScheduler:
    def __init__(
        self,
        store: ClipStore,
        voice_factory: VoiceFactory,
        request_next: Callable[[], Awaitable[Any]],
        on_promote: Optional[Callable[[ClipHandle], None]] = None,
        on_halt: Optional[Callable[[str], Awaitable[None]]] = None,
        lookahead_window: float = LOOKAHEAD_WINDOW,
        crossfade_duration: float = CROSSFADE_DURATION,
        crossfade_steps: int = CROSSFADE_STEPS,
        end_policy: str = END_POLICY,
        level: float = OUTPUT_LEVEL,
        default_duration: float = DEFAULT_DURATION,
        watch_interval: float = WATCH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if end_policy not in END_POLICIES:
            raise ValueError(f"end_policy must be one of {END_POLICIES}, got {end_policy!r}")
        self.store = store
        self._voice_factory = voice_factory
        self._request_next = request_next
        self._on_promote = on_promote
        self._on_halt = on_halt
        self.lookahead_window = lookahead_window
        self.crossfade_duration = crossfade_duration
        self.crossfade_steps = max(1, crossfade_steps)
        self.end_policy = end_policy
        self.level = level
        self.default_duration = default_duration
        self.watch_interval = watch_interval
        self._clock = clock
        self._sleep = sleep

        self.state = SchedulerState.IDLE
        self.current: Optional[ClipHandle] = None
        self.pending: Optional[ClipHandle] = None
        self.clips_played = 0
        self._voice: Optional[Voice] = None
        self._incoming: Optional[ClipHandle] = None
        self._incoming_voice: Optional[Voice] = None
        self._duration = 0.0
        self._play_start = 0.0
        self._lookahead_fired = False
        self._holding = False

        self._watch_task: Optional[asyncio.Task] = None
        self._fade_task: Optional[asyncio.Task] = None
        self._lookahead_task: Optional[asyncio.Task] = None
        self._gen_task: Optional[asyncio.Task] = None

    # ── Playback clock ───────────────────────────────────────────────────────

    @property
    def elapsed(self) -> float:
        if self.current is None:
            return 0.0
        return self._clock() - self._play_start

    @property
    def duration(self) -> float:
        return self._duration

    @property
    def is_active(self) -> bool:
        return self.state not in (SchedulerState.IDLE, SchedulerState.STOPPED)

    # ── Operations ───────────────────────────────────────────────────────────

    def play(self, handle: ClipHandle):
        """Start a clip from offset 0 at full level and make it current."""
        if self._voice is not None:
            self._silence(self._voice)
        if self.current is not None and self.current.id != handle.id:
            self.store.release(self.current)

        self._voice, self._duration = self._start_voice(handle, self.level)
        self.current = handle
        self._play_start = self._clock()
        self._lookahead_fired = False
        self._holding = False
        self.state = SchedulerState.PLAYING
        self.clips_played += 1
        logger.info("Playing %s (%.0fs)", handle.path.name, self._duration)

        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.create_task(self._watch())

    def attach_generation(self, task: asyncio.Task):
        """Register the in-flight generation so stop() can cancel it."""
        self._gen_task = task

    def on_lookahead_reached(self):
        if self._lookahead_fired or not self.is_active:
            return
        self._lookahead_fired = True
        if self.pending is not None:
            return
        if self.state is SchedulerState.PLAYING:
            self.state = SchedulerState.PREGENERATING
        logger.debug("Look-ahead reached at %.1fs of %.1fs", self.elapsed, self._duration)
        self._lookahead_task = asyncio.create_task(self._request_next())

    def on_generation_failed(self):
        """The requested clip will not come; keep playing what we have."""
        if self.state is SchedulerState.PREGENERATING:
            self.state = SchedulerState.PLAYING

    def on_next_ready(self, handle: ClipHandle) -> bool:
        """Accept the next clip. Returns False if it was dropped."""
        if self.state is SchedulerState.STOPPED:
            logger.info("Dropping %s: playback stopped", handle.path.name)
            self.store.release(handle)
            return False
        if self.current is None:
            self.play(handle)
            return True

        if self.pending is not None:
            self.store.release(self.pending)
        self.pending = handle
        if self.state is SchedulerState.PREGENERATING:
            self.state = SchedulerState.PLAYING

        if self.state is not SchedulerState.CROSSFADING and (
            self._holding or self.elapsed >= self._duration - self.crossfade_duration
        ):
            self._begin_crossfade()
        return True

    async def on_current_ended(self):
        if self.pending is not None:
            self._begin_crossfade()
            return

        if self.end_policy == "stop":
            logger.warning("Clip ended before the next one was ready — stopping session")
            await self._halt("clip ended before the next one was ready")
            return

        logger.info("Next clip not ready — looping %s", self.current.path.name)
        self._holding = True
        self._silence(self._voice)
        self._voice = None
        try:
            self._voice, self._duration = self._start_voice(self.current, self.level)
        except Exception as e:
            format_error("playback", raw=f"Could not replay {self.current.path.name}: {e}", kind="IOError")
            await self._halt(f"could not replay the current clip: {e}")
            return
        self._play_start = self._clock()
        self._lookahead_fired = False

    async def stop(self):
        """Halt immediately, cancel background work, release both clips. Idempotent."""
        self.state = SchedulerState.STOPPED

        for voice in (self._voice, self._incoming_voice):
            if voice is not None:
                self._silence(voice)
        self._voice = self._incoming_voice = None

        me = asyncio.current_task()
        tasks = [t for t in (self._watch_task, self._fade_task, self._lookahead_task, self._gen_task)
                 if t is not None and t is not me and not t.done()]
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except (asyncio.CancelledError, Exception):
                pass
        self._watch_task = self._fade_task = self._lookahead_task = self._gen_task = None

        for handle in (self.current, self.pending, self._incoming):
            self.store.release(handle)
        self.current = self.pending = self._incoming = None
        self._holding = False
        self._lookahead_fired = False

    # ── Internals ────────────────────────────────────────────────────────────

    async def _watch(self):
        while self.is_active:
            await self._sleep(self.watch_interval)
            if self.state in (SchedulerState.CROSSFADING, SchedulerState.STOPPED):
                continue
            elapsed = self.elapsed

            if not self._lookahead_fired and elapsed >= self._duration - self.lookahead_window:
                self.on_lookahead_reached()

            if self.pending is not None and elapsed >= self._duration - self.crossfade_duration:
                self._begin_crossfade()
                continue

            if elapsed >= self._duration or not self._voice.is_playing():
                await self.on_current_ended()

    def _begin_crossfade(self):
        self._incoming, self.pending = self.pending, None
        self.state = SchedulerState.CROSSFADING
        self._fade_task = asyncio.create_task(self._crossfade())

    async def _crossfade(self):
        old_voice, old_handle = self._voice, self.current
        incoming = self._incoming
        try:
            self._incoming_voice, duration = self._start_voice(incoming, 0.0)
        except Exception as e:
            # Keep the current clip; the watcher applies the end policy as usual
            format_error("playback", raw=f"Could not start {incoming.path.name}: {e}", kind="IOError")
            self._incoming_voice, self._incoming = None, None
            self.store.release(incoming)
            self.state = SchedulerState.PLAYING
            return
        started = self._clock()
        logger.info("Crossfading %s -> %s over %.1fs",
                    old_handle.path.name, incoming.path.name, self.crossfade_duration)

        step_time = self.crossfade_duration / self.crossfade_steps
        for i in range(1, self.crossfade_steps + 1):
            await self._sleep(step_time)
            t = i / self.crossfade_steps
            # Equal-sum linear ramp: the two levels always add up to self.level
            old_voice.set_volume(self.level * (1.0 - t))
            self._incoming_voice.set_volume(self.level * t)

        self._silence(old_voice)
        self.store.release(old_handle)

        self._voice, self._incoming_voice = self._incoming_voice, None
        self.current, self._incoming = incoming, None
        self._duration = duration
        self._play_start = started
        self._lookahead_fired = False
        self._holding = False
        self.clips_played += 1
        self.state = SchedulerState.PLAYING
        if self._on_promote:
            self._on_promote(incoming)

    async def _halt(self, reason: str):
        await self.stop()
        if self._on_halt:
            await self._on_halt(reason)

    def _start_voice(self, handle: ClipHandle, volume: float) -> tuple[Voice, float]:
        voice = self._voice_factory()
        decoded = voice.load(handle.path)
        voice.set_volume(volume)
        voice.play()
        return voice, decoded or handle.duration or self.default_duration

    @staticmethod
    def _silence(voice: Voice):
        try:
            voice.stop()
        except Exception as e:
            logger.warning("Voice did not stop cleanly: %s", e)
