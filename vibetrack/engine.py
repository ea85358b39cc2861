"""Session engine — start / generate_more / stop over one backend and one scheduler.

Every public operation returns an ``Outcome``; nothing escapes to the caller.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .backends import GenerationBackend, GenerationRequest, get_backend
from .config import DEFAULT_GENRE, LOOKAHEAD_RETRIES, SOUNDTRACK_BACKEND
from .errors import (
    AlreadyRunning,
    AuthError,
    GenerationInFlight,
    NoActiveSession,
    Outcome,
    SoundtrackError,
    StorageError,
    UpstreamError,
    format_error,
)
from .player import VoiceFactory, default_voice_factory
from .prompt import build_prompt
from .scheduler import CrossfadeScheduler
from .storage import ClipHandle, ClipStore

logger = logging.getLogger(__name__)


@dataclass
class Session:
    genre: str
    source_text: str = ""
    current: Optional[ClipHandle] = None
    pending_next: Optional[ClipHandle] = None
    generation_in_flight: bool = False
    started_at: float = field(default_factory=time.time)
    generation: int = 0
    clips_played: int = 0


class SessionEngine:
    def __init__(
        self,
        backend: Optional[GenerationBackend] = None,
        store: Optional[ClipStore] = None,
        voice_factory: Optional[VoiceFactory] = None,
        prompt_builder: Callable[[str, Optional[str]], str] = build_prompt,
        instrumental: bool = True,
        lookahead_retries: int = LOOKAHEAD_RETRIES,
        **scheduler_options,
    ):
        if backend is None:
            store = store or ClipStore()
            backend = get_backend(SOUNDTRACK_BACKEND, store)
        self.backend = backend
        self.store = backend.store
        self.prompt_builder = prompt_builder
        self.instrumental = instrumental
        self.lookahead_retries = lookahead_retries
        self.scheduler = CrossfadeScheduler(
            self.store,
            voice_factory or default_voice_factory(),
            request_next=self._lookahead,
            on_promote=self._promoted,
            on_halt=self._halted,
            **scheduler_options,
        )
        self.session: Optional[Session] = None
        self._generation = 0

    @property
    def running(self) -> bool:
        return self.session is not None

    # ── Public API (called by the tool-serving layer) ────────────────────────

    async def start(self, genre: Optional[str] = None, source_text: Optional[str] = None) -> Outcome:
        """Create the session and block until its first clip is playing."""
        if self.session is not None:
            return Outcome.failure(AlreadyRunning(f"A {self.session.genre} session is already running"))

        genre = genre or DEFAULT_GENRE
        self._generation += 1
        session = Session(genre=genre, source_text=source_text or "", generation=self._generation)
        self.session = session
        session.generation_in_flight = True

        request = self._build_request(session)
        gen_task = asyncio.create_task(self.backend.generate(request))
        self.scheduler.attach_generation(gen_task)
        await asyncio.wait({gen_task})
        session.generation_in_flight = False

        if gen_task.cancelled() or self.session is not session:
            if not gen_task.cancelled() and gen_task.exception() is None:
                self.store.release(gen_task.result())
            return Outcome.failure(NoActiveSession("Session was stopped before its first clip arrived"))

        err = gen_task.exception()
        if err is not None:
            self.session = None
            err = _as_soundtrack_error(err)
            format_error("start", genre, _describe(request), err.message, err.kind)
            return Outcome.failure(err)

        handle = gen_task.result()
        session.current = handle
        try:
            self.scheduler.play(handle)
        except Exception as e:
            logger.exception("Could not start playback")
            self.session = None
            await self.scheduler.stop()
            return Outcome.failure(StorageError(f"Could not play clip: {e}"))

        session.clips_played = 1
        logger.info("Session started: %s", genre)
        return Outcome.success(handle.location, genre)

    async def generate_more(self, genre: Optional[str] = None) -> Outcome:
        """Kick off the next clip in the background. At most one at a time."""
        session = self.session
        if session is None:
            return Outcome.failure(NoActiveSession("No soundtrack is playing"))
        if session.generation_in_flight:
            return Outcome.failure(GenerationInFlight("The next clip is already being generated"))

        if genre:
            session.genre = genre
        session.generation_in_flight = True
        request = self._build_request(session)
        task = asyncio.create_task(self._generate_next(session, request))
        self.scheduler.attach_generation(task)

        current = session.current.location if session.current else None
        return Outcome.success(current, session.genre, message="generating")

    async def stop(self) -> Outcome:
        """Idempotent. Safe on an engine that never started."""
        session = self.session
        self.session = None
        self._generation += 1
        await self.scheduler.stop()
        if session is None:
            return Outcome.success(message="not running")
        logger.info("Session stopped after %d clips", session.clips_played)
        return Outcome.success(genre=session.genre, message="stopped")

    def accept_clip(self, handle: ClipHandle, generation: int) -> bool:
        """Hand a finished clip to the scheduler if it belongs to the live session."""
        session = self.session
        if session is None or generation != self._generation or generation != session.generation:
            logger.info("Discarding clip from superseded generation %d", generation)
            self.store.release(handle)
            return False
        accepted = self.scheduler.on_next_ready(handle)
        # The scheduler owns the clips: it may have played, queued or replaced this one
        session.current = self.scheduler.current
        session.pending_next = self.scheduler.pending
        return accepted

    def snapshot(self) -> dict:
        session = self.session
        pending = self.scheduler.pending if session else None
        return {
            "running": session is not None,
            "genre": session.genre if session else None,
            "current": session.current.location if session and session.current else None,
            "pending_next": pending.location if pending else None,
            "generating": bool(session and session.generation_in_flight),
            "state": self.scheduler.state.value,
            "elapsed": round(self.scheduler.elapsed, 1),
            "duration": self.scheduler.duration,
            "clips_played": session.clips_played if session else 0,
        }

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _build_request(self, session: Session) -> GenerationRequest:
        return GenerationRequest(
            prompt=self.prompt_builder(session.source_text, session.genre),
            mode=self.backend.mode,
            genre=session.genre,
            instrumental=self.instrumental,
            generation=session.generation,
        )

    async def _generate_next(self, session: Session, request: GenerationRequest):
        attempts = 1 + max(0, self.lookahead_retries)
        try:
            for attempt in range(1, attempts + 1):
                try:
                    handle = await self.backend.generate(request)
                except Exception as e:
                    err = _as_soundtrack_error(e)
                    if attempt < attempts and not isinstance(err, AuthError):
                        logger.warning("Next clip failed (%s), retrying %d/%d",
                                       err.message, attempt, attempts - 1)
                        continue
                    # Current playback carries on untouched
                    format_error("generate_more", session.genre, _describe(request), err.message, err.kind)
                    self.scheduler.on_generation_failed()
                    return
                self.accept_clip(handle, request.generation)
                return
        finally:
            session.generation_in_flight = False

    async def _lookahead(self):
        outcome = await self.generate_more()
        if not outcome.ok and outcome.kind != GenerationInFlight.kind:
            logger.warning("Look-ahead generation not started: %s", outcome.message)

    def _promoted(self, handle: ClipHandle):
        session = self.session
        if session is None:
            return
        session.current = handle
        if session.pending_next is not None and session.pending_next.id == handle.id:
            session.pending_next = None
        session.clips_played += 1

    async def _halted(self, reason: str):
        session = self.session
        self.session = None
        self._generation += 1
        if session is not None:
            format_error("playback", session.genre, None, reason, "Stopped")


def _as_soundtrack_error(err: BaseException) -> SoundtrackError:
    if isinstance(err, SoundtrackError):
        return err
    logger.error("Unexpected generation error", exc_info=err)
    return UpstreamError(f"Unexpected error: {err}")


def _describe(request: GenerationRequest) -> dict:
    return {
        "genre": request.genre,
        "mode": request.mode.value,
        "instrumental": request.instrumental,
        "generation": request.generation,
        "prompt": request.prompt[:120],
    }
