"""Bounded task polling — submit once, then tick until Ready, Failed or TimedOut.

Each tick issues exactly one status fetch. Transient fetch errors are retried
a few times inside the same tick; the wall-clock ceiling covers everything,
fetches and sleeps included. Cancelling the awaiting task stops the loop at
its current await, so no further fetch is issued.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from .config import POLL_INTERVAL, POLL_MAX_WAIT, POLL_RETRY_DELAY, POLL_TICK_RETRIES
from .errors import GenerationTimeout, SoundtrackError, UpstreamError

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    SUBMITTED = "Submitted"
    POLLING = "Polling"
    READY = "Ready"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.READY, TaskState.FAILED, TaskState.TIMED_OUT)


@dataclass(frozen=True)
class PollStatus:
    """One status fetch, normalised: "success" | "failure" | "pending"."""

    status: str
    result_url: Optional[str] = None
    reason: str = ""


@dataclass
class Task:
    task_id: str
    state: TaskState = TaskState.SUBMITTED
    created_at: float = field(default_factory=time.monotonic)
    last_poll_at: Optional[float] = None
    attempts: int = 0
    result_url: Optional[str] = None
    reason: str = ""

    def diagnostics(self, now: float) -> str:
        since = f"{now - self.last_poll_at:.1f}s ago" if self.last_poll_at is not None else "never"
        return (f"task {self.task_id}: {self.attempts} polls over "
                f"{now - self.created_at:.1f}s, last poll {since}")


StatusFetcher = Callable[[str], Awaitable[PollStatus]]
ResultExtractor = Callable[[PollStatus], str]


class TaskPoller:
    def __init__(
        self,
        task_id: str,
        status_fetcher: StatusFetcher,
        result_extractor: ResultExtractor,
        max_wait: float = POLL_MAX_WAIT,
        interval: float = POLL_INTERVAL,
        tick_retries: int = POLL_TICK_RETRIES,
        retry_delay: float = POLL_RETRY_DELAY,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self.task = Task(task_id, created_at=clock())
        self._fetch = status_fetcher
        self._extract = result_extractor
        self.max_wait = max_wait
        self.interval = interval
        self.tick_retries = tick_retries
        self.retry_delay = retry_delay

    async def run(self) -> str:
        """Poll until terminal. Returns the result URL on Ready.

        Raises GenerationTimeout once max_wait is exhausted and
        UpstreamError (or the fetcher's own fatal error) on Failed.
        """
        task = self.task
        deadline = task.created_at + self.max_wait

        while True:
            if task.state is TaskState.SUBMITTED:
                task.state = TaskState.POLLING

            status = await self._tick(deadline)

            if status.status == "success":
                task.result_url = self._extract(status)
                task.state = TaskState.READY
                logger.info("Task %s ready after %d polls", task.task_id, task.attempts)
                return task.result_url

            if status.status == "failure":
                task.state = TaskState.FAILED
                task.reason = status.reason or "task failed"
                raise UpstreamError(f"{task.reason} ({task.diagnostics(self._clock())})")

            remaining = deadline - self._clock()
            if remaining <= 0:
                self._time_out()
            await self._sleep(min(self.interval, remaining))
            if self._clock() >= deadline:
                self._time_out()

    async def _tick(self, deadline: float) -> PollStatus:
        """One status fetch, retried in place on transient errors."""
        task = self.task
        retries_left = self.tick_retries
        while True:
            task.attempts += 1
            task.last_poll_at = self._clock()
            remaining = deadline - task.last_poll_at
            if remaining <= 0:
                self._time_out()
            try:
                return await asyncio.wait_for(self._fetch(task.task_id), timeout=remaining)
            except asyncio.TimeoutError:
                self._time_out()
            except SoundtrackError as e:
                if not e.transient or retries_left <= 0:
                    task.state = TaskState.FAILED
                    task.reason = e.message
                    logger.warning("Task %s failed: %s (%s)", task.task_id, e.message,
                                   task.diagnostics(self._clock()))
                    raise
                retries_left -= 1
                logger.debug("Transient poll error for %s, retrying: %s", task.task_id, e.message)
                await self._sleep(min(self.retry_delay, max(0.0, deadline - self._clock())))

    def _time_out(self):
        task = self.task
        task.state = TaskState.TIMED_OUT
        raise GenerationTimeout(
            f"Generation timed out after {self.max_wait:g}s ({task.diagnostics(self._clock())})"
        )
