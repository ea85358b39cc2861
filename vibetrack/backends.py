"""Generation backends — Stable Audio (direct clip) and PiAPI Udio (task polling).

Both satisfy one contract: ``await backend.generate(request) -> ClipHandle``,
raising one of the error kinds in ``errors``.
"""
import abc
import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from .config import (
    DEFAULT_DURATION,
    DEFAULT_GENRE,
    DEFAULT_STEPS,
    HTTP_TIMEOUT,
    PIAPI_KEY,
    PIAPI_MODEL,
    PIAPI_URL,
    POLL_INTERVAL,
    POLL_MAX_WAIT,
    POLL_TICK_RETRIES,
    STABLE_AUDIO_KEY,
    STABLE_AUDIO_URL,
)
from .errors import (
    AuthError,
    GenerationTimeout,
    InvalidResponse,
    UpstreamError,
    error_for_status,
)
from .poller import PollStatus, TaskPoller
from .storage import ClipHandle, ClipStore

logger = logging.getLogger(__name__)

_AUDIO_SUFFIXES = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/flac": ".flac",
}


class GenerationMode(str, Enum):
    SYNC = "sync"
    TASK = "task"


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    mode: GenerationMode = GenerationMode.TASK
    genre: str = DEFAULT_GENRE
    instrumental: bool = True
    duration: int = DEFAULT_DURATION
    steps: int = DEFAULT_STEPS
    generation: int = 0  # session generation this request belongs to


class GenerationBackend(abc.ABC):
    name: str = ""
    mode: GenerationMode

    def __init__(
        self,
        store: ClipStore,
        api_key: str = "",
        url: str = "",
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.api_key = api_key
        self.url = url
        self.timeout = timeout
        self._transport = transport

    @abc.abstractmethod
    async def generate(self, request: GenerationRequest) -> ClipHandle:
        raise NotImplementedError

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport,
                                 follow_redirects=True)

    def _require_key(self, env_name: str):
        if not self.api_key:
            raise AuthError(f"{env_name} is not set")

    async def _download(self, client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
        """Fetch a result URL (http(s) or data:) into memory."""
        if url.startswith("data:"):
            header, _, payload = url.partition(",")
            try:
                data = base64.b64decode(payload)
            except ValueError as e:
                raise InvalidResponse(f"{self.name} returned undecodable audio: {e}") from e
            return data, _suffix_for(header[5:].split(";")[0], url="")

        r = await client.get(url)
        if r.status_code != 200:
            raise error_for_status(r.status_code, r.text, f"{self.name} download")
        if not r.content:
            raise InvalidResponse(f"{self.name} download was empty")
        return r.content, _suffix_for(r.headers.get("content-type", ""), url)


class DirectClipBackend(GenerationBackend):
    """One synchronous call returns audio bytes (or a URL to them)."""

    name = "Stable Audio"
    mode = GenerationMode.SYNC

    def __init__(self, store: ClipStore, api_key: str = STABLE_AUDIO_KEY,
                 url: str = STABLE_AUDIO_URL, **kwargs):
        super().__init__(store, api_key=api_key, url=url, **kwargs)

    async def generate(self, request: GenerationRequest) -> ClipHandle:
        self._require_key("STABLE_AUDIO_KEY")

        # One retry, and only for a transient network failure
        for attempt in range(2):
            try:
                async with self._client() as client:
                    data, suffix = await self._generate_once(client, request)
                break
            except httpx.TransportError as e:
                if attempt == 0:
                    logger.warning("%s network error, retrying once: %s", self.name, e)
                    continue
                if isinstance(e, httpx.TimeoutException):
                    raise GenerationTimeout(f"{self.name} timed out after {self.timeout:g}s") from e
                raise UpstreamError(f"{self.name} network error: {e}", transient=True) from e

        return self.store.save(data, suffix, duration=float(request.duration))

    async def _generate_once(self, client: httpx.AsyncClient,
                             request: GenerationRequest) -> tuple[bytes, str]:
        form = {
            "prompt": request.prompt,
            "duration": str(request.duration),
            "steps": str(request.steps),
            "output_format": "mp3",
        }
        r = await client.post(
            self.url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Accept": "audio/*, application/json",
            },
            data=form,
            files={"none": ""},
        )
        if r.status_code != 200:
            raise error_for_status(r.status_code, r.text, self.name)

        content_type = r.headers.get("content-type", "").split(";")[0].strip()
        if content_type.startswith("audio/"):
            if not r.content:
                raise InvalidResponse(f"{self.name} returned no audio")
            return r.content, _suffix_for(content_type, "")

        body = _json_body(r, self.name)
        if body.get("audio"):
            try:
                return base64.b64decode(body["audio"]), ".mp3"
            except ValueError as e:
                raise InvalidResponse(f"{self.name} returned undecodable audio: {e}") from e
        url = body.get("audio_url") or body.get("url")
        if not url:
            raise InvalidResponse(f"{self.name} response has neither audio nor url: {str(body)[:120]}")
        return await self._download(client, url)


class TaskPollingBackend(GenerationBackend):
    """Submit a task, poll it to completion, then download the result."""

    name = "PiAPI Udio"
    mode = GenerationMode.TASK

    def __init__(
        self,
        store: ClipStore,
        api_key: str = PIAPI_KEY,
        url: str = PIAPI_URL,
        model: str = PIAPI_MODEL,
        max_wait: float = POLL_MAX_WAIT,
        interval: float = POLL_INTERVAL,
        tick_retries: int = POLL_TICK_RETRIES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        **kwargs,
    ):
        super().__init__(store, api_key=api_key, url=url.rstrip("/"), **kwargs)
        self.model = model
        self.max_wait = max_wait
        self.interval = interval
        self.tick_retries = tick_retries
        self._clock = clock
        self._sleep = sleep
        self.last_poller: Optional[TaskPoller] = None

    @property
    def _headers(self) -> dict:
        return {"Content-Type": "application/json", "X-API-Key": self.api_key}

    async def generate(self, request: GenerationRequest) -> ClipHandle:
        self._require_key("PIAPI_KEY")
        async with self._client() as client:
            task_id = await self.submit(client, request)
            return await self._await_task(client, task_id, request.duration)

    async def resume(self, task_id: str, duration: Optional[float] = None) -> ClipHandle:
        """Poll and fetch a task submitted earlier, without submitting again."""
        self._require_key("PIAPI_KEY")
        async with self._client() as client:
            return await self._await_task(client, task_id, duration)

    async def submit(self, client: httpx.AsyncClient, request: GenerationRequest) -> str:
        task_input = {
            "prompt": request.prompt,
            "lyrics_type": "instrumental" if request.instrumental else "generate",
        }
        if not request.instrumental:
            task_input["gpt_description_prompt"] = request.prompt
        payload = {"model": self.model, "task_type": "generate_music", "input": task_input}

        try:
            r = await client.post(self.url, json=payload, headers=self._headers)
        except httpx.TransportError as e:
            raise UpstreamError(f"{self.name} submit failed: {e}", transient=True) from e
        if r.status_code != 200:
            raise error_for_status(r.status_code, r.text, self.name)

        body = _json_body(r, self.name)
        task_id = (body.get("data") or {}).get("task_id")
        if not task_id:
            raise InvalidResponse(f"{self.name} submit returned no task_id: {str(body)[:120]}")
        logger.info("Created %s task %s", self.name, task_id)
        return task_id

    async def fetch_status(self, client: httpx.AsyncClient, task_id: str) -> PollStatus:
        try:
            r = await client.get(f"{self.url}/{task_id}", headers=self._headers)
        except httpx.TransportError as e:
            raise UpstreamError(f"{self.name} poll failed: {e}", transient=True) from e
        if r.status_code != 200:
            raise error_for_status(r.status_code, r.text, self.name)

        data = _json_body(r, self.name).get("data")
        if not isinstance(data, dict) or "status" not in data:
            raise InvalidResponse(f"{self.name} status has no data.status")

        status = str(data["status"]).lower()
        if status == "completed":
            return PollStatus("success", result_url=_song_url(data.get("output") or {}))
        if status == "failed":
            error = data.get("error") or {}
            return PollStatus("failure", reason=error.get("message") or "task failed")
        return PollStatus("pending")

    @staticmethod
    def extract_result(status: PollStatus) -> str:
        if not status.result_url:
            raise InvalidResponse("Task completed without an audio url")
        return status.result_url

    async def _await_task(self, client: httpx.AsyncClient, task_id: str,
                          duration: Optional[float]) -> ClipHandle:
        poller = TaskPoller(
            task_id,
            lambda tid: self.fetch_status(client, tid),
            self.extract_result,
            max_wait=self.max_wait,
            interval=self.interval,
            tick_retries=self.tick_retries,
            clock=self._clock,
            sleep=self._sleep,
        )
        self.last_poller = poller
        url = await poller.run()
        try:
            data, suffix = await self._download(client, url)
        except httpx.TransportError as e:
            raise UpstreamError(f"{self.name} download failed: {e}", transient=True) from e
        # No await between download and save: a cancelled download never stores
        return self.store.save(data, suffix, duration=float(duration) if duration else None)


def _json_body(r: httpx.Response, service: str) -> dict:
    try:
        body = r.json()
    except ValueError as e:
        raise InvalidResponse(f"{service} returned non-JSON body: {r.text[:120]}") from e
    if not isinstance(body, dict):
        raise InvalidResponse(f"{service} returned unexpected JSON: {str(body)[:120]}")
    return body


def _song_url(output: dict) -> Optional[str]:
    songs = output.get("songs") or []
    if songs and isinstance(songs[0], dict):
        return songs[0].get("song_path") or songs[0].get("audio_url")
    return output.get("audio_url")


def _suffix_for(content_type: str, url: str) -> str:
    suffix = _AUDIO_SUFFIXES.get(content_type.split(";")[0].strip().lower())
    if suffix:
        return suffix
    tail = url.split("?")[0].rsplit("/", 1)[-1]
    if "." in tail:
        return "." + tail.rsplit(".", 1)[-1].lower()
    return ".mp3"


def list_backends() -> list[str]:
    return ["stable", "piapi"]


def get_backend(name: str, store: ClipStore, **kwargs) -> GenerationBackend:
    n = (name or "").strip().lower()
    if n in ("stable", "stable_audio", "direct"):
        return DirectClipBackend(store, **kwargs)
    if n in ("piapi", "udio", "task"):
        return TaskPollingBackend(store, **kwargs)
    raise ValueError(f"Unknown backend: {name}. Available: {', '.join(list_backends())}")
