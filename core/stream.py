from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from pydantic import BaseModel

from core.errors import PipelineError
from core.models import Heartbeat, PhaseUpdate, PipelineSummary
from core.sse import TERMINAL_EVENTS, encode_event

logger = logging.getLogger(__name__)

_CLOSE = object()


def _as_payload(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    return data


class PipelineStream:
    """Typed event channel between one pipeline run and its HTTP response.

    The producer calls the `send_*` methods, which never block. The transport
    consumes `frames()`. Once the consumer goes away the stream aborts, which
    sets `cancel_event` so the producer can stop cooperatively.
    """

    def __init__(
        self,
        run_id: str = "",
        *,
        heartbeat_seconds: float = 5.0,
        cancel_event: asyncio.Event | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.run_id = run_id
        self.heartbeat_seconds = heartbeat_seconds
        self.cancel_event = cancel_event or asyncio.Event()
        self._sleep = sleep
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._drained = False
        self._heartbeat: asyncio.Task[None] | None = None
        self.abort_reason: Optional[str] = None
        self.terminal_event: Optional[str] = None

    # ---- lifecycle ----

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def start_heartbeat(self) -> None:
        if self._heartbeat is None and not self._closed and self.heartbeat_seconds > 0:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while not self._closed:
            await self._sleep(self.heartbeat_seconds)
            if self._closed:
                break
            self.send("heartbeat", Heartbeat())
            logger.debug("stream.heartbeat run_id=%s", self.run_id)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._heartbeat is not None:
            self._heartbeat.cancel()
        self._queue.put_nowait(_CLOSE)
        logger.info(
            "stream.close run_id=%s terminal=%s aborted=%s",
            self.run_id,
            self.terminal_event,
            self.abort_reason is not None,
        )

    def abort(self, reason: str = "aborted") -> None:
        """Signal cancellation, drop anything not yet delivered and close."""
        if self.abort_reason is None:
            self.abort_reason = reason
            logger.warning("stream.abort run_id=%s reason=%s", self.run_id, reason)
        self.cancel_event.set()
        while not self._queue.empty():
            self._queue.get_nowait()
        if self._closed:
            # the drain above may have taken the close marker
            self._queue.put_nowait(_CLOSE)
        else:
            self.close()

    # ---- producer side ----

    def send(self, event: str, data: Any) -> bool:
        """Queue an event; a no-op (returns False) once closed, cancelled or terminated."""
        if self._closed or self.cancelled or self.terminal_event is not None:
            return False
        if event in TERMINAL_EVENTS:
            self.terminal_event = event
        self._queue.put_nowait((event, _as_payload(data)))
        return True

    def send_phase(self, phase: str, progress: int, message: str | None = None) -> bool:
        return self.send("phase", PhaseUpdate(phase=phase, progress=progress, message=message))

    def send_profile(self, profile: BaseModel) -> bool:
        return self.send("profile", profile)

    def send_job(self, job: BaseModel) -> bool:
        return self.send("job", job)

    def send_analysis(self, analysis: BaseModel) -> bool:
        return self.send("analysis", analysis)

    def send_cover_letter(self, letter: BaseModel) -> bool:
        return self.send("coverLetter", letter)

    def send_complete(self, summary: PipelineSummary) -> bool:
        return self.send("complete", summary)

    def send_error(self, error: PipelineError | dict[str, Any]) -> bool:
        payload = error.to_payload() if isinstance(error, PipelineError) else error
        return self.send("error", payload)

    # ---- consumer side ----

    async def events(self) -> AsyncIterator[tuple[str, Any]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                self._drained = True
                return
            yield item

    async def frames(self) -> AsyncIterator[str]:
        try:
            async for event, data in self.events():
                yield encode_event(event, data)
        finally:
            if not self._drained:
                self.abort("consumer disconnected")
