"""Server-Sent Events framing.

Wire format, one frame per event:

    event: <type>
    data: <single-line JSON>
    <blank line>

`encode_event` produces frames on the server; `SSEDecoder` reassembles them on
the client from arbitrarily split byte chunks.
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset(
    {"phase", "profile", "job", "analysis", "coverLetter", "complete", "error", "heartbeat"}
)
TERMINAL_EVENTS = frozenset({"complete", "error"})
# A bad payload on one of these cannot be skipped without losing the run's outcome.
CRITICAL_EVENTS = TERMINAL_EVENTS


class StreamDecodeError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class SSEMessage:
    event: str
    data: Any


def encode_event(event: str, data: Any) -> str:
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event}\ndata: {payload}\n\n"


class SSEDecoder:
    """Incremental SSE parser.

    State is the partial-line buffer, the current event label, and the data lines
    collected for the pending frame. Multi-byte UTF-8 characters split across
    chunks are held by an incremental decoder until complete.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, chunk: bytes | str) -> list[SSEMessage]:
        text = self._utf8.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        self._buffer += text
        messages: list[SSEMessage] = []
        while True:
            idx = self._buffer.find("\n")
            if idx == -1:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1 :]
            if line.endswith("\r"):
                line = line[:-1]
            message = self._handle_line(line)
            if message is not None:
                messages.append(message)
        return messages

    def flush(self) -> list[SSEMessage]:
        """Finish the stream; a trailing frame without its blank line is still dispatched."""
        tail = self._utf8.decode(b"", final=True)
        messages = self.feed(tail) if tail else []
        if self._buffer:
            message = self._handle_line(self._buffer.rstrip("\r"))
            self._buffer = ""
            if message is not None:
                messages.append(message)
        message = self._dispatch()
        if message is not None:
            messages.append(message)
        return messages

    def _handle_line(self, line: str) -> SSEMessage | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value.strip()
        elif field == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> SSEMessage | None:
        event, data_lines = self._event, self._data
        self._event, self._data = None, []
        if not data_lines:
            return None
        event = event or "message"
        raw = "\n".join(data_lines)
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            if event in CRITICAL_EVENTS:
                raise StreamDecodeError(f"Unparseable payload for '{event}' event") from exc
            logger.warning("sse.decode.skip event=%s", event)
            return None
        return SSEMessage(event=event, data=data)


def iter_messages(chunks: Iterable[bytes | str]) -> Iterator[SSEMessage]:
    decoder = SSEDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()
