"""Re-chunking of the backend token stream and fan-out of the chunks.

The aggregator turns the backend's per-token fragments into paragraph-sized
units. The dual-sink writer sends each unit to the browser and keeps a copy in
memory; the copy becomes the assistant's transcript entry once the stream has
finished.
"""

from __future__ import annotations

import io
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from chatlocal.logging import get_logger

logger = get_logger(__name__)

PARAGRAPH_MARKERS = frozenset({"\n", "\n\n"})
UNIT_SEPARATOR = "\n\n"


class StreamDecodeError(Exception):
    """A backend line was not a well-formed generate fragment."""

    def __init__(self, message: str, line: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.line = line


class ClientDisconnected(Exception):
    """Writing to the live client connection failed."""


class GenerateChunk(BaseModel):
    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    model: str = ""
    response: str = ""
    done: bool = False
    created_at: Optional[str] = None


def parse_chunk(line: str) -> GenerateChunk:
    try:
        return GenerateChunk.model_validate_json(line)
    except PydanticValidationError as exc:
        raise StreamDecodeError("malformed backend fragment", line[:200]) from exc


class StreamAggregator:
    """Accumulates fragments and releases a unit at each paragraph marker or at completion."""

    def __init__(self) -> None:
        self._pending: list[str] = []
        self.done = False

    def feed(self, chunk: GenerateChunk) -> Optional[str]:
        if chunk.done:
            self._pending.append(chunk.response)
            self.done = True
            return self._flush()
        if chunk.response in PARAGRAPH_MARKERS:
            return self._flush()
        self._pending.append(chunk.response)
        return None

    def finish(self) -> Optional[str]:
        """Flush leftovers when the source closed without a completion fragment."""

        if self.done or not self._pending:
            return None
        unit = self._flush()
        return unit or None

    def _flush(self) -> str:
        unit = "".join(self._pending)
        self._pending = []
        return unit


async def aggregate(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield flush units from newline-delimited JSON ``lines``.

    Stops at the first completion fragment or when ``lines`` is exhausted.
    Raises ``StreamDecodeError`` on the first malformed line.
    """

    aggregator = StreamAggregator()
    async for raw in lines:
        line = raw.strip()
        if not line:
            continue
        unit = aggregator.feed(parse_chunk(line))
        if unit is not None:
            yield unit
        if aggregator.done:
            return
    tail = aggregator.finish()
    if tail is not None:
        yield tail


class Sink(Protocol):
    async def write(self, data: str) -> None: ...


class BufferSink:
    def __init__(self) -> None:
        self._buffer = io.StringIO()

    async def write(self, data: str) -> None:
        self._buffer.write(data)

    def getvalue(self) -> str:
        return self._buffer.getvalue()


Send = Callable[[Dict], Awaitable[None]]


class LiveSink:
    """Writes each unit as one ASGI body message, so every unit is flushed on its own."""

    def __init__(self, send: Send, charset: str = "utf-8") -> None:
        self._send = send
        self._charset = charset

    async def write(self, data: str) -> None:
        try:
            await self._send(
                {"type": "http.response.body", "body": data.encode(self._charset), "more_body": True}
            )
        except OSError as exc:
            raise ClientDisconnected(str(exc)) from exc


class DualSinkWriter:
    """Fans each unit out to the buffer sink and then the live sink.

    A live-sink failure raises ``ClientDisconnected``. A buffer-sink failure is
    logged and marks the writer ``degraded``; the live stream continues.
    """

    def __init__(self, live: Sink, buffer: BufferSink) -> None:
        self.live = live
        self.buffer = buffer
        self.degraded = False
        self.units = 0

    async def accept(self, unit: str) -> None:
        data = unit + UNIT_SEPARATOR
        try:
            await self.buffer.write(data)
        except Exception as exc:
            self.degraded = True
            logger.error("stream_buffer_write_failed", error=str(exc))
        await self.live.write(data)
        self.units += 1

    @property
    def text(self) -> str:
        return self.buffer.getvalue().strip()
