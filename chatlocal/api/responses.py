from __future__ import annotations

import typing
from typing import Awaitable, Callable, Optional

import httpx
from fastapi.responses import StreamingResponse

from chatlocal.logging import get_logger
from chatlocal.service.streaming import (
    BufferSink,
    ClientDisconnected,
    DualSinkWriter,
    LiveSink,
    Send,
    StreamDecodeError,
    aggregate,
)

logger = get_logger(__name__)

OnComplete = Callable[[str], Awaitable[None]]


class ChatStreamResponse(StreamingResponse):
    """Streams an open backend response to the browser one paragraph at a time.

    Each unit goes through a ``DualSinkWriter``. ``on_complete`` receives the
    trimmed reply only when the backend finished and every unit reached the
    client; otherwise nothing is persisted. The backend response is always
    closed.
    """

    media_type = "text/plain"

    def __init__(
        self,
        backend_response: httpx.Response,
        *,
        on_complete: Optional[OnComplete] = None,
        headers: typing.Mapping[str, str] | None = None,
        log_context: Optional[dict] = None,
    ) -> None:
        super().__init__((), headers=headers)
        self.backend_response = backend_response
        self.on_complete = on_complete
        self.log_context = log_context or {}

    async def stream_response(self, send: Send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        writer = DualSinkWriter(LiveSink(send, self.charset), BufferSink())
        completed = False
        try:
            async for unit in aggregate(self.backend_response.aiter_lines()):
                await writer.accept(unit)
            completed = True
        except ClientDisconnected as exc:
            logger.info(
                "stream_client_disconnected",
                units=writer.units,
                error=str(exc),
                **self.log_context,
            )
            return
        except StreamDecodeError as exc:
            logger.error(
                "stream_decode_error",
                units=writer.units,
                line=exc.line,
                **self.log_context,
            )
        except httpx.HTTPError as exc:
            logger.error(
                "stream_backend_error",
                units=writer.units,
                error_type=type(exc).__name__,
                error=str(exc),
                **self.log_context,
            )
        finally:
            await self.backend_response.aclose()

        if completed:
            await self._complete(writer)
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def _complete(self, writer: DualSinkWriter) -> None:
        if writer.degraded:
            logger.error("stream_buffer_degraded_turn_skipped", units=writer.units, **self.log_context)
            return
        if self.on_complete is None:
            return
        try:
            await self.on_complete(writer.text)
        except Exception as exc:
            # Headers are already sent; the turn is lost but the reply was delivered
            logger.exception(
                "stream_persist_failed",
                exc_info=exc,
                error_type=type(exc).__name__,
                error=str(exc),
                **self.log_context,
            )
        else:
            logger.info("stream_completed", units=writer.units, **self.log_context)
