from __future__ import annotations

from typing import Optional

import httpx

from chatlocal.logging import get_logger
from chatlocal.service.errors import BackendError

logger = get_logger(__name__)


class OllamaClient:
    """Streaming client for a local Ollama-style ``/api/generate`` endpoint.

    The request body is ``{"model", "prompt"}``; the reply is newline-delimited
    JSON fragments ending with one whose ``done`` flag is true.
    """

    def __init__(
        self,
        url: str,
        model: str,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.model = model
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def open_stream(self, prompt: str, *, user_id: Optional[str] = None) -> httpx.Response:
        """Send the generate request and return the open streaming response.

        The caller owns the response and must ``aclose()`` it. Status is checked
        here so nothing has been sent to the browser when this raises.
        """

        client = self._get_client()
        request = client.build_request(
            "POST", self.url, json={"model": self.model, "prompt": prompt}
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.error("backend_timeout", user_id=user_id, url=self.url, error=str(e))
            raise BackendError("generation backend timed out") from e
        except httpx.ConnectError as e:
            logger.error("backend_connect_error", user_id=user_id, url=self.url, error=str(e))
            raise BackendError("failed to connect to generation backend") from e
        except httpx.HTTPError as e:
            logger.error(
                "backend_request_error",
                user_id=user_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise BackendError("generation backend request failed") from e

        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            logger.error(
                "backend_api_error",
                user_id=user_id,
                status_code=response.status_code,
                error_body=response.text[:500],
                model=self.model,
            )
            raise BackendError(f"generation backend returned {response.status_code}")
        return response

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
