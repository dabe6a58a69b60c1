"""
Egress HTTP transport shared by all upstream calls.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from .errors import DecodeError, UpstreamError
from .types import ModelDefaults, try_parse_json

logger = logging.getLogger(__name__)


class UpstreamResponse:
    """An open upstream response whose body is read at most once.

    ``aclose()`` is idempotent and must be awaited on every path; streaming
    consumers do this in a ``finally`` block.
    """

    def __init__(self, response: httpx.Response, vendor: str):
        self._response = response
        self.vendor = vendor
        self.closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def ok(self) -> bool:
        return self._response.is_success

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.aiter_bytes():
            if chunk:
                yield chunk

    async def read_text(self) -> str:
        try:
            await self._response.aread()
            return self._response.text
        finally:
            await self.aclose()

    async def read_json(self) -> Any:
        text = await self.read_text()
        decoded = try_parse_json(text)
        if not decoded.ok:
            raise DecodeError(f"Invalid JSON response from {self.vendor}: {decoded.error}")
        return decoded.value

    async def aclose(self):
        if self.closed:
            return
        self.closed = True
        await self._response.aclose()


class EgressTransport:
    """Thin wrapper around one pooled ``httpx.AsyncClient``."""

    def __init__(
        self,
        timeout: float = ModelDefaults.DEFAULT_REQUEST_TIMEOUT,
        max_retries: int = ModelDefaults.DEFAULT_MAX_RETRIES,
        client: httpx.AsyncClient | None = None,
    ):
        if client is None:
            # Configure retry transport for connection failures
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=30.0),
                transport=httpx.AsyncHTTPTransport(retries=max_retries),
            )
        self.client = client
        logger.debug(f"Create egress client: timeout={timeout}s, retries={max_retries}")

    async def send(
        self,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        vendor: str,
        method: str = "POST",
    ) -> UpstreamResponse:
        """Send a request and return the response with its body still unread."""
        request = self.client.build_request(method, url, headers=headers, json=body)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.TimeoutException as timeout_err:
            logger.error(f"Timeout error to {vendor}: {timeout_err}")
            raise UpstreamError(
                f"Request to {vendor} timed out. Please try again.", 504, "timeout_error"
            ) from timeout_err
        except httpx.TransportError as conn_err:
            logger.error(f"Connection error to {vendor}: {conn_err}")
            raise UpstreamError(
                f"Unable to connect to {vendor}. Please check your network connection and try again.",
                502,
                "connection_error",
            ) from conn_err

        logger.debug(f"{vendor} responded {response.status_code} for {url}")
        return UpstreamResponse(response, vendor)

    async def get_json(self, url: str) -> Any:
        response = await self.client.get(url)
        response.raise_for_status()
        return response.json()

    async def aclose(self):
        await self.client.aclose()
