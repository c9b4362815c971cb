"""HTTP transport for MCP traffic.

Knows how to POST a body and how to hold a GET stream open. It has no idea
what MCP is; everything above it sees lines, headers and status codes.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional

import httpx

from .errors import McpConnectionError, ProtocolError
from .logging import get_logger

LOGGER = get_logger(__name__)

JSON_CONTENT_TYPE = "application/json"
SSE_CONTENT_TYPE = "text/event-stream"


class HttpStream:
    """An open HTTP response whose body has not been read yet."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    @property
    def url(self) -> str:
        return str(self._response.request.url)

    @property
    def content_type(self) -> str:
        """Media type without parameters, lower-cased."""
        raw = self._response.headers.get("content-type", "")
        return raw.split(";", 1)[0].strip().lower()

    @property
    def is_event_stream(self) -> bool:
        return self.content_type == SSE_CONTENT_TYPE

    @property
    def is_json(self) -> bool:
        return self.content_type == JSON_CONTENT_TYPE

    async def lines(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                yield line
        except httpx.TransportError as exc:
            raise McpConnectionError(f"stream from {self.url} broke: {exc}") from exc

    async def read(self) -> bytes:
        try:
            return await self._response.aread()
        except httpx.TransportError as exc:
            raise McpConnectionError(f"reading {self.url} failed: {exc}") from exc

    async def json(self) -> Any:
        body = await self.read()
        try:
            return json.loads(body)
        except ValueError as exc:
            raise ProtocolError(f"response from {self.url} is not valid JSON") from exc


class TransportClient:
    """Issue requests and open event streams over a shared ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @asynccontextmanager
    async def open_stream(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> AsyncIterator[HttpStream]:
        request_headers: Dict[str, str] = {"Accept": SSE_CONTENT_TYPE}
        request_headers.update(headers or {})
        # No read timeout: the stream stays idle between server events.
        timeout = httpx.Timeout(self._client.timeout.connect, read=None)
        try:
            async with self._client.stream(
                "GET", url, headers=request_headers, timeout=timeout
            ) as response:
                LOGGER.info("stream_opened", url=url, status=response.status_code)
                yield HttpStream(response)
        except httpx.TransportError as exc:
            raise McpConnectionError(f"GET {url} failed: {exc}") from exc
        LOGGER.info("stream_closed", url=url)

    @asynccontextmanager
    async def post(
        self,
        url: str,
        headers: Mapping[str, str],
        body: Any,
    ) -> AsyncIterator[HttpStream]:
        content = body if isinstance(body, (bytes, str)) else json.dumps(body)
        request = self._client.build_request("POST", url, headers=dict(headers), content=content)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            raise McpConnectionError(f"POST {url} failed: {exc}") from exc
        try:
            yield HttpStream(response)
        finally:
            await response.aclose()

    async def delete(self, url: str, headers: Mapping[str, str]) -> int:
        try:
            response = await self._client.delete(url, headers=dict(headers))
        except httpx.TransportError as exc:
            raise McpConnectionError(f"DELETE {url} failed: {exc}") from exc
        return response.status_code

    async def probe(self, url: str) -> int:
        """Send a GET and report the status without reading a stream body."""
        try:
            async with self._client.stream("GET", url) as response:
                return response.status_code
        except httpx.TransportError as exc:
            raise McpConnectionError(f"GET {url} failed: {exc}") from exc
