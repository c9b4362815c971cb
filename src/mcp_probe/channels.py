"""Per-transport message channels.

A channel moves JSON-RPC envelopes between the driver and one MCP server.
``send`` returns the correlated response for a request and ``None`` for
anything else. Every other message seen on the wire is handed to the
channel's message handler.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import AsyncExitStack
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from .errors import (
    ApplicationError,
    McpConnectionError,
    ProbeError,
    ProtocolError,
    SessionNotFoundError,
    SessionStateError,
)
from .jsonrpc import (
    METHOD_INITIALIZED,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
    parse_batch,
    parse_data,
)
from .logging import get_logger
from .session import (
    SESSION_HEADER,
    Session,
    negotiate_legacy,
    session_from_headers,
    session_from_message_url,
)
from .sse import SSEEvent, aiter_events
from .transport import JSON_CONTENT_TYPE, SSE_CONTENT_TYPE, HttpStream, TransportClient

LOGGER = get_logger(__name__)

ACCEPT_BOTH = f"{JSON_CONTENT_TYPE}, {SSE_CONTENT_TYPE}"
PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"
SESSION_NOT_FOUND = -32001

Outgoing = Union[JSONRPCRequest, JSONRPCNotification, JSONRPCResponse]
MessageHandler = Callable[[JSONRPCMessage], Awaitable[None]]
Tracer = Callable[..., None]


async def raise_for_status(stream: HttpStream, session: Optional[Session] = None) -> None:
    """Turn an HTTP error status into the matching probe error."""
    if stream.status_code < 400:
        return

    body = await stream.read()
    error: Dict[str, Any] = {}
    request_id = None
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        request_id = payload.get("id")

    if stream.status_code == 404 and session is not None:
        raise SessionNotFoundError(
            error.get("code", SESSION_NOT_FOUND),
            error.get("message", f"Session not found: {session.session_id}"),
            error.get("data"),
            request_id=request_id,
            http_status=404,
        )
    if "code" in error and "message" in error:
        raise ApplicationError(
            error["code"],
            error["message"],
            error.get("data"),
            request_id=request_id,
            http_status=stream.status_code,
        )
    text = body.decode("utf-8", errors="replace")[:200]
    raise ProtocolError(f"HTTP {stream.status_code} from {stream.url}: {text}")


def _is_blank(event: SSEEvent) -> bool:
    return not event.data.strip()


class Channel:
    """Base class holding the session, the handler and the tracer."""

    def __init__(self, transport: TransportClient, *, trace: Optional[Tracer] = None) -> None:
        self._transport = transport
        self._trace = trace
        self._handler: Optional[MessageHandler] = None
        self._closed = False
        self._lost_session: Optional[str] = None
        self.session: Optional[Session] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._handler = handler

    async def send(self, message: Outgoing) -> Optional[JSONRPCResponse]:
        raise NotImplementedError

    async def close(self) -> None:
        self._closed = True

    async def __aenter__(self) -> "Channel":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionStateError("channel is closed")
        if self._lost_session is not None:
            raise SessionStateError(f"session {self._lost_session} was destroyed by the server")

    def _destroy_session(self) -> None:
        if self.session is not None:
            LOGGER.warning("session_destroyed", session_id=self.session.session_id)
            self._lost_session = self.session.session_id
        self.session = None

    def _emit(self, direction: str, payload: Any, **meta: Any) -> None:
        if self._trace is not None:
            self._trace(direction, payload, **meta)

    async def _deliver(self, message: JSONRPCMessage) -> None:
        self._emit("recv", message.to_wire())
        if self._handler is not None:
            await self._handler(message)
        else:
            LOGGER.debug("message_unhandled", message=message.to_wire())

    async def _post(self, url: str, headers: Dict[str, str], message: Outgoing) -> None:
        """POST a message whose reply, if any, travels on another stream."""
        payload = message.to_wire()
        self._emit("send", payload, method="POST", url=url)
        async with self._transport.post(url, headers, payload) as response:
            self._emit("http", None, status=response.status_code, url=url)
            try:
                await raise_for_status(response, self.session)
            except SessionNotFoundError:
                self._destroy_session()
                raise
            await response.read()


class LegacySseChannel(Channel):
    """HTTP+SSE transport: one ``GET /sse`` stream carries every reply."""

    def __init__(
        self,
        transport: TransportClient,
        stream_url: str,
        *,
        endpoint_timeout: float = 10.0,
        request_timeout: float = 60.0,
        trace: Optional[Tracer] = None,
    ) -> None:
        super().__init__(transport, trace=trace)
        self.stream_url = stream_url
        self.endpoint_timeout = endpoint_timeout
        self.request_timeout = request_timeout
        self._pending: Dict[RequestId, asyncio.Future[JSONRPCResponse]] = {}
        self._stack: Optional[AsyncExitStack] = None
        self._reader: Optional[asyncio.Task[None]] = None
        self._stream_error: Optional[ProbeError] = None

    async def connect(self) -> Session:
        if self.session is not None:
            return self.session
        self._ensure_open()

        stack = AsyncExitStack()
        try:
            stream = await stack.enter_async_context(self._transport.open_stream(self.stream_url))
            await raise_for_status(stream)
            if not stream.is_event_stream:
                raise ProtocolError(
                    f"{self.stream_url} answered with {stream.content_type or 'no content type'}"
                )
            events = aiter_events(stream.lines())
            self.session = await negotiate_legacy(events, self.stream_url, self.endpoint_timeout)
        except BaseException:
            await stack.aclose()
            raise

        self._emit("session", None, session_id=self.session.session_id, endpoint=self.session.message_endpoint)
        self._stack = stack
        self._reader = asyncio.create_task(self._read_loop(events))
        return self.session

    async def send(self, message: Outgoing) -> Optional[JSONRPCResponse]:
        self._ensure_open()
        if self.session is None or self.session.message_endpoint is None:
            raise SessionStateError("no endpoint negotiated; call connect() first")
        if self._stream_error is not None:
            raise self._stream_error

        future: Optional[asyncio.Future[JSONRPCResponse]] = None
        if isinstance(message, JSONRPCRequest):
            if message.id in self._pending:
                raise SessionStateError(f"request id {message.id!r} is already outstanding")
            future = asyncio.get_running_loop().create_future()
            self._pending[message.id] = future

        try:
            headers = {"Content-Type": JSON_CONTENT_TYPE}
            await self._post(self.session.message_endpoint, headers, message)
            if future is None:
                return None
            try:
                return await asyncio.wait_for(future, self.request_timeout)
            except asyncio.TimeoutError as exc:
                raise ProtocolError(
                    f"no response to request {message.id!r} within {self.request_timeout:g}s"
                ) from exc
        finally:
            if future is not None:
                self._pending.pop(message.id, None)

    async def wait_closed(self) -> None:
        """Block until the event stream ends."""
        if self._reader is not None:
            await asyncio.shield(self._reader)
        if self._stream_error is not None and not self._closed:
            raise self._stream_error

    async def close(self) -> None:
        await super().close()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
        self._fail_pending(SessionStateError("channel is closed"))

    async def _read_loop(self, events: AsyncIterator[SSEEvent]) -> None:
        error: ProbeError = McpConnectionError(f"event stream {self.stream_url} closed")
        try:
            async for event in events:
                if _is_blank(event):
                    continue
                if event.event != "message":
                    LOGGER.info("sse_event_ignored", sse_event=event.event, data=event.data)
                    continue
                for message in parse_data(event.data):
                    await self._dispatch(message)
        except ProbeError as exc:
            LOGGER.error("sse_reader_failed", error=str(exc))
            error = exc
        self._stream_error = error
        self._fail_pending(error)

    async def _dispatch(self, message: JSONRPCMessage) -> None:
        if isinstance(message, JSONRPCResponse):
            future = self._pending.get(message.id) if message.id is not None else None
            if future is not None and not future.done():
                self._emit("recv", message.to_wire())
                future.set_result(message)
                return
            LOGGER.info("response_unmatched", id=message.id)
        await self._deliver(message)

    def _fail_pending(self, error: BaseException) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)


class DetachedLegacyChannel(Channel):
    """Post to a legacy message URL whose event stream belongs to someone else.

    Replies show up on that other stream, so ``send`` always returns ``None``.
    """

    def __init__(
        self,
        transport: TransportClient,
        message_url: str,
        *,
        trace: Optional[Tracer] = None,
    ) -> None:
        super().__init__(transport, trace=trace)
        self.session = session_from_message_url(message_url)

    async def send(self, message: Outgoing) -> Optional[JSONRPCResponse]:
        self._ensure_open()
        if self.session is None or self.session.message_endpoint is None:
            raise SessionStateError("no message endpoint to post to")
        await self._post(self.session.message_endpoint, {"Content-Type": JSON_CONTENT_TYPE}, message)
        return None


class StreamableHttpChannel(Channel):
    """Streamable HTTP transport: every POST may answer inline or as a stream."""

    def __init__(
        self,
        transport: TransportClient,
        endpoint: str,
        *,
        session_id: Optional[str] = None,
        terminate_on_close: bool = True,
        listen_in_background: bool = False,
        trace: Optional[Tracer] = None,
    ) -> None:
        super().__init__(transport, trace=trace)
        self.endpoint = endpoint
        self.terminate_on_close = terminate_on_close
        self.listen_in_background = listen_in_background
        self.protocol_version: Optional[str] = None
        self._listener: Optional[asyncio.Task[None]] = None
        if session_id:
            self.session = session_from_headers({SESSION_HEADER: session_id}, endpoint)

    def request_headers(self, echo_session: bool = True) -> Dict[str, str]:
        headers = {"Accept": ACCEPT_BOTH, "Content-Type": JSON_CONTENT_TYPE}
        if echo_session and self.session is not None:
            headers[SESSION_HEADER] = self.session.session_id
        if self.protocol_version:
            headers[PROTOCOL_VERSION_HEADER] = self.protocol_version
        return headers

    async def send(
        self,
        message: Outgoing,
        *,
        echo_session: bool = True,
    ) -> Optional[JSONRPCResponse]:
        """POST one message.

        ``echo_session=False`` leaves out ``Mcp-Session-Id`` so a server's
        session validation can be exercised on purpose.
        """
        self._ensure_open()
        payload = message.to_wire()
        headers = self.request_headers(echo_session)
        self._emit("send", payload, method="POST", url=self.endpoint)

        async with self._transport.post(self.endpoint, headers, payload) as response:
            self._emit(
                "http",
                None,
                status=response.status_code,
                url=self.endpoint,
                content_type=response.content_type,
            )
            self._adopt_session(response)
            try:
                await raise_for_status(response, self.session if echo_session else None)
            except SessionNotFoundError:
                self._destroy_session()
                raise

            if not isinstance(message, JSONRPCRequest):
                await response.read()
                if (
                    self.listen_in_background
                    and isinstance(message, JSONRPCNotification)
                    and message.method == METHOD_INITIALIZED
                ):
                    self.start_listener()
                return None
            if response.is_json:
                return await self._settle(parse_batch(await response.json()), message.id)
            if response.is_event_stream:
                return await self._consume_stream(response, message.id)
            raise ProtocolError(
                f"unexpected content type {response.content_type!r} for request {message.id!r}"
            )

    async def listen(self) -> AsyncIterator[JSONRPCMessage]:
        """Open ``GET`` on the endpoint and yield server-initiated messages."""
        self._ensure_open()
        if self.session is None:
            raise SessionStateError("listening requires an established session id")

        headers = {SESSION_HEADER: self.session.session_id}
        if self.protocol_version:
            headers[PROTOCOL_VERSION_HEADER] = self.protocol_version
        async with self._transport.open_stream(self.endpoint, headers) as stream:
            if stream.status_code == 405:
                LOGGER.info("standalone_stream_unsupported", url=self.endpoint)
                return
            try:
                await raise_for_status(stream, self.session)
            except SessionNotFoundError:
                self._destroy_session()
                raise
            if not stream.is_event_stream:
                raise ProtocolError(f"GET {self.endpoint} answered with {stream.content_type!r}")
            async for event in aiter_events(stream.lines()):
                if _is_blank(event):
                    continue
                for message in parse_data(event.data):
                    await self._deliver(message)
                    yield message

    def start_listener(self) -> None:
        """Keep ``listen()`` running in a background task until the channel closes."""
        if self._listener is None:
            self._listener = asyncio.create_task(self._listen_forever())

    async def _listen_forever(self) -> None:
        try:
            async for _ in self.listen():
                pass
        except ProbeError as exc:
            LOGGER.warning("standalone_stream_failed", url=self.endpoint, error=str(exc))

    async def close(self) -> None:
        if self._closed:
            return
        if self._listener is not None and not self._listener.done():
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
        session = self.session
        await super().close()
        if session is None or not self.terminate_on_close:
            return
        try:
            status = await self._transport.delete(self.endpoint, {SESSION_HEADER: session.session_id})
        except McpConnectionError as exc:
            LOGGER.warning("session_delete_failed", session_id=session.session_id, error=str(exc))
            return
        LOGGER.info("session_terminated", session_id=session.session_id, status=status)

    def _adopt_session(self, response: HttpStream) -> None:
        announced = session_from_headers(response.headers, self.endpoint)
        if announced is None:
            return
        if self.session is None:
            self.session = announced
            LOGGER.info("session_negotiated", transport=announced.transport.value, session_id=announced.session_id)
            self._emit("session", None, session_id=announced.session_id, endpoint=self.endpoint)
        elif announced.session_id != self.session.session_id:
            raise ProtocolError(
                f"server switched session id from {self.session.session_id} to {announced.session_id}"
            )

    async def _settle(self, messages: List[JSONRPCMessage], request_id: RequestId) -> JSONRPCResponse:
        terminal: Optional[JSONRPCResponse] = None
        for message in messages:
            if terminal is None and isinstance(message, JSONRPCResponse) and message.id == request_id:
                terminal = message
                self._emit("recv", message.to_wire())
            else:
                await self._deliver(message)
        if terminal is None:
            raise ProtocolError(f"response body did not answer request {request_id!r}")
        return terminal

    async def _consume_stream(self, response: HttpStream, request_id: RequestId) -> JSONRPCResponse:
        async for event in aiter_events(response.lines()):
            if _is_blank(event):
                continue
            for message in parse_data(event.data):
                if isinstance(message, JSONRPCResponse) and message.id == request_id:
                    self._emit("recv", message.to_wire())
                    return message
                await self._deliver(message)
        raise ProtocolError(f"event stream closed before the response to request {request_id!r}")
