"""JSON-RPC message driver for an MCP session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .channels import Channel, StreamableHttpChannel
from .errors import ApplicationError, ProtocolError, SessionStateError
from .jsonrpc import (
    METHOD_INITIALIZE,
    METHOD_INITIALIZED,
    METHOD_NOT_FOUND,
    METHOD_PING,
    METHOD_PROGRESS,
    METHOD_PROMPTS_GET,
    METHOD_PROMPTS_LIST,
    METHOD_RESOURCES_LIST,
    METHOD_RESOURCES_READ,
    METHOD_ROOTS_LIST,
    METHOD_TOOLS_CALL,
    METHOD_TOOLS_LIST,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
    RequestIdAllocator,
    error_response,
)
from .logging import get_logger
from .settings import ProbeSettings, load_probe_settings

LOGGER = get_logger(__name__)

NotificationCallback = Callable[[JSONRPCMessage], Awaitable[None]]


@dataclass
class RpcExchange:
    """One request and everything the server sent while it was outstanding."""

    request: Dict[str, Any]
    response: Optional[Dict[str, Any]] = None
    notifications: List[Dict[str, Any]] = field(default_factory=list)
    progress: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def id(self) -> Optional[RequestId]:
        return self.request.get("id")

    @property
    def method(self) -> str:
        return self.request["method"]

    @property
    def progress_token(self) -> Optional[RequestId]:
        meta = (self.request.get("params") or {}).get("_meta") or {}
        return meta.get("progressToken")

    @property
    def delivered(self) -> bool:
        """False when the reply travels on a stream this process does not hold."""
        return self.response is not None

    @property
    def result(self) -> Optional[Dict[str, Any]]:
        if self.response is None:
            return None
        return self.response.get("result")


def client_capabilities() -> Dict[str, Any]:
    return {
        "roots": {"listChanged": True},
        "sampling": {},
        "elicitation": {},
    }


class McpDriver:
    """Sequence the MCP handshake and the requests that follow it.

    Requests made before ``initialize`` has completed raise
    ``SessionStateError``; so does anything after ``close``.
    """

    def __init__(
        self,
        channel: Channel,
        settings: Optional[ProbeSettings] = None,
        *,
        on_notification: Optional[NotificationCallback] = None,
        first_id: int = 1,
    ) -> None:
        self.channel = channel
        self.settings = settings or load_probe_settings()
        self.on_notification = on_notification
        self.ids = RequestIdAllocator(first_id)
        self.server_info: Optional[Dict[str, Any]] = None
        self.server_capabilities: Dict[str, Any] = {}
        self.protocol_version: Optional[str] = None
        self._initialize_done = False
        self._initialized_sent = False
        self._closed = False
        self._active: List[RpcExchange] = []
        channel.set_message_handler(self._on_message)

    @classmethod
    def resume(
        cls,
        channel: Channel,
        settings: Optional[ProbeSettings] = None,
        *,
        first_id: int = 2,
        on_notification: Optional[NotificationCallback] = None,
    ) -> "McpDriver":
        """Drive a session that was initialised by another process."""
        driver = cls(channel, settings, on_notification=on_notification, first_id=first_id)
        driver._initialize_done = True
        driver._initialized_sent = True
        return driver

    @property
    def initialized(self) -> bool:
        return self._initialize_done

    async def __aenter__(self) -> "McpDriver":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.channel.close()

    async def initialize(self) -> RpcExchange:
        params = {
            "protocolVersion": self.settings.protocol_version,
            "capabilities": client_capabilities(),
            "clientInfo": {
                "name": self.settings.client_name,
                "version": self.settings.client_version,
            },
        }
        exchange = await self.request(METHOD_INITIALIZE, params)
        result = exchange.result or {}
        self.server_info = result.get("serverInfo")
        self.server_capabilities = result.get("capabilities") or {}
        self.protocol_version = result.get("protocolVersion")
        if self.protocol_version and isinstance(self.channel, StreamableHttpChannel):
            self.channel.protocol_version = self.protocol_version
        self._initialize_done = True
        LOGGER.info(
            "session_initialized",
            server=self.server_info,
            protocol_version=self.protocol_version,
        )
        return exchange

    async def notify_initialized(self) -> None:
        if not self._initialize_done:
            raise SessionStateError("notifications/initialized must follow the initialize response")
        await self.notify(METHOD_INITIALIZED)
        self._initialized_sent = True

    async def handshake(self) -> RpcExchange:
        exchange = await self.initialize()
        await self.notify_initialized()
        return exchange

    async def list_tools(self, cursor: Optional[str] = None) -> RpcExchange:
        return await self.request(METHOD_TOOLS_LIST, _paginated(cursor))

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        progress_token: Optional[RequestId] = None,
    ) -> RpcExchange:
        params: Dict[str, Any] = {"name": name, "arguments": arguments or {}}
        return await self.request(METHOD_TOOLS_CALL, params, progress_token=progress_token)

    async def list_resources(self, cursor: Optional[str] = None) -> RpcExchange:
        return await self.request(METHOD_RESOURCES_LIST, _paginated(cursor))

    async def read_resource(self, uri: str) -> RpcExchange:
        return await self.request(METHOD_RESOURCES_READ, {"uri": uri})

    async def list_prompts(self, cursor: Optional[str] = None) -> RpcExchange:
        return await self.request(METHOD_PROMPTS_LIST, _paginated(cursor))

    async def get_prompt(self, name: str, arguments: Optional[Dict[str, str]] = None) -> RpcExchange:
        params: Dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return await self.request(METHOD_PROMPTS_GET, params)

    async def ping(self) -> RpcExchange:
        return await self.request(METHOD_PING)

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        progress_token: Optional[RequestId] = None,
    ) -> RpcExchange:
        """Send a request and wait for the response carrying the same id."""
        self._ensure_usable(method)
        if progress_token is not None:
            params = dict(params or {})
            params["_meta"] = {**(params.get("_meta") or {}), "progressToken": progress_token}

        request_id = self.ids.allocate()
        message = JSONRPCRequest(id=request_id, method=method, params=params)
        exchange = RpcExchange(request=message.to_wire())
        self._active.append(exchange)
        LOGGER.info("request_sent", id=request_id, method=method, progress_token=progress_token)
        try:
            response = await self.channel.send(message)
        finally:
            self._active.remove(exchange)
            self.ids.release(request_id)

        if response is None:
            LOGGER.info("response_deferred", id=request_id, method=method)
            return exchange

        self._check_response(response, request_id)
        exchange.response = response.to_wire()
        if response.error is not None:
            LOGGER.warning(
                "request_failed",
                id=request_id,
                method=method,
                code=response.error.code,
                message=response.error.message,
            )
            raise ApplicationError(
                response.error.code,
                response.error.message,
                response.error.data,
                request_id=request_id,
            )
        LOGGER.info(
            "response_received",
            id=request_id,
            method=method,
            notifications=len(exchange.notifications),
            progress=len(exchange.progress),
        )
        return exchange

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        if self._closed:
            raise SessionStateError("session is closed")
        if method != METHOD_INITIALIZED and not self._initialize_done:
            raise SessionStateError(f"{method} sent before initialize completed")
        LOGGER.info("notification_sent", method=method)
        await self.channel.send(JSONRPCNotification(method=method, params=params))

    def _ensure_usable(self, method: str) -> None:
        if self._closed:
            raise SessionStateError("session is closed")
        if method != METHOD_INITIALIZE and not self._initialize_done:
            raise SessionStateError(f"{method} sent before initialize completed")

    @staticmethod
    def _check_response(response: JSONRPCResponse, request_id: RequestId) -> None:
        if response.id != request_id:
            raise ProtocolError(f"response id mismatch: expected {request_id!r}, got {response.id!r}")
        if response.result is None and response.error is None:
            raise ProtocolError(f"response {request_id!r} has neither result nor error")

    async def _on_message(self, message: JSONRPCMessage) -> None:
        payload = message.to_wire()
        if isinstance(message, JSONRPCNotification):
            for exchange in self._active:
                exchange.notifications.append(payload)
                token = (message.params or {}).get("progressToken")
                if (
                    message.method == METHOD_PROGRESS
                    and exchange.progress_token is not None
                    and token == exchange.progress_token
                ):
                    exchange.progress.append(payload)
            LOGGER.debug("notification_received", method=message.method)
        elif isinstance(message, JSONRPCRequest):
            await self._answer_server_request(message)
        else:
            LOGGER.info("response_unclaimed", id=message.id)

        if self.on_notification is not None:
            await self.on_notification(message)

    async def _answer_server_request(self, message: JSONRPCRequest) -> None:
        LOGGER.info("server_request_received", id=message.id, method=message.method)
        if message.method == METHOD_PING:
            reply = JSONRPCResponse(id=message.id, result={})
        elif message.method == METHOD_ROOTS_LIST:
            reply = JSONRPCResponse(id=message.id, result={"roots": []})
        else:
            reply = error_response(message.id, METHOD_NOT_FOUND, f"Method not found: {message.method}")
        if self._closed or self.channel.closed or self.channel.session is None:
            return
        await self.channel.send(reply)


def _paginated(cursor: Optional[str]) -> Optional[Dict[str, Any]]:
    return {"cursor": cursor} if cursor else None
