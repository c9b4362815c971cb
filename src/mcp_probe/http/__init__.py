"""HTTP helpers shared by the transports."""

from .clients import DEFAULT_HEADERS, create_async_client
from .retry import wait_for_server

__all__ = ["DEFAULT_HEADERS", "create_async_client", "wait_for_server"]
