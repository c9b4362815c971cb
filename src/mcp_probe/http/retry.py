"""Retry policy helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import McpConnectionError
from ..logging import get_logger

if TYPE_CHECKING:
    from ..transport import TransportClient

LOGGER = get_logger(__name__)


def log_retry_attempt(retry_state: RetryCallState) -> None:
    attempt_number = retry_state.attempt_number
    exception = retry_state.outcome.exception() if retry_state.outcome else None
    LOGGER.warning("server_not_ready", attempt=attempt_number, error=str(exception))


retry_on_network_error = retry_if_exception_type(McpConnectionError)


async def wait_for_server(
    transport: "TransportClient",
    url: str,
    attempts: int = 10,
    min_wait: float = 0.5,
    max_wait: float = 8.0,
) -> int:
    """Poll ``url`` until anything answers; return the status it answered with."""
    async for attempt in AsyncRetrying(
        retry=retry_on_network_error,
        wait=wait_exponential(min=min_wait, max=max_wait),
        stop=stop_after_attempt(attempts),
        before_sleep=log_retry_attempt,
        reraise=True,
    ):
        with attempt:
            status = await transport.probe(url)
    LOGGER.info("server_ready", url=url, status=status)
    return status
