"""Shared HTTPX client factory."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import httpx

from .. import __version__

DEFAULT_HEADERS: Dict[str, str] = {
    "User-Agent": f"mcp-probe/{__version__}",
}


@asynccontextmanager
async def create_async_client(
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        timeout=timeout,
        headers=DEFAULT_HEADERS,
        transport=transport,
    ) as client:
        yield client
