"""Shared fixtures: an in-memory everything server and clients wired to it."""

from __future__ import annotations

from typing import AsyncIterator

import httpx
import pytest
import pytest_asyncio

from mcp_probe.settings import ProbeSettings, reset_settings_cache
from mcp_probe.transport import TransportClient
from server_double import EverythingServer

BASE_URL = "http://mcp.test"


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("MCP_BASE_URL", "MCP_PROTOCOL_VERSION", "MCP_LOG_LEVEL", "MCP_PROBE_ENV_FILE"):
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()


@pytest.fixture
def settings() -> ProbeSettings:
    return ProbeSettings(_env_file=None, base_url=BASE_URL, endpoint_timeout=1.0, request_timeout=5.0)


@pytest.fixture
def server() -> EverythingServer:
    return EverythingServer()


@pytest_asyncio.fixture
async def http_client(server: EverythingServer) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=server.transport, timeout=5.0) as client:
        yield client
    await server.shutdown()


@pytest.fixture
def transport(http_client: httpx.AsyncClient) -> TransportClient:
    return TransportClient(http_client)
