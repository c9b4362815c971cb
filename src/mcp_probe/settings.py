"""Central configuration loading utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class BaseEnvSettings(BaseSettings):
    """Base settings that enforce case sensitivity for env vars."""

    model_config = {
        "env_file": None,
        "case_sensitive": True,
        "extra": "ignore",
        "populate_by_name": True,
    }


class ProbeSettings(BaseEnvSettings):
    """Where the MCP server lives and how the probe talks to it."""

    base_url: str = Field("http://localhost:3001", alias="MCP_BASE_URL")
    sse_path: str = Field("/sse", alias="MCP_SSE_PATH")
    streamable_path: str = Field("/mcp", alias="MCP_STREAMABLE_PATH")
    protocol_version: str = Field("2025-06-18", alias="MCP_PROTOCOL_VERSION")
    client_name: str = Field("mcp-probe", alias="MCP_CLIENT_NAME")
    client_version: str = Field("0.1.0", alias="MCP_CLIENT_VERSION")
    http_timeout: float = Field(30.0, alias="MCP_HTTP_TIMEOUT")
    endpoint_timeout: float = Field(10.0, alias="MCP_ENDPOINT_TIMEOUT")
    request_timeout: float = Field(60.0, alias="MCP_REQUEST_TIMEOUT")
    log_level: str = Field("INFO", alias="MCP_LOG_LEVEL")

    @property
    def sse_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.sse_path}"

    @property
    def streamable_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.streamable_path}"


def _resolve_env_file(explicit: Optional[str] = None) -> Optional[str]:
    """Determine the environment file to load configuration from."""

    candidates: list[Path] = []

    if explicit:
        candidates.append(Path(explicit).expanduser())

    value = os.getenv("MCP_PROBE_ENV_FILE")
    if value:
        candidates.append(Path(value).expanduser())

    project_root = Path(__file__).resolve().parents[2]
    candidates.extend(
        [
            project_root / "env" / "probe.env",
            project_root / ".env",
        ]
    )

    for candidate in candidates:
        if candidate.exists():
            return str(candidate)

    return None


@lru_cache(maxsize=1)
def load_probe_settings(env_file: Optional[str] = None) -> ProbeSettings:
    return ProbeSettings(_env_file=_resolve_env_file(env_file))


def reset_settings_cache() -> None:
    load_probe_settings.cache_clear()  # type: ignore[attr-defined]
