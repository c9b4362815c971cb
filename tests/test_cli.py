"""Tests for the mcp-probe command line."""

import asyncio

import httpx
import pytest

from mcp_probe.cli import main
from server_double import EverythingServer

BASE = ["--base-url", "http://mcp.test"]


@pytest.mark.parametrize("command", ["post", "listen", "sse-post"])
def test_missing_positional_prints_usage_and_exits_1(command: str, capsys: pytest.CaptureFixture[str]) -> None:
    assert main([command]) == 1
    assert "Usage:" in capsys.readouterr().err


def test_streamable_run_completes(capsys: pytest.CaptureFixture[str]) -> None:
    server = EverythingServer()
    code = main(BASE + ["run", "--transport", "streamable", "--ping", "--steps", "2"], http_transport=server.transport)
    out = capsys.readouterr().out
    assert code == 0
    assert "STAGE 1: INITIALIZE" in out
    assert "STAGE 9: PING" in out
    assert len(server.deleted) == 1
    assert any(request.method == "GET" and request.url.path == "/mcp" for request in server.requests)


def test_legacy_run_completes(capsys: pytest.CaptureFixture[str]) -> None:
    server = EverythingServer()
    code = main(BASE + ["run", "--transport", "sse", "--validate"], http_transport=server.transport)
    out = capsys.readouterr().out
    assert code == 0
    assert "Message endpoint: http://mcp.test/message?sessionId=" in out
    assert "VALIDATE CORE TOOLS" in out


def test_init_prints_session_for_post(capsys: pytest.CaptureFixture[str]) -> None:
    server = EverythingServer()
    assert main(BASE + ["init"], http_transport=server.transport) == 0
    (session_id,) = server.streamable_sessions
    assert f"Next, run: mcp-probe post {session_id}" in capsys.readouterr().out
    assert server.deleted == []


def test_post_against_unknown_session_stops_after_first_stage(capsys: pytest.CaptureFixture[str]) -> None:
    server = EverythingServer()
    assert main(BASE + ["post", "stale-session"], http_transport=server.transport) == 1
    out = capsys.readouterr().out
    assert "SessionNotFoundError" in out
    assert "STAGE 2" not in out
    assert [message["method"] for message in server.received] == ["tools/list"]


def test_sse_post_without_listener_aborts(capsys: pytest.CaptureFixture[str]) -> None:
    server = EverythingServer()
    code = main(["sse-post", "http://mcp.test/message?sessionId=abc123"], http_transport=server.transport)
    assert code == 1
    assert "SessionNotFoundError" in capsys.readouterr().out
    assert server.received == []


def test_sse_post_sends_handshake_to_listener_session(capsys: pytest.CaptureFixture[str]) -> None:
    server = EverythingServer()
    server.legacy_sessions["abc123"] = asyncio.Queue()
    code = main(["sse-post", "http://mcp.test/message?sessionId=abc123"], http_transport=server.transport)
    assert code == 0
    assert [message["method"] for message in server.received] == [
        "initialize",
        "notifications/initialized",
        "tools/list",
        "resources/list",
    ]
    assert "Replies arrive on the stream held by sse-listen." in capsys.readouterr().out


def test_unreachable_server_exits_1(capsys: pytest.CaptureFixture[str]) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    code = main(BASE + ["run"], http_transport=httpx.MockTransport(refuse))
    assert code == 1
    assert "connection refused" in capsys.readouterr().err


def test_step_without_terminal_runs_straight_through(capsys: pytest.CaptureFixture[str]) -> None:
    server = EverythingServer()
    code = main(BASE + ["--step", "run", "--steps", "1"], http_transport=server.transport)
    assert code == 0
    assert "STAGE 8: LIST PROMPTS" in capsys.readouterr().out
