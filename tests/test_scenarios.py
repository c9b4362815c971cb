"""Tests for the scripted multi-stage runs."""

import io
from typing import AsyncIterator, List

import pytest
import pytest_asyncio

from mcp_probe.channels import StreamableHttpChannel
from mcp_probe.driver import McpDriver
from mcp_probe.errors import ApplicationError, ExpectationError, SessionNotFoundError
from mcp_probe.scenarios import (
    ScenarioRunner,
    Stage,
    WirePrinter,
    full_exercise_stages,
    streamable_post_stages,
    validate_tools_stage,
)
from mcp_probe.settings import ProbeSettings
from mcp_probe.transport import TransportClient
from server_double import EverythingServer


@pytest_asyncio.fixture
async def driver(transport: TransportClient, settings: ProbeSettings) -> AsyncIterator[McpDriver]:
    channel = StreamableHttpChannel(transport, settings.streamable_url)
    async with McpDriver(channel, settings) as driver:
        yield driver


@pytest.mark.asyncio
async def test_full_exercise_follows_canonical_order(driver: McpDriver, server: EverythingServer) -> None:
    out = io.StringIO()
    report = await ScenarioRunner(driver, WirePrinter(out)).run(
        full_exercise_stages(include_ping=True, validate_tools=True)
    )

    assert report.completed
    assert report.failures == []
    methods = [message.get("method") for message in server.received]
    assert methods[:2] == ["initialize", "notifications/initialized"]
    assert methods[-1] == "ping"

    silent = report.exchange("Invoke long running operation (without progress)")
    loud = report.exchange("Invoke long running operation (with progress)")
    assert silent is not None and silent.progress == []
    assert loud is not None and len(loud.progress) == 5

    text = out.getvalue()
    assert "STAGE 1: INITIALIZE" in text
    assert "STAGE 2: INITIALIZED NOTIFICATION" in text
    assert "5 progress notification(s) before the response" in text


@pytest.mark.asyncio
async def test_application_errors_do_not_stop_independent_stages(driver: McpDriver) -> None:
    async def broken(driver: McpDriver):
        return await driver.call_tool("doesNotExist")

    stages = full_exercise_stages()[:3] + [Stage("Broken tool", broken)] + streamable_post_stages()
    report = await ScenarioRunner(driver).run(stages)

    assert report.completed
    assert [outcome.stage.title for outcome in report.failures] == ["Broken tool"]
    assert isinstance(report.failures[0].error, ApplicationError)
    assert report.outcomes[-1].ok


@pytest.mark.asyncio
async def test_required_stage_failure_aborts(driver: McpDriver) -> None:
    async def refuse(driver: McpDriver):
        raise ApplicationError(-32600, "Invalid Request")

    stages = [Stage("Initialize", refuse, required=True)] + streamable_post_stages()
    report = await ScenarioRunner(driver).run(stages)

    assert report.aborted
    assert len(report.outcomes) == 1


@pytest.mark.asyncio
async def test_missing_core_tool_is_reported(driver: McpDriver) -> None:
    await driver.handshake()
    report = await ScenarioRunner(driver).run([validate_tools_stage({"echo", "getTinyImage"})])
    (outcome,) = report.failures
    assert isinstance(outcome.error, ExpectationError)
    assert "getTinyImage" in str(outcome.error)


def test_printer_renders_wire_events() -> None:
    out = io.StringIO()
    printer = WirePrinter(out)
    printer("send", {"jsonrpc": "2.0", "method": "ping", "id": 3}, method="POST", url="http://mcp.test/mcp")
    printer("http", None, status=200, content_type="application/json")
    printer("session", None, session_id="abc123", endpoint="http://mcp.test/message?sessionId=abc123")
    text = out.getvalue()
    assert "--> POST http://mcp.test/mcp" in text
    assert '"method": "ping"' in text
    assert "<-- HTTP 200 (application/json)" in text
    assert "Session ID: abc123" in text


@pytest.mark.asyncio
async def test_pause_runs_before_every_stage_but_the_first(driver: McpDriver) -> None:
    paused: List[str] = []

    async def pause(stage: Stage) -> None:
        paused.append(stage.title)

    stages = full_exercise_stages()[:3]
    await ScenarioRunner(driver, pause=pause).run(stages)
    assert paused == ["Initialized notification", "List tools"]


@pytest.mark.asyncio
async def test_destroyed_session_ends_the_run(
    transport: TransportClient, settings: ProbeSettings, server: EverythingServer
) -> None:
    channel = StreamableHttpChannel(
        transport, settings.streamable_url, session_id="stale", terminate_on_close=False
    )
    async with McpDriver.resume(channel, settings) as driver:
        report = await ScenarioRunner(driver).run(streamable_post_stages())

    assert report.aborted
    (outcome,) = report.outcomes
    assert isinstance(outcome.error, SessionNotFoundError)
    assert len(server.requests) == 1
