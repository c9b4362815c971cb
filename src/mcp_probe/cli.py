"""CLI entry point for exercising MCP servers over HTTP."""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional, Sequence

import httpx

from .channels import Channel, DetachedLegacyChannel, LegacySseChannel, StreamableHttpChannel
from .driver import McpDriver
from .errors import ProbeError, ProtocolError
from .http import create_async_client, wait_for_server
from .logging import configure_logging, get_logger
from .scenarios import (
    Pause,
    ScenarioRunner,
    Stage,
    WirePrinter,
    full_exercise_stages,
    legacy_post_stages,
    streamable_init_stages,
    streamable_post_stages,
)
from .settings import ProbeSettings, load_probe_settings
from .transport import TransportClient

LOGGER = get_logger(__name__)

USAGE_EXAMPLES = {
    "sse-post": 'mcp-probe sse-post "http://localhost:3001/message?sessionId=abc123"',
    "listen": "mcp-probe listen <session-id>",
    "post": "mcp-probe post <session-id>",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-probe",
        description="Exercise MCP servers over the HTTP+SSE and Streamable HTTP transports",
    )
    parser.add_argument("--base-url", help="Server base URL (default: MCP_BASE_URL or http://localhost:3001)")
    parser.add_argument("--log-level", help="Log level (default: MCP_LOG_LEVEL or INFO)")
    parser.add_argument("--json-logs", action="store_true", help="Render logs as JSON")
    parser.add_argument("--wait", action="store_true", help="Wait for the server to accept connections first")
    parser.add_argument("--step", action="store_true", help="Press Enter before each stage")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sse-listen", help="Open /sse, print the message endpoint and keep listening")

    sse_post = subparsers.add_parser("sse-post", help="Post the handshake to a legacy message URL")
    sse_post.add_argument("message_url", nargs="?", help="Message URL printed by sse-listen")

    init = subparsers.add_parser("init", help="Initialize a Streamable HTTP session and print its id")
    init.add_argument("--listen", action="store_true", help="Keep a GET listener open afterwards")

    listen = subparsers.add_parser("listen", help="Listen for server messages on a Streamable HTTP session")
    listen.add_argument("session_id", nargs="?", help="Session id printed by init")

    post = subparsers.add_parser("post", help="List tools and invoke tools on a Streamable HTTP session")
    post.add_argument("session_id", nargs="?", help="Session id printed by init")
    post.add_argument("--duration", type=int, default=10, help="longRunningOperation duration in seconds")
    post.add_argument("--steps", type=int, default=5, help="longRunningOperation step count")

    run = subparsers.add_parser("run", help="Run the whole exercise in one process")
    run.add_argument("--transport", choices=["sse", "streamable"], default="streamable")
    run.add_argument("--ping", action="store_true", help="Append a ping stage")
    run.add_argument("--validate", action="store_true", help="Check the core tools and the add tool")
    run.add_argument("--duration", type=int, default=10, help="longRunningOperation duration in seconds")
    run.add_argument("--steps", type=int, default=5, help="longRunningOperation step count")
    return parser


def _settings_from_args(args: argparse.Namespace) -> ProbeSettings:
    settings = load_probe_settings()
    updates = {}
    if args.base_url:
        updates["base_url"] = args.base_url
    if args.log_level:
        updates["log_level"] = args.log_level
    return settings.model_copy(update=updates) if updates else settings


def _missing_argument(parser: argparse.ArgumentParser, command: str) -> int:
    parser.print_usage(sys.stderr)
    print(f"Usage: {USAGE_EXAMPLES[command]}", file=sys.stderr)
    return 1


async def _press_enter(stage: Stage) -> None:
    await asyncio.to_thread(input, f"Press Enter for stage: {stage.title}...")


async def _sse_listen(transport: TransportClient, settings: ProbeSettings, printer: WirePrinter) -> int:
    channel = LegacySseChannel(
        transport,
        settings.sse_url,
        endpoint_timeout=settings.endpoint_timeout,
        request_timeout=settings.request_timeout,
        trace=printer,
    )
    # The driver only answers server requests here; the handshake comes from sse-post.
    async with McpDriver.resume(channel, settings):
        session = await channel.connect()
        printer.note("To send the handshake, run:")
        printer.note(f'  mcp-probe sse-post "{session.message_endpoint}"')
        printer.timestamps = True
        await channel.wait_closed()
    return 0


async def _sse_post(
    transport: TransportClient,
    settings: ProbeSettings,
    printer: WirePrinter,
    pause: Optional[Pause],
    message_url: str,
) -> int:
    channel = DetachedLegacyChannel(transport, message_url, trace=printer)
    async with McpDriver(channel, settings) as driver:
        report = await ScenarioRunner(driver, printer, pause).run(legacy_post_stages())
    printer.note("Replies arrive on the stream held by sse-listen.")
    return 1 if report.aborted else 0


async def _listen(channel: StreamableHttpChannel, printer: WirePrinter) -> int:
    """Hold the GET stream open; the channel's driver answers server requests."""
    printer.timestamps = True
    async for _ in channel.listen():
        pass
    return 0


async def _init(
    transport: TransportClient,
    settings: ProbeSettings,
    printer: WirePrinter,
    pause: Optional[Pause],
    keep_listening: bool,
) -> int:
    channel = StreamableHttpChannel(
        transport, settings.streamable_url, terminate_on_close=False, trace=printer
    )
    async with McpDriver(channel, settings) as driver:
        report = await ScenarioRunner(driver, printer, pause).run(streamable_init_stages())
        if report.aborted:
            return 1
        if channel.session is None:
            raise ProtocolError("initialize response did not carry an Mcp-Session-Id header")
        printer.note(f"Next, run: mcp-probe post {channel.session.session_id}")
        if keep_listening:
            await _listen(channel, printer)
    return 0


def _resumed_channel(
    transport: TransportClient, settings: ProbeSettings, printer: WirePrinter, session_id: str
) -> StreamableHttpChannel:
    return StreamableHttpChannel(
        transport,
        settings.streamable_url,
        session_id=session_id,
        terminate_on_close=False,
        trace=printer,
    )


async def _post(
    transport: TransportClient,
    settings: ProbeSettings,
    printer: WirePrinter,
    pause: Optional[Pause],
    args: argparse.Namespace,
) -> int:
    channel = _resumed_channel(transport, settings, printer, args.session_id)
    async with McpDriver.resume(channel, settings) as driver:
        report = await ScenarioRunner(driver, printer, pause).run(
            streamable_post_stages(args.duration, args.steps)
        )
    return 1 if report.aborted else 0


async def _run(
    transport: TransportClient,
    settings: ProbeSettings,
    printer: WirePrinter,
    pause: Optional[Pause],
    args: argparse.Namespace,
) -> int:
    stages = full_exercise_stages(
        include_ping=args.ping,
        validate_tools=args.validate,
        duration=args.duration,
        steps=args.steps,
    )
    channel: Channel
    if args.transport == "sse":
        legacy = LegacySseChannel(
            transport,
            settings.sse_url,
            endpoint_timeout=settings.endpoint_timeout,
            request_timeout=settings.request_timeout,
            trace=printer,
        )
        await legacy.connect()
        channel = legacy
    else:
        channel = StreamableHttpChannel(
            transport, settings.streamable_url, listen_in_background=True, trace=printer
        )
    async with McpDriver(channel, settings) as driver:
        report = await ScenarioRunner(driver, printer, pause).run(stages)
    return 1 if report.aborted else 0


async def _dispatch(
    args: argparse.Namespace,
    settings: ProbeSettings,
    printer: WirePrinter,
    http_transport: Optional[httpx.AsyncBaseTransport],
) -> int:
    pause: Optional[Pause] = None
    if args.step:
        if sys.stdin.isatty():
            pause = _press_enter
        else:
            LOGGER.warning("step_ignored", reason="stdin is not a terminal")
    async with create_async_client(settings.http_timeout, transport=http_transport) as client:
        transport = TransportClient(client)
        if args.wait:
            await wait_for_server(transport, settings.base_url)

        if args.command == "sse-listen":
            return await _sse_listen(transport, settings, printer)
        if args.command == "sse-post":
            return await _sse_post(transport, settings, printer, pause, args.message_url)
        if args.command == "init":
            return await _init(transport, settings, printer, pause, args.listen)
        if args.command == "listen":
            channel = _resumed_channel(transport, settings, printer, args.session_id)
            async with McpDriver.resume(channel, settings):
                return await _listen(channel, printer)
        if args.command == "post":
            return await _post(transport, settings, printer, pause, args)
        if args.command == "run":
            return await _run(transport, settings, printer, pause, args)
    raise ValueError(f"Unsupported command {args.command}")


def main(
    argv: Optional[Sequence[str]] = None,
    *,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
    printer: Optional[WirePrinter] = None,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "sse-post" and not args.message_url:
        return _missing_argument(parser, "sse-post")
    if args.command in ("listen", "post") and not args.session_id:
        return _missing_argument(parser, args.command)

    settings = _settings_from_args(args)
    configure_logging(settings.log_level, json_logs=args.json_logs)
    printer = printer or WirePrinter()

    try:
        return asyncio.run(_dispatch(args, settings, printer, http_transport))
    except KeyboardInterrupt:
        LOGGER.info("interrupted")
        return 0
    except ProbeError as exc:
        LOGGER.error("run_failed", command=args.command, error=str(exc), error_type=type(exc).__name__)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
