"""Scripted multi-stage exercises against an MCP server.

Each stage prints a banner, sends its traffic and shows the wire exchange.
Application-level failures are reported and the run moves on unless the
stage is required. Connection and protocol errors end the run.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TextIO, Union

from .driver import McpDriver, RpcExchange
from .errors import ApplicationError, ExpectationError, SessionNotFoundError
from .logging import get_logger

LOGGER = get_logger(__name__)

RULE = "=" * 60

CORE_TOOLS = frozenset({"echo", "add", "longRunningOperation", "printEnv"})
DEFAULT_PROGRESS_TOKEN = "op-1234"

StageAction = Callable[[McpDriver], Awaitable[Optional[RpcExchange]]]
Pause = Callable[["Stage"], Awaitable[None]]
StageFailure = Union[ApplicationError, ExpectationError]


@dataclass
class Stage:
    title: str
    action: StageAction
    required: bool = False


@dataclass
class StageOutcome:
    stage: Stage
    exchange: Optional[RpcExchange] = None
    error: Optional[StageFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ScenarioReport:
    outcomes: List[StageOutcome] = field(default_factory=list)
    aborted: bool = False

    @property
    def completed(self) -> bool:
        return not self.aborted

    @property
    def failures(self) -> List[StageOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    def exchange(self, title: str) -> Optional[RpcExchange]:
        for outcome in self.outcomes:
            if outcome.stage.title == title:
                return outcome.exchange
        return None


class WirePrinter:
    """Human-readable view of the traffic, in the spirit of ``http --verbose``."""

    def __init__(self, out: Optional[TextIO] = None, timestamps: bool = False) -> None:
        self.out = out or sys.stdout
        self.timestamps = timestamps

    def _write(self, text: str = "") -> None:
        if self.timestamps and text:
            stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            text = f"[{stamp}] {text}"
        print(text, file=self.out, flush=True)

    def banner(self, number: int, title: str) -> None:
        print(f"\n{RULE}\n  STAGE {number}: {title.upper()}\n{RULE}\n", file=self.out, flush=True)

    def note(self, text: str) -> None:
        self._write(text)

    def __call__(self, direction: str, payload: Any, **meta: Any) -> None:
        if direction == "send":
            self._write(f"--> {meta.get('method', 'POST')} {meta.get('url', '')}")
            self._write(_dump(payload))
        elif direction == "http":
            content_type = meta.get("content_type")
            suffix = f" ({content_type})" if content_type else ""
            self._write(f"<-- HTTP {meta.get('status')}{suffix}")
        elif direction == "recv":
            self._write(f"<-- {_dump(payload)}")
        elif direction == "session":
            self._write(f"Session ID: {meta.get('session_id')}")
            if meta.get("endpoint"):
                self._write(f"Message endpoint: {meta['endpoint']}")

    def failure(self, error: StageFailure) -> None:
        self._write(f"!! {type(error).__name__}: {error}")

    def summary(self, report: ScenarioReport) -> None:
        total = len(report.outcomes)
        failed = len(report.failures)
        if report.aborted:
            self._write(f"\nRun aborted after {total} stage(s).")
        elif failed:
            self._write(f"\nCompleted {total} stage(s), {failed} reported errors.")
        else:
            self._write(f"\nCompleted {total} stage(s).")


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


class ScenarioRunner:
    """Run stages in order.

    ``pause`` is awaited before every stage but the first, so a person can
    step through the exchange. A destroyed session ends the run even when
    the stage that hit it is optional.
    """

    def __init__(
        self,
        driver: McpDriver,
        printer: Optional[WirePrinter] = None,
        pause: Optional[Pause] = None,
    ) -> None:
        self.driver = driver
        self.printer = printer
        self.pause = pause

    async def run(self, stages: Iterable[Stage]) -> ScenarioReport:
        report = ScenarioReport()
        for number, stage in enumerate(stages, start=1):
            if number > 1 and self.pause is not None:
                await self.pause(stage)
            if self.printer is not None:
                self.printer.banner(number, stage.title)
            LOGGER.info("stage_started", stage=number, title=stage.title)
            try:
                exchange = await stage.action(self.driver)
            except (ApplicationError, ExpectationError) as exc:
                LOGGER.warning("stage_failed", stage=number, title=stage.title, error=str(exc))
                if self.printer is not None:
                    self.printer.failure(exc)
                report.outcomes.append(StageOutcome(stage, error=exc))
                if stage.required or isinstance(exc, SessionNotFoundError):
                    report.aborted = True
                    break
                continue
            report.outcomes.append(StageOutcome(stage, exchange=exchange))
            if exchange is not None and exchange.progress and self.printer is not None:
                self.printer.note(f"{len(exchange.progress)} progress notification(s) before the response")
        if self.printer is not None:
            self.printer.summary(report)
        return report


def text_content(result: Optional[Dict[str, Any]]) -> str:
    """Concatenate the text items of a tool result."""
    content = (result or {}).get("content") or []
    return "\n".join(
        item.get("text", "") for item in content if isinstance(item, dict) and item.get("type") == "text"
    )


def initialize_stage() -> Stage:
    return Stage("Initialize", lambda driver: driver.initialize(), required=True)


def initialized_stage() -> Stage:
    async def action(driver: McpDriver) -> None:
        await driver.notify_initialized()

    return Stage("Initialized notification", action, required=True)


def list_tools_stage() -> Stage:
    return Stage("List tools", lambda driver: driver.list_tools())


def list_resources_stage() -> Stage:
    return Stage("List resources", lambda driver: driver.list_resources())


def list_prompts_stage() -> Stage:
    return Stage("List prompts", lambda driver: driver.list_prompts())


def ping_stage() -> Stage:
    return Stage("Ping", lambda driver: driver.ping())


def validate_tools_stage(expected: Iterable[str] = CORE_TOOLS) -> Stage:
    wanted = frozenset(expected)

    async def action(driver: McpDriver) -> RpcExchange:
        exchange = await driver.list_tools()
        if not exchange.delivered:
            return exchange
        available = {tool.get("name") for tool in (exchange.result or {}).get("tools", [])}
        missing = sorted(wanted - available)
        if missing:
            raise ExpectationError(f"expected tools not found: {missing}; available: {sorted(available)}")
        return exchange

    return Stage("Validate core tools", action)


def echo_stage(message: str = "Hello from mcp-probe!") -> Stage:
    async def action(driver: McpDriver) -> RpcExchange:
        exchange = await driver.call_tool("echo", {"message": message})
        if exchange.delivered and message not in text_content(exchange.result):
            raise ExpectationError(f"echo result does not contain {message!r}")
        return exchange

    return Stage("Invoke echo tool", action)


def add_stage(a: int = 2, b: int = 3) -> Stage:
    async def action(driver: McpDriver) -> RpcExchange:
        exchange = await driver.call_tool("add", {"a": a, "b": b})
        if exchange.delivered and str(a + b) not in text_content(exchange.result):
            raise ExpectationError(f"add result does not mention {a + b}")
        return exchange

    return Stage("Invoke add tool", action)


def long_running_stage(
    duration: int = 10,
    steps: int = 5,
    progress_token: Optional[str] = DEFAULT_PROGRESS_TOKEN,
) -> Stage:
    async def action(driver: McpDriver) -> RpcExchange:
        return await driver.call_tool(
            "longRunningOperation",
            {"duration": duration, "steps": steps},
            progress_token=progress_token,
        )

    label = "with progress" if progress_token is not None else "without progress"
    return Stage(f"Invoke long running operation ({label})", action)


def legacy_post_stages() -> List[Stage]:
    return [initialize_stage(), initialized_stage(), list_tools_stage(), list_resources_stage()]


def streamable_init_stages() -> List[Stage]:
    return [initialize_stage(), initialized_stage()]


def streamable_post_stages(duration: int = 10, steps: int = 5) -> List[Stage]:
    return [list_tools_stage(), echo_stage(), long_running_stage(duration, steps)]


def full_exercise_stages(
    *,
    include_ping: bool = False,
    validate_tools: bool = False,
    duration: int = 10,
    steps: int = 5,
) -> List[Stage]:
    """Handshake, tools, both long-running variants and resources in one run."""
    stages: List[Stage] = [initialize_stage(), initialized_stage(), list_tools_stage()]
    if validate_tools:
        stages.extend([validate_tools_stage(), add_stage()])
    stages.extend(
        [
            echo_stage(),
            long_running_stage(duration, steps, progress_token=None),
            long_running_stage(duration, steps),
            list_resources_stage(),
            list_prompts_stage(),
        ]
    )
    if include_ping:
        stages.append(ping_stage())
    return stages
