"""
Tool adapters driven by strategies.

This module provides:
- ToolRequest / ToolResponse exchanged with adapters
- ToolAdapter protocol (any callable taking a ToolRequest)
- AdapterRegistry with the startup coverage check against policies
- CliToolAdapter, a subprocess runner for command-line AI agents that
  emits liveness heartbeats while the process runs
"""

from __future__ import annotations

import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from ticket_operator.errors import AdapterCoverageError, OperatorError
from ticket_operator.utils.fs import ensure_dir

if TYPE_CHECKING:
    from ticket_operator.config import CliToolConfig, OperatorConfig
    from ticket_operator.logger import OperatorLogger
    from ticket_operator.strategy.policy import MatrixPolicies


HeartbeatCallback = Callable[[str, float], None]

TAIL_LIMIT = 20000

_ANSI_PATTERN = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
_GLYPH_PATTERN = re.compile(r"[─-╿◆◐-◗]")
_CONTROL_PATTERN = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


class ToolInvocationError(OperatorError):
    """Raised when a tool process fails, times out or cannot start."""
    pass


def sanitize_output(text: str) -> str:
    """Strip ANSI escapes, spinner/box glyphs and control characters."""
    text = _ANSI_PATTERN.sub("", text)
    text = _GLYPH_PATTERN.sub("", text)
    return _CONTROL_PATTERN.sub("", text)


@dataclass
class ToolRequest:
    """One tool invocation."""

    tool_id: str
    name: str
    prompt: str
    cwd: str
    on_heartbeat: Optional[HeartbeatCallback] = None
    writable: bool = False


@dataclass
class ToolResponse:
    """Output of a successful tool invocation."""

    text: str
    exit_code: int = 0
    log_path: Optional[str] = None
    duration_ms: int = 0


class ToolAdapter(Protocol):
    """Callable that executes a tool request."""

    def __call__(self, request: ToolRequest) -> ToolResponse:
        ...


@dataclass
class AdapterRegistry:
    """
    Tool id to adapter mapping, resolved once at startup.

    check_coverage turns a missing adapter into a startup error instead
    of a failure in the middle of a stage.
    """

    adapters: dict[str, ToolAdapter] = field(default_factory=dict)

    def register(self, tool_id: str, adapter: ToolAdapter) -> None:
        self.adapters[tool_id] = adapter

    def get(self, tool_id: str) -> Optional[ToolAdapter]:
        return self.adapters.get(tool_id)

    def missing_for(self, policies: MatrixPolicies) -> list[str]:
        missing: list[str] = []
        for policy in policies.stages.values():
            for tool_id in policy.tool_ids:
                if tool_id not in self.adapters and tool_id not in missing:
                    missing.append(tool_id)
        return missing

    def check_coverage(self, policies: MatrixPolicies) -> None:
        """
        Verify every tool referenced by any strategy has an adapter.

        Raises:
            AdapterCoverageError: Listing each uncovered tool id.
        """
        missing = self.missing_for(policies)
        if missing:
            raise AdapterCoverageError(missing)


@dataclass
class CliToolAdapter:
    """
    Runs a command-line agent as a subprocess.

    Output (stdout and stderr) is appended to a per-invocation log file and
    a sanitized tail is kept for the response. While the process runs, the
    request's heartbeat callback fires every ``heartbeat_interval`` seconds
    so a host can tell a slow tool from a hung one.
    """

    tool_id: str
    build_command: Callable[[ToolRequest], list[str]]
    timeout_seconds: int = 3600
    heartbeat_interval: float = 10.0
    logs_dir: Optional[Path] = None
    prompt_via_stdin: bool = False
    logger: Optional[OperatorLogger] = None

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _log_path(self, name: str) -> Optional[Path]:
        if self.logs_dir is None:
            return None
        ensure_dir(self.logs_dir)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        return self.logs_dir / f"{name}.{stamp}.log"

    def _start_heartbeat(self, request: ToolRequest) -> tuple[threading.Event, Optional[threading.Thread]]:
        stop = threading.Event()
        if request.on_heartbeat is None:
            return stop, None
        started = time.time()

        def beat() -> None:
            while not stop.wait(self.heartbeat_interval):
                request.on_heartbeat(request.name, time.time() - started)

        thread = threading.Thread(target=beat, daemon=True)
        thread.start()
        return stop, thread

    def __call__(self, request: ToolRequest) -> ToolResponse:
        cmd = self.build_command(request)
        log_path = self._log_path(request.name)
        started = time.time()
        self._log("tool_invocation_start", {
            "tool_id": self.tool_id,
            "name": request.name,
            "prompt_length": len(request.prompt),
            "timeout": self.timeout_seconds,
        })

        stop, thread = self._start_heartbeat(request)
        try:
            try:
                proc = subprocess.run(
                    cmd,
                    input=request.prompt if self.prompt_via_stdin else None,
                    capture_output=True,
                    text=True,
                    cwd=request.cwd,
                    timeout=self.timeout_seconds,
                )
            except FileNotFoundError:
                raise ToolInvocationError(f"spawn {cmd[0]} ENOENT: command not found")
            except subprocess.TimeoutExpired:
                raise ToolInvocationError(
                    f"Command timed out ({request.name}) after {self.timeout_seconds}s"
                )
        finally:
            stop.set()
            if thread is not None:
                thread.join(timeout=1)

        raw = (proc.stdout or "") + (proc.stderr or "")
        if log_path is not None:
            with open(log_path, "a") as f:
                f.write(raw)
        tail = sanitize_output(raw)[-TAIL_LIMIT:]
        duration_ms = int((time.time() - started) * 1000)

        if proc.returncode != 0:
            self._log("tool_invocation_failed", {
                "tool_id": self.tool_id,
                "exit_code": proc.returncode,
                "duration_ms": duration_ms,
            }, level="warn")
            raise ToolInvocationError(
                f"Command failed ({request.name}): {cmd[0]} (exit {proc.returncode}). "
                f"Log: {log_path}\n\nTail:\n{tail}"
            )

        self._log("tool_invocation_complete", {
            "tool_id": self.tool_id,
            "duration_ms": duration_ms,
        })
        return ToolResponse(
            text=sanitize_output(proc.stdout or "").strip(),
            exit_code=proc.returncode,
            log_path=str(log_path) if log_path else None,
            duration_ms=duration_ms,
        )


# =============================================================================
# Default wiring
# =============================================================================


def codex_command(tool: CliToolConfig) -> Callable[[ToolRequest], list[str]]:
    """Build `codex exec` invocations."""

    def build(request: ToolRequest) -> list[str]:
        cmd = [tool.binary, "exec"]
        if tool.model:
            cmd.extend(["--model", tool.model])
        cmd.extend(["--sandbox", "workspace-write" if request.writable else "read-only"])
        cmd.extend(["--cd", request.cwd, "--skip-git-repo-check"])
        # "--" keeps prompts starting with dashes from being read as options
        cmd.extend(["--", request.prompt])
        return cmd

    return build


def teddy_command(tool: CliToolConfig, model: Optional[str] = None) -> Callable[[ToolRequest], list[str]]:
    """Build teddy invocations. The prompt is passed on stdin."""

    def build(request: ToolRequest) -> list[str]:
        cmd = [tool.binary, "run", "--non-interactive"]
        chosen = model or tool.model
        if chosen:
            cmd.extend(["--model", chosen])
        if request.writable:
            cmd.append("--allow-writes")
        return cmd

    return build


CODEX_TOOL_IDS = (
    "tool.discovery.codex.exec",
    "tool.plan.codex.direct",
    "tool.plan.codex.recursive",
    "tool.code.codex.exec",
    "tool.code.codex.exec.patch",
    "tool.review.codex.review",
    "tool.review.codex.revision",
    "tool.review.codex.revision.focused",
    "tool.communication.reply.semantic",
    "tool.communication.reply.attachment",
)

TEDDY_TOOL_IDS = (
    "tool.discovery.teddy.default",
    "tool.plan.teddy.direct",
    "tool.code.teddy.exec",
    "tool.review.teddy.review",
    "tool.review.teddy.revision",
)


def build_default_registry(
    config: OperatorConfig,
    logger: Optional[OperatorLogger] = None,
) -> AdapterRegistry:
    """Register CLI adapters for every tool id in the packaged policies."""
    tools = config.tools
    registry = AdapterRegistry()
    for tool_id in CODEX_TOOL_IDS:
        registry.register(tool_id, CliToolAdapter(
            tool_id=tool_id,
            build_command=codex_command(tools.codex),
            timeout_seconds=tools.codex.timeout_seconds,
            heartbeat_interval=tools.heartbeat_interval_seconds,
            logs_dir=config.tool_logs_path,
            logger=logger,
        ))
    for tool_id in TEDDY_TOOL_IDS:
        registry.register(tool_id, CliToolAdapter(
            tool_id=tool_id,
            build_command=teddy_command(tools.teddy),
            timeout_seconds=tools.teddy.timeout_seconds,
            heartbeat_interval=tools.heartbeat_interval_seconds,
            logs_dir=config.tool_logs_path,
            prompt_via_stdin=True,
            logger=logger,
        ))
    registry.register("tool.discovery.teddy.gpt_oss", CliToolAdapter(
        tool_id="tool.discovery.teddy.gpt_oss",
        build_command=teddy_command(tools.teddy, model="gpt-oss"),
        timeout_seconds=tools.teddy.timeout_seconds,
        heartbeat_interval=tools.heartbeat_interval_seconds,
        logs_dir=config.tool_logs_path,
        prompt_via_stdin=True,
        logger=logger,
    ))
    return registry
