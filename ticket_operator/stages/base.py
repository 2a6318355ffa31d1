"""
Base executor for matrix-wrapped stages.

StageExecutor runs the shared attempt loop:
1. Run the current strategy body
2. On failure, classify the message and record a StrategyAttempt
3. Ask the selector for the next strategy (or give up)
4. On success, attach a LearningRecord when recovery was needed

Subclasses supply the strategy bodies as a closed map from strategy id to
callable, checked against the stage catalog when the executor is built.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from ticket_operator.adapters import HeartbeatCallback, ToolRequest, ToolResponse
from ticket_operator.errors import (
    AdapterCoverageError,
    ErrorClassifier,
    PolicyError,
    StageExhaustedError,
    StageFailedError,
)
from ticket_operator.models import LearningRecord, StageKind, StageResult, StrategyAttempt
from ticket_operator.strategy.policy import STAGE_CATALOGS, StagePolicy, StrategyDefinition
from ticket_operator.strategy.selector import format_failures, select_next, unique_preserve_order

if TYPE_CHECKING:
    from ticket_operator.adapters import AdapterRegistry
    from ticket_operator.logger import OperatorLogger


_TOOL_TAG_PATTERN = re.compile(r"^\[tool_id:([^\]]+)\]\s*")


def split_tool_tag(message: str) -> tuple[Optional[str], str]:
    """Separate a leading ``[tool_id:X]`` tag from an error message."""
    match = _TOOL_TAG_PATTERN.match(message)
    if not match:
        return None, message
    return match.group(1), message[match.end():]


@dataclass
class StrategySwitch:
    """Notification that the executor moved from one strategy to another."""

    stage: StageKind
    reason: str
    from_strategy: str
    to_strategy: str
    strategy_path: list[str]
    attempt_label: str


@dataclass
class ExecutionHooks:
    """Optional callbacks the orchestrator uses to surface progress."""

    on_attempt_failed: Optional[Callable[[StrategyAttempt], None]] = None
    on_strategy_switch: Optional[Callable[[StrategySwitch], None]] = None
    on_heartbeat: Optional[HeartbeatCallback] = None

    def attempt_failed(self, attempt: StrategyAttempt) -> None:
        if self.on_attempt_failed:
            self.on_attempt_failed(attempt)

    def strategy_switch(self, switch: StrategySwitch) -> None:
        if self.on_strategy_switch:
            self.on_strategy_switch(switch)


@dataclass
class StrategyContext:
    """Everything a strategy body sees for one attempt."""

    strategy: StrategyDefinition
    stage_input: dict[str, Any]
    failures: list[StrategyAttempt] = field(default_factory=list)
    hooks: ExecutionHooks = field(default_factory=ExecutionHooks)
    # Shared by every attempt of one stage run
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def cwd(self) -> str:
        return str(self.stage_input.get("repo_path", "."))

    @property
    def issue_id(self) -> str:
        return str(self.stage_input.get("issue_id", ""))


StrategyBody = Callable[[StrategyContext], dict[str, Any]]


class StageExecutor:
    """
    Base class for stage executors.

    Subclasses set ``stage`` and ``label`` and implement
    ``strategy_bodies``. They may override ``initial_strategy_id``,
    ``learning_details`` and ``exhausted``.
    """

    stage: StageKind
    label: str = "Stage"

    def __init__(
        self,
        policy: StagePolicy,
        registry: AdapterRegistry,
        logger: Optional[OperatorLogger] = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            policy: Matrix policy for this executor's stage.
            registry: Tool adapters resolved at startup.
            logger: Optional logger for attempt events.

        Raises:
            PolicyError: If the policy belongs to another stage or the
                strategy bodies do not match the stage catalog.
        """
        if policy.stage != self.stage:
            raise PolicyError(
                f"{type(self).__name__} requires a {self.stage.value} policy, "
                f"got {policy.stage.value}."
            )
        self.policy = policy
        self.registry = registry
        self._logger = logger
        self._bodies = self.strategy_bodies()

        expected = set(STAGE_CATALOGS[self.stage].strategy_ids)
        if set(self._bodies) != expected:
            raise PolicyError(
                f"{type(self).__name__} strategy bodies {sorted(self._bodies)} "
                f"do not match catalog {sorted(expected)}."
            )

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    # -------------------------------------------------------------------------
    # Subclass surface
    # -------------------------------------------------------------------------

    def strategy_bodies(self) -> dict[str, StrategyBody]:
        raise NotImplementedError

    def initial_strategy_id(self, stage_input: dict[str, Any]) -> str:
        return STAGE_CATALOGS[self.stage].strategy_ids[0]

    def learning_details(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {}

    def exhausted(
        self,
        message: str,
        failures: list[StrategyAttempt],
        strategy_path: list[str],
        state: dict[str, Any],
    ) -> StageResult:
        """Handle running out of strategies. The default raises."""
        raise StageExhaustedError(message, stage=self.stage, attempts=failures)

    # -------------------------------------------------------------------------
    # Tool invocation
    # -------------------------------------------------------------------------

    def invoke_tool(
        self,
        tool_id: str,
        name: str,
        prompt: str,
        ctx: StrategyContext,
        writable: bool = False,
    ) -> ToolResponse:
        """
        Call the adapter registered for ``tool_id``.

        Adapter failures are re-raised with a ``[tool_id:...]`` prefix so
        the attempt history shows which tool failed.
        """
        adapter = self.registry.get(tool_id)
        if adapter is None:
            raise AdapterCoverageError([tool_id])
        request = ToolRequest(
            tool_id=tool_id,
            name=name,
            prompt=prompt,
            cwd=ctx.cwd,
            on_heartbeat=ctx.hooks.on_heartbeat,
            writable=writable,
        )
        try:
            return adapter(request)
        except StageFailedError:
            raise
        except Exception as e:
            raise StageFailedError(f"[tool_id:{tool_id}] {e}") from e

    # -------------------------------------------------------------------------
    # Attempt loop
    # -------------------------------------------------------------------------

    def run(
        self,
        stage_input: dict[str, Any],
        hooks: Optional[ExecutionHooks] = None,
    ) -> StageResult:
        """
        Execute the stage until a strategy succeeds or the matrix gives up.

        Args:
            stage_input: Stage-specific input (issue, repo path, artifacts).
            hooks: Optional progress callbacks.

        Returns:
            StageResult with payload, strategy path and attempt history.

        Raises:
            StageExhaustedError: When no strategy remains and the stage
                does not override ``exhausted``.
            AdapterCoverageError: When a tool has no adapter.
        """
        hooks = hooks or ExecutionHooks()
        policy = self.policy
        failures: list[StrategyAttempt] = []
        path: list[str] = []
        state: dict[str, Any] = {}
        current = self.initial_strategy_id(stage_input)

        while True:
            strategy = policy.strategy(current)
            path.append(current)
            self._log("strategy_attempt_start", {
                "stage": self.stage.value,
                "strategy_id": current,
                "attempt": len(path),
            }, level="debug")

            try:
                payload = self._bodies[current](StrategyContext(
                    strategy=strategy,
                    stage_input=stage_input,
                    failures=list(failures),
                    hooks=hooks,
                    state=state,
                ))
            except AdapterCoverageError:
                raise
            except Exception as e:
                tagged_tool, message = split_tool_tag(str(e) or type(e).__name__)
                kind = ErrorClassifier.classify(self.stage, message)
                attempt = StrategyAttempt(
                    strategy_id=current,
                    family=strategy.family,
                    tool_id=tagged_tool or strategy.primary_tool_id,
                    error_kind=kind,
                    error_message=message,
                )
                failures.append(attempt)
                self._log("strategy_attempt_failed", {
                    "stage": self.stage.value,
                    **attempt.to_dict(),
                }, level="warn")
                hooks.attempt_failed(attempt)

                if len(failures) >= policy.max_attempts_total:
                    return self.exhausted(
                        f"{self.label} failed after {len(failures)} attempts.\n\n"
                        f"{format_failures(failures)}",
                        failures,
                        path,
                        state,
                    )

                selection = select_next(failures, current, strategy.family, kind, policy)
                if selection.exhausted:
                    return self.exhausted(
                        f"{self.label} failed: no strategy remaining.\n\n"
                        f"{format_failures(failures)}",
                        failures,
                        path,
                        state,
                    )

                switch = StrategySwitch(
                    stage=self.stage,
                    reason=selection.reason,
                    from_strategy=current,
                    to_strategy=selection.next_strategy_id,
                    strategy_path=list(path),
                    attempt_label=f"attempt {len(failures) + 1}/{policy.max_attempts_total}",
                )
                self._log("strategy_switch", {
                    "stage": self.stage.value,
                    "from": current,
                    "to": selection.next_strategy_id,
                    "reason": selection.reason,
                    "family_switch": selection.family_switch,
                })
                hooks.strategy_switch(switch)
                current = selection.next_strategy_id
                continue

            learning = None
            if failures:
                learning = LearningRecord(
                    stage=self.stage,
                    selected_strategy=current,
                    selected_tool_id=strategy.primary_tool_id,
                    trigger_error_kinds=unique_preserve_order(
                        f.error_kind.value for f in failures
                    ),
                    strategy_path=list(path),
                    attempts=len(path),
                    details=self.learning_details(payload),
                )
            self._log("stage_succeeded", {
                "stage": self.stage.value,
                "strategy_id": current,
                "attempts": len(path),
            })
            return StageResult.success_result(
                payload,
                learning=learning,
                strategy_path=path,
                attempts=failures,
            )
