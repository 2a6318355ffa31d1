"""Stage runner wiring the five executors behind one entry point."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from ticket_operator.models import StageKind, StageResult
from ticket_operator.stages.base import ExecutionHooks, StageExecutor
from ticket_operator.stages.code import CodeExecutor
from ticket_operator.stages.communication import CommunicationExecutor
from ticket_operator.stages.discover import DiscoverExecutor
from ticket_operator.stages.plan import PlanExecutor
from ticket_operator.stages.review import ReviewExecutor

if TYPE_CHECKING:
    from ticket_operator.adapters import AdapterRegistry
    from ticket_operator.logger import OperatorLogger
    from ticket_operator.strategy.policy import MatrixPolicies
    from ticket_operator.workspace import GitWorkspace


class ExecutorStageRunner:
    """
    Runs matrix-wrapped stages for the orchestrator.

    Adapter coverage is checked once here, so a policy that names a tool
    without an adapter fails at startup.
    """

    def __init__(
        self,
        policies: MatrixPolicies,
        registry: AdapterRegistry,
        workspace: GitWorkspace,
        logger: Optional[OperatorLogger] = None,
    ) -> None:
        registry.check_coverage(policies)
        self.executors: dict[StageKind, StageExecutor] = {
            StageKind.DISCOVER: DiscoverExecutor(policies.for_stage(StageKind.DISCOVER), registry, logger),
            StageKind.PLAN: PlanExecutor(policies.for_stage(StageKind.PLAN), registry, logger),
            StageKind.CODE: CodeExecutor(policies.for_stage(StageKind.CODE), registry, workspace, logger),
            StageKind.REVIEW: ReviewExecutor(policies.for_stage(StageKind.REVIEW), registry, logger),
            StageKind.COMMUNICATION: CommunicationExecutor(
                policies.for_stage(StageKind.COMMUNICATION), registry, logger
            ),
        }

    def run_stage(
        self,
        kind: StageKind,
        stage_input: dict[str, Any],
        hooks: Optional[ExecutionHooks] = None,
    ) -> StageResult:
        return self.executors[kind].run(stage_input, hooks)
