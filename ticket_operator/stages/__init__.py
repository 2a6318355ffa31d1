"""Matrix-wrapped stage executors."""

from ticket_operator.stages.base import (
    ExecutionHooks,
    StageExecutor,
    StrategyContext,
    StrategySwitch,
    split_tool_tag,
)
from ticket_operator.stages.code import CodeExecutor
from ticket_operator.stages.communication import CommunicationExecutor
from ticket_operator.stages.discover import DiscoverExecutor
from ticket_operator.stages.plan import PlanExecutor, score_plan_quality
from ticket_operator.stages.review import ReviewExecutor, has_blocking_findings
from ticket_operator.stages.runner import ExecutorStageRunner

__all__ = [
    "CodeExecutor",
    "CommunicationExecutor",
    "DiscoverExecutor",
    "ExecutionHooks",
    "ExecutorStageRunner",
    "PlanExecutor",
    "ReviewExecutor",
    "StageExecutor",
    "StrategyContext",
    "StrategySwitch",
    "has_blocking_findings",
    "score_plan_quality",
    "split_tool_tag",
]
