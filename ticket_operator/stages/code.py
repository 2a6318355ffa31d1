"""Coding stage: apply the plan inside the run's worktree."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from ticket_operator.errors import StageFailedError
from ticket_operator.models import StageKind, StrategyAttempt
from ticket_operator.stages.base import StageExecutor, StrategyBody, StrategyContext

if TYPE_CHECKING:
    from ticket_operator.adapters import AdapterRegistry
    from ticket_operator.logger import OperatorLogger
    from ticket_operator.strategy.policy import StagePolicy
    from ticket_operator.workspace import GitWorkspace


RECOVERY_STRATEGY_ID = "codex-exec-patch"


def build_coder_prompt(plan: str, strategy_id: str, failures: list[StrategyAttempt]) -> str:
    """
    Prompt for a coding agent.

    The recovery strategy gets an extra section listing the earlier
    failures and the rules for a hardened retry.
    """
    base = (
        "Implement the following plan in the current repository. Edit files "
        "directly, keep scope to the plan, and add or update tests.\n\n"
        f"{plan}"
    )
    if strategy_id != RECOVERY_STRATEGY_ID:
        return base

    summary = "\n".join(
        f"{i}. {f.strategy_id} -> {f.error_kind.value}: {f.error_message}"
        for i, f in enumerate(failures, start=1)
    )
    return "\n".join([
        base,
        "",
        "## Matrix Recovery Context",
        "You are running the patch-hardened recovery strategy after earlier failures.",
        "Mandatory recovery rules:",
        "- Produce concrete file edits in the current worktree.",
        "- Keep scope strict to the supplied plan.",
        "- Resolve prior failure causes before concluding.",
        "- Do not exit without a real git diff.",
        "",
        f"Prior failures:\n{summary}" if summary else "Prior failures: none",
    ])


class CodeExecutor(StageExecutor):
    """Runs a coding agent and requires a non-empty working tree diff."""

    stage = StageKind.CODE
    label = "Coding"

    def __init__(
        self,
        policy: StagePolicy,
        registry: AdapterRegistry,
        workspace: GitWorkspace,
        logger: Optional[OperatorLogger] = None,
    ) -> None:
        self.workspace = workspace
        super().__init__(policy, registry, logger)

    def strategy_bodies(self) -> dict[str, StrategyBody]:
        return {
            "codex-exec": self._run_coder,
            "codex-exec-patch": self._run_coder,
            "teddy-exec": self._run_coder,
        }

    def _run_coder(self, ctx: StrategyContext) -> dict[str, Any]:
        plan = ctx.stage_input.get("plan_markdown") or ""
        if not plan.strip():
            raise StageFailedError("[invalid_output] Coding requires a plan.")
        feedback = ctx.stage_input.get("feedback")
        if feedback:
            plan = f"{plan}\n\n## Validation Feedback\n{feedback}"

        prompt = build_coder_prompt(plan, ctx.strategy.id, ctx.failures)
        self.invoke_tool(
            ctx.strategy.tool_id,
            f"code-{ctx.strategy.id}",
            prompt,
            ctx,
            writable=True,
        )
        if not self.workspace.has_changes(ctx.cwd):
            raise StageFailedError(
                f"[no_changes] Strategy {ctx.strategy.id} finished without repository changes."
            )
        return {
            "strategy_id": ctx.strategy.id,
            "tool_id": ctx.strategy.tool_id,
            "worktree_path": ctx.cwd,
        }
