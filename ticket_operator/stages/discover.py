"""Discovery stage: gather repository evidence relevant to a ticket."""

from __future__ import annotations

from typing import Any

from ticket_operator.errors import StageFailedError
from ticket_operator.models import StageKind
from ticket_operator.stages.base import StageExecutor, StrategyBody, StrategyContext


def build_discovery_prompt(stage_input: dict[str, Any]) -> str:
    """Prompt asking a read-only agent to map the code relevant to the ticket."""
    return "\n\n".join([
        "You are investigating a repository before any code is written.",
        f"Ticket: {stage_input.get('issue_id', '')}",
        f"Title: {stage_input.get('title', '')}",
        f"Description:\n{stage_input.get('description', '') or '(none)'}",
        "Report, as markdown:\n"
        "- The files and modules involved, with paths in backticks\n"
        "- How the current behavior works\n"
        "- Tests that cover the area\n"
        "- Risks and unknowns",
        "Do not modify any files.",
    ])


class DiscoverExecutor(StageExecutor):
    """Runs discovery through the teddy and codex agents."""

    stage = StageKind.DISCOVER
    label = "Discovery"

    def strategy_bodies(self) -> dict[str, StrategyBody]:
        return {
            "teddy-default": self._run_agent,
            "teddy-gpt-oss": self._run_agent,
            "codex-exec": self._run_agent,
        }

    def _run_agent(self, ctx: StrategyContext) -> dict[str, Any]:
        tool_id = ctx.strategy.tool_id
        response = self.invoke_tool(
            tool_id,
            f"discover-{ctx.strategy.id}",
            build_discovery_prompt(ctx.stage_input),
            ctx,
        )
        output = response.text.strip()
        if not output:
            raise StageFailedError(f"Discovery strategy {ctx.strategy.id} returned empty output.")
        return {
            "discovery_output": output,
            "strategy_id": ctx.strategy.id,
            "tool_id": tool_id,
        }
