"""
Review stage.

Each strategy runs a review, and while the review reports blocking
findings ([P0]/[P1]) it runs a revision and reviews again, up to the
per-strategy revision limit. Exhausting the matrix yields a blocked
result instead of an exception so the ticket waits for a human.
"""

from __future__ import annotations

import re
from typing import Any

from ticket_operator.errors import StageFailedError
from ticket_operator.models import StageKind, StageResult, StrategyAttempt
from ticket_operator.stages.base import StageExecutor, StrategyBody, StrategyContext


BLOCKING_FINDING_PATTERN = re.compile(r"\[p0\]|\[p1\]", re.IGNORECASE)

FOCUSED_STRATEGY_ID = "codex-review-loop-focused"

FOCUSED_RECOVERY_TAIL = "\n".join([
    "",
    "Focused recovery mode:",
    "- Address only [p0]/[p1] findings from the review.",
    "- Make minimal edits needed to clear blockers.",
    "- Keep implementation scope unchanged.",
])


def has_blocking_findings(review_text: str) -> bool:
    return bool(BLOCKING_FINDING_PATTERN.search(review_text))


def build_review_prompt(stage_input: dict[str, Any]) -> str:
    return "\n".join([
        f"You are reviewing uncommitted repository changes for "
        f"{stage_input.get('issue_id', '')}: {stage_input.get('title', '')}.",
        "Review only the current git working tree changes.",
        "Output concise markdown findings with severity tags [p0], [p1], [p2].",
        "Only use [p0] and [p1] for blocking issues that must be fixed before merge.",
        "If no blocking issues remain, include the line: Blocking issues: none.",
        "Focus on correctness, regressions, security, and missing tests.",
    ])


def build_revision_prompt(stage_input: dict[str, Any], review_text: str, strategy_id: str) -> str:
    prompt = (
        f"Original task: {stage_input.get('issue_id', '')} {stage_input.get('title', '')}\n\n"
        "Fix every blocking finding in this review by editing the working tree:\n\n"
        f"{review_text}"
    )
    if strategy_id == FOCUSED_STRATEGY_ID:
        prompt += FOCUSED_RECOVERY_TAIL
    return prompt


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


class ReviewExecutor(StageExecutor):
    """Review and revise until no blocking findings remain."""

    stage = StageKind.REVIEW
    label = "Review"

    def strategy_bodies(self) -> dict[str, StrategyBody]:
        return {
            "codex-review-loop": self._review_loop,
            "codex-review-loop-focused": self._review_loop,
            "teddy-review-loop": self._review_loop,
        }

    @property
    def max_revisions(self) -> int:
        return self.policy.max_revisions_per_strategy or 0

    def learning_details(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {"revision_attempts": payload.get("revision_attempts", 0)}

    def _review(self, ctx: StrategyContext) -> str:
        ctx.state["review_runs"] = ctx.state.get("review_runs", 0) + 1
        text = self.invoke_tool(
            ctx.strategy.review_tool_id,
            f"review-{ctx.strategy.id}-{ctx.state['review_runs']}",
            build_review_prompt(ctx.stage_input),
            ctx,
        ).text.strip()
        if not text:
            raise StageFailedError(
                f"[invalid_output] Review strategy {ctx.strategy.id} returned empty output."
            )
        return text

    def _review_loop(self, ctx: StrategyContext) -> dict[str, Any]:
        review_text = self._review(ctx)
        strategy_revisions = 0
        while has_blocking_findings(review_text):
            if strategy_revisions >= self.max_revisions:
                raise StageFailedError(
                    f"[review_unresolved] Strategy {ctx.strategy.id} still has [P0]/[P1] after "
                    f"{strategy_revisions} revision attempt{_plural(strategy_revisions)}."
                )
            strategy_revisions += 1
            ctx.state["revision_attempts"] = ctx.state.get("revision_attempts", 0) + 1
            self.invoke_tool(
                ctx.strategy.revision_tool_id,
                f"revision-{ctx.strategy.id}-{ctx.state['revision_attempts']}",
                build_revision_prompt(ctx.stage_input, review_text, ctx.strategy.id),
                ctx,
                writable=True,
            )
            review_text = self._review(ctx)

        return {
            "review_text": review_text,
            "revision_attempts": ctx.state.get("revision_attempts", 0),
            "strategy_id": ctx.strategy.id,
        }

    def exhausted(
        self,
        message: str,
        failures: list[StrategyAttempt],
        strategy_path: list[str],
        state: dict[str, Any],
    ) -> StageResult:
        return StageResult.failure_result(
            reason=message,
            payload={"revision_attempts": state.get("revision_attempts", 0)},
            strategy_path=strategy_path,
            attempts=failures,
        )
