"""
Planning stage.

Produces a markdown execution plan, either directly or by recursive
decomposition (decompose, plan each subproblem, synthesize). Every plan is
scored against a fixed rubric and rejected below the policy threshold.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from ticket_operator.errors import StageFailedError
from ticket_operator.models import StageKind
from ticket_operator.stages.base import StageExecutor, StrategyBody, StrategyContext
from ticket_operator.strategy.selector import unique_preserve_order


REQUIRED_PLAN_SECTION_HEADERS: tuple[str, ...] = (
    "# Task:",
    "## Goal",
    "## Context",
    "## Requirements",
    "## Non-requirements / Out of Scope",
    "## Production & Quality Constraints",
    "## Integration Points",
    "## Tests",
    "## Edge Cases & Risks",
    "## Open Questions / Ambiguities",
)

MIN_SUBPLAN_LENGTH = 60
MIN_VIABLE_SUBPLANS = 2

_BULLET_PATTERN = re.compile(r"^\s*[-*]\s+", re.MULTILINE)
_PATH_REF_PATTERN = re.compile(r"`[^`\n]*/[^`\n]*`")
_PLACEHOLDER_PATTERN = re.compile(r"\b(?:TBD|TODO|example)\b", re.IGNORECASE)
_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)


# =============================================================================
# Quality rubric
# =============================================================================


def extract_section(markdown: str, header: str) -> str:
    """Body of the ``## header`` section, up to the next ``##`` heading."""
    pattern = re.compile(
        rf"^##\s+{re.escape(header)}\s*$(.*?)(?=^##\s+|\Z)",
        re.IGNORECASE | re.MULTILINE | re.DOTALL,
    )
    match = pattern.search(markdown)
    return match.group(1) if match else ""


def count_bullets(section: str) -> int:
    return len(_BULLET_PATTERN.findall(section))


def count_path_refs(markdown: str) -> int:
    """Unique backticked references that contain a slash."""
    return len(unique_preserve_order(_PATH_REF_PATTERN.findall(markdown)))


def has_placeholders(markdown: str) -> bool:
    critical = "\n".join(
        extract_section(markdown, header)
        for header in ("Goal", "Requirements", "Tests", "Edge Cases & Risks")
    )
    return bool(_PLACEHOLDER_PATTERN.search(critical))


def score_plan_quality(markdown: str) -> int:
    """
    Score a plan from 0 to 100.

    5 points per required header present, plus 10 points each for: at
    least 4 requirement bullets, 3 test bullets, 2 edge-case bullets,
    2 distinct backticked file paths, and no placeholder tokens in the
    critical sections.
    """
    score = sum(5 for header in REQUIRED_PLAN_SECTION_HEADERS if header in markdown)
    if count_bullets(extract_section(markdown, "Requirements")) >= 4:
        score += 10
    if count_bullets(extract_section(markdown, "Tests")) >= 3:
        score += 10
    if count_bullets(extract_section(markdown, "Edge Cases & Risks")) >= 2:
        score += 10
    if count_path_refs(markdown) >= 2:
        score += 10
    if not has_placeholders(markdown):
        score += 10
    return score


# =============================================================================
# Recursive decomposition
# =============================================================================


@dataclass
class Subproblem:
    id: str
    title: str
    scope: str
    deliverables: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "scope": self.scope,
            "deliverables": list(self.deliverables),
        }


@dataclass
class Decomposition:
    objective: str
    subproblems: list[Subproblem]


def _try_json(candidate: str) -> Optional[Any]:
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None


def extract_json_payload(text: str) -> Any:
    """
    Parse JSON from agent output.

    Tries the raw text, then a fenced block, then the outermost braces.

    Raises:
        StageFailedError: If no candidate parses.
    """
    raw = text.strip()
    parsed = _try_json(raw)
    if parsed is not None:
        return parsed

    fence = _FENCE_PATTERN.search(raw)
    if fence:
        parsed = _try_json(fence.group(1).strip())
        if parsed is not None:
            return parsed

    first, last = raw.find("{"), raw.rfind("}")
    if first >= 0 and last > first:
        parsed = _try_json(raw[first:last + 1])
        if parsed is not None:
            return parsed

    raise StageFailedError("[invalid_output] Failed to parse recursive decomposition JSON.")


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_decomposition(text: str, max_branches: int) -> Decomposition:
    """Validate a decomposition, keeping at most ``max_branches`` subproblems."""
    payload = extract_json_payload(text)
    if not isinstance(payload, dict):
        raise StageFailedError("[invalid_output] Recursive decomposition must be a JSON object.")

    rows = payload.get("subproblems")
    if not isinstance(rows, list):
        raise StageFailedError("[invalid_output] Recursive decomposition missing subproblems array.")

    subproblems: list[Subproblem] = []
    for index, row in enumerate(rows):
        if len(subproblems) >= max_branches:
            break
        if not isinstance(row, dict):
            continue
        title = _clean(row.get("title")) or f"Subproblem {index + 1}"
        scope = _clean(row.get("scope")) or title
        deliverables = [
            _clean(d) for d in row.get("deliverables", []) if _clean(d)
        ] if isinstance(row.get("deliverables"), list) else []
        subproblems.append(Subproblem(
            id=_clean(row.get("id")) or f"subproblem-{index + 1}",
            title=title,
            scope=scope,
            deliverables=deliverables or [scope],
        ))

    if not subproblems:
        raise StageFailedError(
            "[invalid_output] Recursive decomposition produced zero usable subproblems."
        )
    objective = _clean(payload.get("objective")) or "Plan objective"
    return Decomposition(objective=objective, subproblems=subproblems)


# =============================================================================
# Prompts
# =============================================================================


def build_task_description(stage_input: dict[str, Any]) -> str:
    return "\n\n".join([
        f"Ticket {stage_input.get('issue_id', '')}",
        f"Title: {stage_input.get('title', '')}",
        f"Description:\n{stage_input.get('description', '') or ''}",
        f"Discovery notes:\n{stage_input.get('discovery_output') or '(none)'}",
    ])


def build_plan_prompt(task: str) -> str:
    headers = "\n".join(REQUIRED_PLAN_SECTION_HEADERS)
    return (
        "Write an execution plan in markdown for the task below. Use exactly "
        f"these section headers:\n{headers}\n\n"
        "Reference concrete file paths in backticks. Do not leave placeholders.\n\n"
        f"{task}"
    )


def build_decompose_prompt(task: str, max_branches: int, max_depth: int) -> str:
    return (
        f"Split the task below into at most {max_branches} independent subproblems "
        f"(planning depth {max_depth}). Reply with JSON only:\n"
        '{"objective": "...", "subproblems": [{"id": "...", "title": "...", '
        '"scope": "...", "deliverables": ["..."]}]}\n\n'
        f"{task}"
    )


def build_subplan_prompt(task: str, objective: str, subproblem: Subproblem, index: int, total: int) -> str:
    return (
        f"Objective: {objective}\n"
        f"Plan subproblem {index} of {total} in markdown:\n"
        f"{json.dumps(subproblem.to_dict(), indent=2)}\n\n"
        f"Full task for context:\n{task}"
    )


def build_synthesis_prompt(
    task: str,
    decomposition: Decomposition,
    subplans: list[tuple[Subproblem, str]],
    failed: list[dict[str, str]],
    max_depth: int,
) -> str:
    rendered = "\n\n".join(
        f"### Subplan {i}: {sub.title}\n\n{plan}" for i, (sub, plan) in enumerate(subplans, start=1)
    )
    return (
        f"Merge these subplans (planning depth {max_depth}) into one execution plan "
        f"for the objective: {decomposition.objective}\n\n"
        f"{build_plan_prompt(task)}\n\n"
        f"{rendered}\n\n"
        f"Subplans that failed:\n{json.dumps(failed, indent=2)}"
    )


class PlanExecutor(StageExecutor):
    """Planning with quality gating."""

    stage = StageKind.PLAN
    label = "Planning"

    def strategy_bodies(self) -> dict[str, StrategyBody]:
        return {
            "codex-direct": self._direct,
            "codex-recursive": self._recursive,
            "teddy-direct": self._direct,
        }

    @property
    def threshold(self) -> int:
        return self.policy.quality_pass_threshold or 0

    def learning_details(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "quality_score": payload.get("quality_score"),
            "recursion_depth": payload.get("recursion_depth", 0),
            "branch_count": payload.get("branch_count", 0),
        }

    def _gate(self, markdown: str, strategy_id: str, depth: int, branches: int) -> dict[str, Any]:
        if not markdown.strip():
            raise StageFailedError(f"[invalid_output] Planner {strategy_id} returned empty output.")
        score = score_plan_quality(markdown)
        if score < self.threshold:
            raise StageFailedError(
                f"[quality_low] quality_score={score} threshold={self.threshold}"
            )
        return {
            "plan_markdown": markdown.strip(),
            "quality_score": score,
            "recursion_depth": depth,
            "branch_count": branches,
            "strategy_id": strategy_id,
        }

    def _direct(self, ctx: StrategyContext) -> dict[str, Any]:
        prompt = build_plan_prompt(build_task_description(ctx.stage_input))
        response = self.invoke_tool(ctx.strategy.tool_id, f"planner-{ctx.strategy.id}", prompt, ctx)
        return self._gate(response.text, ctx.strategy.id, 0, 0)

    def _recursive(self, ctx: StrategyContext) -> dict[str, Any]:
        tool_id = ctx.strategy.tool_id
        task = build_task_description(ctx.stage_input)
        max_branches = self.policy.max_recursive_branches or 1
        max_depth = self.policy.max_recursion_depth or 1

        raw = self.invoke_tool(
            tool_id,
            "planner-recursive-decompose",
            build_decompose_prompt(task, max_branches, max_depth),
            ctx,
        ).text
        decomposition = parse_decomposition(raw, max_branches)

        subplans: list[tuple[Subproblem, str]] = []
        failed: list[dict[str, str]] = []
        total = len(decomposition.subproblems)
        for index, sub in enumerate(decomposition.subproblems, start=1):
            try:
                plan = self.invoke_tool(
                    tool_id,
                    f"planner-recursive-subplan-{index}",
                    build_subplan_prompt(task, decomposition.objective, sub, index, total),
                    ctx,
                ).text.strip()
                if len(plan) < MIN_SUBPLAN_LENGTH:
                    raise StageFailedError("Subplan output was too short.")
                subplans.append((sub, plan))
            except StageFailedError as e:
                failed.append({"subproblem_id": sub.id, "reason": str(e)})

        if len(subplans) < MIN_VIABLE_SUBPLANS:
            raise StageFailedError(
                "[invalid_output] Recursive planning produced insufficient viable subplans. "
                f"success={len(subplans)} failure={len(failed)}"
            )

        markdown = self.invoke_tool(
            tool_id,
            "planner-recursive-synthesize",
            build_synthesis_prompt(task, decomposition, subplans, failed, max_depth),
            ctx,
        ).text
        if not markdown.strip():
            raise StageFailedError("[invalid_output] Recursive synthesis returned empty output.")
        return self._gate(markdown, ctx.strategy.id, max_depth, total)
