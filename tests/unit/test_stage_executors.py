"""Tests for the matrix-wrapped stage executors and their attempt loop."""

import json
from unittest.mock import MagicMock

import pytest

from ticket_operator.adapters import AdapterRegistry, ToolInvocationError, ToolResponse
from ticket_operator.errors import (
    AdapterCoverageError,
    ErrorKind,
    PolicyError,
    StageExhaustedError,
    StageFailedError,
)
from ticket_operator.models import StageKind
from ticket_operator.stages.base import ExecutionHooks, split_tool_tag
from ticket_operator.stages.code import CodeExecutor
from ticket_operator.stages.communication import CLARIFICATION_REPLY, CommunicationExecutor, parse_reply
from ticket_operator.stages.discover import DiscoverExecutor
from ticket_operator.stages.plan import (
    PlanExecutor,
    has_placeholders,
    parse_decomposition,
    score_plan_quality,
)
from ticket_operator.stages.review import ReviewExecutor
from ticket_operator.stages.runner import ExecutorStageRunner


GOOD_PLAN = "\n".join([
    "# Task: Add retry banner",
    "## Goal",
    "Show a retry banner when a billing call fails.",
    "## Context",
    "The page lives in `apps/web/billing/Page.tsx`.",
    "## Requirements",
    "- Render the banner on failure",
    "- Hide it after a successful retry",
    "- Keep the existing layout",
    "- Log the retry click",
    "## Non-requirements / Out of Scope",
    "- Server changes",
    "## Production & Quality Constraints",
    "- No new dependencies",
    "## Integration Points",
    "- Uses `apps/web/billing/client.ts`",
    "## Tests",
    "- Banner renders on failure",
    "- Banner hides on success",
    "- Retry click is logged",
    "## Edge Cases & Risks",
    "- Repeated failures",
    "- Slow networks",
    "## Open Questions / Ambiguities",
    "- None",
])

HEADERS_ONLY_PLAN = "\n".join([
    "# Task: Add retry banner",
    "## Goal",
    "## Context",
    "## Requirements",
    "## Non-requirements / Out of Scope",
    "## Production & Quality Constraints",
    "## Integration Points",
    "## Tests",
    "## Edge Cases & Risks",
    "## Open Questions / Ambiguities",
])


class ScriptedTools:
    """Adapters that replay scripted outputs per tool id (the last one repeats)."""

    def __init__(self, policies):
        self.policies = policies
        self.script = {}
        self.calls = []

    def on(self, tool_id, *outcomes):
        self.script.setdefault(tool_id, []).extend(outcomes)
        return self

    def _call(self, tool_id, request):
        self.calls.append((tool_id, request))
        outcomes = self.script.get(tool_id)
        if not outcomes:
            raise RuntimeError(f"unscripted call to {tool_id}")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return ToolResponse(text=outcome)

    def registry(self):
        registry = AdapterRegistry()
        for policy in self.policies.stages.values():
            for tool_id in policy.tool_ids:
                registry.register(tool_id, lambda request, t=tool_id: self._call(t, request))
        return registry

    def called(self):
        return [tool_id for tool_id, _ in self.calls]


@pytest.fixture
def tools(policies):
    return ScriptedTools(policies)


@pytest.fixture
def workspace():
    ws = MagicMock()
    ws.has_changes.return_value = True
    return ws


def nonzero(name="tool"):
    return ToolInvocationError(f"Command failed ({name}): agent (exit 1).")


class TestAttemptLoop:
    def test_split_tool_tag(self):
        assert split_tool_tag("[tool_id:tool.a] boom") == ("tool.a", "boom")
        assert split_tool_tag("plain failure") == (None, "plain failure")

    def test_wrong_stage_policy_rejected(self, policies, tools):
        with pytest.raises(PolicyError, match="requires a discover policy"):
            DiscoverExecutor(policies.for_stage(StageKind.PLAN), tools.registry())

    def test_missing_adapter_is_not_an_attempt(self, policies):
        executor = DiscoverExecutor(policies.for_stage(StageKind.DISCOVER), AdapterRegistry())

        with pytest.raises(AdapterCoverageError):
            executor.run({"issue_id": "OPS-1"})


class TestDiscoverExecutor:
    def test_first_strategy_success_has_no_learning(self, policies, tools):
        tools.on("tool.discovery.teddy.default", "Billing lives in `apps/web/billing`.")
        executor = DiscoverExecutor(policies.for_stage(StageKind.DISCOVER), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "title": "Banner"})

        assert result.ok
        assert result.payload["discovery_output"] == "Billing lives in `apps/web/billing`."
        assert result.learning is None
        assert result.strategy_path == ["teddy-default"]

    def test_missing_cli_switches_family_and_records_learning(self, policies, tools):
        tools.on("tool.discovery.teddy.default", ToolInvocationError("spawn teddy ENOENT: command not found"))
        tools.on("tool.discovery.codex.exec", "Found it.")
        switches = []
        failed = []
        executor = DiscoverExecutor(policies.for_stage(StageKind.DISCOVER), tools.registry())

        result = executor.run(
            {"issue_id": "OPS-1"},
            ExecutionHooks(on_attempt_failed=failed.append, on_strategy_switch=switches.append),
        )

        assert result.ok
        assert result.strategy_path == ["teddy-default", "codex-exec"]
        assert failed[0].error_kind == ErrorKind.CLI_NOT_FOUND
        assert failed[0].tool_id == "tool.discovery.teddy.default"
        assert failed[0].error_message.startswith("spawn teddy ENOENT")
        assert switches[0].to_strategy == "codex-exec"
        assert switches[0].attempt_label == "attempt 2/4"
        assert result.learning.selected_strategy == "codex-exec"
        assert result.learning.trigger_error_kinds == ["cli_not_found"]
        assert result.learning.attempts == 2

    def test_empty_output_moves_to_matrix_candidate(self, policies, tools):
        tools.on("tool.discovery.teddy.default", "   ")
        tools.on("tool.discovery.teddy.gpt_oss", "Found it.")
        executor = DiscoverExecutor(policies.for_stage(StageKind.DISCOVER), tools.registry())

        result = executor.run({"issue_id": "OPS-1"})

        assert result.strategy_path == ["teddy-default", "teddy-gpt-oss"]
        assert result.attempts[0].error_kind == ErrorKind.UNKNOWN

    def test_repeated_nonzero_exit_exhausts_budget(self, policies, tools):
        tools.on("tool.discovery.teddy.default", nonzero())
        tools.on("tool.discovery.codex.exec", nonzero())
        executor = DiscoverExecutor(policies.for_stage(StageKind.DISCOVER), tools.registry())

        with pytest.raises(StageExhaustedError) as exc_info:
            executor.run({"issue_id": "OPS-1"})

        assert str(exc_info.value).startswith("Discovery failed after 4 attempts.")
        assert [a.strategy_id for a in exc_info.value.attempts] == [
            "teddy-default", "teddy-default", "codex-exec", "codex-exec",
        ]


class TestCodeExecutor:
    def test_missing_plan_fails_without_calling_tools(self, policies, tools, workspace):
        executor = CodeExecutor(policies.for_stage(StageKind.CODE), tools.registry(), workspace)

        with pytest.raises(StageExhaustedError):
            executor.run({"issue_id": "OPS-1", "repo_path": "/tmp/wt", "plan_markdown": " "})

        assert tools.calls == []

    def test_no_changes_switches_to_recovery_prompt(self, policies, tools, workspace):
        workspace.has_changes.side_effect = [False, True]
        tools.on("tool.code.codex.exec", "done")
        tools.on("tool.code.codex.exec.patch", "done")
        executor = CodeExecutor(policies.for_stage(StageKind.CODE), tools.registry(), workspace)

        result = executor.run({"issue_id": "OPS-1", "repo_path": "/tmp/wt", "plan_markdown": GOOD_PLAN})

        assert result.ok
        assert result.strategy_path == ["codex-exec", "codex-exec-patch"]
        _, recovery_request = tools.calls[1]
        assert "## Matrix Recovery Context" in recovery_request.prompt
        assert "codex-exec -> no_changes" in recovery_request.prompt
        assert recovery_request.writable is True
        assert recovery_request.cwd == "/tmp/wt"
        assert result.learning.trigger_error_kinds == ["no_changes"]

    def test_validation_feedback_reaches_prompt(self, policies, tools, workspace):
        tools.on("tool.code.codex.exec", "done")
        executor = CodeExecutor(policies.for_stage(StageKind.CODE), tools.registry(), workspace)

        executor.run({
            "issue_id": "OPS-1",
            "repo_path": "/tmp/wt",
            "plan_markdown": GOOD_PLAN,
            "feedback": "CI smoke check failed on PR #7.",
        })

        _, request = tools.calls[0]
        assert "## Validation Feedback\nCI smoke check failed on PR #7." in request.prompt


class TestPlanQuality:
    def test_complete_plan_scores_full_marks(self):
        assert score_plan_quality(GOOD_PLAN) == 100

    def test_headers_only_plan(self):
        assert score_plan_quality(HEADERS_ONLY_PLAN) == 60

    def test_placeholder_in_critical_section(self):
        plan = GOOD_PLAN.replace("Show a retry banner when a billing call fails.", "TBD")

        assert has_placeholders(plan)
        assert score_plan_quality(plan) == 90

    def test_placeholder_outside_critical_sections_is_ignored(self):
        plan = GOOD_PLAN.replace("- None", "- TODO confirm copy")

        assert not has_placeholders(plan)

    def test_parse_decomposition_from_fenced_block(self):
        text = 'Here you go:\n```json\n{"objective": "Banner", "subproblems": [{"title": "UI"}]}\n```'

        decomposition = parse_decomposition(text, max_branches=4)

        assert decomposition.objective == "Banner"
        assert decomposition.subproblems[0].id == "subproblem-1"
        assert decomposition.subproblems[0].deliverables == ["UI"]

    def test_parse_decomposition_truncates_branches(self):
        payload = {"subproblems": [{"title": f"Part {i}"} for i in range(6)]}

        decomposition = parse_decomposition(json.dumps(payload), max_branches=2)

        assert [s.title for s in decomposition.subproblems] == ["Part 0", "Part 1"]
        assert decomposition.objective == "Plan objective"

    def test_parse_decomposition_rejects_garbage(self):
        with pytest.raises(StageFailedError, match=r"\[invalid_output\]"):
            parse_decomposition("no json here", max_branches=2)


class TestPlanExecutor:
    def test_direct_plan_passes_gate(self, policies, tools):
        tools.on("tool.plan.codex.direct", GOOD_PLAN)
        executor = PlanExecutor(policies.for_stage(StageKind.PLAN), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "discovery_output": "notes"})

        assert result.payload["quality_score"] == 100
        assert result.payload["plan_markdown"] == GOOD_PLAN

    def test_low_quality_plan_escalates_to_recursive(self, policies, tools):
        subplan = "Subplan body that is comfortably longer than sixty characters in total."
        tools.on("tool.plan.codex.direct", HEADERS_ONLY_PLAN)
        tools.on(
            "tool.plan.codex.recursive",
            json.dumps({"objective": "Banner", "subproblems": [{"title": "UI"}, {"title": "Client"}]}),
            subplan,
            subplan,
            GOOD_PLAN,
        )
        executor = PlanExecutor(policies.for_stage(StageKind.PLAN), tools.registry())

        result = executor.run({"issue_id": "OPS-1"})

        assert result.strategy_path == ["codex-direct", "codex-recursive"]
        assert result.attempts[0].error_kind == ErrorKind.QUALITY_LOW
        assert result.payload["recursion_depth"] == 2
        assert result.payload["branch_count"] == 2
        assert result.learning.details == {
            "quality_score": 100,
            "recursion_depth": 2,
            "branch_count": 2,
        }
        names = [request.name for _, request in tools.calls[1:]]
        assert names == [
            "planner-recursive-decompose",
            "planner-recursive-subplan-1",
            "planner-recursive-subplan-2",
            "planner-recursive-synthesize",
        ]


class TestReviewExecutor:
    def test_clean_first_review_needs_no_revision(self, policies, tools):
        tools.on("tool.review.codex.review", "Looks good. [p2] rename a helper later.\nBlocking issues: none.")
        executor = ReviewExecutor(policies.for_stage(StageKind.REVIEW), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "repo_path": "/tmp/wt"})

        assert result.ok
        assert result.payload["revision_attempts"] == 0
        assert result.strategy_path == ["codex-review-loop"]
        assert result.attempts == []
        assert tools.called() == ["tool.review.codex.review"]

    def test_revision_clears_blocking_findings(self, policies, tools):
        tools.on("tool.review.codex.review", "[P1] missing null check", "Blocking issues: none.")
        tools.on("tool.review.codex.revision", "fixed")
        executor = ReviewExecutor(policies.for_stage(StageKind.REVIEW), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "repo_path": "/tmp/wt"})

        assert result.ok
        assert result.payload["revision_attempts"] == 1
        assert tools.called() == [
            "tool.review.codex.review",
            "tool.review.codex.revision",
            "tool.review.codex.review",
        ]

    def test_unresolved_findings_return_failure_result(self, policies, tools):
        for tool_id in ("tool.review.codex.review", "tool.review.teddy.review"):
            tools.on(tool_id, "[p0] data loss on retry")
        for tool_id in (
            "tool.review.codex.revision",
            "tool.review.codex.revision.focused",
            "tool.review.teddy.revision",
        ):
            tools.on(tool_id, "tried")
        executor = ReviewExecutor(policies.for_stage(StageKind.REVIEW), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "repo_path": "/tmp/wt"})

        assert not result.ok
        assert result.reason.startswith("Review failed after 3 attempts.")
        assert result.payload["revision_attempts"] == 6
        assert result.strategy_path == ["codex-review-loop", "codex-review-loop-focused", "teddy-review-loop"]
        assert all(a.error_kind == ErrorKind.P0_P1_UNRESOLVED for a in result.attempts)
        focused = [r for t, r in tools.calls if t == "tool.review.codex.revision.focused"]
        assert "Focused recovery mode" in focused[0].prompt


class TestCommunicationExecutor:
    def reply(self, **overrides):
        data = {"intent": "question", "confidence": 0.9, "needs_clarification": False, "reply": "It ships today."}
        data.update(overrides)
        return json.dumps(data)

    def test_confident_reply(self, policies, tools):
        tools.on("tool.communication.reply.semantic", self.reply())
        executor = CommunicationExecutor(policies.for_stage(StageKind.COMMUNICATION), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "body": "When does this ship?"})

        assert result.payload["reply"] == "It ships today."
        assert result.payload["clarification"] is False

    def test_attachments_start_with_attachment_strategy(self, policies, tools):
        tools.on("tool.communication.reply.attachment", self.reply(intent="attachment_request"))
        executor = CommunicationExecutor(policies.for_stage(StageKind.COMMUNICATION), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "body": "See screenshot", "attachments": ["shot.png"]})

        assert result.strategy_path == ["email-attachment-aware"]
        assert "shot.png" in tools.calls[0][1].prompt

    def test_confident_status_request_ignores_clarification_flag(self, policies, tools):
        tools.on(
            "tool.communication.reply.semantic",
            self.reply(intent="task_status_request", confidence=0.75, needs_clarification=True),
        )
        executor = CommunicationExecutor(policies.for_stage(StageKind.COMMUNICATION), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "body": "status?"})

        assert result.payload["intent"] == "task_status_request"

    def test_low_confidence_everywhere_falls_back_to_clarification(self, policies, tools):
        tools.on("tool.communication.reply.semantic", self.reply(confidence=0.2))
        tools.on("tool.communication.reply.attachment", self.reply(confidence=0.3))
        executor = CommunicationExecutor(policies.for_stage(StageKind.COMMUNICATION), tools.registry())

        result = executor.run({"issue_id": "OPS-1", "body": "hmm"})

        assert result.ok
        assert result.payload["clarification"] is True
        assert result.payload["reply"] == CLARIFICATION_REPLY
        assert [a.error_kind for a in result.attempts] == [ErrorKind.LOW_CONFIDENCE, ErrorKind.LOW_CONFIDENCE]

    def test_parse_reply_accepts_fenced_json(self):
        data = parse_reply('```json\n{"reply": "ok", "intent": "question"}\n```')

        assert data["reply"] == "ok"

    def test_parse_reply_requires_reply(self):
        with pytest.raises(StageFailedError, match="communication_intent_parse_failed"):
            parse_reply('{"intent": "question"}')


class TestExecutorStageRunner:
    def test_coverage_checked_at_construction(self, policies, workspace):
        with pytest.raises(AdapterCoverageError):
            ExecutorStageRunner(policies, AdapterRegistry(), workspace)

    def test_dispatches_to_stage_executor(self, policies, tools, workspace):
        tools.on("tool.discovery.teddy.default", "notes")
        runner = ExecutorStageRunner(policies, tools.registry(), workspace)

        result = runner.run_stage(StageKind.DISCOVER, {"issue_id": "OPS-1"})

        assert result.payload["discovery_output"] == "notes"
