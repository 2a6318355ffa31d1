"""
Data models for the ticket operator.

This module contains:
- Enums for ticket stages, engine stages, stage kinds and run modes
- StrategyAttempt / LearningRecord / StageResult produced by stage executors
- TransitionRecord and OrchestrationRun, the persisted per-ticket state
- Inbound signal shapes (comments, PR events, wakes)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from ticket_operator.errors import ErrorKind


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class StageKind(str, Enum):
    """Execution stages wrapped by the strategy matrix."""

    DISCOVER = "discover"
    PLAN = "plan"
    CODE = "code"
    REVIEW = "review"
    COMMUNICATION = "communication"


class TicketStage(str, Enum):
    """Lifecycle stages of one orchestration run."""

    STARTED = "started"
    EVALUATING = "evaluating"
    DISCOVERING = "discovering"
    PLANNING = "planning"
    CODING = "coding"
    CREATING_PR = "creating_pr"
    WAITING_SANDBOX = "waiting_sandbox"
    WAITING_SMOKE = "waiting_smoke"
    TEARING_DOWN = "tearing_down"
    HANDOFF = "handoff"
    BLOCKED = "blocked"
    FAILED = "failed"
    COMPLETED = "completed"


class EngineStage(str, Enum):
    """Coarse reasoning phase a ticket stage belongs to."""

    UNDERSTAND = "understand"
    PROVE = "prove"
    PLAN = "plan"
    EXECUTE = "execute"
    VALIDATE = "validate"
    LEARN = "learn"
    ADAPT = "adapt"


class RunMode(str, Enum):
    """Whether a run may execute changes or only analyze."""

    NORMAL = "normal"
    EVALUATE_ONLY = "evaluate_only"


ENGINE_STAGE_BY_TICKET_STAGE: dict[TicketStage, EngineStage] = {
    TicketStage.STARTED: EngineStage.UNDERSTAND,
    TicketStage.EVALUATING: EngineStage.UNDERSTAND,
    TicketStage.DISCOVERING: EngineStage.PROVE,
    TicketStage.PLANNING: EngineStage.PLAN,
    TicketStage.CODING: EngineStage.EXECUTE,
    TicketStage.CREATING_PR: EngineStage.EXECUTE,
    TicketStage.WAITING_SANDBOX: EngineStage.VALIDATE,
    TicketStage.WAITING_SMOKE: EngineStage.VALIDATE,
    TicketStage.TEARING_DOWN: EngineStage.VALIDATE,
    TicketStage.HANDOFF: EngineStage.LEARN,
    TicketStage.COMPLETED: EngineStage.LEARN,
    TicketStage.BLOCKED: EngineStage.ADAPT,
    TicketStage.FAILED: EngineStage.ADAPT,
}

DEFAULT_STAGE_RATIONALE: dict[TicketStage, str] = {
    TicketStage.STARTED: "Run bootstrapped.",
    TicketStage.EVALUATING: "Evaluating the ticket without executing changes.",
    TicketStage.DISCOVERING: "Collecting repository evidence.",
    TicketStage.PLANNING: "Producing an execution plan.",
    TicketStage.CODING: "Implementing the plan.",
    TicketStage.CREATING_PR: "Opening a pull request.",
    TicketStage.WAITING_SANDBOX: "Waiting for a validation sandbox.",
    TicketStage.WAITING_SMOKE: "Waiting for smoke validation.",
    TicketStage.TEARING_DOWN: "Releasing sandbox resources.",
    TicketStage.HANDOFF: "Handing off validated work.",
    TicketStage.BLOCKED: "Waiting for human input.",
    TicketStage.FAILED: "Run failed.",
    TicketStage.COMPLETED: "Run completed.",
}


@dataclass(frozen=True)
class StrategyAttempt:
    """One failed strategy invocation within a single stage run."""

    strategy_id: str
    family: str
    tool_id: str
    error_kind: ErrorKind
    error_message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "family": self.family,
            "tool_id": self.tool_id,
            "error_kind": self.error_kind.value,
            "error_message": self.error_message,
        }


@dataclass
class LearningRecord:
    """Summary of a recovery path that ended in success."""

    stage: StageKind
    selected_strategy: str
    selected_tool_id: str
    trigger_error_kinds: list[str]
    strategy_path: list[str]
    attempts: int
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "selected_strategy": self.selected_strategy,
            "selected_tool_id": self.selected_tool_id,
            "trigger_error_kinds": list(self.trigger_error_kinds),
            "strategy_path": list(self.strategy_path),
            "attempts": self.attempts,
            "details": dict(self.details),
        }


@dataclass
class StageResult:
    """
    Outcome of one stage executor run.

    ``ok`` False with a ``reason`` is a structured failure that the
    orchestrator turns into a blocked state.
    """

    ok: bool
    payload: dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    learning: Optional[LearningRecord] = None
    strategy_path: list[str] = field(default_factory=list)
    attempts: list[StrategyAttempt] = field(default_factory=list)

    @classmethod
    def success_result(
        cls,
        payload: dict[str, Any],
        learning: Optional[LearningRecord] = None,
        strategy_path: Optional[list[str]] = None,
        attempts: Optional[list[StrategyAttempt]] = None,
    ) -> StageResult:
        return cls(
            ok=True,
            payload=payload,
            learning=learning,
            strategy_path=list(strategy_path or []),
            attempts=list(attempts or []),
        )

    @classmethod
    def failure_result(
        cls,
        reason: str,
        payload: Optional[dict[str, Any]] = None,
        strategy_path: Optional[list[str]] = None,
        attempts: Optional[list[StrategyAttempt]] = None,
    ) -> StageResult:
        return cls(
            ok=False,
            reason=reason,
            payload=dict(payload or {}),
            strategy_path=list(strategy_path or []),
            attempts=list(attempts or []),
        )


@dataclass
class TransitionRecord:
    """Audit entry for one stage change. Never read for control flow."""

    from_stage: Optional[str]
    to_stage: str
    engine_stage: str
    rationale: str
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_stage": self.from_stage,
            "to_stage": self.to_stage,
            "engine_stage": self.engine_stage,
            "rationale": self.rationale,
            "metadata": dict(self.metadata),
            "occurred_at": self.occurred_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TransitionRecord:
        return cls(
            from_stage=data.get("from_stage"),
            to_stage=data["to_stage"],
            engine_stage=data.get("engine_stage", ""),
            rationale=data.get("rationale", ""),
            metadata=data.get("metadata", {}),
            occurred_at=data.get("occurred_at", ""),
        )


def _optional_stage(value: Optional[str]) -> Optional[TicketStage]:
    return TicketStage(value) if value else None


@dataclass
class OrchestrationRun:
    """
    Durable state of one ticket, bound 1:1 to an issue id.

    Mutated only by the run's orchestrator. Serialized after every stage
    change so a restart resumes from the same logical position.
    """

    issue_id: str
    mode: RunMode = RunMode.NORMAL
    stage: TicketStage = TicketStage.STARTED
    resume_stage: Optional[TicketStage] = None

    # Counters
    review_attempts: int = 0
    smoke_attempts: int = 0

    # References
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    repo_full_name: Optional[str] = None
    pr_head_branch: Optional[str] = None
    pr_closed: bool = False
    sandbox_id: Optional[str] = None
    sandbox_url: Optional[str] = None
    sandbox_torn_down: bool = False
    worktree_path: Optional[str] = None
    branch_name: Optional[str] = None

    # Classification and failure context
    frontend_task: Optional[bool] = None
    frontend_reason: Optional[str] = None
    blocked_reason: Optional[str] = None
    last_error: Optional[str] = None

    # Artifacts
    discovery_output: Optional[str] = None
    plan_markdown: Optional[str] = None

    # Per-PR guards
    frontend_assessed_for_pr: Optional[int] = None
    sandbox_attempted_for_pr: Optional[int] = None
    auto_qa_run_for_pr: Optional[int] = None
    handoff_posted: bool = False

    # Bookkeeping
    bootstrapped: bool = False
    sequence: int = 0
    seen_comment_ids: list[str] = field(default_factory=list)
    seen_delivery_ids: list[str] = field(default_factory=list)
    preferences: Optional[dict[str, Any]] = None
    completed_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    transitions: list[TransitionRecord] = field(default_factory=list)

    def reset_pr_references(self) -> None:
        """Forget the current PR cycle so coding starts a fresh one."""
        self.pr_url = None
        self.pr_number = None
        self.pr_head_branch = None
        self.pr_closed = False
        self.sandbox_id = None
        self.sandbox_url = None
        self.sandbox_torn_down = False
        self.frontend_task = None
        self.frontend_reason = None
        self.frontend_assessed_for_pr = None
        self.sandbox_attempted_for_pr = None
        self.auto_qa_run_for_pr = None

    def status_snapshot(self) -> dict[str, Any]:
        """Read-only view used by status queries and status replies."""
        return {
            "issue_id": self.issue_id,
            "mode": self.mode.value,
            "stage": self.stage.value,
            "resume_stage": self.resume_stage.value if self.resume_stage else None,
            "counters": {
                "review_attempts": self.review_attempts,
                "smoke_attempts": self.smoke_attempts,
            },
            "references": {
                "pr_url": self.pr_url,
                "pr_number": self.pr_number,
                "repo_full_name": self.repo_full_name,
                "pr_head_branch": self.pr_head_branch,
                "pr_closed": self.pr_closed,
                "sandbox_id": self.sandbox_id,
                "sandbox_url": self.sandbox_url,
                "sandbox_torn_down": self.sandbox_torn_down,
            },
            "frontend_task": self.frontend_task,
            "frontend_reason": self.frontend_reason,
            "blocked_reason": self.blocked_reason,
            "last_error": self.last_error,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "issue_id": self.issue_id,
            "mode": self.mode.value,
            "stage": self.stage.value,
            "resume_stage": self.resume_stage.value if self.resume_stage else None,
            "review_attempts": self.review_attempts,
            "smoke_attempts": self.smoke_attempts,
            "pr_url": self.pr_url,
            "pr_number": self.pr_number,
            "repo_full_name": self.repo_full_name,
            "pr_head_branch": self.pr_head_branch,
            "pr_closed": self.pr_closed,
            "sandbox_id": self.sandbox_id,
            "sandbox_url": self.sandbox_url,
            "sandbox_torn_down": self.sandbox_torn_down,
            "worktree_path": self.worktree_path,
            "branch_name": self.branch_name,
            "frontend_task": self.frontend_task,
            "frontend_reason": self.frontend_reason,
            "blocked_reason": self.blocked_reason,
            "last_error": self.last_error,
            "discovery_output": self.discovery_output,
            "plan_markdown": self.plan_markdown,
            "frontend_assessed_for_pr": self.frontend_assessed_for_pr,
            "sandbox_attempted_for_pr": self.sandbox_attempted_for_pr,
            "auto_qa_run_for_pr": self.auto_qa_run_for_pr,
            "handoff_posted": self.handoff_posted,
            "bootstrapped": self.bootstrapped,
            "sequence": self.sequence,
            "seen_comment_ids": list(self.seen_comment_ids),
            "seen_delivery_ids": list(self.seen_delivery_ids),
            "preferences": self.preferences,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "transitions": [t.to_dict() for t in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestrationRun:
        return cls(
            issue_id=data["issue_id"],
            mode=RunMode(data.get("mode", RunMode.NORMAL.value)),
            stage=TicketStage(data.get("stage", TicketStage.STARTED.value)),
            resume_stage=_optional_stage(data.get("resume_stage")),
            review_attempts=data.get("review_attempts", 0),
            smoke_attempts=data.get("smoke_attempts", 0),
            pr_url=data.get("pr_url"),
            pr_number=data.get("pr_number"),
            repo_full_name=data.get("repo_full_name"),
            pr_head_branch=data.get("pr_head_branch"),
            pr_closed=data.get("pr_closed", False),
            sandbox_id=data.get("sandbox_id"),
            sandbox_url=data.get("sandbox_url"),
            sandbox_torn_down=data.get("sandbox_torn_down", False),
            worktree_path=data.get("worktree_path"),
            branch_name=data.get("branch_name"),
            frontend_task=data.get("frontend_task"),
            frontend_reason=data.get("frontend_reason"),
            blocked_reason=data.get("blocked_reason"),
            last_error=data.get("last_error"),
            discovery_output=data.get("discovery_output"),
            plan_markdown=data.get("plan_markdown"),
            frontend_assessed_for_pr=data.get("frontend_assessed_for_pr"),
            sandbox_attempted_for_pr=data.get("sandbox_attempted_for_pr"),
            auto_qa_run_for_pr=data.get("auto_qa_run_for_pr"),
            handoff_posted=data.get("handoff_posted", False),
            bootstrapped=data.get("bootstrapped", False),
            sequence=data.get("sequence", 0),
            seen_comment_ids=list(data.get("seen_comment_ids", [])),
            seen_delivery_ids=list(data.get("seen_delivery_ids", [])),
            preferences=data.get("preferences"),
            completed_at=data.get("completed_at"),
            created_at=data.get("created_at", utc_now_iso()),
            updated_at=data.get("updated_at", utc_now_iso()),
            transitions=[
                TransitionRecord.from_dict(t) for t in data.get("transitions", [])
            ],
        )


# =============================================================================
# Inbound signals
# =============================================================================


@dataclass
class CommentSignal:
    """A comment posted on the ticket."""

    issue_id: str
    comment_id: str
    body: str
    delivery_id: Optional[str] = None
    author_id: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommentSignal:
        return cls(
            issue_id=data["issue_id"],
            comment_id=str(data.get("comment_id", "")),
            body=data.get("body", ""),
            delivery_id=data.get("delivery_id"),
            author_id=data.get("author_id"),
            created_at=data.get("created_at"),
        )


@dataclass
class PrEventSignal:
    """A pull request webhook event routed to the ticket."""

    issue_id: str
    action: str
    repo_full_name: str = ""
    pr_number: Optional[int] = None
    pr_url: str = ""
    branch_name: str = ""
    title: str = ""
    body: Optional[str] = None
    merged: Optional[bool] = None
    delivery_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrEventSignal:
        pr_number = data.get("pr_number")
        return cls(
            issue_id=data["issue_id"],
            action=data.get("action", ""),
            repo_full_name=data.get("repo_full_name", ""),
            pr_number=int(pr_number) if pr_number is not None else None,
            pr_url=data.get("pr_url", ""),
            branch_name=data.get("branch_name", ""),
            title=data.get("title", ""),
            body=data.get("body"),
            merged=data.get("merged"),
            delivery_id=data.get("delivery_id"),
        )


@dataclass
class WakeSignal:
    """Forces re-evaluation with no payload."""

    issue_id: str
    delivery_id: Optional[str] = None


Signal = Union[CommentSignal, PrEventSignal, WakeSignal]
