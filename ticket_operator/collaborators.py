"""Protocols for the external systems the orchestrator drives.

The orchestrator never talks to an issue tracker, code host or sandbox
provider directly. Hosts wire concrete implementations of these protocols;
tests wire in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol

if TYPE_CHECKING:
    from ticket_operator.models import LearningRecord, StageKind, StageResult
    from ticket_operator.stages.base import ExecutionHooks


@dataclass
class IssueInfo:
    """Ticket details needed to drive a run."""

    issue_id: str
    title: str
    description: str = ""
    labels: list[str] = field(default_factory=list)
    attachments: list[str] = field(default_factory=list)


@dataclass
class IssueComment:
    """A comment already posted on the ticket."""

    comment_id: str
    body: str
    author_id: Optional[str] = None


@dataclass
class PullRequestInfo:
    """A pull request opened for a run."""

    url: str
    number: int
    repo_full_name: str
    head_branch: str


@dataclass
class CheckRun:
    """One CI check attached to a pull request."""

    name: str
    status: str
    conclusion: Optional[str] = None


@dataclass
class SandboxOutcome:
    """Result of provisioning a validation sandbox."""

    sandbox_id: str
    url: Optional[str] = None


@dataclass
class QaOutcome:
    """Result of an automated QA pass against a sandbox."""

    passed: bool
    summary: str = ""
    details: dict[str, Any] = field(default_factory=dict)


class IssueTracker(Protocol):
    """Ticket system: read tickets, read and post comments."""

    def get_issue(self, issue_id: str) -> IssueInfo:
        ...

    def list_comments(self, issue_id: str) -> list[IssueComment]:
        ...

    def post_update(self, issue_id: str, intent: str, body: str) -> str:
        """Post a comment and return its id."""
        ...

    def find_latest_artifact(self, issue_id: str, kind: str) -> Optional[str]:
        """Return the newest stored artifact of ``kind`` ("plan" or "discovery")."""
        ...


class PullRequestHost(Protocol):
    """Code host: push branches, open pull requests and read checks."""

    def commit_and_push(self, worktree_path: str, branch_name: str, message: str) -> None:
        ...

    def create_pull_request(
        self,
        branch_name: str,
        title: str,
        body: str,
    ) -> PullRequestInfo:
        ...

    def poll_checks(self, repo_full_name: str, pr_number: int) -> list[CheckRun]:
        ...

    def changed_files(self, repo_full_name: str, pr_number: int) -> list[str]:
        ...


class SandboxProvider(Protocol):
    """Ephemeral validation environments tied to a pull request."""

    def provision(
        self,
        issue_id: str,
        pr_number: int,
        branch_name: str,
    ) -> Optional[SandboxOutcome]:
        """Provision a sandbox. None means skipped; raising means failed."""
        ...

    def teardown(self, sandbox_id: str) -> None:
        ...


class QaRunner(Protocol):
    """Automated QA against a provisioned sandbox."""

    def run_qa(self, issue_id: str, sandbox_url: str) -> Optional[QaOutcome]:
        """Run QA against the sandbox. None means skipped."""
        ...


class LearningSink(Protocol):
    """Receives recovery learnings after a stage succeeds."""

    def record_learning(self, issue_id: str, record: LearningRecord) -> Any:
        ...


class StageRunner(Protocol):
    """Runs a matrix-wrapped stage for the orchestrator."""

    def run_stage(
        self,
        kind: StageKind,
        stage_input: dict[str, Any],
        hooks: Optional[ExecutionHooks] = None,
    ) -> StageResult:
        ...
