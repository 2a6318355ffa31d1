"""Shared fixtures: in-memory collaborators and orchestrator wiring."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from ticket_operator.collaborators import (
    CheckRun,
    IssueComment,
    IssueInfo,
    PullRequestInfo,
    QaOutcome,
    SandboxOutcome,
)
from ticket_operator.config import DEFAULT_POLICY_PATH, OperatorConfig
from ticket_operator.models import OrchestrationRun, StageKind, StageResult
from ticket_operator.orchestrator import TicketOrchestrator
from ticket_operator.state_store import IdempotencyLedger, RunStore
from ticket_operator.strategy.policy import MatrixPolicies, load_matrix_policies
from ticket_operator.workspace import WorktreeInfo


PLAN_MARKDOWN = "\n".join([
    "# Plan",
    "## Goal",
    "Add a retry banner to the billing page.",
    "## Steps",
    "1. Add the banner component.",
    "2. Wire it into the page.",
    "## Tests",
    "- Unit test for the banner.",
])


# ============================================================================
# Fakes
# ============================================================================


@dataclass
class Posted:
    issue_id: str
    intent: str
    body: str


class FakeTracker:
    """Issue tracker that keeps everything in memory."""

    def __init__(self, issue: Optional[IssueInfo] = None) -> None:
        self.issue = issue or IssueInfo(issue_id="OPS-1", title="Add retry banner")
        self.comments: list[IssueComment] = []
        self.artifacts: dict[str, str] = {}
        self.posted: list[Posted] = []

    def get_issue(self, issue_id: str) -> IssueInfo:
        return self.issue

    def list_comments(self, issue_id: str) -> list[IssueComment]:
        return list(self.comments)

    def post_update(self, issue_id: str, intent: str, body: str) -> str:
        self.posted.append(Posted(issue_id, intent, body))
        return f"c{len(self.posted)}"

    def find_latest_artifact(self, issue_id: str, kind: str) -> Optional[str]:
        return self.artifacts.get(kind)

    def intents(self) -> list[str]:
        return [p.intent for p in self.posted]


class FakePrHost:
    """Pull request host returning sequential PR numbers, one open PR per head branch."""

    def __init__(self, repo: str = "acme/shop") -> None:
        self.repo = repo
        self.pushes: list[str] = []
        self.created: list[PullRequestInfo] = []
        self.checks: list[CheckRun] = []
        self.files: list[str] = ["server/api/billing.py"]
        self.create_error: Optional[Exception] = None

    def commit_and_push(self, worktree_path: str, branch_name: str, message: str) -> None:
        self.pushes.append(branch_name)

    def create_pull_request(self, branch_name: str, title: str, body: str) -> PullRequestInfo:
        if self.create_error is not None:
            raise self.create_error
        if any(pr.head_branch == branch_name for pr in self.created):
            raise RuntimeError(
                f"a pull request for branch \"{branch_name}\" into branch \"main\" already exists"
            )
        number = 100 + len(self.created) + 1
        pr = PullRequestInfo(
            url=f"https://github.com/{self.repo}/pull/{number}",
            number=number,
            repo_full_name=self.repo,
            head_branch=branch_name,
        )
        self.created.append(pr)
        return pr

    def poll_checks(self, repo_full_name: str, pr_number: int) -> list[CheckRun]:
        return list(self.checks)

    def changed_files(self, repo_full_name: str, pr_number: int) -> list[str]:
        return list(self.files)


class FakeWorkspace:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.prepared: list[str] = []

    def prepare(self, issue_id: str, existing: Optional[WorktreeInfo] = None) -> WorktreeInfo:
        if existing is not None:
            return existing
        self.prepared.append(issue_id)
        name = issue_id.lower()
        cycle = self.prepared.count(issue_id)
        if cycle > 1:
            name = f"{name}-{cycle}"
        return WorktreeInfo(str(self.root / name), f"operator/{name}")

    def has_changes(self, worktree_path: str) -> bool:
        return True


@dataclass
class FakeSandbox:
    outcome: Optional[SandboxOutcome] = field(
        default_factory=lambda: SandboxOutcome("sbx-1", "https://sbx-1.preview.test")
    )
    error: Optional[Exception] = None
    provisioned: list[int] = field(default_factory=list)
    torn_down: list[str] = field(default_factory=list)

    def provision(self, issue_id: str, pr_number: int, branch_name: str) -> Optional[SandboxOutcome]:
        self.provisioned.append(pr_number)
        if self.error is not None:
            raise self.error
        return self.outcome

    def teardown(self, sandbox_id: str) -> None:
        self.torn_down.append(sandbox_id)


@dataclass
class FakeQa:
    outcome: Optional[QaOutcome] = field(default_factory=lambda: QaOutcome(True, "All flows green."))
    runs: list[str] = field(default_factory=list)

    def run_qa(self, issue_id: str, sandbox_url: str) -> Optional[QaOutcome]:
        self.runs.append(sandbox_url)
        return self.outcome


def default_stage_results(kind: StageKind, stage_input: dict[str, Any], hooks: Any) -> StageResult:
    """Stage runner behaviour where every stage succeeds first time."""
    if kind == StageKind.DISCOVER:
        return StageResult.success_result({"discovery_output": "billing/page.tsx renders the banner"})
    if kind == StageKind.PLAN:
        return StageResult.success_result({"plan_markdown": PLAN_MARKDOWN, "quality_score": 90})
    if kind == StageKind.CODE:
        return StageResult.success_result({"strategy_id": "codex-exec"})
    if kind == StageKind.REVIEW:
        return StageResult.success_result({"revision_attempts": 1})
    return StageResult.success_result({"reply": "It is in review.", "clarification": False})


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def policies() -> MatrixPolicies:
    return load_matrix_policies(DEFAULT_POLICY_PATH)


@pytest.fixture
def operator_config(tmp_path: Path) -> OperatorConfig:
    return OperatorConfig(repo_root=str(tmp_path))


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def pr_host() -> FakePrHost:
    return FakePrHost()


@pytest.fixture
def stage_runner() -> MagicMock:
    runner = MagicMock()
    runner.run_stage.side_effect = default_stage_results
    return runner


@pytest.fixture
def store(operator_config: OperatorConfig) -> RunStore:
    return RunStore(operator_config)


@pytest.fixture
def make_orchestrator(
    operator_config: OperatorConfig,
    store: RunStore,
    tracker: FakeTracker,
    pr_host: FakePrHost,
    stage_runner: MagicMock,
    tmp_path: Path,
) -> Callable[..., TicketOrchestrator]:
    """Build an orchestrator around a fresh (or given) run with fake collaborators."""

    def build(run: Optional[OrchestrationRun] = None, **overrides: Any) -> TicketOrchestrator:
        run = run or OrchestrationRun(issue_id="OPS-1")
        kwargs: dict[str, Any] = dict(
            run=run,
            store=store,
            ledger=IdempotencyLedger(operator_config.ledger_path, run.issue_id),
            tracker=tracker,
            pr_host=pr_host,
            stage_runner=stage_runner,
            workspace=FakeWorkspace(tmp_path / "worktrees"),
            config=operator_config.orchestrator,
        )
        kwargs.update(overrides)
        return TicketOrchestrator(**kwargs)

    return build


@pytest.fixture
def cli_runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def qa() -> FakeQa:
    return FakeQa()


@pytest.fixture
def plan_markdown() -> str:
    return PLAN_MARKDOWN
