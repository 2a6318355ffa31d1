"""Tests for the file-backed tracker and the gh pull request host."""

import json
import subprocess
from unittest.mock import MagicMock

import pytest

from ticket_operator.collaborators import CheckRun
from ticket_operator.integrations import GhPullRequestHost, IntegrationError, LocalIssueTracker


@pytest.fixture
def issues_dir(tmp_path):
    root = tmp_path / "issues"
    root.mkdir()
    return root


class TestLocalIssueTracker:
    def test_get_issue(self, issues_dir):
        (issues_dir / "OPS-5.yaml").write_text(
            "title: Retry banner\n"
            "description: Show a banner when payment retries\n"
            "labels: [Frontend, billing]\n"
        )

        issue = LocalIssueTracker(issues_dir).get_issue("OPS-5")

        assert issue.title == "Retry banner"
        assert issue.labels == ["Frontend", "billing"]
        assert issue.attachments == []

    def test_missing_issue(self, issues_dir):
        with pytest.raises(IntegrationError, match="Issue not found: OPS-9"):
            LocalIssueTracker(issues_dir).get_issue("OPS-9")

    def test_issue_without_title(self, issues_dir):
        (issues_dir / "OPS-5.yaml").write_text("description: nothing else\n")

        with pytest.raises(IntegrationError, match="must define a title"):
            LocalIssueTracker(issues_dir).get_issue("OPS-5")

    def test_posted_updates_are_listed(self, tmp_path):
        tracker = LocalIssueTracker(tmp_path / "fresh")

        first = tracker.post_update("OPS-5", "plan_ready", "Plan is ready")
        tracker.post_update("OPS-5", "pr_created", "PR opened")

        comments = tracker.list_comments("OPS-5")
        assert [c.body for c in comments] == ["Plan is ready", "PR opened"]
        assert comments[0].comment_id == first
        assert comments[0].author_id == "operator"

    def test_broken_comment_lines_are_skipped(self, issues_dir):
        (issues_dir / "OPS-5.comments.jsonl").write_text(
            '{"comment_id": "a", "body": "hi"}\nnot json\n\n'
        )

        comments = LocalIssueTracker(issues_dir).list_comments("OPS-5")

        assert [c.comment_id for c in comments] == ["a"]

    def test_no_comments(self, issues_dir):
        assert LocalIssueTracker(issues_dir).list_comments("OPS-5") == []

    def test_find_latest_artifact(self, issues_dir):
        tracker = LocalIssueTracker(issues_dir)
        (issues_dir / "OPS-5.plan.md").write_text("\n# Plan\n")
        (issues_dir / "OPS-5.discovery.md").write_text("   \n")

        assert tracker.find_latest_artifact("OPS-5", "plan") == "# Plan"
        assert tracker.find_latest_artifact("OPS-5", "discovery") is None
        assert tracker.find_latest_artifact("OPS-5", "review") is None


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_run(monkeypatch):
    run = MagicMock(return_value=completed())
    monkeypatch.setattr(subprocess, "run", run)
    return run


def commands(fake_run):
    return [c.args[0] for c in fake_run.call_args_list]


class TestGhPullRequestHost:
    def test_commit_and_push_skips_empty_commit(self, tmp_path, fake_run):
        GhPullRequestHost(tmp_path).commit_and_push("/wt", "xena/ops-5", "OPS-5: banner")

        assert commands(fake_run) == [
            ["git", "add", "-A"],
            ["git", "status", "--porcelain"],
            ["git", "push", "-u", "origin", "xena/ops-5"],
        ]
        assert fake_run.call_args_list[0].kwargs["cwd"] == "/wt"

    def test_commit_when_changes_exist(self, tmp_path, fake_run):
        fake_run.side_effect = [completed(), completed(" M app.py\n"), completed(), completed()]

        GhPullRequestHost(tmp_path).commit_and_push("/wt", "xena/ops-5", "OPS-5: banner")

        assert ["git", "commit", "-m", "OPS-5: banner"] in commands(fake_run)

    def test_create_pull_request(self, tmp_path, fake_run):
        view = {"url": "https://github.com/acme/shop/pull/42", "number": 42, "headRefName": "xena/ops-5"}
        fake_run.side_effect = [completed(), completed(json.dumps(view))]

        pr = GhPullRequestHost(tmp_path, base_branch="main").create_pull_request(
            "xena/ops-5", "Retry banner", "body"
        )

        assert pr.number == 42
        assert pr.repo_full_name == "acme/shop"
        assert commands(fake_run)[0][-2:] == ["--base", "main"]

    def test_poll_checks_normalizes_both_kinds(self, tmp_path, fake_run):
        rollup = {"statusCheckRollup": [
            {"__typename": "CheckRun", "name": "smoke", "status": "completed", "conclusion": "SUCCESS"},
            {"__typename": "StatusContext", "context": "lint", "state": "PENDING"},
            {"__typename": "StatusContext", "context": "deploy", "state": "failure"},
        ]}
        fake_run.return_value = completed(json.dumps(rollup))

        checks = GhPullRequestHost(tmp_path).poll_checks("acme/shop", 42)

        assert checks == [
            CheckRun("smoke", "COMPLETED", "SUCCESS"),
            CheckRun("lint", "IN_PROGRESS", None),
            CheckRun("deploy", "COMPLETED", "FAILURE"),
        ]

    def test_changed_files(self, tmp_path, fake_run):
        fake_run.return_value = completed(json.dumps({"files": [{"path": "a.tsx"}, {"additions": 1}]}))

        assert GhPullRequestHost(tmp_path).changed_files("acme/shop", 42) == ["a.tsx"]

    def test_nonzero_exit(self, tmp_path, fake_run):
        fake_run.return_value = completed(returncode=1, stderr="no upstream\n")

        with pytest.raises(IntegrationError, match="exit 1\nno upstream"):
            GhPullRequestHost(tmp_path).changed_files("acme/shop", 42)

    def test_missing_binary(self, tmp_path, fake_run):
        fake_run.side_effect = FileNotFoundError()

        with pytest.raises(IntegrationError, match="spawn gh ENOENT"):
            GhPullRequestHost(tmp_path).changed_files("acme/shop", 42)

    def test_invalid_json(self, tmp_path, fake_run):
        fake_run.return_value = completed("not json")

        with pytest.raises(IntegrationError, match="invalid JSON"):
            GhPullRequestHost(tmp_path).poll_checks("acme/shop", 42)
