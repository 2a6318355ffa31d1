"""Tests for git worktree management."""

import subprocess
from unittest.mock import MagicMock

import pytest

from ticket_operator.workspace import GitWorkspace, WorkspaceError, WorktreeInfo, safe_id


@pytest.fixture
def fake_run(monkeypatch):
    run = MagicMock(return_value=subprocess.CompletedProcess([], 0, stdout="", stderr=""))
    monkeypatch.setattr(subprocess, "run", run)
    return run


@pytest.fixture
def workspace(tmp_path):
    return GitWorkspace(tmp_path / "repo", tmp_path / "worktrees")


class TestGitWorkspace:
    def test_safe_id(self):
        assert safe_id("ACME/Shop#7") == "acme-shop-7"

    def test_prepare_creates_worktree_and_branch(self, workspace, fake_run, tmp_path):
        info = workspace.prepare("OPS-8")

        assert info.worktree_path == str(tmp_path / "worktrees" / "ops-8")
        assert info.branch_name.startswith("xena/ops-8-")
        args = fake_run.call_args.args[0]
        assert args[:4] == ["git", "worktree", "add", "-b"]
        assert args[4] == info.branch_name

    def test_existing_directory_suffixes_path_and_branch(self, workspace, fake_run, tmp_path):
        (tmp_path / "worktrees" / "ops-8").mkdir(parents=True)

        info = workspace.prepare("OPS-8")

        assert info.worktree_path != str(tmp_path / "worktrees" / "ops-8")
        assert info.worktree_path.startswith(str(tmp_path / "worktrees" / "ops-8-"))
        suffix = info.worktree_path.rsplit("-", 1)[1]
        assert info.branch_name.endswith(f"-{suffix}")

    def test_existing_worktree_is_reused(self, workspace, fake_run, tmp_path):
        existing = WorktreeInfo(str(tmp_path), "xena/ops-8-20260101T000000")

        assert workspace.prepare("OPS-8", existing) is existing
        fake_run.assert_not_called()

    def test_has_changes(self, workspace, fake_run):
        fake_run.return_value = subprocess.CompletedProcess([], 0, stdout=" M a.py\n", stderr="")

        assert workspace.has_changes("/wt") is True
        assert fake_run.call_args.kwargs["cwd"] == "/wt"

    def test_git_failure(self, workspace, fake_run):
        fake_run.return_value = subprocess.CompletedProcess([], 128, stdout="", stderr="fatal: bad ref\n")

        with pytest.raises(WorkspaceError, match="exit 128"):
            workspace.prepare("OPS-8")

    def test_git_missing(self, workspace, fake_run):
        fake_run.side_effect = FileNotFoundError()

        with pytest.raises(WorkspaceError, match="ENOENT"):
            workspace.has_changes("/wt")
