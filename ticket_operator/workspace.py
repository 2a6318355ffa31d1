"""Git worktree management for coding runs."""

from __future__ import annotations

import re
import secrets
import subprocess
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from ticket_operator.errors import OperatorError
from ticket_operator.utils.fs import ensure_dir

if TYPE_CHECKING:
    from ticket_operator.logger import OperatorLogger


class WorkspaceError(OperatorError):
    """Raised when a git command fails."""
    pass


@dataclass
class WorktreeInfo:
    worktree_path: str
    branch_name: str


def safe_id(value: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", value.lower())


class GitWorkspace:
    """
    Creates one git worktree per run and inspects its status.

    Worktrees live under ``worktrees_root`` and branch names follow
    ``xena/<issue>-<timestamp>``.
    """

    def __init__(
        self,
        repo_path: str | Path,
        worktrees_root: str | Path,
        logger: Optional[OperatorLogger] = None,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.worktrees_root = Path(worktrees_root)
        self._logger = logger

    def _git(self, args: list[str], cwd: Optional[str | Path] = None) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=str(cwd or self.repo_path),
                capture_output=True,
                text=True,
                timeout=120,
            )
        except FileNotFoundError:
            raise WorkspaceError("spawn git ENOENT: command not found")
        except subprocess.TimeoutExpired:
            raise WorkspaceError(f"git {' '.join(args)} timed out")
        if result.returncode != 0:
            raise WorkspaceError(
                f"Command failed (git {args[0]}): exit {result.returncode}\n{result.stderr.strip()}"
            )
        return result.stdout

    def prepare(self, issue_id: str, existing: Optional[WorktreeInfo] = None) -> WorktreeInfo:
        """
        Return a worktree for the issue, creating it when needed.

        An existing worktree that is still on disk is reused, so a resumed
        run keeps working on the same branch.
        """
        if existing and Path(existing.worktree_path).exists():
            return existing

        ensure_dir(self.worktrees_root)
        base = safe_id(issue_id)
        suffix = ""
        if (self.worktrees_root / base).exists():
            # Earlier cycle of the same issue; its branch may share the stamp
            suffix = f"-{secrets.token_hex(3)}"
        worktree_path = self.worktrees_root / f"{base}{suffix}"

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        branch_name = f"xena/{base}-{stamp}{suffix}"
        self._git(["worktree", "add", "-b", branch_name, str(worktree_path)])
        if self._logger:
            self._logger.log("worktree_created", {
                "worktree_path": str(worktree_path),
                "branch_name": branch_name,
            })
        return WorktreeInfo(worktree_path=str(worktree_path), branch_name=branch_name)

    def status_porcelain(self, worktree_path: str) -> str:
        return self._git(["status", "--porcelain"], cwd=worktree_path)

    def has_changes(self, worktree_path: str) -> bool:
        return bool(self.status_porcelain(worktree_path).strip())
