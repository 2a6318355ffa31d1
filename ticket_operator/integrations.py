"""
Concrete collaborators used by the command-line host.

- LocalIssueTracker: file-backed tickets under <state_dir>/issues/
- GhPullRequestHost: git plus the gh CLI for pushes, pull requests and checks
"""

from __future__ import annotations

import json
import re
import subprocess
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import yaml

from ticket_operator.collaborators import CheckRun, IssueComment, IssueInfo, PullRequestInfo
from ticket_operator.errors import OperatorError
from ticket_operator.models import utc_now_iso
from ticket_operator.utils.fs import ensure_dir, read_file

if TYPE_CHECKING:
    from ticket_operator.logger import OperatorLogger


class IntegrationError(OperatorError):
    """Raised when an external collaborator call fails."""
    pass


def _file_stem(issue_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", issue_id)


class LocalIssueTracker:
    """
    Issue tracker backed by files.

    Layout per issue:
    - ``<id>.yaml``: title, description, labels, attachments
    - ``<id>.comments.jsonl``: one comment per line, appended on post
    - ``<id>.<kind>.md``: stored artifacts ("plan", "discovery")
    """

    def __init__(self, root: str | Path, logger: Optional[OperatorLogger] = None) -> None:
        self.root = Path(root)
        self._logger = logger
        self._lock = threading.Lock()

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _issue_path(self, issue_id: str) -> Path:
        return self.root / f"{_file_stem(issue_id)}.yaml"

    def _comments_path(self, issue_id: str) -> Path:
        return self.root / f"{_file_stem(issue_id)}.comments.jsonl"

    def get_issue(self, issue_id: str) -> IssueInfo:
        """
        Read an issue definition.

        Raises:
            IntegrationError: If the file is missing or malformed.
        """
        path = self._issue_path(issue_id)
        if not path.exists():
            raise IntegrationError(f"Issue not found: {issue_id} ({path})")
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise IntegrationError(f"Invalid YAML in issue {issue_id}: {e}")
        if not isinstance(data, dict) or not data.get("title"):
            raise IntegrationError(f"Issue {issue_id} must define a title")
        return IssueInfo(
            issue_id=issue_id,
            title=str(data["title"]),
            description=str(data.get("description") or ""),
            labels=[str(label) for label in data.get("labels") or []],
            attachments=[str(a) for a in data.get("attachments") or []],
        )

    def list_comments(self, issue_id: str) -> list[IssueComment]:
        path = self._comments_path(issue_id)
        if not path.exists():
            return []
        comments = []
        for line in read_file(path).splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                self._log("comment_line_skipped", {"issue_id": issue_id}, level="warn")
                continue
            comments.append(IssueComment(
                comment_id=str(entry.get("comment_id", "")),
                body=entry.get("body", ""),
                author_id=entry.get("author_id"),
            ))
        return comments

    def post_update(self, issue_id: str, intent: str, body: str) -> str:
        comment_id = uuid.uuid4().hex[:12]
        entry = {
            "comment_id": comment_id,
            "author_id": "operator",
            "intent": intent,
            "body": body,
            "created_at": utc_now_iso(),
        }
        path = self._comments_path(issue_id)
        ensure_dir(path.parent)
        with self._lock:
            with open(path, "a") as f:
                f.write(json.dumps(entry) + "\n")
        self._log("update_posted", {"issue_id": issue_id, "intent": intent, "comment_id": comment_id})
        return comment_id

    def find_latest_artifact(self, issue_id: str, kind: str) -> Optional[str]:
        path = self.root / f"{_file_stem(issue_id)}.{kind}.md"
        if not path.exists():
            return None
        content = read_file(path).strip()
        return content or None


class GhPullRequestHost:
    """Pushes branches with git and manages pull requests with the gh CLI."""

    def __init__(
        self,
        repo_path: str | Path,
        base_branch: Optional[str] = None,
        logger: Optional[OperatorLogger] = None,
        timeout: int = 120,
    ) -> None:
        self.repo_path = Path(repo_path)
        self.base_branch = base_branch
        self._logger = logger
        self._timeout = timeout

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            log_data = {"component": "gh_pull_request_host"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _run(self, args: list[str], cwd: Optional[str | Path] = None) -> str:
        try:
            result = subprocess.run(
                args,
                cwd=str(cwd or self.repo_path),
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError:
            raise IntegrationError(f"spawn {args[0]} ENOENT: command not found")
        except subprocess.TimeoutExpired:
            raise IntegrationError(f"Command timed out ({' '.join(args[:3])}) after {self._timeout}s")
        if result.returncode != 0:
            self._log("command_failed", {
                "command": " ".join(args[:3]),
                "stderr": result.stderr[:200],
            }, level="warn")
            raise IntegrationError(
                f"Command failed ({' '.join(args[:3])}): exit {result.returncode}\n{result.stderr.strip()}"
            )
        return result.stdout

    def _gh_json(self, args: list[str]) -> Any:
        output = self._run(["gh", *args])
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise IntegrationError(f"gh returned invalid JSON for {' '.join(args[:3])}: {e}")

    def commit_and_push(self, worktree_path: str, branch_name: str, message: str) -> None:
        self._run(["git", "add", "-A"], cwd=worktree_path)
        status = self._run(["git", "status", "--porcelain"], cwd=worktree_path)
        if status.strip():
            self._run(["git", "commit", "-m", message], cwd=worktree_path)
        self._run(["git", "push", "-u", "origin", branch_name], cwd=worktree_path)
        self._log("branch_pushed", {"branch_name": branch_name})

    def create_pull_request(self, branch_name: str, title: str, body: str) -> PullRequestInfo:
        args = ["gh", "pr", "create", "--head", branch_name, "--title", title, "--body", body]
        if self.base_branch:
            args.extend(["--base", self.base_branch])
        self._run(args)
        data = self._gh_json(["pr", "view", branch_name, "--json", "url,number,headRefName"])
        match = re.match(r"^https://github\.com/([^/]+/[^/]+)/pull/\d+", data.get("url", ""))
        if not match:
            raise IntegrationError(f"Unexpected pull request URL: {data.get('url')}")
        pr = PullRequestInfo(
            url=data["url"],
            number=int(data["number"]),
            repo_full_name=match.group(1),
            head_branch=data.get("headRefName") or branch_name,
        )
        self._log("pull_request_created", {"url": pr.url, "number": pr.number})
        return pr

    def poll_checks(self, repo_full_name: str, pr_number: int) -> list[CheckRun]:
        data = self._gh_json([
            "pr", "view", str(pr_number), "--repo", repo_full_name, "--json", "statusCheckRollup",
        ])
        checks = []
        for item in data.get("statusCheckRollup") or []:
            name = item.get("name") or item.get("context") or ""
            if item.get("__typename") == "StatusContext":
                state = (item.get("state") or "").upper()
                done = state not in ("PENDING", "EXPECTED", "")
                checks.append(CheckRun(name, "COMPLETED" if done else "IN_PROGRESS", state if done else None))
            else:
                checks.append(CheckRun(name, (item.get("status") or "").upper(), item.get("conclusion")))
        return checks

    def changed_files(self, repo_full_name: str, pr_number: int) -> list[str]:
        data = self._gh_json([
            "pr", "view", str(pr_number), "--repo", repo_full_name, "--json", "files",
        ])
        return [f["path"] for f in data.get("files") or [] if f.get("path")]
