"""
Comment parsing: operator commands and natural-language cues.

Commands start with a control prefix. ``/xena`` is explicit: any verb is
treated as a command, and unknown verbs get a "didn't understand" reply.
``@xena`` and a bare leading ``xena`` are implicit: only known verbs count,
so ordinary sentences that happen to start with the name are not misread.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional


OPERATOR_NAME = "xena"

KNOWN_COMMANDS = frozenset({
    "help",
    "status",
    "stop",
    "continue",
    "restart",
    "evaluate",
    "sandbox",
    "smoke",
    "prefs",
    "preferences",
})

# Commands that only make sense while the run may execute changes
EXECUTION_ONLY_COMMANDS = frozenset({"restart", "sandbox", "smoke"})

PREFS_USAGE = (
    'Usage: `xena prefs show` | `xena prefs reset` | '
    '`xena prefs set {"tone":"direct","update_cadence":"balanced"}`'
)

_STATUS_PING_PREFIX = re.compile(rf"^(?:@?{OPERATOR_NAME})\b", re.IGNORECASE)
_STATUS_PING_WORDS = re.compile(r"\b(status|progress|update)\b", re.IGNORECASE)
_SMOKE_SUBJECT = re.compile(r"\b(smoke|qa)\b", re.IGNORECASE)
_SMOKE_PASS_WORDS = re.compile(r"\b(pass|passed|success)\b", re.IGNORECASE)
_SMOKE_FAIL_WORDS = re.compile(r"\b(fail|failed|error)\b", re.IGNORECASE)
_ADDRESSED = re.compile(rf"^(?:/{OPERATOR_NAME}|@{OPERATOR_NAME}|{OPERATOR_NAME})\b", re.IGNORECASE)
_QUESTION_WORDS = re.compile(
    r"\b(what|why|how|when|where|who|can|could|would|should|please|progress|update)\b",
    re.IGNORECASE,
)
_PR_URL = re.compile(r"https://github\.com/[^\s]+/pull/\d+")
_PR_URL_PARTS = re.compile(r"^https://github\.com/([^/]+/[^/]+)/pull/(\d+)")
_SANDBOX_MARKER = re.compile(rf"<!--{OPERATOR_NAME}:sandbox:(\{{.*?\}})-->", re.DOTALL)


@dataclass(frozen=True)
class Command:
    """A parsed operator command."""

    name: str
    args: str
    explicit: bool

    @property
    def execution_only(self) -> bool:
        return self.name in EXECUTION_ONLY_COMMANDS


@dataclass(frozen=True)
class PrefsAction:
    """Parsed ``prefs`` arguments. ``error`` is set when they are unusable."""

    action: str
    raw_json: Optional[str] = None
    error: Optional[str] = None


def parse_command(body: str) -> Optional[Command]:
    """
    Parse a control-prefixed command from a comment.

    Returns:
        Command, or None when the comment is not a command.
    """
    text = body.strip()
    lower = text.lower()
    explicit = False
    if lower.startswith(f"/{OPERATOR_NAME}"):
        rest = text[len(OPERATOR_NAME) + 1:]
        explicit = True
    elif lower.startswith(f"@{OPERATOR_NAME}"):
        rest = text[len(OPERATOR_NAME) + 1:]
    elif lower.startswith(OPERATOR_NAME):
        rest = text[len(OPERATOR_NAME):]
    else:
        return None

    parts = rest.strip().split(None, 1)
    name = parts[0].lower() if parts else "help"
    args = parts[1].strip() if len(parts) > 1 else ""

    if not explicit and name not in KNOWN_COMMANDS:
        return None
    return Command(name=name, args=args, explicit=explicit)


def parse_prefs_args(args: str) -> PrefsAction:
    trimmed = args.strip()
    if not trimmed or trimmed == "show":
        return PrefsAction("show")
    if trimmed == "reset":
        return PrefsAction("reset")
    if trimmed.split(None, 1)[0] == "set":
        raw = trimmed[3:].strip()
        if not raw:
            return PrefsAction("set", error="Missing JSON payload after `set`.")
        return PrefsAction("set", raw_json=raw)
    return PrefsAction("show", error=PREFS_USAGE)


def load_prefs_payload(raw_json: str) -> Any:
    """Decode a ``prefs set`` payload. Raises ValueError on bad JSON."""
    return json.loads(raw_json)


def is_status_ping(text: str) -> bool:
    return bool(_STATUS_PING_PREFIX.search(text) and _STATUS_PING_WORDS.search(text))


def looks_like_smoke_pass(text: str) -> bool:
    return bool(_SMOKE_SUBJECT.search(text) and _SMOKE_PASS_WORDS.search(text))


def looks_like_smoke_fail(text: str) -> bool:
    return bool(_SMOKE_SUBJECT.search(text) and _SMOKE_FAIL_WORDS.search(text))


def looks_like_question(text: str) -> bool:
    stripped = text.strip()
    if stripped.endswith("?"):
        return True
    return bool(_ADDRESSED.search(stripped) and _QUESTION_WORDS.search(stripped))


def extract_pr_url(text: str) -> Optional[str]:
    match = _PR_URL.search(text)
    return match.group(0) if match else None


def parse_pr_url(pr_url: Optional[str]) -> tuple[Optional[str], Optional[int]]:
    """Return (repo_full_name, pr_number) from a GitHub pull request URL."""
    if not pr_url:
        return None, None
    match = _PR_URL_PARTS.match(pr_url)
    if not match:
        return None, None
    return match.group(1), int(match.group(2))


def build_sandbox_marker(sandbox_id: str, sandbox_url: str, pr_number: int, repo_full_name: str) -> str:
    """Hidden comment marker that lets a restarted run find its sandbox."""
    payload = json.dumps({
        "sandbox_id": sandbox_id,
        "sandbox_url": sandbox_url,
        "pr_number": pr_number,
        "repo_full_name": repo_full_name,
    })
    return f"<!--{OPERATOR_NAME}:sandbox:{payload}-->"


def extract_sandbox_marker(text: str) -> Optional[dict[str, Any]]:
    match = _SANDBOX_MARKER.search(text)
    if not match:
        return None
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    if not (
        isinstance(data.get("sandbox_id"), str)
        and isinstance(data.get("sandbox_url"), str)
        and isinstance(data.get("pr_number"), int)
        and isinstance(data.get("repo_full_name"), str)
    ):
        return None
    return data
