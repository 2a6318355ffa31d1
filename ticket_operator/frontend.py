"""
Front-end task heuristic.

Decides whether a pull request needs a validation sandbox by scoring the
ticket's labels, its text and the files the PR touches.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


FRONTEND_WORDS = (
    "frontend",
    "front-end",
    "ui",
    "ux",
    "component",
    "styling",
    "css",
    "responsive",
    "page",
    "screen",
)
BACKEND_WORDS = ("backend", "api", "migration", "db", "database", "worker", "cron")

FRONTEND_EXTENSIONS = (".tsx", ".jsx", ".css", ".scss", ".sass", ".less", ".html", ".vue", ".svelte")
FRONTEND_DIRS = ("/apps/tenant/", "/apps/web/", "/frontend/", "/ui/", "/components/", "/styles/")
BACKEND_DIRS = ("/api/", "/server/", "/backend/", "/migrations/", "/database/")

_FRONTEND_LABEL = re.compile(r"\b(frontend|ui|ux|web|design)\b")
_BACKEND_LABEL = re.compile(r"\b(backend|db|api)\b")


@dataclass(frozen=True)
class FrontendAssessment:
    """Heuristic verdict with the score breakdown kept for the audit trail."""

    frontend: bool
    score: int
    reason: str


def _normalize_path(path: str) -> str:
    normalized = "/" + path.replace("\\", "/").lstrip("/").lower()
    return normalized


def is_frontend_path(path: str) -> bool:
    normalized = _normalize_path(path)
    if normalized.endswith(FRONTEND_EXTENSIONS):
        return True
    return any(d in normalized for d in FRONTEND_DIRS)


def is_backend_path(path: str) -> bool:
    normalized = _normalize_path(path)
    if normalized.endswith(".sql"):
        return True
    return any(d in normalized for d in BACKEND_DIRS)


def assess_frontend_task(
    labels: list[str],
    title: str,
    description: str,
    changed_files: list[str],
    threshold: int = 3,
) -> FrontendAssessment:
    """
    Score a ticket and its changed files for front-end impact.

    Args:
        labels: Ticket labels.
        title: Ticket title.
        description: Ticket description.
        changed_files: Paths touched by the pull request.
        threshold: Minimum score that counts as front-end work.

    Returns:
        FrontendAssessment with the verdict and a readable reason.
    """
    score = 0
    lowered_labels = [label.lower() for label in labels]
    if any(_FRONTEND_LABEL.search(label) for label in lowered_labels):
        score += 3
    if any(_BACKEND_LABEL.search(label) for label in lowered_labels):
        score -= 1

    text = f"{title}\n{description or ''}".lower()
    if any(word in text for word in FRONTEND_WORDS):
        score += 2
    if any(word in text for word in BACKEND_WORDS):
        score -= 1

    frontend_files = sum(1 for f in changed_files if is_frontend_path(f))
    backend_files = sum(1 for f in changed_files if is_backend_path(f))
    if frontend_files > 0:
        score += 3
    if backend_files > frontend_files:
        score -= 2

    reason = (
        f"score={score}; frontend_files={frontend_files}; backend_files={backend_files}; "
        f"labels={','.join(labels) or '(none)'}"
    )
    return FrontendAssessment(frontend=score >= threshold, score=score, reason=reason)
