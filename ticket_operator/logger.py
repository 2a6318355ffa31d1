"""
Structured JSONL logging for the ticket operator.

One file per issue and UTC day under ``<state_dir>/logs``. Entries inside
a session context carry its session id, so every advance of a run can be
followed on its own.
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from ticket_operator.config import OperatorConfig


class OperatorLogger:
    """
    JSONL event logger scoped to one issue.

    Each entry is a JSON object with:
    - timestamp: ISO timestamp with a ``Z`` suffix
    - level: debug, info, warn or error
    - event_type: Type of event being logged
    - issue_id: Issue identifier
    - data: Additional event data (dict)
    """

    def __init__(self, issue_id: str, config: OperatorConfig) -> None:
        self.issue_id = issue_id
        self.config = config
        self._current_session_id: Optional[str] = None
        self._lock = threading.Lock()

    def _log_path(self) -> Path:
        stem = self.issue_id.replace("/", "_").replace(":", "_")
        date = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.config.logs_path / f"{stem}-{date}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = "info",
    ) -> None:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "issue_id": self.issue_id,
            "data": data or {},
        }
        if self._current_session_id:
            entry["session_id"] = self._current_session_id

        log_path = self._log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with open(log_path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")

    @contextmanager
    def session_context(self, session_id: str) -> Iterator[OperatorLogger]:
        """
        Tag every entry logged inside the block with ``session_id``.

        The orchestrator opens one session per advance of a run.
        """
        old_session_id = self._current_session_id
        self._current_session_id = session_id
        self.log("session_start", {"session_id": session_id}, level="debug")
        try:
            yield self
        finally:
            self.log("session_end", {"session_id": session_id}, level="debug")
            self._current_session_id = old_session_id


# Module-level logger cache, keyed by log directory and issue
_logger_cache: dict[tuple[str, str], OperatorLogger] = {}


def get_logger(issue_id: str, config: OperatorConfig) -> OperatorLogger:
    """Get or create the logger for an issue."""
    key = (str(config.logs_path), issue_id)
    if key not in _logger_cache:
        _logger_cache[key] = OperatorLogger(issue_id, config)
    return _logger_cache[key]
