"""
State persistence for the ticket operator.

This module handles:
- Saving and loading OrchestrationRun state to <state_dir>/runs/<issue>.json
- Atomic writes to prevent corruption
- The idempotency ledger that keeps side effects from repeating when a
  logical step is re-run after a crash
"""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from ticket_operator.errors import StateStoreError
from ticket_operator.models import OrchestrationRun
from ticket_operator.utils.fs import FileSystemError, ensure_dir, read_json, write_json

if TYPE_CHECKING:
    from ticket_operator.config import OperatorConfig
    from ticket_operator.logger import OperatorLogger


T = TypeVar("T")


def _file_stem(issue_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", issue_id)


class RunStore:
    """
    Persistent storage for orchestration runs.

    One JSON file per issue. Writes go through the atomic writer so a
    reader (for example a status query) never sees a half-written run.
    """

    def __init__(
        self,
        config: OperatorConfig,
        logger: Optional[OperatorLogger] = None,
    ) -> None:
        self._config = config
        self._logger = logger
        self._runs_dir = config.runs_path

    def _get_run_path(self, issue_id: str) -> Path:
        return self._runs_dir / f"{_file_stem(issue_id)}.json"

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def exists(self, issue_id: str) -> bool:
        return self._get_run_path(issue_id).exists()

    def load(self, issue_id: str) -> Optional[OrchestrationRun]:
        """
        Load a run from disk.

        Returns:
            The run, or None if no state exists for the issue.

        Raises:
            StateStoreError: If the state file is corrupted.
        """
        path = self._get_run_path(issue_id)
        if not path.exists():
            self._log("run_load_miss", {"issue_id": issue_id}, level="debug")
            return None
        try:
            run = OrchestrationRun.from_dict(read_json(path))
        except (FileSystemError, KeyError, ValueError) as e:
            self._log("run_load_error", {"issue_id": issue_id, "error": str(e)}, level="error")
            raise StateStoreError(f"Corrupted run state for {issue_id}: {e}")
        self._log("run_loaded", {"issue_id": issue_id, "stage": run.stage.value}, level="debug")
        return run

    def save(self, run: OrchestrationRun) -> None:
        """
        Persist a run atomically.

        Raises:
            StateStoreError: If the write fails.
        """
        try:
            write_json(self._get_run_path(run.issue_id), run.to_dict())
        except FileSystemError as e:
            self._log("run_save_error", {"issue_id": run.issue_id, "error": str(e)}, level="error")
            raise StateStoreError(f"Failed to save run {run.issue_id}: {e}")
        self._log("run_saved", {
            "issue_id": run.issue_id,
            "stage": run.stage.value,
            "sequence": run.sequence,
        }, level="debug")

    def list_all(self) -> list[str]:
        """Issue ids with persisted runs, sorted."""
        if not self._runs_dir.exists():
            return []
        issue_ids = []
        for path in sorted(self._runs_dir.glob("*.json")):
            try:
                issue_ids.append(read_json(path)["issue_id"])
            except (FileSystemError, KeyError, TypeError):
                self._log("run_list_skip", {"path": str(path)}, level="warn")
        return issue_ids


class IdempotencyLedger:
    """
    Records completed side effects by key, per issue.

    ``run_once`` executes an effect only when its key has not been recorded
    and records the key (with the effect's result) once the effect returns.
    A crash between the effect and the record may repeat the effect once;
    a completed record never repeats.
    """

    def __init__(
        self,
        ledger_dir: str | Path,
        issue_id: str,
        logger: Optional[OperatorLogger] = None,
    ) -> None:
        self.issue_id = issue_id
        self._path = Path(ledger_dir) / f"{_file_stem(issue_id)}.json"
        self._logger = logger
        self._lock = threading.Lock()
        self._entries: dict[str, Any] = self._read()

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = read_json(self._path)
        except FileSystemError as e:
            raise StateStoreError(f"Corrupted idempotency ledger for {self.issue_id}: {e}")
        return data.get("entries", {}) if isinstance(data, dict) else {}

    def _write(self) -> None:
        ensure_dir(self._path.parent)
        try:
            write_json(self._path, {"issue_id": self.issue_id, "entries": self._entries})
        except FileSystemError as e:
            raise StateStoreError(f"Failed to write idempotency ledger for {self.issue_id}: {e}")

    def seen(self, key: str) -> bool:
        return key in self._entries

    def result(self, key: str) -> Any:
        return self._entries.get(key)

    def record(self, key: str, result: Any = None) -> None:
        with self._lock:
            # Round-trip through JSON so stored results match what a reload returns
            self._entries[key] = json.loads(json.dumps(result, default=str))
            self._write()

    def run_once(self, key: str, fn: Callable[[], T]) -> T:
        """
        Run ``fn`` unless ``key`` was already recorded.

        Returns:
            The fresh result, or the stored result of the earlier run.
        """
        if self.seen(key):
            if self._logger:
                self._logger.log("side_effect_skipped", {"key": key}, level="debug")
            return self._entries[key]
        result = fn()
        self.record(key, result)
        return result

    def keys(self) -> list[str]:
        return list(self._entries)
