"""
Learning registry for successful recovery paths.

Every time a stage succeeds after at least one failed strategy, the
orchestrator hands the stage's learning record to this registry. Records
for the same stage are folded into one entry whose quality metadata
(running averages, recency, promotion state) decides whether the learned
path is trusted, still observational, or disabled.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from ticket_operator.models import LearningRecord, StageKind
from ticket_operator.utils.fs import FileSystemError, read_json, write_json

if TYPE_CHECKING:
    from ticket_operator.logger import OperatorLogger


ENTRY_VERSION = "1.0.0"

PROMOTION_MIN_SUCCESS_COUNT = 2
PROMOTION_MIN_QUALITY_SCORE = 70
PROMOTION_MIN_CONFIDENCE_LIFT = 0.35
DISABLE_BELOW_QUALITY_SCORE = 45

# (step per extra attempt, floor) for the attempt-based quality signal
_QUALITY_SIGNAL_SHAPE: dict[StageKind, tuple[int, int]] = {
    StageKind.DISCOVER: (20, 35),
    StageKind.CODE: (25, 30),
    StageKind.REVIEW: (20, 25),
    StageKind.COMMUNICATION: (20, 35),
}


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def recency_score(previous_iso: Optional[str], now: datetime) -> float:
    """100 for fresh learnings, losing 3 points per day, floored at 10."""
    previous = _parse_iso(previous_iso)
    if previous is None:
        return 100.0
    days = max(0.0, (now - previous).total_seconds() / 86400)
    return round(_clamp(100 - days * 3, 10, 100), 2)


def quality_signal(record: LearningRecord) -> float:
    """How clean the recovery was, 0-100."""
    if record.stage == StageKind.PLAN:
        return _clamp(float(record.details.get("quality_score", 0)), 0, 100)
    step, floor = _QUALITY_SIGNAL_SHAPE[record.stage]
    value = 100 - max(0, record.attempts - 1) * step
    if record.stage == StageKind.REVIEW:
        value -= int(record.details.get("revision_attempts", 0)) * 10
    return _clamp(value, floor, 100)


def confidence_lift(record: LearningRecord) -> float:
    """Share of attempts that each exposed a distinct failure kind."""
    triggers = len(set(record.trigger_error_kinds))
    denominator = record.attempts + 1
    if record.stage == StageKind.REVIEW:
        denominator += int(record.details.get("revision_attempts", 0))
    lift = (triggers + 1) / denominator
    if record.stage == StageKind.PLAN:
        lift *= _clamp(float(record.details.get("quality_score", 0)), 0, 100) / 100
    return _clamp(lift, 0, 1)


def derive_promotion(success_count: int, quality: float, avg_lift: float) -> tuple[str, str]:
    """
    Decide the promotion state of a learned entry.

    Returns:
        Tuple of (state, reason), state being promoted, observational or disabled.
    """
    if quality < DISABLE_BELOW_QUALITY_SCORE:
        return "disabled", (
            f"quality_score_below_disable_threshold({quality} < {DISABLE_BELOW_QUALITY_SCORE})"
        )
    if (
        success_count >= PROMOTION_MIN_SUCCESS_COUNT
        and quality >= PROMOTION_MIN_QUALITY_SCORE
        and avg_lift >= PROMOTION_MIN_CONFIDENCE_LIFT
    ):
        return "promoted", (
            f"promotion_gate_passed(success_count={success_count}, "
            f"quality_score={quality}, confidence_lift={round(avg_lift, 3)})"
        )
    return "observational", (
        f"promotion_gate_pending(success_count={success_count}/{PROMOTION_MIN_SUCCESS_COUNT}, "
        f"quality_score={quality}/{PROMOTION_MIN_QUALITY_SCORE}, "
        f"confidence_lift={round(avg_lift, 3)}/{PROMOTION_MIN_CONFIDENCE_LIFT})"
    )


def build_quality_metadata(
    previous: Optional[dict[str, Any]],
    now: datetime,
    attempts: int,
    signal: float,
    lift: float,
) -> dict[str, Any]:
    """Fold one observation into the running quality metadata of an entry."""
    previous = previous or {}
    now_iso = now.isoformat().replace("+00:00", "Z")
    prev_count = int(previous.get("observation_count", 0))
    count = prev_count + 1
    successes = int(previous.get("success_count", 0)) + 1
    success_rate = round(successes / count, 3)

    def running(key: str, value: float) -> float:
        return round((float(previous.get(key, 0)) * prev_count + value) / count, 3)

    avg_attempts = running("avg_attempts", attempts)
    avg_signal = running("avg_quality_signal", signal)
    avg_lift = running("avg_confidence_lift", lift)
    recency = recency_score(previous.get("last_learned_at"), now)
    quality = round(
        success_rate * 15 + recency * 0.15 + avg_lift * 100 * 0.35 + avg_signal * 0.35, 2
    )
    state, reason = derive_promotion(successes, quality, avg_lift)

    promoted_at = None
    if state == "promoted":
        promoted_at = previous.get("promoted_at") if previous.get("promoted") else now_iso
        promoted_at = promoted_at or now_iso

    return {
        "first_learned_at": previous.get("first_learned_at") or now_iso,
        "last_learned_at": now_iso,
        "observation_count": count,
        "success_count": successes,
        "success_rate": success_rate,
        "avg_attempts": avg_attempts,
        "avg_quality_signal": avg_signal,
        "avg_confidence_lift": avg_lift,
        "recency_score": recency,
        "quality_score": quality,
        "promoted": state == "promoted",
        "promotion_state": state,
        "promoted_at": promoted_at,
        "promotion_reason": reason,
    }


def _unique(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        value = value.strip()
        if value and value not in seen:
            seen.append(value)
    return seen


class LearningRegistry:
    """
    JSON-backed registry of learned strategy entries.

    File layout: ``{"entries": [{id, version, stage, enabled, metadata}, ...]}``.
    Entries are upserted by (id, version) and the file is rewritten
    atomically on every update.
    """

    def __init__(
        self,
        path: str | Path,
        logger: Optional[OperatorLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.path = Path(path)
        self._logger = logger
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        if self._logger:
            self._logger.log(event_type, data, level=level)

    @staticmethod
    def entry_id(stage: StageKind) -> str:
        return f"tool.{stage.value}.learned.matrix"

    def load(self) -> list[dict[str, Any]]:
        """Read all entries. A missing or unreadable file reads as empty."""
        if not self.path.exists():
            return []
        try:
            data = read_json(self.path)
        except FileSystemError as e:
            self._log("learning_registry_unreadable", {"error": str(e)}, level="warn")
            return []
        entries = data.get("entries") if isinstance(data, dict) else None
        return [e for e in entries or [] if isinstance(e, dict)]

    def get(self, stage: StageKind) -> Optional[dict[str, Any]]:
        entry_id = self.entry_id(stage)
        for entry in self.load():
            if entry.get("id") == entry_id and entry.get("version") == ENTRY_VERSION:
                return entry
        return None

    def record_learning(self, issue_id: str, record: LearningRecord) -> dict[str, Any]:
        """
        Fold a learning record into its stage entry.

        Args:
            issue_id: Ticket the recovery happened on.
            record: Learning record emitted by a stage executor.

        Returns:
            The upserted entry.
        """
        with self._lock:
            entries = self.load()
            entry_id = self.entry_id(record.stage)
            index = next(
                (
                    i for i, e in enumerate(entries)
                    if e.get("id") == entry_id and e.get("version") == ENTRY_VERSION
                ),
                None,
            )
            previous = entries[index].get("metadata") if index is not None else None
            quality = build_quality_metadata(
                previous,
                self._clock(),
                record.attempts,
                quality_signal(record),
                confidence_lift(record),
            )
            entry = {
                "id": entry_id,
                "version": ENTRY_VERSION,
                "stage": record.stage.value,
                "enabled": quality["promotion_state"] != "disabled",
                "metadata": {
                    "selected_strategy": record.selected_strategy,
                    "selected_tool_id": record.selected_tool_id,
                    "trigger_error_kinds": _unique(record.trigger_error_kinds),
                    "strategy_path": _unique(record.strategy_path),
                    "attempts": record.attempts,
                    "details": dict(record.details),
                    "last_issue_id": issue_id,
                    **quality,
                },
            }
            if index is None:
                entries.append(entry)
            else:
                entries[index] = entry
            write_json(self.path, {"entries": entries})

        self._log("learning_recorded", {
            "issue_id": issue_id,
            "stage": record.stage.value,
            "selected_strategy": record.selected_strategy,
            "promotion_state": quality["promotion_state"],
            "quality_score": quality["quality_score"],
        })
        return entry
