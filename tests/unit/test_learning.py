"""Tests for the learning registry and its quality scoring."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from ticket_operator.learning import (
    LearningRegistry,
    confidence_lift,
    derive_promotion,
    quality_signal,
    recency_score,
)
from ticket_operator.models import LearningRecord, StageKind


NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def record(stage=StageKind.DISCOVER, attempts=2, triggers=("cli_not_found",), **details):
    return LearningRecord(
        stage=stage,
        selected_strategy="codex-exec",
        selected_tool_id="tool.discovery.codex.exec",
        trigger_error_kinds=list(triggers),
        strategy_path=["teddy-default", "codex-exec"],
        attempts=attempts,
        details=details,
    )


@pytest.fixture
def registry(tmp_path):
    return LearningRegistry(tmp_path / "learning" / "registry.json", clock=lambda: NOW)


class TestScoring:
    def test_plan_signal_is_plan_quality(self):
        assert quality_signal(record(StageKind.PLAN, quality_score=92)) == 92

    def test_signal_drops_per_extra_attempt(self):
        assert quality_signal(record(StageKind.CODE, attempts=3)) == 50
        assert quality_signal(record(StageKind.CODE, attempts=10)) == 30

    def test_review_signal_counts_revisions(self):
        assert quality_signal(record(StageKind.REVIEW, attempts=2, revision_attempts=3)) == 50

    def test_confidence_lift(self):
        assert confidence_lift(record(attempts=2)) == pytest.approx(2 / 3)
        assert confidence_lift(record(StageKind.REVIEW, attempts=2, revision_attempts=1)) == 0.5
        assert confidence_lift(record(StageKind.PLAN, attempts=1, quality_score=50)) == 0.5

    def test_recency_decays_to_floor(self):
        assert recency_score(None, NOW) == 100.0
        assert recency_score((NOW - timedelta(days=10)).isoformat(), NOW) == 70.0
        assert recency_score((NOW - timedelta(days=100)).isoformat(), NOW) == 10.0

    @pytest.mark.parametrize("successes,quality,lift,state", [
        (2, 70, 0.35, "promoted"),
        (1, 90, 0.9, "observational"),
        (3, 80, 0.2, "observational"),
        (5, 44.9, 1.0, "disabled"),
    ])
    def test_derive_promotion(self, successes, quality, lift, state):
        assert derive_promotion(successes, quality, lift)[0] == state


class TestLearningRegistry:
    def test_first_record_is_observational(self, registry):
        entry = registry.record_learning("OPS-1", record())

        metadata = entry["metadata"]
        assert entry["id"] == "tool.discover.learned.matrix"
        assert entry["enabled"] is True
        assert metadata["promotion_state"] == "observational"
        assert metadata["observation_count"] == 1
        assert metadata["avg_quality_signal"] == 80
        assert metadata["last_issue_id"] == "OPS-1"
        assert metadata["first_learned_at"] == "2026-03-01T09:30:00Z"

    def test_second_success_promotes(self, registry):
        registry.record_learning("OPS-1", record())
        entry = registry.record_learning("OPS-2", record())

        metadata = entry["metadata"]
        assert metadata["promotion_state"] == "promoted"
        assert metadata["promoted"] is True
        assert metadata["promoted_at"] == "2026-03-01T09:30:00Z"
        assert metadata["success_count"] == 2
        assert len(registry.load()) == 1

    def test_low_quality_plan_is_disabled(self, registry):
        entry = registry.record_learning("OPS-1", record(StageKind.PLAN, quality_score=0))

        assert entry["enabled"] is False
        assert entry["metadata"]["promotion_state"] == "disabled"

    def test_stages_get_separate_entries(self, registry):
        registry.record_learning("OPS-1", record())
        registry.record_learning("OPS-1", record(StageKind.CODE))

        assert registry.get(StageKind.CODE)["stage"] == "code"
        assert registry.get(StageKind.REVIEW) is None
        assert len(registry.load()) == 2

    def test_file_written_as_json(self, registry):
        registry.record_learning("OPS-1", record(triggers=("cli_not_found", "cli_not_found")))

        data = json.loads(registry.path.read_text())
        assert data["entries"][0]["metadata"]["trigger_error_kinds"] == ["cli_not_found"]

    def test_unreadable_file_reads_as_empty(self, registry):
        registry.path.parent.mkdir(parents=True)
        registry.path.write_text("{broken")

        assert registry.load() == []
