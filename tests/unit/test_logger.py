"""Tests for the JSONL operator logger."""

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from ticket_operator.config import OperatorConfig
from ticket_operator.logger import OperatorLogger, get_logger


@pytest.fixture
def logger(operator_config):
    return OperatorLogger("OPS-8", operator_config)


def today():
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def entries(config, stem="OPS-8"):
    path = config.logs_path / f"{stem}-{today()}.jsonl"
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class TestOperatorLogger:
    def test_entries_written_per_issue_and_day(self, logger, operator_config):
        logger.log("stage_transition", {"to": "coding"})

        entry = entries(operator_config)[0]
        assert entry["event_type"] == "stage_transition"
        assert entry["level"] == "info"
        assert entry["issue_id"] == "OPS-8"
        assert entry["data"] == {"to": "coding"}
        assert entry["timestamp"].endswith("Z")
        assert "session_id" not in entry

    def test_entries_append_in_order(self, logger, operator_config):
        logger.log("strategy_switch", {"n": 1})
        logger.log("strategy_switch", {"n": 2}, level="warn")
        logger.log("stage_failed", level="error")

        logged = entries(operator_config)
        assert [e["level"] for e in logged] == ["info", "warn", "error"]
        assert logged[2]["data"] == {}

    def test_session_context_tags_entries(self, logger, operator_config):
        with logger.session_context("advance-0001") as log:
            log.log("inside")
        logger.log("outside")

        logged = entries(operator_config)
        assert [e["event_type"] for e in logged] == ["session_start", "inside", "session_end", "outside"]
        assert [e.get("session_id") for e in logged] == ["advance-0001"] * 3 + [None]
        assert logged[0]["level"] == "debug"

    def test_issue_id_is_file_safe(self, operator_config):
        OperatorLogger("acme/shop:7", operator_config).log("x")

        assert (operator_config.logs_path / f"acme_shop_7-{today()}.jsonl").exists()


class TestGetLogger:
    def test_cached_per_issue(self, operator_config):
        first = get_logger("OPS-1", operator_config)

        assert get_logger("OPS-1", operator_config) is first
        assert get_logger("OPS-2", operator_config) is not first

    def test_separate_state_dirs_get_separate_loggers(self, operator_config, tmp_path: Path):
        other = OperatorConfig(repo_root=str(tmp_path / "other"))

        first = get_logger("OPS-1", operator_config)
        second = get_logger("OPS-1", other)

        assert second is not first
        assert second.config is other
