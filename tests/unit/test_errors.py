"""Tests for failure classification."""

import pytest

from ticket_operator.errors import (
    AdapterCoverageError,
    ErrorCategory,
    ErrorClassifier,
    ErrorKind,
    StageExhaustedError,
    error_category,
)
from ticket_operator.models import StageKind


class TestInfrastructureKinds:
    @pytest.mark.parametrize("message,expected", [
        ("spawn codex ENOENT", ErrorKind.CLI_NOT_FOUND),
        ("Error: maximum context length exceeded", ErrorKind.TOKEN_LIMIT),
        ("HTTP 403 Forbidden", ErrorKind.AUTH_OR_PERMISSION),
        ("model not found: gpt-oss", ErrorKind.MODEL_UNAVAILABLE),
        ("Rate limit reached, retry later", ErrorKind.RATE_LIMITED),
        ("Request timed out after 3600s", ErrorKind.TIMEOUT),
        ("Bad Request: unsupported parameter", ErrorKind.PROVIDER_BAD_REQUEST),
        ("Command failed (codex exec): exit 1", ErrorKind.NONZERO_EXIT),
        ("segfault in worker", ErrorKind.UNKNOWN),
    ])
    def test_discovery_classification(self, message, expected):
        assert ErrorClassifier.classify(StageKind.DISCOVER, message) == expected

    def test_discovery_ignores_semantic_tags(self):
        kind = ErrorClassifier.classify(StageKind.DISCOVER, "[no_changes] nothing happened")

        assert kind == ErrorKind.UNKNOWN

    @pytest.mark.parametrize("stamp", ["20260105T114030401234", "20260105T114029403120", "20260105T114030429001"])
    def test_log_path_stamp_is_not_a_status_code(self, stamp):
        message = (
            "Command failed (code-codex-exec): codex (exit 1). "
            f"Log: /var/operator/logs/code-codex-exec.{stamp}.log\n\nTail:\nwrite failed"
        )

        for stage in (StageKind.DISCOVER, StageKind.CODE, StageKind.REVIEW):
            assert ErrorClassifier.classify(stage, message) == ErrorKind.NONZERO_EXIT

    def test_status_code_in_tail_still_counts(self):
        message = (
            "Command failed (code-codex-exec): codex (exit 1). "
            "Log: /var/operator/logs/code-codex-exec.20260105T114030000001.log\n\nTail:\nHTTP 401 from provider"
        )

        assert ErrorClassifier.classify(StageKind.CODE, message) == ErrorKind.AUTH_OR_PERMISSION

    def test_status_codes_inside_longer_numbers_are_ignored(self):
        message = "Command failed (discover): exit 2 while reading request 84012993"

        assert ErrorClassifier.classify(StageKind.DISCOVER, message) == ErrorKind.NONZERO_EXIT


class TestStageSemanticKinds:
    def test_plan_tags(self):
        assert ErrorClassifier.classify(StageKind.PLAN, "[invalid_output] Plan missing Goal") == ErrorKind.INVALID_OUTPUT
        assert ErrorClassifier.classify(StageKind.PLAN, "[quality_low] score 62 < 80") == ErrorKind.QUALITY_LOW

    def test_code_no_changes(self):
        message = "[no_changes] Strategy codex-exec finished without repository changes."

        assert ErrorClassifier.classify(StageKind.CODE, message) == ErrorKind.NO_CHANGES

    def test_review_unresolved_findings_win(self):
        message = "Command failed: review still has [P0]/[P1] findings"

        assert ErrorClassifier.classify(StageKind.REVIEW, message) == ErrorKind.P0_P1_UNRESOLVED

    def test_review_maps_no_changes_to_invalid_output(self):
        assert ErrorClassifier.classify(StageKind.REVIEW, "[no_changes] revision") == ErrorKind.INVALID_OUTPUT

    @pytest.mark.parametrize("message,expected", [
        ("[low_confidence] not sure", ErrorKind.LOW_CONFIDENCE),
        ("too many requests", ErrorKind.RATE_LIMITED),
        ("communication_intent_parse_failed", ErrorKind.INVALID_OUTPUT),
        ("attachment fetch returned 404", ErrorKind.ATTACHMENT_UNAVAILABLE),
        ("research step crashed", ErrorKind.RESEARCH_FAILED),
    ])
    def test_communication_classification(self, message, expected):
        assert ErrorClassifier.classify(StageKind.COMMUNICATION, message) == expected


class TestErrorTypes:
    def test_categories(self):
        assert error_category(ErrorKind.TIMEOUT) == ErrorCategory.TRANSIENT
        assert error_category(ErrorKind.CLI_NOT_FOUND) == ErrorCategory.CAPABILITY
        assert error_category(ErrorKind.NO_CHANGES) == ErrorCategory.SEMANTIC
        assert error_category(ErrorKind.UNKNOWN) == ErrorCategory.UNKNOWN

    def test_exhausted_error_keeps_attempts(self):
        error = StageExhaustedError("out of strategies", stage=StageKind.CODE)

        assert error.stage == StageKind.CODE
        assert error.attempts == []
        assert str(error) == "out of strategies"

    def test_coverage_error_lists_missing_tools(self):
        error = AdapterCoverageError(["tool.b", "tool.a"])

        assert "tool.a" in str(error)
        assert "tool.b" in str(error)
