"""
Error classification for strategy failures.

This module provides:
- ErrorKind enum of normalized failure kinds used to index strategy matrices
- ErrorClassifier with ordered pattern tables, one per stage
- Exception classes raised by the policy loader, stage executors and store
"""

from __future__ import annotations

import re
from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ticket_operator.models import StageKind, StrategyAttempt


class ErrorKind(str, Enum):
    """
    Normalized classification of a strategy failure.

    Values match the keys used in the matrix policy file.
    """

    CLI_NOT_FOUND = "cli_not_found"
    AUTH_OR_PERMISSION = "auth_or_permission"
    MODEL_UNAVAILABLE = "model_unavailable"
    TOKEN_LIMIT = "token_limit"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    PROVIDER_BAD_REQUEST = "provider_bad_request"
    NONZERO_EXIT = "nonzero_exit"

    # Stage-specific semantic failures
    QUALITY_LOW = "quality_low"
    INVALID_OUTPUT = "invalid_output"
    NO_CHANGES = "no_changes"
    P0_P1_UNRESOLVED = "p0_p1_unresolved"
    LOW_CONFIDENCE = "low_confidence"
    ATTACHMENT_UNAVAILABLE = "attachment_unavailable"
    RESEARCH_FAILED = "research_failed"

    UNKNOWN = "unknown"


class ErrorCategory(str, Enum):
    """Broad handling category for an error kind."""

    TRANSIENT = "transient"
    CAPABILITY = "capability"
    SEMANTIC = "semantic"
    UNKNOWN = "unknown"


_CATEGORY_BY_KIND = {
    ErrorKind.RATE_LIMITED: ErrorCategory.TRANSIENT,
    ErrorKind.TIMEOUT: ErrorCategory.TRANSIENT,
    ErrorKind.NONZERO_EXIT: ErrorCategory.TRANSIENT,
    ErrorKind.CLI_NOT_FOUND: ErrorCategory.CAPABILITY,
    ErrorKind.MODEL_UNAVAILABLE: ErrorCategory.CAPABILITY,
    ErrorKind.AUTH_OR_PERMISSION: ErrorCategory.CAPABILITY,
    ErrorKind.PROVIDER_BAD_REQUEST: ErrorCategory.CAPABILITY,
    ErrorKind.TOKEN_LIMIT: ErrorCategory.CAPABILITY,
    ErrorKind.INVALID_OUTPUT: ErrorCategory.SEMANTIC,
    ErrorKind.NO_CHANGES: ErrorCategory.SEMANTIC,
    ErrorKind.P0_P1_UNRESOLVED: ErrorCategory.SEMANTIC,
    ErrorKind.QUALITY_LOW: ErrorCategory.SEMANTIC,
    ErrorKind.LOW_CONFIDENCE: ErrorCategory.SEMANTIC,
    ErrorKind.ATTACHMENT_UNAVAILABLE: ErrorCategory.SEMANTIC,
    ErrorKind.RESEARCH_FAILED: ErrorCategory.SEMANTIC,
}


def error_category(kind: ErrorKind) -> ErrorCategory:
    """Return the handling category for an error kind."""
    return _CATEGORY_BY_KIND.get(kind, ErrorCategory.UNKNOWN)


class OperatorError(Exception):
    """Base exception for the ticket operator."""
    pass


class PolicyError(OperatorError):
    """Raised when a matrix policy file is invalid."""
    pass


class AdapterCoverageError(OperatorError):
    """Raised at startup when a policy references tools with no adapter."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "No adapter registered for tool id(s): " + ", ".join(missing)
        )
        self.missing = missing


class StageFailedError(OperatorError):
    """
    Raised by a strategy body when it fails its stage contract.

    The message carries a bracketed tag such as ``[no_changes]`` so the
    stage classifier can recognize it.
    """
    pass


class StageExhaustedError(OperatorError):
    """Raised when a stage runs out of strategies or attempts."""

    def __init__(
        self,
        message: str,
        stage: Optional[StageKind] = None,
        attempts: Optional[list[StrategyAttempt]] = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.attempts = list(attempts or [])


class StateStoreError(OperatorError):
    """Raised when run state cannot be loaded or saved."""
    pass


# A rule is (kind, patterns); the first rule with any matching pattern wins.
Rule = tuple[ErrorKind, list[str]]


class ErrorClassifier:
    """
    Classifies strategy failure messages into error kinds.

    Matching is case-insensitive and ordered: the most specific
    signatures are checked before the generic ones.
    """

    CLI_NOT_FOUND_PATTERNS = [
        r"enoent",
        r"(?=.*spawn)(?=.*not found)",
        r"no such file or directory",
    ]

    TOKEN_LIMIT_PATTERNS = [
        r"token limit",
        r"context length",
        r"maximum context",
    ]

    AUTH_PATTERNS = [
        r"\b401\b",
        r"\b403\b",
        r"unauthorized",
        r"permission denied",
        r"forbidden",
    ]

    MODEL_UNAVAILABLE_PATTERNS = [
        r"model not found",
        r"no such model",
        r"model unavailable",
        r"unavailable model",
    ]

    RATE_LIMIT_PATTERNS = [
        r"rate limit",
        r"\b429\b",
        r"overloaded",
    ]

    TIMEOUT_PATTERNS = [
        r"timed out",
        r"etimedout",
        r"timeout",
    ]

    BAD_REQUEST_PATTERNS = [r"bad request"]

    NONZERO_EXIT_PATTERNS = [r"command failed"]

    INVALID_OUTPUT_PATTERNS = [
        r"\[invalid_output\]",
        r"invalid output",
        r"failed to parse",
    ]

    NO_CHANGES_PATTERNS = [
        r"\[no_changes\]",
        r"no changes",
    ]

    QUALITY_LOW_PATTERNS = [r"\[quality_low\]"]

    REVIEW_UNRESOLVED_PATTERNS = [
        r"\[review_unresolved\]",
        r"review unresolved",
        r"still has \[p0\]/\[p1\]",
    ]

    # Log file references carry timestamps that can look like status codes
    LOG_REFERENCE_PATTERN = re.compile(r"\blog: \S+\.log\b", re.IGNORECASE)

    INFRA_RULES: list[Rule] = [
        (ErrorKind.CLI_NOT_FOUND, CLI_NOT_FOUND_PATTERNS),
        (ErrorKind.TOKEN_LIMIT, TOKEN_LIMIT_PATTERNS),
        (ErrorKind.AUTH_OR_PERMISSION, AUTH_PATTERNS),
        (ErrorKind.MODEL_UNAVAILABLE, MODEL_UNAVAILABLE_PATTERNS),
        (ErrorKind.RATE_LIMITED, RATE_LIMIT_PATTERNS),
        (ErrorKind.TIMEOUT, TIMEOUT_PATTERNS),
        (ErrorKind.PROVIDER_BAD_REQUEST, BAD_REQUEST_PATTERNS),
        (ErrorKind.NONZERO_EXIT, NONZERO_EXIT_PATTERNS),
    ]

    COMMUNICATION_RULES: list[Rule] = [
        (ErrorKind.LOW_CONFIDENCE, [r"\[low_confidence\]"]),
        (ErrorKind.ATTACHMENT_UNAVAILABLE, [r"\[attachment_unavailable\]"]),
        (ErrorKind.RATE_LIMITED, [r"rate limit", r"too many requests"]),
        (ErrorKind.TIMEOUT, [r"timeout", r"timed out"]),
        (ErrorKind.AUTH_OR_PERMISSION, [r"unauthorized", r"forbidden", r"permission"]),
        (ErrorKind.MODEL_UNAVAILABLE, [r"(?=.*model)(?=.*unavailable)"]),
        (ErrorKind.TOKEN_LIMIT, [r"(?=.*token)(?=.*limit)"]),
        (ErrorKind.INVALID_OUTPUT, [r"communication_intent_parse_failed", r"json", r"parse"]),
        (ErrorKind.PROVIDER_BAD_REQUEST, [r"bad request", r"status 400"]),
        (ErrorKind.ATTACHMENT_UNAVAILABLE, [r"attachment"]),
        (ErrorKind.RESEARCH_FAILED, [r"research"]),
    ]

    @classmethod
    def _matches_any(cls, text: str, patterns: list[str]) -> bool:
        """Check if text matches any of the given patterns."""
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE | re.DOTALL):
                return True
        return False

    @classmethod
    def _apply(cls, message: str, rules: list[Rule]) -> ErrorKind:
        for kind, patterns in rules:
            if cls._matches_any(message, patterns):
                return kind
        return ErrorKind.UNKNOWN

    @classmethod
    def classify_discovery_error(cls, message: str) -> ErrorKind:
        """Classify a discovery failure. Only infrastructure kinds apply."""
        return cls._apply(message, cls.INFRA_RULES)

    @classmethod
    def classify_plan_error(cls, message: str) -> ErrorKind:
        """Classify a planning failure."""
        rules = [
            (ErrorKind.INVALID_OUTPUT, cls.INVALID_OUTPUT_PATTERNS),
            (ErrorKind.QUALITY_LOW, cls.QUALITY_LOW_PATTERNS),
        ] + cls.INFRA_RULES
        return cls._apply(message, rules)

    @classmethod
    def classify_code_error(cls, message: str) -> ErrorKind:
        """Classify a coding failure."""
        rules = [
            (ErrorKind.INVALID_OUTPUT, cls.INVALID_OUTPUT_PATTERNS),
            (ErrorKind.NO_CHANGES, cls.NO_CHANGES_PATTERNS),
        ] + cls.INFRA_RULES
        return cls._apply(message, rules)

    @classmethod
    def classify_review_error(cls, message: str) -> ErrorKind:
        """
        Classify a review failure.

        Unresolved blocking findings take priority. A "no changes" signal
        is not meaningful for review and is treated as invalid output.
        """
        if cls._matches_any(message, cls.REVIEW_UNRESOLVED_PATTERNS):
            return ErrorKind.P0_P1_UNRESOLVED
        kind = cls.classify_code_error(message)
        if kind == ErrorKind.NO_CHANGES:
            return ErrorKind.INVALID_OUTPUT
        return kind

    @classmethod
    def classify_communication_error(cls, message: str) -> ErrorKind:
        """Classify a failure while composing a reply."""
        return cls._apply(message, cls.COMMUNICATION_RULES)

    @classmethod
    def classify(cls, stage: StageKind, message: str) -> ErrorKind:
        """Dispatch to the classifier for a stage."""
        from ticket_operator.models import StageKind

        message = cls.LOG_REFERENCE_PATTERN.sub("", message)

        dispatch = {
            StageKind.DISCOVER: cls.classify_discovery_error,
            StageKind.PLAN: cls.classify_plan_error,
            StageKind.CODE: cls.classify_code_error,
            StageKind.REVIEW: cls.classify_review_error,
            StageKind.COMMUNICATION: cls.classify_communication_error,
        }
        return dispatch[stage](message)


classify_discovery_error = ErrorClassifier.classify_discovery_error
classify_plan_error = ErrorClassifier.classify_plan_error
classify_code_error = ErrorClassifier.classify_code_error
classify_review_error = ErrorClassifier.classify_review_error
classify_communication_error = ErrorClassifier.classify_communication_error
classify_stage_error = ErrorClassifier.classify
