"""
Strategy catalogs and matrix policies.

This module handles:
- The static catalog of strategy ids, families and error kinds per stage
- Loading the matrix policy YAML document
- Validating every field, with errors naming the offending path
- Immutable StagePolicy objects consumed by the selector and executors
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from ticket_operator.errors import ErrorKind, PolicyError
from ticket_operator.models import StageKind


COMMON_ERROR_KINDS: tuple[ErrorKind, ...] = (
    ErrorKind.CLI_NOT_FOUND,
    ErrorKind.AUTH_OR_PERMISSION,
    ErrorKind.MODEL_UNAVAILABLE,
    ErrorKind.TOKEN_LIMIT,
    ErrorKind.RATE_LIMITED,
    ErrorKind.TIMEOUT,
    ErrorKind.PROVIDER_BAD_REQUEST,
    ErrorKind.NONZERO_EXIT,
)


@dataclass(frozen=True)
class StageCatalog:
    """Closed set of strategies, families and error kinds for one stage."""

    strategy_ids: tuple[str, ...]
    families: tuple[str, ...]
    error_kinds: tuple[ErrorKind, ...]


STAGE_CATALOGS: dict[StageKind, StageCatalog] = {
    StageKind.DISCOVER: StageCatalog(
        strategy_ids=("teddy-default", "teddy-gpt-oss", "codex-exec"),
        families=("teddy", "codex"),
        error_kinds=COMMON_ERROR_KINDS + (ErrorKind.UNKNOWN,),
    ),
    StageKind.PLAN: StageCatalog(
        strategy_ids=("codex-direct", "codex-recursive", "teddy-direct"),
        families=("direct", "recursive", "alt_model"),
        error_kinds=COMMON_ERROR_KINDS + (
            ErrorKind.QUALITY_LOW,
            ErrorKind.INVALID_OUTPUT,
            ErrorKind.UNKNOWN,
        ),
    ),
    StageKind.CODE: StageCatalog(
        strategy_ids=("codex-exec", "codex-exec-patch", "teddy-exec"),
        families=("codex", "teddy"),
        error_kinds=COMMON_ERROR_KINDS + (
            ErrorKind.INVALID_OUTPUT,
            ErrorKind.NO_CHANGES,
            ErrorKind.UNKNOWN,
        ),
    ),
    StageKind.REVIEW: StageCatalog(
        strategy_ids=("codex-review-loop", "codex-review-loop-focused", "teddy-review-loop"),
        families=("codex", "teddy"),
        error_kinds=COMMON_ERROR_KINDS + (
            ErrorKind.INVALID_OUTPUT,
            ErrorKind.P0_P1_UNRESOLVED,
            ErrorKind.UNKNOWN,
        ),
    ),
    StageKind.COMMUNICATION: StageCatalog(
        strategy_ids=("email-semantic", "email-attachment-aware"),
        families=("semantic", "attachment"),
        error_kinds=COMMON_ERROR_KINDS + (
            ErrorKind.INVALID_OUTPUT,
            ErrorKind.LOW_CONFIDENCE,
            ErrorKind.ATTACHMENT_UNAVAILABLE,
            ErrorKind.RESEARCH_FAILED,
            ErrorKind.UNKNOWN,
        ),
    ),
}


@dataclass(frozen=True)
class StrategyDefinition:
    """
    One concrete way to execute a stage.

    Review strategies drive two tools (review and revision); all other
    stages drive a single ``tool_id``.
    """

    id: str
    name: str
    family: str
    tool_id: str = ""
    review_tool_id: str = ""
    revision_tool_id: str = ""

    @property
    def primary_tool_id(self) -> str:
        return self.tool_id or self.review_tool_id

    @property
    def tool_ids(self) -> tuple[str, ...]:
        return tuple(t for t in (self.tool_id, self.review_tool_id, self.revision_tool_id) if t)


@dataclass(frozen=True)
class NonzeroExitRetry:
    """Narrow allowance for one same-strategy retry after a transient exit."""

    enabled: bool = False
    error_kind: ErrorKind = ErrorKind.NONZERO_EXIT


@dataclass(frozen=True)
class StagePolicy:
    """Immutable matrix policy for one stage."""

    stage: StageKind
    strategies: dict[str, StrategyDefinition]
    matrix: dict[ErrorKind, tuple[str, ...]]
    max_attempts_total: int
    max_attempts_per_family: int
    force_family_switch_error_kinds: frozenset[ErrorKind]
    fallback_order: tuple[str, ...]
    fallback_order_on_family_switch: tuple[str, ...]
    nonzero_exit_retry: NonzeroExitRetry = field(default_factory=NonzeroExitRetry)

    # Plan only
    max_recursion_depth: Optional[int] = None
    max_recursive_branches: Optional[int] = None
    quality_pass_threshold: Optional[int] = None

    # Review only
    max_revisions_per_strategy: Optional[int] = None

    def strategy(self, strategy_id: str) -> StrategyDefinition:
        return self.strategies[strategy_id]

    def family_of(self, strategy_id: str) -> str:
        return self.strategies[strategy_id].family

    def candidates_for(self, error_kind: ErrorKind) -> tuple[str, ...]:
        return self.matrix.get(error_kind, ())

    @property
    def tool_ids(self) -> list[str]:
        ids: list[str] = []
        for definition in self.strategies.values():
            for tool_id in definition.tool_ids:
                if tool_id not in ids:
                    ids.append(tool_id)
        return ids


@dataclass(frozen=True)
class MatrixPolicies:
    """All stage policies from one policy document."""

    version: str
    stages: dict[StageKind, StagePolicy]

    def for_stage(self, stage: StageKind) -> StagePolicy:
        return self.stages[stage]


# =============================================================================
# Field validators
# =============================================================================


def _as_mapping(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise PolicyError(f'Invalid matrix policy field "{path}": expected object.')
    return value


def _as_positive_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise PolicyError(f'Invalid matrix policy field "{path}": expected positive integer.')
    return value


def _as_non_empty_string(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise PolicyError(f'Invalid matrix policy field "{path}": expected non-empty string.')
    return value


def _as_enum_value(value: Any, allowed: tuple[str, ...], path: str) -> str:
    if not isinstance(value, str) or value not in allowed:
        raise PolicyError(
            f'Invalid matrix policy field "{path}": expected one of [{", ".join(allowed)}].'
        )
    return value


def _as_enum_list(value: Any, allowed: tuple[str, ...], path: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not value:
        raise PolicyError(f'Invalid matrix policy field "{path}": expected non-empty array.')
    return tuple(_as_enum_value(item, allowed, f"{path}[{i}]") for i, item in enumerate(value))


def _error_kind_values(catalog: StageCatalog) -> tuple[str, ...]:
    return tuple(kind.value for kind in catalog.error_kinds)


def _parse_strategies(
    value: Any,
    stage: StageKind,
    catalog: StageCatalog,
) -> dict[str, StrategyDefinition]:
    path = f"stages.{stage.value}.strategies"
    if not isinstance(value, list):
        raise PolicyError(f'Invalid matrix policy field "{path}": expected array.')

    strategies: dict[str, StrategyDefinition] = {}
    for index, item in enumerate(value):
        item_path = f"{path}[{index}]"
        item = _as_mapping(item, item_path)
        strategy_id = _as_enum_value(item.get("id"), catalog.strategy_ids, f"{item_path}.id")
        if strategy_id in strategies:
            raise PolicyError(f'Duplicate strategy "{strategy_id}" in "{path}".')
        name = _as_non_empty_string(item.get("name"), f"{item_path}.name")
        family = _as_enum_value(item.get("family"), catalog.families, f"{item_path}.family")

        if stage == StageKind.REVIEW:
            definition = StrategyDefinition(
                id=strategy_id,
                name=name,
                family=family,
                review_tool_id=_as_non_empty_string(
                    item.get("review_tool_id"), f"{item_path}.review_tool_id"
                ),
                revision_tool_id=_as_non_empty_string(
                    item.get("revision_tool_id"), f"{item_path}.revision_tool_id"
                ),
            )
        else:
            definition = StrategyDefinition(
                id=strategy_id,
                name=name,
                family=family,
                tool_id=_as_non_empty_string(item.get("tool_id"), f"{item_path}.tool_id"),
            )
        strategies[strategy_id] = definition

    for strategy_id in catalog.strategy_ids:
        if strategy_id not in strategies:
            raise PolicyError(f'Matrix policy missing {stage.value} strategy "{strategy_id}".')
    return strategies


def _parse_matrix(
    value: Any,
    stage: StageKind,
    catalog: StageCatalog,
) -> dict[ErrorKind, tuple[str, ...]]:
    path = f"stages.{stage.value}.matrix"
    value = _as_mapping(value, path)
    matrix: dict[ErrorKind, tuple[str, ...]] = {}
    for kind in catalog.error_kinds:
        entry = value.get(kind.value)
        if not isinstance(entry, list) or not entry:
            raise PolicyError(f'Matrix policy missing "{path}.{kind.value}" strategy list.')
        matrix[kind] = tuple(
            _as_enum_value(strategy_id, catalog.strategy_ids, f"{path}.{kind.value}[{i}]")
            for i, strategy_id in enumerate(entry)
        )
    return matrix


def _parse_nonzero_exit_retry(value: Any, stage: StageKind, catalog: StageCatalog) -> NonzeroExitRetry:
    path = f"stages.{stage.value}.nonzero_exit_retry"
    if value is None:
        return NonzeroExitRetry()
    value = _as_mapping(value, path)
    enabled = value.get("enabled", False)
    if not isinstance(enabled, bool):
        raise PolicyError(f'Invalid matrix policy field "{path}.enabled": expected boolean.')
    error_kind = _as_enum_value(
        value.get("error_kind", ErrorKind.NONZERO_EXIT.value),
        _error_kind_values(catalog),
        f"{path}.error_kind",
    )
    return NonzeroExitRetry(enabled=enabled, error_kind=ErrorKind(error_kind))


def parse_stage_policy(stage: StageKind, data: Any) -> StagePolicy:
    """
    Validate and build the policy for one stage.

    Raises:
        PolicyError: If any field is missing or invalid.
    """
    catalog = STAGE_CATALOGS[stage]
    prefix = f"stages.{stage.value}"
    data = _as_mapping(data, prefix)
    kinds = _error_kind_values(catalog)

    strategies = _parse_strategies(data.get("strategies"), stage, catalog)
    matrix = _parse_matrix(data.get("matrix"), stage, catalog)
    fallback_order = _as_enum_list(
        data.get("fallback_order"), catalog.strategy_ids, f"{prefix}.fallback_order"
    )
    if data.get("fallback_order_on_family_switch") is None:
        fallback_on_switch = fallback_order
    else:
        fallback_on_switch = _as_enum_list(
            data.get("fallback_order_on_family_switch"),
            catalog.strategy_ids,
            f"{prefix}.fallback_order_on_family_switch",
        )

    force_switch = data.get("force_family_switch_error_kinds") or []
    if not isinstance(force_switch, list):
        raise PolicyError(
            f'Invalid matrix policy field "{prefix}.force_family_switch_error_kinds": expected array.'
        )
    force_kinds = frozenset(
        ErrorKind(_as_enum_value(k, kinds, f"{prefix}.force_family_switch_error_kinds[{i}]"))
        for i, k in enumerate(force_switch)
    )

    extras: dict[str, int] = {}
    if stage == StageKind.PLAN:
        for key in ("max_recursion_depth", "max_recursive_branches", "quality_pass_threshold"):
            extras[key] = _as_positive_int(data.get(key), f"{prefix}.{key}")
    if stage == StageKind.REVIEW:
        extras["max_revisions_per_strategy"] = _as_positive_int(
            data.get("max_revisions_per_strategy"), f"{prefix}.max_revisions_per_strategy"
        )

    return StagePolicy(
        stage=stage,
        strategies=strategies,
        matrix=matrix,
        max_attempts_total=_as_positive_int(
            data.get("max_attempts_total"), f"{prefix}.max_attempts_total"
        ),
        max_attempts_per_family=_as_positive_int(
            data.get("max_attempts_per_family"), f"{prefix}.max_attempts_per_family"
        ),
        force_family_switch_error_kinds=force_kinds,
        fallback_order=fallback_order,
        fallback_order_on_family_switch=fallback_on_switch,
        nonzero_exit_retry=_parse_nonzero_exit_retry(data.get("nonzero_exit_retry"), stage, catalog),
        **extras,
    )


def parse_matrix_policies(data: Any) -> MatrixPolicies:
    """Validate a full policy document."""
    data = _as_mapping(data, "$")
    version = _as_non_empty_string(str(data.get("version", "")), "version")
    stages_data = _as_mapping(data.get("stages"), "stages")
    stages = {
        stage: parse_stage_policy(stage, stages_data.get(stage.value))
        for stage in StageKind
    }
    return MatrixPolicies(version=version, stages=stages)


def load_matrix_policies(path: str | Path) -> MatrixPolicies:
    """
    Load and validate matrix policies from a YAML file.

    Raises:
        PolicyError: If the file is missing, not YAML, or invalid.
    """
    path = Path(path)
    if not path.exists():
        raise PolicyError(f"Matrix policy file not found: {path}")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise PolicyError(f"Invalid YAML in matrix policy file: {e}")
    return parse_matrix_policies(data)
