"""Strategy matrix: catalogs, policies and next-strategy selection."""

from ticket_operator.strategy.policy import (
    STAGE_CATALOGS,
    MatrixPolicies,
    NonzeroExitRetry,
    StageCatalog,
    StagePolicy,
    StrategyDefinition,
    load_matrix_policies,
    parse_matrix_policies,
    parse_stage_policy,
)
from ticket_operator.strategy.selector import (
    Selection,
    count_family_attempts,
    count_strategy_attempts,
    format_failures,
    select_next,
    unique_preserve_order,
)

__all__ = [
    "STAGE_CATALOGS",
    "MatrixPolicies",
    "NonzeroExitRetry",
    "Selection",
    "StageCatalog",
    "StagePolicy",
    "StrategyDefinition",
    "count_family_attempts",
    "count_strategy_attempts",
    "format_failures",
    "load_matrix_policies",
    "parse_matrix_policies",
    "parse_stage_policy",
    "select_next",
    "unique_preserve_order",
]
