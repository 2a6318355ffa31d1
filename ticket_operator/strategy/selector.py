"""
Strategy selection after a failed attempt.

select_next is a pure function of the attempt history and the stage
policy. It never consults clocks or randomness, so the same history
always yields the same choice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from ticket_operator.errors import ErrorKind
from ticket_operator.models import StrategyAttempt
from ticket_operator.strategy.policy import StagePolicy


@dataclass(frozen=True)
class Selection:
    """Result of a selection: the next strategy id (None when exhausted) and why."""

    next_strategy_id: Optional[str]
    reason: str
    family_switch: bool = False

    @property
    def exhausted(self) -> bool:
        return self.next_strategy_id is None


def unique_preserve_order(values: Iterable[str]) -> list[str]:
    out: list[str] = []
    for value in values:
        if value not in out:
            out.append(value)
    return out


def count_family_attempts(attempts: Sequence[StrategyAttempt], family: str) -> int:
    return sum(1 for attempt in attempts if attempt.family == family)


def count_strategy_attempts(attempts: Sequence[StrategyAttempt], strategy_id: str) -> int:
    return sum(1 for attempt in attempts if attempt.strategy_id == strategy_id)


def format_failures(attempts: Sequence[StrategyAttempt]) -> str:
    """Render the attempt history for humans, one numbered block per attempt."""
    return "\n\n".join(
        f"{index}. strategy={a.strategy_id} family={a.family} tool={a.tool_id} "
        f"error_kind={a.error_kind.value}\n{a.error_message}"
        for index, a in enumerate(attempts, start=1)
    )


def select_next(
    attempts: Sequence[StrategyAttempt],
    current_strategy: str,
    current_family: str,
    last_error_kind: ErrorKind,
    policy: StagePolicy,
) -> Selection:
    """
    Pick the next strategy to try after a failure.

    Order of preference:
    1. The single same-strategy retry after a transient exit, only while the
       family has not hit enough-is-enough.
    2. Matrix candidates for the error kind, same family first, or other
       families first once enough-is-enough triggers.
    3. The fallback order (the family-switch variant when escalating).
    Already attempted strategies are skipped at steps 2 and 3.

    Args:
        attempts: Failed attempts of the current stage run, oldest first.
        current_strategy: Strategy that just failed.
        current_family: Family of that strategy.
        last_error_kind: Classification of the latest failure.
        policy: Stage policy.

    Returns:
        Selection with the next strategy id, or None when nothing remains.
    """
    if len(attempts) >= policy.max_attempts_total:
        return Selection(
            None,
            f"Attempt budget exhausted after {len(attempts)} attempt(s) "
            f"(max {policy.max_attempts_total}).",
        )

    same_family_attempts = count_family_attempts(attempts, current_family)
    enough_is_enough = (
        same_family_attempts >= policy.max_attempts_per_family
        or last_error_kind in policy.force_family_switch_error_kinds
    )

    retry = policy.nonzero_exit_retry
    if (
        retry.enabled
        and not enough_is_enough
        and last_error_kind == retry.error_kind
        and count_strategy_attempts(attempts, current_strategy) < 2
    ):
        return Selection(
            current_strategy,
            f"Retrying {current_strategy} once after {retry.error_kind.value}.",
        )

    candidates = policy.candidates_for(last_error_kind)
    same_family = [s for s in candidates if policy.family_of(s) == current_family]
    other_family = [s for s in candidates if policy.family_of(s) != current_family]
    ordered = other_family + same_family if enough_is_enough else same_family + other_family

    attempted = {attempt.strategy_id for attempt in attempts}
    for strategy_id in ordered:
        if strategy_id not in attempted:
            if enough_is_enough:
                reason = (
                    f"Enough-is-enough triggered for {current_family} after "
                    f"error_kind={last_error_kind.value}; switching family."
                )
            else:
                reason = f"Matrix selected next strategy for error_kind={last_error_kind.value}."
            return Selection(strategy_id, reason, family_switch=enough_is_enough)

    fallback = (
        policy.fallback_order_on_family_switch if enough_is_enough else policy.fallback_order
    )
    for strategy_id in fallback:
        if strategy_id not in attempted:
            return Selection(
                strategy_id,
                f"Matrix had no unused candidate; selected fallback strategy {strategy_id}.",
                family_switch=enough_is_enough,
            )

    return Selection(None, f"No strategy remains after {len(attempts)} attempt(s).")
