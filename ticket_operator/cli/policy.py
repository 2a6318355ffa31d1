"""Strategy matrix commands.

Validate the policy file, inspect a stage policy, and dry-run strategy
selection against a hypothetical failure history.
"""
from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from ticket_operator.cli.common import get_console, load_config_or_exit

app = typer.Typer(
    name="policy",
    help="Strategy matrix policy commands",
    no_args_is_help=True,
)

console = get_console()


def _load(path: Optional[str]):
    from ticket_operator.errors import PolicyError
    from ticket_operator.strategy.policy import load_matrix_policies

    target = path or str(load_config_or_exit().resolved_policy_path)
    try:
        return load_matrix_policies(target), target
    except PolicyError as e:
        console.print(f"[red]Invalid policy:[/red] {e}")
        raise typer.Exit(1)


def _stage_or_exit(stage: str):
    from ticket_operator.models import StageKind

    try:
        return StageKind(stage.lower())
    except ValueError:
        console.print(
            f"[red]Unknown stage:[/red] {stage} "
            f"(expected one of {', '.join(s.value for s in StageKind)})"
        )
        raise typer.Exit(1)


@app.command()
def validate(
    path: Optional[str] = typer.Option(None, "--path", help="Policy file (default: configured policy)."),
    check_tools: bool = typer.Option(
        True,
        "--check-tools/--no-check-tools",
        help="Also verify every referenced tool id has an adapter.",
    ),
) -> None:
    """Validate the matrix policy file."""
    from ticket_operator.adapters import build_default_registry
    from ticket_operator.errors import AdapterCoverageError

    policies, target = _load(path)
    if check_tools:
        registry = build_default_registry(load_config_or_exit())
        try:
            registry.check_coverage(policies)
        except AdapterCoverageError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)
    console.print(f"[green]Policy OK[/green] version={policies.version} ({target})")


@app.command()
def show(
    stage: str = typer.Argument(..., help="Stage: discover, plan, code, review, communication."),
    path: Optional[str] = typer.Option(None, "--path", help="Policy file (default: configured policy)."),
) -> None:
    """Show the strategies and matrix of one stage."""
    kind = _stage_or_exit(stage)
    policies, _ = _load(path)
    policy = policies.for_stage(kind)

    strategies = Table(title=f"{kind.value} strategies")
    strategies.add_column("Id", style="cyan")
    strategies.add_column("Family")
    strategies.add_column("Tools")
    for definition in policy.strategies.values():
        strategies.add_row(definition.id, definition.family, ", ".join(definition.tool_ids))
    console.print(strategies)

    matrix = Table(title=f"{kind.value} matrix")
    matrix.add_column("Error kind", style="yellow")
    matrix.add_column("Candidates")
    for error_kind, candidates in policy.matrix.items():
        matrix.add_row(error_kind.value, " -> ".join(candidates))
    console.print(matrix)
    console.print(
        f"max_attempts_total={policy.max_attempts_total} "
        f"max_attempts_per_family={policy.max_attempts_per_family} "
        f"fallback={' -> '.join(policy.fallback_order)}"
    )


@app.command()
def select(
    stage: str = typer.Argument(..., help="Stage to simulate."),
    failures: list[str] = typer.Option(
        ...,
        "--failure",
        "-f",
        help="Failed attempt as strategy_id:error_kind, oldest first. Repeatable.",
    ),
    path: Optional[str] = typer.Option(None, "--path", help="Policy file (default: configured policy)."),
) -> None:
    """Dry-run strategy selection after a failure history."""
    from ticket_operator.errors import ErrorKind
    from ticket_operator.models import StrategyAttempt
    from ticket_operator.strategy.selector import format_failures, select_next

    kind = _stage_or_exit(stage)
    policies, _ = _load(path)
    policy = policies.for_stage(kind)

    attempts: list[StrategyAttempt] = []
    for raw in failures:
        strategy_id, _, error_value = raw.partition(":")
        if strategy_id not in policy.strategies:
            console.print(f"[red]Unknown strategy for {kind.value}:[/red] {strategy_id}")
            raise typer.Exit(1)
        try:
            error_kind = ErrorKind(error_value or "unknown")
        except ValueError:
            console.print(f"[red]Unknown error kind:[/red] {error_value}")
            raise typer.Exit(1)
        definition = policy.strategy(strategy_id)
        attempts.append(StrategyAttempt(
            strategy_id=strategy_id,
            family=definition.family,
            tool_id=definition.primary_tool_id,
            error_kind=error_kind,
            error_message=f"simulated {error_kind.value}",
        ))

    last = attempts[-1]
    selection = select_next(attempts, last.strategy_id, last.family, last.error_kind, policy)
    console.print(format_failures(attempts))
    if selection.exhausted:
        console.print(f"[red]Exhausted:[/red] {selection.reason}")
        raise typer.Exit(2)
    switch = " [yellow](family switch)[/yellow]" if selection.family_switch else ""
    console.print(f"[green]Next:[/green] {selection.next_strategy_id}{switch}\n{selection.reason}")
