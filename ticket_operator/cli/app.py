"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app, callback, and
sub-app registrations are all defined here.
"""
from __future__ import annotations

from typing import Optional

import typer

from ticket_operator import __version__
from ticket_operator.cli.common import get_console, set_config_path

app = typer.Typer(
    name="ticket-operator",
    help="Drive tickets from discovery to a validated pull request",
    add_completion=False,
)

console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"ticket-operator version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: ./config.yaml, or built-in defaults)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Ticket Operator - autonomous ticket lifecycle orchestration.

    Runs discovery, planning, coding and review through a strategy matrix,
    opens a pull request and waits for smoke validation before handoff.
    """
    set_config_path(config)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Sub-App Registration
# =========================================================================

from ticket_operator.cli.run import app as run_app  # noqa: E402
from ticket_operator.cli.policy import app as policy_app  # noqa: E402

app.add_typer(run_app, name="run")
app.add_typer(policy_app, name="policy")


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
