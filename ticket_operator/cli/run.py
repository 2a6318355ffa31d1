"""Run commands.

Start runs, feed them signals and inspect their state. Every command that
touches a run builds a scheduler, delivers the input and advances the run
until it has to wait.
"""
from __future__ import annotations

import json
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterator, Optional

import typer

from ticket_operator.cli.common import get_console, load_config_or_exit
from ticket_operator.cli.display import format_stage, status_table, transitions_table

if TYPE_CHECKING:
    from ticket_operator.orchestrator import Suspension
    from ticket_operator.scheduler import OperatorScheduler

app = typer.Typer(
    name="run",
    help="Ticket run commands",
    no_args_is_help=True,
)

console = get_console()


def _scheduler() -> "OperatorScheduler":
    from ticket_operator.errors import OperatorError
    from ticket_operator.scheduler import build_scheduler

    try:
        return build_scheduler(load_config_or_exit())
    except OperatorError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@contextmanager
def _run_guard() -> Iterator[None]:
    """Turn a run held by another process into a clean exit."""
    from ticket_operator.scheduler import RunBusyError

    try:
        yield
    except RunBusyError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise typer.Exit(1)


def _report(suspension: Optional["Suspension"]) -> None:
    if suspension is None:
        console.print("[dim]Duplicate delivery ignored.[/dim]")
        return
    line = format_stage(suspension.stage)
    line.append(f"  ({suspension.kind}")
    if suspension.wake_at:
        line.append(f", wake at {suspension.wake_at.isoformat()}")
    line.append(")")
    console.print(line)


# =============================================================================
# Lifecycle
# =============================================================================


@app.command()
def start(
    issue_id: str = typer.Argument(..., help="Ticket identifier."),
    evaluate: bool = typer.Option(False, "--evaluate", "-e", help="Start in evaluate-only mode."),
) -> None:
    """Start (or resume) a run and advance it until it has to wait."""
    from ticket_operator.models import RunMode

    scheduler = _scheduler()
    mode = RunMode.EVALUATE_ONLY if evaluate else RunMode.NORMAL
    with _run_guard():
        _report(scheduler.start(issue_id, mode))


@app.command()
def watch(
    issue_id: str = typer.Argument(..., help="Ticket identifier."),
    max_polls: int = typer.Option(60, "--max-polls", help="Stop after this many timer wakes."),
) -> None:
    """Advance a run and keep honouring its timers until it waits on a human or finishes."""
    scheduler = _scheduler()
    with _run_guard():
        suspension = scheduler.start(issue_id)
        _report(suspension)
        polls = 0
        while suspension.kind == "timer" and polls < max_polls:
            wake_at = scheduler.next_wake()
            if wake_at is not None:
                delay = (wake_at - datetime.now(timezone.utc)).total_seconds()
                if delay > 0:
                    time.sleep(delay)
            results = scheduler.tick()
            if issue_id not in results:
                continue
            suspension = results[issue_id]
            polls += 1
            _report(suspension)


@app.command()
def status(
    issue_id: str = typer.Argument(..., help="Ticket identifier."),
    as_json: bool = typer.Option(False, "--json", help="Print the raw snapshot."),
) -> None:
    """Show the latest committed status of a run."""
    from ticket_operator.state_store import RunStore

    store = RunStore(load_config_or_exit())
    run = store.load(issue_id)
    if run is None:
        console.print(f"[yellow]No run for {issue_id}[/yellow]")
        raise typer.Exit(1)
    snapshot = run.status_snapshot()
    if as_json:
        console.print_json(json.dumps(snapshot))
        return
    console.print(status_table(snapshot))


@app.command(name="list")
def list_runs() -> None:
    """List all stored runs."""
    from rich.table import Table

    from ticket_operator.state_store import RunStore

    store = RunStore(load_config_or_exit())
    issue_ids = store.list_all()
    if not issue_ids:
        console.print("[dim]No runs yet.[/dim]")
        return
    table = Table(title="Runs")
    table.add_column("Issue", style="cyan")
    table.add_column("Stage")
    table.add_column("Mode")
    table.add_column("PR")
    for issue_id in issue_ids:
        run = store.load(issue_id)
        if run is None:
            continue
        table.add_row(issue_id, format_stage(run.stage), run.mode.value, run.pr_url or "-")
    console.print(table)


@app.command()
def transitions(
    issue_id: str = typer.Argument(..., help="Ticket identifier."),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Show only the newest N."),
) -> None:
    """Show the transition log of a run."""
    from ticket_operator.state_store import RunStore

    run = RunStore(load_config_or_exit()).load(issue_id)
    if run is None:
        console.print(f"[yellow]No run for {issue_id}[/yellow]")
        raise typer.Exit(1)
    console.print(transitions_table(run.transitions, limit))


# =============================================================================
# Signals
# =============================================================================


@app.command()
def comment(
    issue_id: str = typer.Argument(..., help="Ticket identifier."),
    body: str = typer.Argument(..., help="Comment text, e.g. 'xena status'."),
    comment_id: Optional[str] = typer.Option(None, "--comment-id", help="Comment id (default: random)."),
    author_id: Optional[str] = typer.Option(None, "--author", help="Comment author."),
) -> None:
    """Deliver a ticket comment to a run."""
    from ticket_operator.models import CommentSignal

    signal = CommentSignal(
        issue_id=issue_id,
        comment_id=comment_id or uuid.uuid4().hex[:12],
        body=body,
        author_id=author_id,
    )
    with _run_guard():
        _report(_scheduler().dispatch(signal))


@app.command(name="pr-event")
def pr_event(
    issue_id: str = typer.Argument(..., help="Ticket identifier."),
    action: str = typer.Argument(..., help="PR action: opened, synchronize, closed, ..."),
    pr_number: Optional[int] = typer.Option(None, "--number", help="Pull request number."),
    pr_url: str = typer.Option("", "--url", help="Pull request URL."),
    repo: str = typer.Option("", "--repo", help="Repository full name (owner/name)."),
    branch: str = typer.Option("", "--branch", help="Head branch."),
    merged: Optional[bool] = typer.Option(None, "--merged/--not-merged", help="Whether the PR merged."),
    delivery_id: Optional[str] = typer.Option(None, "--delivery-id", help="Delivery id for de-duplication."),
) -> None:
    """Deliver a pull request event to a run."""
    from ticket_operator.models import PrEventSignal

    signal = PrEventSignal(
        issue_id=issue_id,
        action=action,
        repo_full_name=repo,
        pr_number=pr_number,
        pr_url=pr_url,
        branch_name=branch,
        merged=merged,
        delivery_id=delivery_id,
    )
    with _run_guard():
        _report(_scheduler().dispatch(signal))


@app.command()
def wake(issue_id: str = typer.Argument(..., help="Ticket identifier.")) -> None:
    """Force a run to re-evaluate its state."""
    from ticket_operator.models import WakeSignal

    with _run_guard():
        _report(_scheduler().dispatch(WakeSignal(issue_id=issue_id)))


@app.command()
def ingest(
    event_type: str = typer.Argument(..., help="External event type, e.g. issue_comment."),
    payload: str = typer.Argument(..., help="JSON payload, or @path to read it from a file."),
) -> None:
    """Route a raw external event through the route table."""
    from pathlib import Path

    from ticket_operator.routing import RoutingError

    raw = Path(payload[1:]).read_text() if payload.startswith("@") else payload
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid JSON payload:[/red] {e}")
        raise typer.Exit(1)
    if not isinstance(data, dict):
        console.print("[red]Payload must be a JSON object[/red]")
        raise typer.Exit(1)
    try:
        with _run_guard():
            _report(_scheduler().ingest(event_type, data))
    except RoutingError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
