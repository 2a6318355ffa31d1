"""Display helpers for the CLI: colored stages and run tables."""
from __future__ import annotations

from typing import Any, Optional

from rich.table import Table
from rich.text import Text

from ticket_operator.models import ENGINE_STAGE_BY_TICKET_STAGE, TicketStage, TransitionRecord

# Stage display names and colors
STAGE_DISPLAY: dict[TicketStage, tuple[str, str]] = {
    TicketStage.STARTED: ("Started", "dim"),
    TicketStage.EVALUATING: ("Evaluating", "blue"),
    TicketStage.DISCOVERING: ("Discovering", "yellow"),
    TicketStage.PLANNING: ("Planning", "yellow"),
    TicketStage.CODING: ("Coding", "cyan bold"),
    TicketStage.CREATING_PR: ("Creating PR", "cyan"),
    TicketStage.WAITING_SANDBOX: ("Waiting for Sandbox", "magenta"),
    TicketStage.WAITING_SMOKE: ("Waiting for Smoke", "magenta"),
    TicketStage.TEARING_DOWN: ("Tearing Down", "dim"),
    TicketStage.HANDOFF: ("Handoff", "green"),
    TicketStage.BLOCKED: ("Blocked", "yellow bold"),
    TicketStage.FAILED: ("Failed", "red bold"),
    TicketStage.COMPLETED: ("Completed", "green bold"),
}


def format_stage(stage: TicketStage) -> Text:
    """Format a ticket stage as colored text."""
    display_name, style = STAGE_DISPLAY.get(stage, (stage.value, "white"))
    return Text(display_name, style=style)


def status_table(status: dict[str, Any]) -> Table:
    """Key/value table for a run status snapshot."""
    stage = TicketStage(status["stage"])
    table = Table(title=f"Run {status['issue_id']}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Stage", format_stage(stage))
    table.add_row("Engine stage", ENGINE_STAGE_BY_TICKET_STAGE[stage].value)
    table.add_row("Mode", status["mode"])
    if status.get("resume_stage"):
        table.add_row("Resume stage", status["resume_stage"])
    if status.get("blocked_reason"):
        table.add_row("Blocked", Text(status["blocked_reason"], style="yellow"))
    for key, value in status["counters"].items():
        table.add_row(key.replace("_", " ").capitalize(), str(value))
    for key, value in status["references"].items():
        if value not in (None, False, ""):
            table.add_row(key.replace("_", " ").capitalize(), str(value))
    if status.get("frontend_task") is not None:
        table.add_row("Front-end task", f"{status['frontend_task']} ({status.get('frontend_reason')})")
    if status.get("last_error"):
        table.add_row("Last error", Text(status["last_error"], style="red"))
    return table


def transitions_table(transitions: list[TransitionRecord], limit: Optional[int] = None) -> Table:
    table = Table(title="Transitions")
    table.add_column("At", style="dim")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Engine", style="cyan")
    table.add_column("Rationale")
    rows = transitions[-limit:] if limit else transitions
    for record in rows:
        table.add_row(
            record.occurred_at,
            record.from_stage or "-",
            format_stage(TicketStage(record.to_stage)),
            record.engine_stage,
            record.rationale,
        )
    return table
