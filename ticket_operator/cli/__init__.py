"""CLI package for ticket-operator.

Modules:
    app.py      - Main Typer app, version callback, sub-app registration
    run.py      - Run commands (start, status, comment, pr-event, wake, watch, ingest)
    policy.py   - Strategy matrix commands (validate, show, select)
    display.py  - Rich formatting helpers for stages and transitions
    common.py   - Shared helpers (get_console, config loading)

Usage:
    from ticket_operator.cli import app, cli_main
"""
from ticket_operator.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
