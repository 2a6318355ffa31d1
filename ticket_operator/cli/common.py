"""Common utilities and global state for the CLI.

Holds the console singleton and the config path override set by the
``--config`` flag. This module should NOT import from the command modules.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from ticket_operator.config import OperatorConfig

# Global config path override (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def set_config_path(path: Optional[str]) -> None:
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def load_config_or_exit() -> "OperatorConfig":
    """Load configuration, printing the error and exiting on failure."""
    from ticket_operator.config import ConfigError, get_config

    try:
        return get_config(_config_path)
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)
