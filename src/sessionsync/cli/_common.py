"""Shared utilities for all CLI command modules.

Provides the Rich console instance, logging setup, status formatting,
and the engine builder used across every command.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from .. import SESSIONSYNC_HOME
from ..models import SyncStatus
from ..sync.engine import SyncEngine

console = Console()
logger = logging.getLogger("sessionsync.cli")

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_FILE = "sessionsync.log"

_HANDLER_TAG = "_sessionsync_handler"


def setup_logging(home: Path, verbose: bool = False) -> Path:
    """Log to ``<home>/logs/sessionsync.log``, and to stderr when verbose.

    Calling this again replaces the handlers installed by a previous call.

    Returns:
        Path: The log file.
    """
    log_dir = home / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_TAG, False):
            root.removeHandler(handler)
            handler.close()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    setattr(file_handler, _HANDLER_TAG, True)
    root.addHandler(file_handler)

    if verbose:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        setattr(stream, _HANDLER_TAG, True)
        root.addHandler(stream)

    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return log_file


def open_engine(home: str) -> SyncEngine:
    """Resolve the home directory, configure logging, and build the engine."""
    home_path = Path(home).expanduser()
    ctx = click.get_current_context(silent=True)
    verbose = bool(ctx and ctx.find_root().params.get("verbose"))
    setup_logging(home_path, verbose)
    try:
        return SyncEngine.from_home(home_path)
    except ValueError as exc:
        console.print(f"[bold red]Configuration error:[/] {exc}")
        sys.exit(1)


def status_icon(status: SyncStatus) -> str:
    """Map sync status to a Rich-formatted indicator.

    Args:
        status: Engine status.

    Returns:
        str: Rich markup string for the status.
    """
    return {
        SyncStatus.IDLE: "[bold green]IDLE[/]",
        SyncStatus.SYNCING: "[bold cyan]SYNCING[/]",
        SyncStatus.ERROR: "[bold red]ERROR[/]",
        SyncStatus.DISABLED: "[dim]DISABLED[/]",
        SyncStatus.SETUP_REQUIRED: "[bold yellow]SETUP REQUIRED[/]",
    }.get(status, "[dim]UNKNOWN[/]")


def format_timestamp(ms: Optional[int]) -> str:
    """Render an epoch-millisecond timestamp, or 'never'."""
    if not ms:
        return "[dim]never[/]"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
