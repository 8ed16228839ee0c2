from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rich.console import Console
from rich.filesize import decimal
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)
from rich.table import Table

if TYPE_CHECKING:
    from sucursync.server.models import BackupStatusResponse

console = Console()

# Backup workflow states as shown on the terminal
STATE_STYLES = {
    "idle": "dim",
    "snapshotting": "cyan",
    "transmitting": "cyan",
    "local_only": "yellow",
    "pending_retry": "red",
    "sent": "green",
}

# Chatty libraries that log every request or query at INFO
_QUIET_LOGGERS = ("httpx", "sqlalchemy.engine", "aiosqlite")


def setup_logging(level: int | str = logging.INFO) -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def make_overall_progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    )


def make_chunk_progress() -> Progress:
    """Per-file bar for a chunked upload, in bytes."""
    return Progress(
        SpinnerColumn(),
        TextColumn("{task.description}", style="dim"),
        BarColumn(bar_width=30),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeElapsedColumn(),
        console=console,
    )


def make_backup_table(status: BackupStatusResponse) -> Table:
    """Retained snapshots of one sucursal, newest first."""
    style = STATE_STYLES.get(status.state, "")
    table = Table(title=f"Backups of {status.sucursal} [{style}]({status.state})[/]")
    table.add_column("File")
    table.add_column("Size", justify="right")
    table.add_column("Created")
    for backup in status.local_backups:
        table.add_row(
            backup.filename,
            decimal(backup.size),
            backup.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    return table
