from __future__ import annotations

import argparse
import os
import socket
import sys
from typing import TYPE_CHECKING

import httpx
import uvicorn
from rich.live import Live
from rich.table import Table

from sucursync.client.backup import fetch_status, request_backup, request_sync
from sucursync.client.sender import resolve_inputs, send_batch

if TYPE_CHECKING:
    from pathlib import Path

    from rich.progress import TaskID

from sucursync.config import Settings
from sucursync.log import (
    console,
    make_backup_table,
    make_chunk_progress,
    make_overall_progress,
    setup_logging,
)
from sucursync.server.app import create_app
from sucursync.server.models import CompleteResponse


def parse_target(target: str) -> str:
    """Parse a target string into a base URL.

    Accepts formats like:
      - host              → http://host:1319
      - host:port         → http://host:port
      - http://host:port  → http://host:port  (passed through)
      - https://host:port → https://host:port (passed through)
    """
    default_port = Settings.model_fields["port"].default

    if target.startswith(("http://", "https://")):
        return target.rstrip("/")

    if ":" in target:
        host, port_str = target.rsplit(":", 1)
        try:
            port = int(port_str)
        except ValueError:
            console.print(f"[red]Invalid port in target: {target}")
            sys.exit(1)
        return f"http://{host}:{port}"
    return f"http://{target}:{default_port}"


def build_settings(args: argparse.Namespace) -> Settings:
    """Environment settings, overridden by whichever flags were given."""
    overrides = {
        "host": args.host,
        "port": args.port,
        "data_dir": args.data_dir,
        "branch_name": args.branch_name,
        "server_url": args.server_url,
        "remote_url": args.remote_url,
        "api_key": args.api_key,
    }
    if args.no_scheduler:
        overrides["scheduler_enabled"] = False
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def cmd_serve(args: argparse.Namespace) -> None:
    settings = build_settings(args)
    setup_logging(settings.log_level)

    # Fail fast if the port is already in use.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((settings.host, settings.port))
        except OSError:
            console.print(
                f"[red]Port {settings.port} is already in use. "
                "Is another sucursync server running?"
            )
            sys.exit(1)

    app = create_app(settings)
    console.print(
        f"[bold green]sucursync server[/] [bold]{settings.branch_name}[/] starting on "
        f"[cyan]{settings.host}:{settings.port}[/] "
        f"(data={settings.data_dir}, remote={settings.remote_url or 'none'})"
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="warning")


class UploadProgressDisplay:
    """Rich-based implementation of BatchProgressCallback for the CLI."""

    def __init__(self, total_files: int) -> None:
        self.overall = make_overall_progress()
        self.files = make_chunk_progress()
        self.overall_task = self.overall.add_task("Uploading", total=total_files)
        self.table = Table.grid()
        self.table.add_row(self.overall)
        self.table.add_row(self.files)
        self._task_ids: dict[int, TaskID] = {}

    def file_started(
        self, index: int, file_path: Path, total_bytes: int | None,
    ) -> None:
        task_id = self.files.add_task(file_path.name, total=total_bytes)
        self._task_ids[index] = task_id

    def file_progress(self, index: int, delta: int) -> None:
        self.files.advance(self._task_ids[index], delta)

    def file_done(self, index: int, result: CompleteResponse) -> None:
        task_id = self._task_ids[index]
        desc = self.files.tasks[task_id].description
        self.files.update(task_id, description=f"[green]{desc}[/] -> {result.file.filename}")
        self.overall.advance(self.overall_task)

    def file_error(self, index: int, exc: Exception) -> None:
        task_id = self._task_ids[index]
        desc = self.files.tasks[task_id].description
        self.files.update(task_id, description=f"[red]{desc}")
        self.overall.advance(self.overall_task)


def _check_server(base_url: str) -> None:
    try:
        httpx.get(f"{base_url}/v1/health", timeout=5.0)
    except httpx.ConnectError:
        console.print(f"[red]Cannot connect to server at {base_url}. Is it running?")
        sys.exit(1)
    except httpx.TimeoutException:
        console.print(f"[red]Server at {base_url} did not respond in time.")
        sys.exit(1)


def cmd_upload(args: argparse.Namespace) -> None:
    setup_logging()

    if len(args.targets) < 2:
        console.print("[red]Usage: sucursync upload <paths...> <target>")
        sys.exit(1)

    *raw_paths, target = args.targets
    base_url = parse_target(target)

    try:
        file_paths = resolve_inputs(raw_paths, recursive=args.recursive)
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}")
        sys.exit(1)

    _check_server(base_url)

    console.print(
        f"Sending [bold]{len(file_paths)}[/] file(s) to "
        f"[cyan]{base_url}[/] (parallel={args.parallel})"
    )

    display = UploadProgressDisplay(len(file_paths))

    with Live(display.table, console=console, refresh_per_second=10):
        results = send_batch(
            file_paths, base_url,
            parallel=args.parallel,
            progress=display,
            api_key=args.api_key,
            user_id=args.user,
        )

    ok = sum(1 for r in results if r.response is not None)
    fail = len(results) - ok
    if fail:
        console.print(f"\n[green]{ok} succeeded[/], [red]{fail} failed[/]")
        for r in results:
            if r.response is not None:
                continue
            console.print(f"  [red]- {r.filename}: {r.error or 'unknown'}")
        sys.exit(1)
    console.print(f"\n[green]All {ok} file(s) uploaded successfully.")


def cmd_backup(args: argparse.Namespace) -> None:
    setup_logging()
    base_url = parse_target(args.target)
    _check_server(base_url)

    try:
        if args.sync:
            summary = request_sync(base_url, api_key=args.api_key)
            if summary.skipped:
                console.print(f"[yellow]Sync skipped: {summary.reason}")
            else:
                console.print(
                    f"[green]{summary.synced} synced[/], [red]{summary.failed} failed[/]"
                )
        elif args.status:
            status = fetch_status(base_url, api_key=args.api_key, sucursal_id=args.sucursal_id)
            console.print(make_backup_table(status))
            console.print(
                f"{status.total_local_backups} local backup(s); "
                f"remote: {status.remote_url or 'none'}"
            )
        else:
            result = request_backup(
                base_url, api_key=args.api_key, sucursal_id=args.sucursal_id,
            )
            colour = "green" if result.sent_to_remote else "yellow"
            console.print(f"[{colour}]{result.message}[/]: {result.filename}")
            if result.error:
                console.print(f"  [red]{result.error}")
    except httpx.HTTPStatusError as exc:
        console.print(f"[red]Server answered {exc.response.status_code}: {exc.response.text}")
        sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="sucursync",
        description="Branch server: chunked uploads, database backups and peer sync",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # --- serve ---
    lp = sub.add_parser("serve", help="Start a sucursync branch server")
    lp.add_argument("--host", default=None, help="Bind address")
    lp.add_argument("--port", type=int, default=None, help="Listen port")
    lp.add_argument("--data-dir", default=None, help="Directory for the database, uploads and backups")
    lp.add_argument("--branch-name", default=None, help="Name of the local sucursal")
    lp.add_argument("--server-url", default=None, help="URL peers use to reach this server")
    lp.add_argument("--remote-url", default=None, help="Peer that receives this server's backups")
    lp.add_argument("--api-key", default=None, help="Require this bearer key on admin endpoints")
    lp.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not run the periodic sync scheduler",
    )
    lp.set_defaults(func=cmd_serve)

    # --- upload ---
    sp = sub.add_parser("upload", help="Upload files to a sucursync server")
    sp.add_argument(
        "targets",
        nargs="+",
        help="File/directory paths followed by target host[:port]",
    )
    sp.add_argument(
        "--recursive",
        "-r",
        action="store_true",
        help="Recurse into directories",
    )
    sp.add_argument(
        "--parallel",
        "-p",
        type=int,
        default=4,
        help="Concurrent uploads (default: 4)",
    )
    sp.add_argument("--user", default=None, help="Upload into this user's area")
    sp.add_argument(
        "--api-key",
        default=os.environ.get("SUCURSYNC_API_KEY"),
        help="Bearer key (default: $SUCURSYNC_API_KEY)",
    )
    sp.set_defaults(func=cmd_upload)

    # --- backup ---
    bp = sub.add_parser("backup", help="Create, sync or inspect backups on a server")
    bp.add_argument("target", help="Target host[:port]")
    bp.add_argument("--sucursal-id", default=None, help="Branch to back up (default: local)")
    mode = bp.add_mutually_exclusive_group()
    mode.add_argument("--sync", action="store_true", help="Retransmit pending backups")
    mode.add_argument("--status", action="store_true", help="List retained local backups")
    bp.add_argument(
        "--api-key",
        default=os.environ.get("SUCURSYNC_API_KEY"),
        help="Bearer key (default: $SUCURSYNC_API_KEY)",
    )
    bp.set_defaults(func=cmd_backup)

    args = parser.parse_args()
    args.func(args)
