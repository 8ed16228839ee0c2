from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
from collections import defaultdict
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os
from pydantic import BaseModel

from sucursync.entities import ErrorType
from sucursync.errors import (
    Internal,
    InvalidInput,
    QuotaExceeded,
    SucursyncError,
    UpstreamUnavailable,
)

if TYPE_CHECKING:
    from sucursync.branches.registry import BranchRegistry
    from sucursync.errorlog import ErrorLogService
    from sucursync.peers import PeerClient

logger = logging.getLogger(__name__)

STAMP_FORMAT = "%Y-%m-%dT%H-%M-%S-%fZ"


class BackupStatus(str, Enum):
    """Outcome of one backup attempt."""
    LOCAL_ONLY = "local_only"
    SENT = "sent"
    PENDING_RETRY = "pending_retry"
    FAILED = "failed"


class BackupState(str, Enum):
    """Where a branch currently is in the backup workflow."""
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    TRANSMITTING = "transmitting"
    LOCAL_ONLY = "local_only"
    SENT = "sent"
    PENDING_RETRY = "pending_retry"


class BackupResult(BaseModel):
    branch_id: str
    branch_name: str
    status: BackupStatus
    filename: str | None = None
    local_path: str | None = None
    error: str | None = None

    @property
    def sent_to_remote(self) -> bool:
        return self.status == BackupStatus.SENT


class BackupFile(BaseModel):
    filename: str
    path: Path
    size: int
    created_at: datetime
    branch_name: str


class SyncSummary(BaseModel):
    synced: int = 0
    failed: int = 0
    skipped: bool = False
    reason: str | None = None


def backup_filename(branch_name: str, when: datetime | None = None) -> str:
    when = when or datetime.now(timezone.utc)
    return f"{branch_name}_{when.strftime(STAMP_FORMAT)}_db"


def parse_backup_filename(filename: str) -> tuple[str, datetime] | None:
    """Split ``{branch}_{stamp}_db`` into its branch name and timestamp.

    Branch names may contain underscores; the stamp never does.
    """
    if not filename.endswith("_db"):
        return None
    head, sep, stamp = filename[: -len("_db")].rpartition("_")
    if not sep or not head:
        return None
    try:
        created = datetime.strptime(stamp, STAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return head, created


def _received_branch_name(filename: str) -> str:
    original = filename.split("_received_")[0]
    parsed = parse_backup_filename(original)
    return parsed[0] if parsed else original


class BackupService:
    """Database snapshots, best-effort replication to the branch's remote
    peer, retry of pending transmissions and local retention."""

    def __init__(
        self,
        database_path: Path,
        backups_dir: Path,
        registry: BranchRegistry,
        peers: PeerClient,
        error_log: ErrorLogService,
        connectivity_url: str,
        keep: int = 10,
        max_received_size: int = 100 * 1024 * 1024,
    ) -> None:
        self.database_path = Path(database_path)
        self.backups_dir = Path(backups_dir)
        self.received_dir = self.backups_dir / "received"
        self.registry = registry
        self.peers = peers
        self.error_log = error_log
        self.connectivity_url = connectivity_url
        self.keep = keep
        self.max_received_size = max_received_size
        self.is_running = False
        self._states: dict[str, BackupState] = {}

    def state_of(self, branch_id: str) -> BackupState:
        return self._states.get(branch_id, BackupState.IDLE)

    # -- local files -------------------------------------------------------

    def list_backup_files(self) -> list[BackupFile]:
        """Every backup directly under the backups directory."""
        if not self.backups_dir.is_dir():
            return []
        found: list[BackupFile] = []
        for path in self.backups_dir.iterdir():
            if not path.is_file():
                continue
            parsed = parse_backup_filename(path.name)
            if parsed is None:
                continue
            name, created = parsed
            found.append(
                BackupFile(
                    filename=path.name,
                    path=path,
                    size=path.stat().st_size,
                    created_at=created,
                    branch_name=name,
                )
            )
        return found

    def list_local_backups(self, branch_name: str) -> list[BackupFile]:
        """Backups retained for *branch_name*, newest first."""
        files = [f for f in self.list_backup_files() if f.branch_name == branch_name]
        return sorted(files, key=lambda f: f.created_at, reverse=True)

    # -- snapshot and transmission ------------------------------------------

    async def create_backup(self, branch_id: str) -> BackupResult:
        branch = await self.registry.get_branch(branch_id)
        self._states[branch.id] = BackupState.SNAPSHOTTING

        filename = backup_filename(branch.name)
        backup_path = self.backups_dir / filename
        if backup_path.resolve().parent != self.backups_dir.resolve():
            self._states[branch.id] = BackupState.IDLE
            raise InvalidInput(f"Invalid sucursal name for a backup: {branch.name!r}")
        try:
            await aiofiles.os.makedirs(self.backups_dir, exist_ok=True)
            await asyncio.to_thread(shutil.copyfile, self.database_path, backup_path)
        except OSError as exc:
            self._states[branch.id] = BackupState.IDLE
            logger.error("Error creating backup for %s: %s", branch.name, exc)
            await self.error_log.log_error(
                ErrorType.BACKUP_ERROR, "Failed to create database backup", exc,
            )
            raise Internal("Failed to create backup") from exc
        logger.info("Backup created locally: %s", filename)

        if not branch.remote_url:
            self._states[branch.id] = BackupState.LOCAL_ONLY
            return BackupResult(
                branch_id=branch.id,
                branch_name=branch.name,
                status=BackupStatus.LOCAL_ONLY,
                filename=filename,
                local_path=str(backup_path),
            )

        self._states[branch.id] = BackupState.TRANSMITTING
        try:
            await self.peers.send_backup(branch.remote_url, backup_path, filename, branch.name)
        except UpstreamUnavailable as exc:
            self._states[branch.id] = BackupState.PENDING_RETRY
            logger.warning(
                "Failed to send backup %s to %s (will retry later): %s",
                filename,
                branch.remote_url,
                exc,
            )
            await self.error_log.log_error(
                ErrorType.BACKUP_ERROR,
                f"Failed to send backup {filename} to remote server",
                exc,
            )
            return BackupResult(
                branch_id=branch.id,
                branch_name=branch.name,
                status=BackupStatus.PENDING_RETRY,
                filename=filename,
                local_path=str(backup_path),
                error=exc.message,
            )

        await aiofiles.os.remove(backup_path)
        self._states[branch.id] = BackupState.SENT
        logger.info("Backup %s sent to remote server %s", filename, branch.remote_url)
        return BackupResult(
            branch_id=branch.id,
            branch_name=branch.name,
            status=BackupStatus.SENT,
            filename=filename,
        )

    async def create_all_backups(self) -> list[BackupResult] | None:
        """Back up every known branch in turn.

        Returns None, without doing anything, if a sweep is already running.
        """
        if self.is_running:
            logger.info("Backup process already running, skipping...")
            return None

        self.is_running = True
        try:
            logger.info("Starting backup process for all sucursals...")
            results: list[BackupResult] = []
            for branch in await self.registry.list_branches():
                try:
                    results.append(await self.create_backup(branch.id))
                except SucursyncError as exc:
                    logger.error("Failed to backup sucursal %s: %s", branch.name, exc)
                    results.append(
                        BackupResult(
                            branch_id=branch.id,
                            branch_name=branch.name,
                            status=BackupStatus.FAILED,
                            error=exc.message,
                        )
                    )
            logger.info(
                "Backup process completed: %s",
                ", ".join(f"{r.branch_name}={r.status.value}" for r in results),
            )
            return results
        finally:
            self.is_running = False

    async def sync_pending_backups(self) -> SyncSummary:
        """Retransmit retained backups, oldest first, for every branch that
        has a remote URL."""
        logger.info("Starting sync of pending backups...")
        if not await self.peers.check_connectivity(self.connectivity_url):
            logger.info("No internet connection, skipping backup sync")
            return SyncSummary(skipped=True, reason="No internet connection")

        summary = SyncSummary()
        backups = self.list_backup_files()
        for branch in await self.registry.list_branches():
            if not branch.remote_url:
                continue
            pending = sorted(
                (b for b in backups if b.branch_name == branch.name),
                key=lambda b: b.created_at,
            )
            if pending:
                logger.info("Found %d pending backups for %s", len(pending), branch.name)
            for backup in pending:
                try:
                    await self.peers.send_backup(
                        branch.remote_url, backup.path, backup.filename, branch.name,
                    )
                except UpstreamUnavailable as exc:
                    logger.warning("Failed to sync backup %s: %s", backup.filename, exc)
                    summary.failed += 1
                    continue
                await aiofiles.os.remove(backup.path)
                logger.info("Successfully synced and deleted: %s", backup.filename)
                summary.synced += 1
            if pending and not any(b.path.exists() for b in pending):
                self._states[branch.id] = BackupState.SENT

        logger.info("Sync completed: %d synced, %d failed", summary.synced, summary.failed)
        return summary

    async def cleanup_old_backups(self, keep: int | None = None) -> int:
        """Keep the newest *keep* backups per branch name; delete the rest."""
        keep = self.keep if keep is None else keep
        grouped: dict[str, list[BackupFile]] = defaultdict(list)
        for backup in self.list_backup_files():
            grouped[backup.branch_name].append(backup)

        deleted = 0
        for backups in grouped.values():
            backups.sort(key=lambda b: b.created_at, reverse=True)
            for backup in backups[keep:]:
                try:
                    await aiofiles.os.remove(backup.path)
                except OSError as exc:
                    logger.error("Failed to delete backup %s: %s", backup.filename, exc)
                    continue
                logger.info("Deleted old backup: %s", backup.filename)
                deleted += 1
        return deleted

    # -- receiving side ----------------------------------------------------

    async def receive_backup(
        self,
        original_name: str,
        chunks: AsyncIterator[bytes],
        branch_name: str | None,
        timestamp: str | None,
    ) -> BackupFile:
        """Store a backup sent by a peer under ``backups/received/``."""
        source = Path(original_name or "backup")
        stamp = datetime.now(timezone.utc).strftime(STAMP_FORMAT)
        await aiofiles.os.makedirs(self.received_dir, exist_ok=True)
        target = self.received_dir / f"{source.name}_received_{stamp}"

        size = 0
        try:
            async with aiofiles.open(target, "wb") as f:
                async for chunk in chunks:
                    size += len(chunk)
                    if size > self.max_received_size:
                        raise QuotaExceeded(
                            f"Backup exceeds the limit of {self.max_received_size} bytes"
                        )
                    await f.write(chunk)
        except BaseException:
            with contextlib.suppress(OSError):
                await aiofiles.os.remove(target)
            raise

        logger.info("Received backup from %s: %s", branch_name, target.name)
        await self.error_log.log_error(
            ErrorType.BACKUP_RECEIVED,
            f"Received backup from {branch_name}",
            {
                "filename": target.name,
                "originalName": original_name,
                "size": size,
                "sucursalName": branch_name,
                "timestamp": timestamp,
            },
        )
        return BackupFile(
            filename=target.name,
            path=target,
            size=size,
            created_at=datetime.now(timezone.utc),
            branch_name=branch_name or _received_branch_name(target.name),
        )

    def list_received_backups(self) -> list[BackupFile]:
        if not self.received_dir.is_dir():
            return []
        found = []
        for path in self.received_dir.iterdir():
            if not path.is_file():
                continue
            stat = path.stat()
            found.append(
                BackupFile(
                    filename=path.name,
                    path=path,
                    size=stat.st_size,
                    created_at=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
                    branch_name=_received_branch_name(path.name),
                )
            )
        return sorted(found, key=lambda f: f.created_at, reverse=True)
