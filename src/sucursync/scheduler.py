from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from sucursync.backup.service import BackupResult, SyncSummary
from sucursync.entities import ErrorType
from sucursync.errors import Conflict, InvalidInput, NotFound, UpstreamUnavailable

if TYPE_CHECKING:
    from sucursync.backup.service import BackupService
    from sucursync.branches.current import CurrentBranch
    from sucursync.branches.registry import BranchRegistry
    from sucursync.errorlog import ErrorLogService
    from sucursync.peers import PeerClient
    from sucursync.uploads.sessions import SessionStore

logger = logging.getLogger(__name__)


class SyncReport(BaseModel):
    """What one scheduler firing did."""

    refreshed: int = 0
    discovered: int = 0
    snapshots: list[BackupResult] = Field(default_factory=list)
    backups: SyncSummary = Field(default_factory=SyncSummary)
    backups_deleted: int = 0
    error_logs: dict[str, int] = Field(default_factory=dict)
    sessions_expired: int = 0


class SyncScheduler:
    """Periodic peer refresh, transitive discovery and retry sweeps."""

    def __init__(
        self,
        current: CurrentBranch,
        registry: BranchRegistry,
        peers: PeerClient,
        backup: BackupService,
        error_log: ErrorLogService,
        stores: list[SessionStore],
        interval_seconds: float = 12 * 3600,
        session_ttl_seconds: float = 24 * 3600,
    ) -> None:
        self.current = current
        self.registry = registry
        self.peers = peers
        self.backup = backup
        self.error_log = error_log
        self.stores = stores
        self.interval_seconds = interval_seconds
        self.session_ttl_seconds = session_ttl_seconds
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._sweeping = False
        self._run_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.info("Sync scheduler already running")
            return
        self._running = True
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Sync scheduler started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        """Stop the loop. A sweep in progress is allowed to finish."""
        if not self._running:
            logger.info("Sync scheduler is not running")
            return
        self._running = False
        task, self._task = self._task, None
        if task is None:
            return
        if not self._sweeping:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Sync scheduler stopped")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            if not self._running:
                break
            self._sweeping = True
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled sync failed")
            finally:
                self._sweeping = False

    async def run_once(self) -> SyncReport:
        """One full firing: peer refresh, discovery, snapshots, then the retry sweeps."""
        async with self._run_lock:
            logger.info("Starting scheduled sucursal sync...")
            report = SyncReport()
            report.refreshed = await self.sync_connected_branches()
            report.discovered = await self.discover_branches()
            report.snapshots = await self.backup.create_all_backups() or []
            report.backups = await self.backup.sync_pending_backups()
            report.backups_deleted = await self.backup.cleanup_old_backups()
            report.error_logs = await self.error_log.sync_pending()
            for store in self.stores:
                report.sessions_expired += await store.expire_stale(self.session_ttl_seconds)
            logger.info(
                "Sync finished: %d refreshed, %d discovered, %d snapshots, %d backups synced",
                report.refreshed,
                report.discovered,
                len(report.snapshots),
                report.backups.synced,
            )
            return report

    async def sync_connected_branches(self) -> int:
        """Refresh every directly connected peer from its own description."""
        try:
            local = await self.current.get_info()
        except NotFound:
            logger.warning("Local sucursal not configured, skipping peer refresh")
            return 0

        refreshed = 0
        for peer in await self.registry.peers_of(local.id):
            if not peer.server_url:
                continue
            try:
                info = await self.peers.fetch_current_info(peer.server_url)
            except UpstreamUnavailable as exc:
                logger.warning("Sucursal %s unreachable: %s", peer.name, exc)
                await self.error_log.log_error(
                    ErrorType.NETWORK_ERROR,
                    f"Failed to refresh sucursal {peer.name}",
                    exc,
                )
                continue
            if not info or not info.get("id"):
                continue
            if await self._upsert(info):
                refreshed += 1
        return refreshed

    async def discover_branches(self) -> int:
        """Pull each known peer's directory and upsert what it knows."""
        try:
            local = await self.current.get_info()
        except NotFound:
            logger.warning("Local sucursal not configured, skipping discovery")
            return 0

        discovered = 0
        for branch in await self.registry.list_branches():
            if branch.id == local.id or not branch.server_url:
                continue
            try:
                directory = await self.peers.fetch_directory(branch.server_url)
            except UpstreamUnavailable as exc:
                logger.warning("Cannot discover through %s: %s", branch.name, exc)
                await self.error_log.log_error(
                    ErrorType.NETWORK_ERROR,
                    f"Failed to discover sucursals through {branch.name}",
                    exc,
                )
                continue
            for entry in directory:
                if entry.get("id") == local.id or entry.get("name") == local.name:
                    continue
                if await self._upsert(entry):
                    discovered += 1
        return discovered

    async def _upsert(self, data: dict) -> bool:
        try:
            await self.registry.upsert(data)
        except (Conflict, InvalidInput) as exc:
            logger.warning("Skipping sucursal %s: %s", data.get("name"), exc)
            await self.error_log.log_error(
                ErrorType.DATABASE_ERROR,
                f"Failed to store sucursal {data.get('name')}",
                exc,
            )
            return False
        return True
