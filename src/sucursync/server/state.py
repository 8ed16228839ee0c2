from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from sucursync.backup.service import BackupService
from sucursync.branches.current import CurrentBranch
from sucursync.branches.registry import BranchRegistry
from sucursync.db import create_session_maker, init_models
from sucursync.errorlog import ErrorLogService
from sucursync.peers import API_PREFIX, PeerClient
from sucursync.scheduler import SyncScheduler
from sucursync.uploads.assembler import ChunkAssembler
from sucursync.uploads.files import FileRepository
from sucursync.uploads.sessions import SessionStore

if TYPE_CHECKING:
    from sucursync.config import Settings

logger = logging.getLogger(__name__)


class AppState:
    """Every service of one branch server, built from its settings."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        settings.data_dir.mkdir(parents=True, exist_ok=True)

        self.engine, self.session_maker = create_session_maker(settings.database_path)
        self.peers = PeerClient(
            metadata_timeout=settings.metadata_timeout,
            backup_timeout=settings.backup_timeout,
            connectivity_timeout=settings.connectivity_timeout,
            transport=transport,
        )
        self.current = CurrentBranch(self.session_maker, settings.branch_name)
        self.error_log = ErrorLogService(
            self.session_maker,
            self.current,
            self.peers,
            batch_size=settings.error_log_batch_size,
        )
        self.registry = BranchRegistry(self.session_maker, self.peers, self.error_log)
        self.files = FileRepository(self.session_maker)

        self.uploads = SessionStore(
            settings.uploads_dir,
            chunk_size=settings.chunk_size,
            max_file_size=settings.max_file_size,
        )
        self.user_uploads = SessionStore(
            settings.uploads_dir,
            chunk_size=settings.user_chunk_size,
            max_file_size=settings.user_max_file_size,
            per_owner=True,
        )
        self.assembler = ChunkAssembler(
            self.uploads, self.files, f"{API_PREFIX}/uploads/files",
        )
        self.user_assembler = ChunkAssembler(
            self.user_uploads, self.files, f"{API_PREFIX}/uploads/users/{{owner}}",
        )

        self.backup = BackupService(
            settings.database_path,
            settings.backups_dir,
            self.registry,
            self.peers,
            self.error_log,
            connectivity_url=settings.connectivity_url,
            keep=settings.backups_to_keep,
        )
        self.scheduler = SyncScheduler(
            self.current,
            self.registry,
            self.peers,
            self.backup,
            self.error_log,
            stores=[self.uploads, self.user_uploads],
            interval_seconds=settings.sync_interval_seconds,
            session_ttl_seconds=settings.session_ttl_seconds,
        )

    async def startup(self) -> None:
        await init_models(self.engine)
        await self.registry.ensure_local(
            self.settings.branch_name,
            server_url=self.settings.server_url,
            remote_url=self.settings.remote_url,
        )
        await self.current.refresh()
        if self.settings.scheduler_enabled:
            self.scheduler.start()
        logger.info("Sucursal %s ready", self.settings.branch_name)

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.registry.drain()
        await self.engine.dispose()
