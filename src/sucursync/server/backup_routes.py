from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, File, Form, Query, UploadFile

from sucursync.backup.service import BackupStatus
from sucursync.errors import InvalidInput
from sucursync.server.deps import StateDep
from sucursync.server.models import (
    BackupCreateRequest,
    BackupCreateResponse,
    BackupFileInfo,
    BackupReceiveResponse,
    BackupStatusResponse,
    BackupSyncResponse,
    ReceivedBackupInfo,
)
from sucursync.server.state import AppState

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

public = APIRouter(prefix="/backup")
router = APIRouter(prefix="/backup")

READ_BLOCK = 1_048_576

_MESSAGES = {
    BackupStatus.SENT: "Backup created and sent to remote server",
    BackupStatus.LOCAL_ONLY: "Backup created locally (no remote URL configured)",
    BackupStatus.PENDING_RETRY: "Backup created locally; sending failed and will be retried",
}


async def _branch_id(state: AppState, sucursal_id: str | None) -> str:
    if sucursal_id:
        return sucursal_id
    return (await state.current.get_info()).id


@router.post("/create", response_model=BackupCreateResponse)
async def create_backup(
    body: BackupCreateRequest | None = None,
    state: AppState = StateDep,
) -> BackupCreateResponse:
    """Snapshot the database for a branch (the local one by default)."""
    branch_id = await _branch_id(state, body.sucursal_id if body else None)
    result = await state.backup.create_backup(branch_id)
    return BackupCreateResponse(
        message=_MESSAGES.get(result.status, "Backup failed"),
        filename=result.filename,
        sent_to_remote=result.sent_to_remote,
        status=result.status.value,
        local_path=result.local_path,
        error=result.error,
    )


@router.get("/status", response_model=BackupStatusResponse)
async def backup_status(
    sucursal_id: str | None = Query(None, alias="sucursalId"),
    state: AppState = StateDep,
) -> BackupStatusResponse:
    branch = await state.registry.get_branch(await _branch_id(state, sucursal_id))
    backups = state.backup.list_local_backups(branch.name)
    return BackupStatusResponse(
        sucursal=branch.name,
        has_remote_url=bool(branch.remote_url),
        remote_url=branch.remote_url,
        state=state.backup.state_of(branch.id).value,
        local_backups=[
            BackupFileInfo(filename=b.filename, size=b.size, created_at=b.created_at)
            for b in backups[:10]
        ],
        total_local_backups=len(backups),
    )


@router.post("/sync", response_model=BackupSyncResponse)
async def sync_backups(state: AppState = StateDep) -> BackupSyncResponse:
    summary = await state.backup.sync_pending_backups()
    return BackupSyncResponse.model_validate(summary.model_dump())


@router.get("/received", response_model=list[ReceivedBackupInfo])
async def received_backups(state: AppState = StateDep) -> list[ReceivedBackupInfo]:
    return [
        ReceivedBackupInfo(
            filename=b.filename,
            size=b.size,
            created_at=b.created_at,
            sucursal_name=b.branch_name,
        )
        for b in state.backup.list_received_backups()
    ]


async def _read_blocks(upload: UploadFile) -> AsyncIterator[bytes]:
    while True:
        block = await upload.read(READ_BLOCK)
        if not block:
            break
        yield block


@public.post("/receive", response_model=BackupReceiveResponse)
async def receive_backup(
    backup: UploadFile | None = File(None),
    sucursal_name: str | None = Form(None, alias="sucursalName"),
    timestamp: str | None = Form(None),
    state: AppState = StateDep,
) -> BackupReceiveResponse:
    """Peer endpoint: store a backup another branch sent us."""
    if backup is None:
        raise InvalidInput("No backup file provided", field="backup")
    stored = await state.backup.receive_backup(
        backup.filename or "backup",
        _read_blocks(backup),
        sucursal_name,
        timestamp,
    )
    return BackupReceiveResponse(
        message="Backup received successfully",
        filename=stored.filename,
        size=stored.size,
    )
