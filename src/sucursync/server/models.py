from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for request/response bodies: camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class HealthResponse(WireModel):
    """Response model for health check endpoint."""
    status: str
    version: str
    branch: str | None = None


# -- uploads ---------------------------------------------------------------


class CreateSessionRequest(WireModel):
    file_name: str | None = None
    file_size: int | None = None
    folder_id: str | None = None


class CreateSessionResponse(WireModel):
    session_id: str
    total_chunks: int
    chunk_size: int


class ChunkResponse(WireModel):
    chunk_index: int
    uploaded_chunks: int
    total_chunks: int


class CompleteRequest(WireModel):
    session_id: str | None = None


class FileInfo(WireModel):
    id: str | None = None
    original_name: str
    filename: str
    size: int
    url: str


class CompleteResponse(WireModel):
    file: FileInfo


class SessionStatusResponse(WireModel):
    session_id: str
    file_name: str
    file_size: int
    total_chunks: int
    uploaded_chunks: int
    received: list[int]
    complete: bool
    created_at: datetime


# -- backup ----------------------------------------------------------------


class BackupCreateRequest(WireModel):
    sucursal_id: str | None = None


class BackupCreateResponse(WireModel):
    message: str
    filename: str | None = None
    sent_to_remote: bool
    status: str
    local_path: str | None = None
    error: str | None = None


class BackupFileInfo(WireModel):
    filename: str
    size: int
    created_at: datetime


class BackupStatusResponse(WireModel):
    sucursal: str
    has_remote_url: bool
    remote_url: str | None = None
    state: str
    local_backups: list[BackupFileInfo]
    total_local_backups: int


class BackupSyncResponse(WireModel):
    synced: int
    failed: int
    skipped: bool = False
    reason: str | None = None


class ReceivedBackupInfo(WireModel):
    filename: str
    size: int
    created_at: datetime
    sucursal_name: str


class BackupReceiveResponse(WireModel):
    message: str
    filename: str
    size: int


# -- branches --------------------------------------------------------------


class BranchInfo(WireModel):
    id: str
    name: str
    description: str | None = None
    location: str | None = None
    server_url: str | None = None
    remote_url: str | None = None


class ConnectionInfo(WireModel):
    id: str
    source_id: str
    target_id: str


class BranchCreateRequest(WireModel):
    name: str | None = None
    description: str | None = None
    location: str | None = None
    server_url: str | None = None
    remote_url: str | None = None
    connected_sucursal_ids: list[str] = Field(default_factory=list)


class BranchCreateResponse(WireModel):
    sucursal: BranchInfo
    connections: list[ConnectionInfo]


class BranchUpdateRequest(WireModel):
    name: str | None = None
    description: str | None = None
    location: str | None = None
    server_url: str | None = None
    remote_url: str | None = None


class NotifyNewRequest(WireModel):
    sucursal_id: str | None = None
    name: str | None = None
    description: str | None = None
    location: str | None = None
    server_url: str | None = None


class ConnectRequest(WireModel):
    target_sucursal_id: str | None = None


class CurrentInfoResponse(WireModel):
    sucursal: BranchInfo


class DirectoryResponse(WireModel):
    sucursals: list[BranchInfo]


class MessageResponse(WireModel):
    message: str


class SnapshotInfo(WireModel):
    branch_id: str
    branch_name: str
    status: str
    filename: str | None = None
    error: str | None = None


class SyncReportResponse(WireModel):
    refreshed: int
    discovered: int
    snapshots: list[SnapshotInfo] = []
    backups: BackupSyncResponse
    backups_deleted: int
    error_logs: dict[str, int]
    sessions_expired: int


# -- error logs ------------------------------------------------------------


class ErrorLogInfo(WireModel):
    id: str
    branch_id: str | None = None
    error_type: str
    description: str
    details: str | None = None
    sent_to_remote: bool
    created_at: datetime


class ErrorLogPage(WireModel):
    error_logs: list[ErrorLogInfo]
    total: int
    page: int
    limit: int
    total_pages: int


class ErrorLogReceiveRequest(WireModel):
    error_logs: list[dict[str, Any]] = Field(default_factory=list)


class ErrorLogReceiveResponse(WireModel):
    received: int
    stored: int
