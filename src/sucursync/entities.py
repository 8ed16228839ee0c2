"""Relational entities stored in the branch database."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Branch(SQLModel, table=True):
    """One sucursal: a deployment of the system reachable at ``server_url``."""

    __tablename__ = "branches"

    id: str = Field(default_factory=_uuid, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str | None = Field(default=None)
    location: str | None = Field(default=None)
    server_url: str | None = Field(default=None, index=True, unique=True)
    remote_url: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class BranchConnection(SQLModel, table=True):
    """Connection edge between two branches. Treated as undirected."""

    __tablename__ = "branch_connections"
    __table_args__ = (
        UniqueConstraint("source_id", "target_id", name="uq_branch_connection_pair"),
        Index("ix_branch_connections_source_id", "source_id"),
        Index("ix_branch_connections_target_id", "target_id"),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    source_id: str = Field(foreign_key="branches.id")
    target_id: str = Field(foreign_key="branches.id")
    created_at: datetime = Field(default_factory=_now)


class ErrorType(str, Enum):
    BACKUP_ERROR = "BACKUP_ERROR"
    BACKUP_RECEIVED = "BACKUP_RECEIVED"
    NETWORK_ERROR = "NETWORK_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    FILE_UPLOAD_ERROR = "FILE_UPLOAD_ERROR"
    SYNC_ERROR = "SYNC_ERROR"


class ErrorLog(SQLModel, table=True):
    __tablename__ = "error_logs"
    __table_args__ = (
        Index("ix_error_logs_sent_created_at", "sent_to_remote", "created_at"),
    )

    id: str = Field(default_factory=_uuid, primary_key=True)
    branch_id: str | None = Field(default=None, index=True)
    error_type: str = Field(index=True)
    description: str
    details: str | None = Field(default=None)
    sent_to_remote: bool = Field(default=False)
    created_at: datetime = Field(default_factory=_now, index=True)


class StoredFile(SQLModel, table=True):
    """A file assembled from a completed upload session."""

    __tablename__ = "files"

    id: str = Field(default_factory=_uuid, primary_key=True)
    original_name: str
    filename: str = Field(unique=True)
    size: int
    url: str
    owner_id: str = Field(index=True)
    folder_id: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=_now)
