"""Pydantic-based settings for a sucursync branch server."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MiB = 1024 * 1024
GiB = 1024 * MiB


class Settings(BaseSettings):
    """Configuration for one branch server."""

    model_config = SettingsConfigDict(
        env_prefix="SUCURSYNC_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Service
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=1319, description="Listen port")
    log_level: str = Field(default="INFO", description="Logging level")
    api_key: str | None = Field(default=None, description="Bearer key for admin endpoints")

    # Storage
    data_dir: Path = Field(default=Path("./data"), description="Base data directory")
    database_name: str = Field(default="sucursync.db", description="SQLite file inside data_dir")

    # Branch identity
    branch_name: str = Field(default="Default Sucursal", description="Name of the local branch")
    server_url: str | None = Field(default=None, description="Base URL peers use to reach this branch")
    remote_url: str | None = Field(default=None, description="Peer that receives this branch's backups")

    # Chunked uploads
    chunk_size: int = Field(default=10 * MiB, description="Chunk size for generic uploads")
    max_file_size: int = Field(default=10 * GiB, description="Largest generic upload")
    user_chunk_size: int = Field(default=5 * MiB, description="Chunk size for per-user uploads")
    user_max_file_size: int = Field(default=50 * MiB, description="Largest per-user upload")
    session_ttl_seconds: int = Field(default=24 * 3600, description="Age after which sessions expire")

    # Peers
    metadata_timeout: float = Field(default=10.0, description="Timeout for peer metadata calls")
    backup_timeout: float = Field(default=30.0, description="Timeout for backup transmission")
    connectivity_url: str = Field(default="https://www.google.com", description="Internet probe URL")
    connectivity_timeout: float = Field(default=5.0, description="Timeout for the internet probe")

    # Scheduler and retention
    scheduler_enabled: bool = Field(default=True, description="Run the periodic sync scheduler")
    sync_interval_seconds: float = Field(default=12 * 3600, description="Seconds between sync runs")
    backups_to_keep: int = Field(default=10, description="Local backups kept per branch")
    error_log_batch_size: int = Field(default=50, description="Unsent error logs forwarded per sweep")

    @property
    def database_path(self) -> Path:
        return self.data_dir / self.database_name

    @property
    def uploads_dir(self) -> Path:
        return self.data_dir / "uploads"

    @property
    def backups_dir(self) -> Path:
        return self.data_dir / "backups"

    @property
    def received_backups_dir(self) -> Path:
        return self.backups_dir / "received"
