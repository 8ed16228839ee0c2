from __future__ import annotations

import httpx

from sucursync.client.sender import auth_headers
from sucursync.server.models import (
    BackupCreateResponse,
    BackupStatusResponse,
    BackupSyncResponse,
)


def _client(
    base_url: str,
    api_key: str | None,
    timeout: float,
    transport: httpx.BaseTransport | None,
) -> httpx.Client:
    return httpx.Client(
        base_url=base_url,
        headers=auth_headers(api_key),
        timeout=httpx.Timeout(timeout, connect=10.0),
        transport=transport,
    )


def request_backup(
    base_url: str,
    api_key: str | None = None,
    sucursal_id: str | None = None,
    timeout: float = 120.0,
    transport: httpx.BaseTransport | None = None,
) -> BackupCreateResponse:
    """Ask a server to snapshot its database (and send it to its remote)."""
    body = {"sucursalId": sucursal_id} if sucursal_id else {}
    with _client(base_url, api_key, timeout, transport) as client:
        resp = client.post("/v1/backup/create", json=body)
        resp.raise_for_status()
        return BackupCreateResponse.model_validate(resp.json())


def request_sync(
    base_url: str,
    api_key: str | None = None,
    timeout: float = 600.0,
    transport: httpx.BaseTransport | None = None,
) -> BackupSyncResponse:
    """Ask a server to retransmit its pending backups."""
    with _client(base_url, api_key, timeout, transport) as client:
        resp = client.post("/v1/backup/sync")
        resp.raise_for_status()
        return BackupSyncResponse.model_validate(resp.json())


def fetch_status(
    base_url: str,
    api_key: str | None = None,
    sucursal_id: str | None = None,
    timeout: float = 10.0,
    transport: httpx.BaseTransport | None = None,
) -> BackupStatusResponse:
    params = {"sucursalId": sucursal_id} if sucursal_id else None
    with _client(base_url, api_key, timeout, transport) as client:
        resp = client.get("/v1/backup/status", params=params)
        resp.raise_for_status()
        return BackupStatusResponse.model_validate(resp.json())
