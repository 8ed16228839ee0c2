"""Outbound HTTP calls to peer branch servers."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiofiles
import httpx

from sucursync.errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

API_PREFIX = "/v1"


def peer_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{API_PREFIX}{path}"


class PeerClient:
    """Thin async wrapper around httpx for branch-to-branch calls.

    Every failure (connection error, timeout, non-200 answer) is raised as
    :class:`UpstreamUnavailable`; callers decide whether it is fatal.
    """

    def __init__(
        self,
        metadata_timeout: float = 10.0,
        backup_timeout: float = 30.0,
        connectivity_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.metadata_timeout = metadata_timeout
        self.backup_timeout = backup_timeout
        self.connectivity_timeout = connectivity_timeout
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        url: str,
        timeout: float,
        what: str,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            async with self._client(timeout) as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise UpstreamUnavailable(f"{what}: {url} did not respond in time") from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"{what}: {exc}") from exc
        if resp.status_code != 200:
            raise UpstreamUnavailable(
                f"{what}: remote server returned status {resp.status_code}"
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response, what: str) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamUnavailable(f"{what}: remote server sent invalid JSON") from exc
        if not isinstance(body, dict):
            raise UpstreamUnavailable(f"{what}: unexpected response body")
        return body

    async def send_backup(
        self,
        remote_url: str,
        path: Path,
        filename: str,
        branch_name: str,
    ) -> None:
        """Upload a snapshot. Any 200 answer counts as delivered."""
        async with aiofiles.open(path, "rb") as f:
            payload = await f.read()
        await self._request(
            "POST",
            peer_url(remote_url, "/backup/receive"),
            self.backup_timeout,
            "Failed to send backup to remote server",
            files={"backup": (filename, payload, "application/octet-stream")},
            data={
                "sucursalName": branch_name,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )

    async def notify_new_branch(self, server_url: str, branch: dict[str, Any]) -> None:
        await self._request(
            "POST",
            peer_url(server_url, "/sucursals/notify-new"),
            self.metadata_timeout,
            "Failed to notify sucursal",
            json={
                "sucursalId": branch["id"],
                "name": branch["name"],
                "description": branch.get("description"),
                "location": branch.get("location"),
                "serverUrl": branch.get("serverUrl"),
            },
        )

    async def fetch_current_info(self, server_url: str) -> dict[str, Any] | None:
        resp = await self._request(
            "GET",
            peer_url(server_url, "/sucursals/current/info"),
            self.metadata_timeout,
            "Failed to fetch sucursal info",
        )
        return self._json(resp, "Failed to fetch sucursal info").get("sucursal")

    async def fetch_directory(self, server_url: str) -> list[dict[str, Any]]:
        resp = await self._request(
            "GET",
            peer_url(server_url, "/sucursals/directory"),
            self.metadata_timeout,
            "Failed to fetch sucursal directory",
        )
        return list(self._json(resp, "Failed to fetch sucursal directory").get("sucursals") or [])

    async def forward_error_logs(
        self, remote_url: str, entries: list[dict[str, Any]],
    ) -> None:
        await self._request(
            "POST",
            peer_url(remote_url, "/error-logs/receive"),
            self.metadata_timeout,
            "Failed to forward error logs",
            json={"errorLogs": entries},
        )

    async def check_connectivity(self, url: str) -> bool:
        """Any HTTP answer from *url* counts as being online."""
        try:
            async with self._client(self.connectivity_timeout) as client:
                await client.get(url)
        except httpx.HTTPError as exc:
            logger.info("Connectivity probe to %s failed: %s", url, exc)
            return False
        return True
