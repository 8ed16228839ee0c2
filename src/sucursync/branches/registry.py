from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from sucursync.db import SessionMaker, get_session
from sucursync.entities import Branch, BranchConnection, ErrorType
from sucursync.errorlog import ErrorLogService
from sucursync.errors import Conflict, InvalidInput, NotFound, UpstreamUnavailable
from sucursync.peers import PeerClient

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = ("name", "description", "location", "server_url", "remote_url")


def branch_to_wire(branch: Branch) -> dict[str, Any]:
    return {
        "id": branch.id,
        "name": branch.name,
        "description": branch.description,
        "location": branch.location,
        "serverUrl": branch.server_url,
    }


def _check_name(name: str) -> None:
    """Branch names end up in backup filenames."""
    if any(sep in name for sep in ("/", "\\", "\x00")) or name in (".", ".."):
        raise InvalidInput("Sucursal name cannot contain path separators", field="name")


def _pair(a: str, b: str):
    return or_(
        (BranchConnection.source_id == a) & (BranchConnection.target_id == b),
        (BranchConnection.source_id == b) & (BranchConnection.target_id == a),
    )


class BranchRegistry:
    """Directory of known branches and the connection edges between them."""

    def __init__(
        self,
        session_maker: SessionMaker,
        peers: PeerClient,
        error_log: ErrorLogService,
    ) -> None:
        self._session_maker = session_maker
        self.peers = peers
        self.error_log = error_log
        self._background: set[asyncio.Task[None]] = set()

    # -- queries -----------------------------------------------------------

    async def list_branches(self) -> list[Branch]:
        async with get_session(self._session_maker, read_only=True) as db:
            result = await db.execute(select(Branch).order_by(Branch.created_at.desc()))
            return list(result.scalars())

    async def get_branch(self, branch_id: str) -> Branch:
        async with get_session(self._session_maker, read_only=True) as db:
            branch = await db.get(Branch, branch_id)
        if branch is None:
            raise NotFound("Sucursal not found")
        return branch

    async def get_by_name(self, name: str) -> Branch | None:
        async with get_session(self._session_maker, read_only=True) as db:
            result = await db.execute(select(Branch).where(Branch.name == name))
            return result.scalars().first()

    async def list_connections(self, branch_id: str) -> list[BranchConnection]:
        async with get_session(self._session_maker, read_only=True) as db:
            result = await db.execute(
                select(BranchConnection).where(
                    or_(
                        BranchConnection.source_id == branch_id,
                        BranchConnection.target_id == branch_id,
                    )
                )
            )
            return list(result.scalars())

    async def peers_of(self, branch_id: str) -> list[Branch]:
        """Branches on the other end of every edge touching *branch_id*."""
        connections = await self.list_connections(branch_id)
        peer_ids = {
            c.target_id if c.source_id == branch_id else c.source_id
            for c in connections
        }
        if not peer_ids:
            return []
        async with get_session(self._session_maker, read_only=True) as db:
            result = await db.execute(select(Branch).where(Branch.id.in_(list(peer_ids))))
            return list(result.scalars())

    # -- mutations ---------------------------------------------------------

    async def _check_unique(
        self,
        db: Any,
        name: str | None,
        server_url: str | None,
        exclude_id: str | None = None,
    ) -> None:
        clauses = []
        if name:
            clauses.append(Branch.name == name)
        if server_url:
            clauses.append(Branch.server_url == server_url)
        if not clauses:
            return
        stmt = select(Branch).where(or_(*clauses))
        if exclude_id is not None:
            stmt = stmt.where(Branch.id != exclude_id)
        duplicate = (await db.execute(stmt)).scalars().first()
        if duplicate is None:
            return
        conflicts = []
        if name and duplicate.name == name:
            conflicts.append("name")
        if server_url and duplicate.server_url == server_url:
            conflicts.append("server URL")
        raise Conflict(f"Sucursal with this {' and '.join(conflicts)} already exists")

    async def create_branch(
        self,
        name: str,
        description: str | None = None,
        location: str | None = None,
        server_url: str | None = None,
        connected_ids: list[str] | None = None,
        remote_url: str | None = None,
    ) -> tuple[Branch, list[BranchConnection]]:
        if not name:
            raise InvalidInput("Sucursal name is required", field="name")
        _check_name(name)
        connected_ids = list(dict.fromkeys(connected_ids or []))

        branch = Branch(
            name=name,
            description=description,
            location=location,
            server_url=server_url or None,
            remote_url=remote_url or None,
        )
        try:
            async with get_session(self._session_maker) as db:
                await self._check_unique(db, name, branch.server_url)
                for peer_id in connected_ids:
                    if await db.get(Branch, peer_id) is None:
                        raise InvalidInput(
                            f"Unknown connected sucursal: {peer_id}",
                            field="connectedSucursalIds",
                        )
                db.add(branch)
                await db.flush()
                connections = [
                    BranchConnection(source_id=branch.id, target_id=peer_id)
                    for peer_id in connected_ids
                ]
                db.add_all(connections)
        except IntegrityError as exc:
            raise Conflict("Sucursal with this name or server URL already exists") from exc

        logger.info("Created sucursal %s (%s)", branch.name, branch.id)
        if connected_ids:
            self._spawn(self._notify_peers(branch, connected_ids))
        return branch, connections

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for every pending peer notification to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _notify_peers(self, branch: Branch, peer_ids: list[str]) -> None:
        payload = branch_to_wire(branch)
        for peer_id in peer_ids:
            try:
                peer = await self.get_branch(peer_id)
            except NotFound:
                logger.warning("Sucursal %s vanished before notification", peer_id)
                continue
            if not peer.server_url:
                continue
            try:
                await self.peers.notify_new_branch(peer.server_url, payload)
            except UpstreamUnavailable as exc:
                logger.warning("Failed to notify sucursal %s: %s", peer.name, exc)
                await self.error_log.log_error(
                    ErrorType.NETWORK_ERROR,
                    f"Failed to notify sucursal {peer.name} about new sucursal",
                    exc,
                )
            else:
                logger.info(
                    "Notified sucursal %s about new sucursal %s", peer.name, branch.name,
                )

    async def update_branch(self, branch_id: str, **changes: Any) -> Branch:
        changes = {k: v for k, v in changes.items() if k in _MUTABLE_FIELDS and v is not None}
        if "name" in changes and not changes["name"]:
            raise InvalidInput("Sucursal name cannot be empty", field="name")
        if "name" in changes:
            _check_name(changes["name"])
        try:
            async with get_session(self._session_maker) as db:
                branch = await db.get(Branch, branch_id)
                if branch is None:
                    raise NotFound("Sucursal not found")
                await self._check_unique(
                    db, changes.get("name"), changes.get("server_url"), exclude_id=branch_id,
                )
                for key, value in changes.items():
                    setattr(branch, key, value if key == "name" else (value or None))
                branch.updated_at = datetime.now(timezone.utc)
        except IntegrityError as exc:
            raise Conflict("Sucursal with this name or server URL already exists") from exc
        logger.info("Updated sucursal %s", branch_id)
        return branch

    async def delete_branch(self, branch_id: str) -> None:
        async with get_session(self._session_maker) as db:
            branch = await db.get(Branch, branch_id)
            if branch is None:
                raise NotFound("Sucursal not found")
            await db.execute(
                delete(BranchConnection).where(
                    or_(
                        BranchConnection.source_id == branch_id,
                        BranchConnection.target_id == branch_id,
                    )
                )
            )
            await db.delete(branch)
        logger.info("Deleted sucursal %s", branch_id)

    async def upsert(self, data: dict[str, Any]) -> Branch:
        """Insert or update a branch by id from a peer's wire description."""
        branch_id = data.get("id") or data.get("sucursalId")
        name = data.get("name")
        if not branch_id or not name:
            raise InvalidInput("Missing required fields", field="sucursalId")
        _check_name(name)
        try:
            async with get_session(self._session_maker) as db:
                branch = await db.get(Branch, branch_id)
                if branch is None:
                    branch = Branch(id=branch_id, name=name)
                    db.add(branch)
                branch.name = name
                branch.description = data.get("description")
                branch.location = data.get("location")
                branch.server_url = data.get("serverUrl") or None
                branch.updated_at = datetime.now(timezone.utc)
        except IntegrityError as exc:
            raise Conflict(
                f"Sucursal {name} conflicts with an existing name or server URL"
            ) from exc
        return branch

    async def receive_notification(
        self,
        branch_id: str,
        name: str,
        description: str | None,
        location: str | None,
        server_url: str | None,
    ) -> Branch:
        branch = await self.upsert(
            {
                "id": branch_id,
                "name": name,
                "description": description,
                "location": location,
                "serverUrl": server_url,
            }
        )
        logger.info("Processed notification for sucursal %s (%s)", name, branch_id)
        return branch

    async def connect(self, branch_id: str, target_id: str) -> BranchConnection:
        if not target_id:
            raise InvalidInput("Target sucursal ID is required", field="targetSucursalId")
        if branch_id == target_id:
            raise InvalidInput("Cannot connect sucursal to itself", field="targetSucursalId")
        async with get_session(self._session_maker) as db:
            for bid in (branch_id, target_id):
                if await db.get(Branch, bid) is None:
                    raise NotFound(f"Sucursal {bid} not found")
            existing = (
                await db.execute(select(BranchConnection).where(_pair(branch_id, target_id)))
            ).scalars().first()
            if existing is not None:
                raise Conflict("Connection already exists")
            connection = BranchConnection(source_id=branch_id, target_id=target_id)
            db.add(connection)
        logger.info("Connected sucursal %s -> %s", branch_id, target_id)
        return connection

    async def disconnect(self, branch_id: str, target_id: str) -> None:
        async with get_session(self._session_maker) as db:
            existing = (
                await db.execute(select(BranchConnection).where(_pair(branch_id, target_id)))
            ).scalars().first()
            if existing is None:
                raise NotFound("Connection not found")
            await db.delete(existing)
        logger.info("Disconnected sucursal %s <-> %s", branch_id, target_id)

    async def ensure_local(
        self,
        name: str,
        server_url: str | None = None,
        remote_url: str | None = None,
    ) -> Branch:
        """Create the local branch row on first start; refresh its URLs."""
        async with get_session(self._session_maker) as db:
            result = await db.execute(select(Branch).where(Branch.name == name))
            branch = result.scalars().first()
            if branch is None:
                branch = Branch(name=name, server_url=server_url, remote_url=remote_url)
                db.add(branch)
                logger.info("Initialized local sucursal %s", name)
            else:
                if server_url is not None:
                    branch.server_url = server_url
                if remote_url is not None:
                    branch.remote_url = remote_url
        return branch
