"""Error log: entries are stored locally and forwarded best-effort to the
branch's remote peer. Unsent entries are retried in bounded batches."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from sucursync.branches.current import CurrentBranch
from sucursync.db import SessionMaker, get_session
from sucursync.entities import ErrorLog, ErrorType
from sucursync.errors import NotFound, SucursyncError, UpstreamUnavailable
from sucursync.peers import PeerClient

logger = logging.getLogger(__name__)


def _details_json(details: Any) -> str | None:
    if details is None:
        return None
    if isinstance(details, BaseException):
        payload: Any = {"type": type(details).__name__, "message": str(details)}
        if isinstance(details, SucursyncError) and details.extra:
            payload["extra"] = details.extra
        return json.dumps(payload)
    return json.dumps(details, default=str)


def entry_to_wire(entry: ErrorLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "branchId": entry.branch_id,
        "errorType": entry.error_type,
        "description": entry.description,
        "details": entry.details,
        "createdAt": entry.created_at.isoformat(),
    }


class ErrorLogService:
    def __init__(
        self,
        session_maker: SessionMaker,
        current: CurrentBranch,
        peers: PeerClient,
        batch_size: int = 50,
    ) -> None:
        self._session_maker = session_maker
        self.current = current
        self.peers = peers
        self.batch_size = batch_size

    async def _remote_url(self) -> tuple[str | None, str | None]:
        try:
            branch = await self.current.get_info()
        except NotFound:
            return None, None
        return branch.id, branch.remote_url

    async def log_error(
        self,
        error_type: ErrorType,
        description: str,
        details: Any = None,
    ) -> ErrorLog | None:
        """Record an entry and try to forward it once.

        Never raises: a broken error log must not break the caller.
        """
        branch_id, remote_url = await self._remote_url()
        if branch_id is None:
            logger.error("No sucursal info available for error logging")

        entry = ErrorLog(
            branch_id=branch_id,
            error_type=ErrorType(error_type).value,
            description=description,
            details=_details_json(details),
        )
        try:
            async with get_session(self._session_maker) as db:
                db.add(entry)
        except SQLAlchemyError:
            logger.exception("Failed to log error: %s", description)
            return None

        if remote_url:
            try:
                await self.peers.forward_error_logs(remote_url, [entry_to_wire(entry)])
            except UpstreamUnavailable as exc:
                logger.debug("Error log %s kept for later: %s", entry.id, exc)
            else:
                await self._mark_sent([entry.id])
                entry.sent_to_remote = True
        return entry

    async def _mark_sent(self, ids: list[str]) -> None:
        async with get_session(self._session_maker) as db:
            result = await db.execute(select(ErrorLog).where(ErrorLog.id.in_(ids)))
            for entry in result.scalars():
                entry.sent_to_remote = True

    async def sync_pending(self) -> dict[str, int]:
        """Forward one batch of unsent entries, oldest first."""
        _, remote_url = await self._remote_url()
        if not remote_url:
            return {"synced": 0, "failed": 0}

        async with get_session(self._session_maker, read_only=True) as db:
            result = await db.execute(
                select(ErrorLog)
                .where(ErrorLog.sent_to_remote == False)  # noqa: E712
                .order_by(ErrorLog.created_at)
                .limit(self.batch_size)
            )
            pending = list(result.scalars())
        if not pending:
            return {"synced": 0, "failed": 0}

        try:
            await self.peers.forward_error_logs(
                remote_url, [entry_to_wire(e) for e in pending],
            )
        except UpstreamUnavailable as exc:
            logger.warning("Could not forward %d error log(s): %s", len(pending), exc)
            return {"synced": 0, "failed": len(pending)}

        await self._mark_sent([e.id for e in pending])
        logger.info("Forwarded %d error log(s) to %s", len(pending), remote_url)
        return {"synced": len(pending), "failed": 0}

    async def receive(self, entries: list[dict[str, Any]]) -> int:
        """Store entries forwarded by a peer. Known ids are skipped."""
        stored = 0
        async with get_session(self._session_maker) as db:
            for raw in entries:
                entry_id = raw.get("id")
                if entry_id and await db.get(ErrorLog, entry_id) is not None:
                    continue
                created = raw.get("createdAt")
                entry = ErrorLog(
                    branch_id=raw.get("branchId"),
                    error_type=str(raw.get("errorType") or ErrorType.SYNC_ERROR.value),
                    description=str(raw.get("description") or ""),
                    details=raw.get("details"),
                    sent_to_remote=True,
                )
                if entry_id:
                    entry.id = entry_id
                if created:
                    try:
                        entry.created_at = datetime.fromisoformat(str(created))
                    except ValueError:
                        logger.warning(
                            "Error log %s has an invalid createdAt %r, using receive time",
                            entry.id,
                            created,
                        )
                db.add(entry)
                stored += 1
        return stored

    async def list_logs(
        self,
        page: int = 1,
        limit: int = 10,
        error_type: str | None = None,
        branch_id: str | None = None,
    ) -> tuple[list[ErrorLog], int]:
        conditions = []
        if error_type:
            conditions.append(ErrorLog.error_type == error_type)
        if branch_id:
            conditions.append(ErrorLog.branch_id == branch_id)

        async with get_session(self._session_maker, read_only=True) as db:
            total = (
                await db.execute(select(func.count()).select_from(ErrorLog).where(*conditions))
            ).scalar_one()
            result = await db.execute(
                select(ErrorLog)
                .where(*conditions)
                .order_by(ErrorLog.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars()), total
