from __future__ import annotations

import logging
import time

from sqlmodel import select

from sucursync.db import SessionMaker, get_session
from sucursync.entities import Branch
from sucursync.errors import NotFound

logger = logging.getLogger(__name__)


class CurrentBranch:
    """TTL-cached description of the branch this server runs as."""

    def __init__(
        self,
        session_maker: SessionMaker,
        branch_name: str,
        ttl_seconds: float = 300.0,
    ) -> None:
        self._session_maker = session_maker
        self.branch_name = branch_name
        self.ttl_seconds = ttl_seconds
        self._info: Branch | None = None
        self._fetched_at: float | None = None

    async def get_info(self) -> Branch:
        if (
            self._info is None
            or self._fetched_at is None
            or time.monotonic() - self._fetched_at > self.ttl_seconds
        ):
            await self.refresh()
        assert self._info is not None
        return self._info

    async def refresh(self) -> Branch:
        async with get_session(self._session_maker, read_only=True) as db:
            result = await db.execute(select(Branch).where(Branch.name == self.branch_name))
            branch = result.scalars().first()
        if branch is None:
            logger.error("No sucursal found with name: %s", self.branch_name)
            raise NotFound(f"Sucursal not configured. No sucursal found with name: {self.branch_name}")
        self._info = branch
        self._fetched_at = time.monotonic()
        logger.debug("Current sucursal loaded: %s (%s)", branch.name, branch.id)
        return branch

    def invalidate(self) -> None:
        self._info = None
        self._fetched_at = None
