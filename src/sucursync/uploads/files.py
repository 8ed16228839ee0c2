from __future__ import annotations

import logging

from sqlmodel import select

from sucursync.db import SessionMaker, get_session
from sucursync.entities import StoredFile

logger = logging.getLogger(__name__)


class FileRepository:
    """Database registry of assembled files."""

    def __init__(self, session_maker: SessionMaker) -> None:
        self._session_maker = session_maker

    async def register(
        self,
        original_name: str,
        filename: str,
        size: int,
        url: str,
        owner_id: str,
        folder_id: str | None = None,
    ) -> StoredFile:
        record = StoredFile(
            original_name=original_name,
            filename=filename,
            size=size,
            url=url,
            owner_id=owner_id,
            folder_id=folder_id,
        )
        async with get_session(self._session_maker) as db:
            db.add(record)
        logger.info("Registered file %s (%d bytes, owner=%s)", filename, size, owner_id)
        return record

    async def get_by_filename(self, filename: str) -> StoredFile | None:
        async with get_session(self._session_maker, read_only=True) as db:
            result = await db.execute(select(StoredFile).where(StoredFile.filename == filename))
            return result.scalars().first()
