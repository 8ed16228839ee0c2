from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
import aiofiles.os
from pydantic import BaseModel, Field

from sucursync.errors import Forbidden, InvalidInput, NotFound, QuotaExceeded

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"

_SESSION_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_OWNER_ID_RE = re.compile(r"^[A-Za-z0-9_.@-]+$")


class UploadSession(BaseModel):
    """Server-side record of one in-progress chunked upload."""

    session_id: str
    file_name: str
    file_size: int
    chunk_size: int
    total_chunks: int
    owner_id: str
    folder_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    received: set[int] = Field(default_factory=set)

    @property
    def uploaded_chunks(self) -> int:
        return len(self.received)

    @property
    def is_complete(self) -> bool:
        # The exact index set, not just its size.
        return self.received == set(range(self.total_chunks))


def chunk_filename(index: int) -> str:
    return f"chunk_{index}"


class SessionStore:
    """Upload sessions kept on disk, one directory per session.

    Two layouts are supported: the generic one keeps sessions under
    ``<root>/sessions/<id>/``; the per-owner one keeps them under
    ``<root>/users/<owner>/chunks/<id>/``.
    """

    def __init__(
        self,
        root: Path,
        chunk_size: int,
        max_file_size: int,
        per_owner: bool = False,
    ) -> None:
        self.root = Path(root)
        self.chunk_size = chunk_size
        self.max_file_size = max_file_size
        self.per_owner = per_owner
        self._locks: dict[str, asyncio.Lock] = {}

    # -- layout ------------------------------------------------------------

    def session_dir(self, session: UploadSession) -> Path:
        if self.per_owner:
            return self.root / "users" / session.owner_id / "chunks" / session.session_id
        return self.root / "sessions" / session.session_id

    def chunk_path(self, session: UploadSession, index: int) -> Path:
        return self.session_dir(session) / chunk_filename(index)

    def _find_dir(self, session_id: str) -> Path | None:
        if not _SESSION_ID_RE.match(session_id or ""):
            return None
        if self.per_owner:
            for candidate in self.root.glob(f"users/*/chunks/{session_id}"):
                return candidate
            return None
        candidate = self.root / "sessions" / session_id
        return candidate if candidate.is_dir() else None

    def _iter_dirs(self) -> list[Path]:
        pattern = "users/*/chunks/*" if self.per_owner else "sessions/*"
        return [p for p in self.root.glob(pattern) if p.is_dir()]

    def lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # -- persistence -------------------------------------------------------

    async def _load(self, directory: Path) -> UploadSession:
        async with aiofiles.open(directory / SESSION_FILE, "r") as f:
            raw = await f.read()
        return UploadSession.model_validate_json(raw)

    async def _save(self, session: UploadSession) -> None:
        directory = self.session_dir(session)
        tmp = directory / f"{SESSION_FILE}.{uuid.uuid4().hex}.tmp"
        async with aiofiles.open(tmp, "w") as f:
            await f.write(session.model_dump_json())
        await aiofiles.os.replace(tmp, directory / SESSION_FILE)

    # -- operations --------------------------------------------------------

    async def create_session(
        self,
        file_name: str | None,
        file_size: int | None,
        owner_id: str,
        folder_id: str | None = None,
    ) -> UploadSession:
        name = Path(file_name).name if file_name else ""
        if not name:
            raise InvalidInput("fileName is required", field="fileName")
        if file_size is None or isinstance(file_size, bool) or not isinstance(file_size, int):
            raise InvalidInput("fileSize is required", field="fileSize")
        if file_size <= 0:
            raise InvalidInput("fileSize must be positive", field="fileSize")
        if file_size > self.max_file_size:
            raise QuotaExceeded(
                f"File size {file_size} exceeds the limit of {self.max_file_size} bytes"
            )
        if not _OWNER_ID_RE.match(owner_id or ""):
            raise InvalidInput("Invalid owner identity", field="ownerId")

        session = UploadSession(
            session_id=uuid.uuid4().hex,
            file_name=name,
            file_size=file_size,
            chunk_size=self.chunk_size,
            total_chunks=-(-file_size // self.chunk_size),
            owner_id=owner_id,
            folder_id=folder_id,
        )
        await aiofiles.os.makedirs(self.session_dir(session), exist_ok=True)
        await self._save(session)
        logger.info(
            "Created upload session %s for %s (%d bytes, %d chunks, owner=%s)",
            session.session_id,
            name,
            file_size,
            session.total_chunks,
            owner_id,
        )
        return session

    async def get(self, session_id: str) -> UploadSession:
        directory = self._find_dir(session_id)
        if directory is None:
            raise NotFound("Upload session not found")
        try:
            return await self._load(directory)
        except FileNotFoundError as exc:
            raise NotFound("Upload session not found") from exc

    async def get_owned(self, session_id: str, owner_id: str) -> UploadSession:
        session = await self.get(session_id)
        if session.owner_id != owner_id:
            raise Forbidden("Session owner mismatch")
        return session

    async def record_chunk(
        self,
        session_id: str,
        chunk_index: int | str | None,
        data: bytes,
        owner_id: str,
    ) -> UploadSession:
        """Store one chunk and mark its index as received.

        The chunk is written under a temporary name and renamed into place
        before the index is recorded, all under the session lock.
        """
        if chunk_index is None or chunk_index == "":
            raise InvalidInput("chunkIndex is required", field="chunkIndex")
        try:
            index = int(chunk_index)
        except (TypeError, ValueError) as exc:
            raise InvalidInput("chunkIndex must be an integer", field="chunkIndex") from exc

        session = await self.get_owned(session_id, owner_id)
        if not 0 <= index < session.total_chunks:
            raise InvalidInput(
                f"chunkIndex must be between 0 and {session.total_chunks - 1}",
                field="chunkIndex",
            )
        if not data:
            raise InvalidInput("chunk is required", field="chunk")
        if len(data) > session.chunk_size:
            raise InvalidInput(
                f"chunk exceeds the session chunk size of {session.chunk_size} bytes",
                field="chunk",
            )

        async with self.lock_for(session_id):
            target = self.chunk_path(session, index)
            tmp = target.with_name(f"{target.name}.{uuid.uuid4().hex}.tmp")
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp, target)

            # Re-read under the lock so concurrent chunks are not lost.
            session = await self._load(self.session_dir(session))
            session.received.add(index)
            await self._save(session)

        logger.debug(
            "Session %s: chunk %d stored (%d/%d)",
            session_id,
            index,
            session.uploaded_chunks,
            session.total_chunks,
        )
        return session

    async def is_complete(self, session_id: str) -> bool:
        session = await self.get(session_id)
        return session.is_complete

    async def remove(self, session: UploadSession) -> None:
        await asyncio.to_thread(shutil.rmtree, self.session_dir(session), True)
        self._locks.pop(session.session_id, None)

    async def abandon(self, session_id: str, owner_id: str) -> None:
        session = await self.get_owned(session_id, owner_id)
        async with self.lock_for(session_id):
            await self.remove(session)
        logger.info("Abandoned upload session %s", session_id)

    async def expire_stale(self, max_age_seconds: float) -> int:
        """Remove sessions older than *max_age_seconds*. Returns count removed."""
        now = time.time()
        removed = 0
        for directory in self._iter_dirs():
            try:
                session = await self._load(directory)
                created = session.created_at.timestamp()
            except (OSError, ValueError):
                # No readable marker: fall back to the directory age.
                session = None
                created = directory.stat().st_mtime
            if now - created <= max_age_seconds:
                continue
            if session is not None and self.lock_for(session.session_id).locked():
                continue
            await asyncio.to_thread(shutil.rmtree, directory, True)
            self._locks.pop(directory.name, None)
            removed += 1
        if removed:
            logger.info("Expired %d stale upload session(s) under %s", removed, self.root)
        return removed
