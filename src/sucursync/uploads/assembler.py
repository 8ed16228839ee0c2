from __future__ import annotations

import contextlib
import logging
import time
from pathlib import Path

import aiofiles
import aiofiles.os

from sucursync.entities import StoredFile
from sucursync.errors import Incomplete, MissingChunk
from sucursync.uploads.files import FileRepository
from sucursync.uploads.sessions import SessionStore

logger = logging.getLogger(__name__)

COPY_BLOCK = 1_048_576


def unique_path(path: Path) -> Path:
    """Return *path*, or ``name_<n>.ext`` for the first n that is free."""
    candidate = path
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.stem}_{counter}{path.suffix}")
        counter += 1
    return candidate


class ChunkAssembler:
    """Joins the chunks of a finished session into a single stored file.

    Finished files land in ``<store root>/files/`` (or
    ``<store root>/users/<owner>/`` for a per-owner store) and are served
    under *url_prefix*, which may contain an ``{owner}`` placeholder.
    """

    def __init__(
        self,
        store: SessionStore,
        repository: FileRepository,
        url_prefix: str,
    ) -> None:
        self.store = store
        self.repository = repository
        self.url_prefix = url_prefix.rstrip("/")

    def output_dir(self, owner_id: str) -> Path:
        if self.store.per_owner:
            return self.store.root / "users" / owner_id
        return self.store.root / "files"

    def file_url(self, owner_id: str, filename: str) -> str:
        return f"{self.url_prefix.format(owner=owner_id)}/{filename}"

    async def complete(self, session_id: str, owner_id: str) -> StoredFile:
        await self.store.get_owned(session_id, owner_id)

        async with self.store.lock_for(session_id):
            # Reload under the lock; a chunk may have landed meanwhile.
            session = await self.store.get_owned(session_id, owner_id)
            if not session.is_complete:
                expected = set(range(session.total_chunks))
                raise Incomplete(len(session.received & expected), session.total_chunks)

            directory = self.store.session_dir(session)
            combined_name = f"{int(time.time() * 1000)}-{session.file_name}"
            partial = directory / f"{combined_name}.partial"

            written = 0
            try:
                async with aiofiles.open(partial, "wb") as out:
                    # Strict index order, whatever order the chunks arrived in.
                    for index in range(session.total_chunks):
                        chunk_path = self.store.chunk_path(session, index)
                        if not chunk_path.is_file():
                            raise MissingChunk(index)
                        async with aiofiles.open(chunk_path, "rb") as src:
                            while True:
                                block = await src.read(COPY_BLOCK)
                                if not block:
                                    break
                                await out.write(block)
                                written += len(block)
                    await out.flush()
            except BaseException:
                with contextlib.suppress(OSError):
                    await aiofiles.os.remove(partial)
                raise

            if written != session.file_size:
                logger.warning(
                    "Session %s assembled %d bytes but %d were declared",
                    session_id,
                    written,
                    session.file_size,
                )

            output_dir = self.output_dir(session.owner_id)
            await aiofiles.os.makedirs(output_dir, exist_ok=True)
            final_path = unique_path(output_dir / combined_name)
            await aiofiles.os.replace(partial, final_path)
            await self.store.remove(session)

        logger.info(
            "Assembled %s from %d chunks into %s",
            session.file_name,
            session.total_chunks,
            final_path,
        )
        return await self.repository.register(
            original_name=session.file_name,
            filename=final_path.name,
            size=written,
            url=self.file_url(session.owner_id, final_path.name),
            owner_id=session.owner_id,
            folder_id=session.folder_id,
        )
