from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

import httpx

from sucursync.server.models import (
    ChunkResponse,
    CompleteResponse,
    CreateSessionResponse,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class BatchProgressCallback(Protocol):
    """Callback protocol for observing batch upload progress."""

    def file_started(
            self,
            index: int,
            file_path: Path,
            total_bytes: int | None
        ) -> None: ...

    def file_progress(self, index: int, delta: int) -> None: ...
    def file_done(self, index: int, result: CompleteResponse) -> None: ...
    def file_error(self, index: int, exc: Exception) -> None: ...


@dataclass
class FileResult:
    """Result of uploading a single file in a batch."""

    filename: str
    response: CompleteResponse | None = field(default=None)
    error: str | None = field(default=None)


def resolve_inputs(paths: list[str], recursive: bool = False) -> list[Path]:
    """Resolve files and directories into a sorted list of regular files."""
    result: list[Path] = []
    for p in paths:
        path = Path(p)
        if path.is_file():
            result.append(path)
        elif path.is_dir():
            pattern = path.rglob("*") if recursive else path.glob("*")
            result.extend(f for f in pattern if f.is_file())
        else:
            logger.warning("Path does not exist: %s", path)
    if not result:
        raise FileNotFoundError("No files found in the given paths")
    return sorted(set(result))


def auth_headers(api_key: str | None = None, user_id: str | None = None) -> dict[str, str]:
    headers: dict[str, str] = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    if user_id:
        headers["X-User-ID"] = user_id
    return headers


def _iter_chunks(file_path: Path, chunk_size: int) -> Iterator[tuple[int, bytes]]:
    with open(file_path, "rb") as f:
        index = 0
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield index, chunk
            index += 1


def _endpoints(user_id: str | None) -> tuple[str, str, str]:
    if user_id:
        base = f"/v1/users/{user_id}"
        return f"{base}/upload-session", f"{base}/upload-chunk", f"{base}/upload-complete"
    return "/v1/uploads/sessions", "/v1/uploads/chunk", "/v1/uploads/complete"


def send_file(
    file_path: Path,
    base_url: str,
    progress_callback: Callable[[int], None] | None = None,
    timeout: float = 300.0,
    api_key: str | None = None,
    user_id: str | None = None,
    folder_id: str | None = None,
    retries: int = 3,
    transport: httpx.BaseTransport | None = None,
) -> CompleteResponse:
    """Upload a single file in chunks and return the server's file record.

    The chunk size comes from the server's session response. A chunk that
    fails on the transport is resent up to *retries* times.
    """
    session_url, chunk_url, complete_url = _endpoints(user_id)
    file_size = file_path.stat().st_size

    with httpx.Client(
        base_url=base_url,
        headers=auth_headers(api_key, user_id),
        timeout=httpx.Timeout(timeout, connect=10.0),
        transport=transport,
    ) as client:
        resp = client.post(
            session_url,
            json={"fileName": file_path.name, "fileSize": file_size, "folderId": folder_id},
        )
        resp.raise_for_status()
        session = CreateSessionResponse.model_validate(resp.json())
        logger.debug(
            "Session %s for %s: %d chunk(s)",
            session.session_id,
            file_path.name,
            session.total_chunks,
        )

        for index, chunk in _iter_chunks(file_path, session.chunk_size):
            attempt = 0
            while True:
                try:
                    resp = client.post(
                        chunk_url,
                        data={
                            "sessionId": session.session_id,
                            "chunkIndex": str(index),
                            "fileName": file_path.name,
                        },
                        files={"chunk": (file_path.name, chunk, "application/octet-stream")},
                    )
                    break
                except httpx.TransportError as exc:
                    attempt += 1
                    if attempt > retries:
                        raise
                    logger.warning(
                        "Chunk %d of %s failed (%s), retrying", index, file_path.name, exc,
                    )
            resp.raise_for_status()
            ChunkResponse.model_validate(resp.json())
            if progress_callback:
                progress_callback(len(chunk))

        resp = client.post(complete_url, json={"sessionId": session.session_id})
        resp.raise_for_status()
        return CompleteResponse.model_validate(resp.json())


def send_batch(
    file_paths: list[Path],
    base_url: str,
    parallel: int = 4,
    progress: BatchProgressCallback | None = None,
    api_key: str | None = None,
    user_id: str | None = None,
) -> list[FileResult]:
    """Send multiple files with configurable parallelism."""
    workers = min(parallel, len(file_paths))

    results: list[FileResult] = []

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures: dict[Future[CompleteResponse], tuple[int, Path]] = {}

        for idx, fpath in enumerate(file_paths):
            if progress:
                progress.file_started(idx, fpath, fpath.stat().st_size)

            def make_callback(i: int):
                def cb(delta: int):
                    if progress:
                        progress.file_progress(i, delta)
                return cb

            future = pool.submit(
                send_file,
                fpath,
                base_url,
                progress_callback=make_callback(idx),
                api_key=api_key,
                user_id=user_id,
            )
            futures[future] = (idx, fpath)

        for future in as_completed(futures):
            idx, fpath = futures[future]
            try:
                result = future.result()
                results.append(FileResult(filename=fpath.name, response=result))
                if progress:
                    progress.file_done(idx, result)
            except (httpx.HTTPError, OSError, ValueError) as exc:
                results.append(FileResult(filename=fpath.name, error=str(exc)))
                if progress:
                    progress.file_error(idx, exc)
                logger.error("Failed to send %s: %s", fpath, exc)

    return results
