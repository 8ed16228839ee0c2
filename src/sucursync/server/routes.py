from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import FileResponse

from sucursync import __version__
from sucursync.entities import StoredFile
from sucursync.errors import Forbidden, InvalidInput, NotFound
from sucursync.server import backup_routes, branch_routes, errorlog_routes
from sucursync.server.auth import AuthContext
from sucursync.server.deps import AuthDep, StateDep, bind_auth
from sucursync.server.models import (
    ChunkResponse,
    CompleteRequest,
    CompleteResponse,
    CreateSessionRequest,
    CreateSessionResponse,
    FileInfo,
    HealthResponse,
    MessageResponse,
    SessionStatusResponse,
)
from sucursync.server.state import AppState
from sucursync.uploads.assembler import ChunkAssembler
from sucursync.uploads.sessions import SessionStore, UploadSession

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

public = APIRouter()
router = APIRouter()


def _file_info(record: StoredFile) -> FileInfo:
    return FileInfo(
        id=record.id,
        original_name=record.original_name,
        filename=record.filename,
        size=record.size,
        url=record.url,
    )


def _status(session: UploadSession) -> SessionStatusResponse:
    return SessionStatusResponse(
        session_id=session.session_id,
        file_name=session.file_name,
        file_size=session.file_size,
        total_chunks=session.total_chunks,
        uploaded_chunks=session.uploaded_chunks,
        received=sorted(session.received),
        complete=session.is_complete,
        created_at=session.created_at,
    )


def _served_path(directory: Path, filename: str) -> Path:
    """Resolve *filename* inside *directory*; no escaping it."""
    path = (directory / filename).resolve()
    if path.parent != directory.resolve() or not path.is_file():
        raise NotFound("File not found")
    return path


def _check_user(auth: AuthContext, user_id: str) -> None:
    if not auth.can_act_for(user_id):
        raise Forbidden("Not allowed to act for this user")


@public.get("/health", response_model=HealthResponse)
async def health(state: AppState = StateDep) -> HealthResponse:
    """Server status, version and the name of the local branch."""
    return HealthResponse(
        status="ok",
        version=__version__,
        branch=state.settings.branch_name,
    )


# -- shared upload flow ----------------------------------------------------


async def _create_session(
    store: SessionStore, body: CreateSessionRequest, owner_id: str,
) -> CreateSessionResponse:
    session = await store.create_session(
        body.file_name, body.file_size, owner_id, folder_id=body.folder_id,
    )
    return CreateSessionResponse(
        session_id=session.session_id,
        total_chunks=session.total_chunks,
        chunk_size=session.chunk_size,
    )


async def _upload_chunk(
    store: SessionStore,
    session_id: str | None,
    chunk_index: str | None,
    chunk: UploadFile | None,
    owner_id: str,
) -> ChunkResponse:
    if not session_id:
        raise InvalidInput("sessionId is required", field="sessionId")
    if chunk is None:
        raise InvalidInput("chunk is required", field="chunk")
    data = await chunk.read()
    session = await store.record_chunk(session_id, chunk_index, data, owner_id)
    return ChunkResponse(
        chunk_index=int(chunk_index),
        uploaded_chunks=session.uploaded_chunks,
        total_chunks=session.total_chunks,
    )


async def _complete(
    assembler: ChunkAssembler, body: CompleteRequest, owner_id: str,
) -> CompleteResponse:
    if not body.session_id:
        raise InvalidInput("sessionId is required", field="sessionId")
    record = await assembler.complete(body.session_id, owner_id)
    return CompleteResponse(file=_file_info(record))


# -- generic uploads -------------------------------------------------------


@router.post("/uploads/sessions", response_model=CreateSessionResponse)
async def create_upload_session(
    body: CreateSessionRequest,
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> CreateSessionResponse:
    return await _create_session(state.uploads, body, auth.identity)


@router.post("/uploads/chunk", response_model=ChunkResponse)
async def upload_chunk(
    session_id: str | None = Form(None, alias="sessionId"),
    chunk_index: str | None = Form(None, alias="chunkIndex"),
    chunk: UploadFile | None = File(None),
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> ChunkResponse:
    """Store one chunk. Re-sending an index overwrites the earlier copy."""
    return await _upload_chunk(state.uploads, session_id, chunk_index, chunk, auth.identity)


@router.post("/uploads/complete", response_model=CompleteResponse)
async def complete_upload(
    body: CompleteRequest,
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> CompleteResponse:
    return await _complete(state.assembler, body, auth.identity)


@router.get("/uploads/sessions/{session_id}", response_model=SessionStatusResponse)
async def upload_session_status(
    session_id: str,
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> SessionStatusResponse:
    session = await state.uploads.get_owned(session_id, auth.identity)
    return _status(session)


@router.delete("/uploads/sessions/{session_id}", response_model=MessageResponse)
async def abandon_upload_session(
    session_id: str,
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> MessageResponse:
    await state.uploads.abandon(session_id, auth.identity)
    return MessageResponse(message="Upload session removed")


@router.get("/uploads/files/{filename}", response_class=FileResponse, response_model=None)
async def download_file(filename: str, state: AppState = StateDep) -> FileResponse:
    path = _served_path(state.assembler.output_dir(""), filename)
    return FileResponse(path, filename=filename)


# -- per-user uploads ------------------------------------------------------


@router.post("/users/{user_id}/upload-session", response_model=CreateSessionResponse)
async def create_user_upload_session(
    user_id: str,
    body: CreateSessionRequest,
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> CreateSessionResponse:
    _check_user(auth, user_id)
    return await _create_session(state.user_uploads, body, user_id)


@router.post("/users/{user_id}/upload-chunk", response_model=ChunkResponse)
async def upload_user_chunk(
    user_id: str,
    session_id: str | None = Form(None, alias="sessionId"),
    chunk_index: str | None = Form(None, alias="chunkIndex"),
    chunk: UploadFile | None = File(None),
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> ChunkResponse:
    _check_user(auth, user_id)
    return await _upload_chunk(state.user_uploads, session_id, chunk_index, chunk, user_id)


@router.post("/users/{user_id}/upload-complete", response_model=CompleteResponse)
async def complete_user_upload(
    user_id: str,
    body: CompleteRequest,
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> CompleteResponse:
    _check_user(auth, user_id)
    return await _complete(state.user_assembler, body, user_id)


@router.get(
    "/uploads/users/{user_id}/{filename}",
    response_class=FileResponse,
    response_model=None,
)
async def download_user_file(
    user_id: str,
    filename: str,
    state: AppState = StateDep,
    auth: AuthContext = AuthDep,
) -> FileResponse:
    _check_user(auth, user_id)
    owner_dir = state.user_assembler.output_dir(user_id)
    if owner_dir.resolve().parent != state.user_assembler.output_dir("").resolve():
        raise NotFound("File not found")
    path = _served_path(owner_dir, filename)
    return FileResponse(path, filename=filename)


def make_router(auth_dep: Callable[..., Any]) -> APIRouter:
    """Combine every route; peer-facing endpoints skip authentication."""
    combined = APIRouter()
    combined.include_router(public)
    combined.include_router(branch_routes.public)
    combined.include_router(backup_routes.public)
    combined.include_router(errorlog_routes.public)

    guarded = [Depends(bind_auth(auth_dep))]
    combined.include_router(router, dependencies=guarded)
    combined.include_router(branch_routes.router, dependencies=guarded)
    combined.include_router(backup_routes.router, dependencies=guarded)
    combined.include_router(errorlog_routes.router, dependencies=guarded)
    return combined
