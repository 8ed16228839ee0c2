from __future__ import annotations

from fastapi import APIRouter, Query

from sucursync.server.deps import StateDep
from sucursync.server.models import (
    ErrorLogInfo,
    ErrorLogPage,
    ErrorLogReceiveRequest,
    ErrorLogReceiveResponse,
)
from sucursync.server.state import AppState

public = APIRouter(prefix="/error-logs")
router = APIRouter(prefix="/error-logs")


@router.get("", response_model=ErrorLogPage)
async def list_error_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    error_type: str | None = Query(None, alias="errorType"),
    branch_id: str | None = Query(None, alias="sucursalId"),
    state: AppState = StateDep,
) -> ErrorLogPage:
    items, total = await state.error_log.list_logs(
        page=page, limit=limit, error_type=error_type, branch_id=branch_id,
    )
    return ErrorLogPage(
        error_logs=[ErrorLogInfo.model_validate(e) for e in items],
        total=total,
        page=page,
        limit=limit,
        total_pages=-(-total // limit),
    )


@router.post("/sync")
async def sync_error_logs(state: AppState = StateDep) -> dict[str, int]:
    return await state.error_log.sync_pending()


@public.post("/receive", response_model=ErrorLogReceiveResponse)
async def receive_error_logs(
    body: ErrorLogReceiveRequest, state: AppState = StateDep,
) -> ErrorLogReceiveResponse:
    """Peer endpoint: store error logs forwarded by another branch."""
    stored = await state.error_log.receive(body.error_logs)
    return ErrorLogReceiveResponse(received=len(body.error_logs), stored=stored)
