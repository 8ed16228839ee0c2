from __future__ import annotations

import logging

from fastapi import APIRouter

from sucursync.entities import Branch, BranchConnection
from sucursync.errors import InvalidInput
from sucursync.server.deps import StateDep
from sucursync.server.models import (
    BranchCreateRequest,
    BranchCreateResponse,
    BranchInfo,
    BranchUpdateRequest,
    ConnectionInfo,
    ConnectRequest,
    CurrentInfoResponse,
    DirectoryResponse,
    MessageResponse,
    NotifyNewRequest,
    SyncReportResponse,
)
from sucursync.server.state import AppState

logger = logging.getLogger(__name__)

public = APIRouter(prefix="/sucursals")
router = APIRouter(prefix="/sucursals")


def _info(branch: Branch) -> BranchInfo:
    return BranchInfo.model_validate(branch)


def _peer_info(branch: Branch) -> BranchInfo:
    """What other branches may see: no remote URL."""
    return BranchInfo(
        id=branch.id,
        name=branch.name,
        description=branch.description,
        location=branch.location,
        server_url=branch.server_url,
    )


def _connection(connection: BranchConnection) -> ConnectionInfo:
    return ConnectionInfo.model_validate(connection)


# -- peer endpoints --------------------------------------------------------


@public.get("/current/info", response_model=CurrentInfoResponse)
async def current_info(state: AppState = StateDep) -> CurrentInfoResponse:
    """Self-description of this branch, fetched by peers during sync."""
    return CurrentInfoResponse(sucursal=_peer_info(await state.current.get_info()))


@public.get("/directory", response_model=DirectoryResponse)
async def directory(state: AppState = StateDep) -> DirectoryResponse:
    """Every branch known here, for transitive discovery."""
    branches = await state.registry.list_branches()
    return DirectoryResponse(sucursals=[_peer_info(b) for b in branches])


@public.post("/notify-new", response_model=MessageResponse)
async def notify_new(body: NotifyNewRequest, state: AppState = StateDep) -> MessageResponse:
    if not body.sucursal_id or not body.name:
        raise InvalidInput("Missing required fields", field="sucursalId")
    await state.registry.receive_notification(
        body.sucursal_id,
        body.name,
        body.description,
        body.location,
        body.server_url,
    )
    return MessageResponse(message="Sucursal information updated successfully")


# -- management ------------------------------------------------------------


@router.get("", response_model=list[BranchInfo])
async def list_branches(state: AppState = StateDep) -> list[BranchInfo]:
    return [_info(b) for b in await state.registry.list_branches()]


@router.post("", response_model=BranchCreateResponse, status_code=201)
async def create_branch(
    body: BranchCreateRequest, state: AppState = StateDep,
) -> BranchCreateResponse:
    branch, connections = await state.registry.create_branch(
        body.name,
        description=body.description,
        location=body.location,
        server_url=body.server_url,
        connected_ids=body.connected_sucursal_ids,
        remote_url=body.remote_url,
    )
    return BranchCreateResponse(
        sucursal=_info(branch),
        connections=[_connection(c) for c in connections],
    )


@router.post("/sync", response_model=SyncReportResponse)
async def sync_now(state: AppState = StateDep) -> SyncReportResponse:
    """Run one scheduler firing right away."""
    report = await state.scheduler.run_once()
    return SyncReportResponse.model_validate(report.model_dump(mode="json"))


@router.get("/{branch_id}", response_model=BranchInfo)
async def get_branch(branch_id: str, state: AppState = StateDep) -> BranchInfo:
    return _info(await state.registry.get_branch(branch_id))


@router.put("/{branch_id}", response_model=BranchInfo)
async def update_branch(
    branch_id: str, body: BranchUpdateRequest, state: AppState = StateDep,
) -> BranchInfo:
    branch = await state.registry.update_branch(
        branch_id, **body.model_dump(exclude_unset=True),
    )
    state.current.invalidate()
    return _info(branch)


@router.delete("/{branch_id}", response_model=MessageResponse)
async def delete_branch(branch_id: str, state: AppState = StateDep) -> MessageResponse:
    local = await state.current.get_info()
    if branch_id == local.id:
        raise InvalidInput("Cannot delete the local sucursal", field="id")
    await state.registry.delete_branch(branch_id)
    return MessageResponse(message="Sucursal deleted successfully")


@router.post("/{branch_id}/connect", response_model=ConnectionInfo)
async def connect(
    branch_id: str, body: ConnectRequest, state: AppState = StateDep,
) -> ConnectionInfo:
    connection = await state.registry.connect(branch_id, body.target_sucursal_id or "")
    return _connection(connection)


@router.delete("/{branch_id}/disconnect/{target_id}", response_model=MessageResponse)
async def disconnect(
    branch_id: str, target_id: str, state: AppState = StateDep,
) -> MessageResponse:
    await state.registry.disconnect(branch_id, target_id)
    return MessageResponse(message="Sucursals disconnected successfully")


@router.get("/{branch_id}/connections", response_model=list[BranchInfo])
async def connections(branch_id: str, state: AppState = StateDep) -> list[BranchInfo]:
    await state.registry.get_branch(branch_id)
    return [_info(b) for b in await state.registry.peers_of(branch_id)]
