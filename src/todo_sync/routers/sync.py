from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.encoders import jsonable_encoder
from sqlmodel.ext.asyncio.session import AsyncSession

from todo_sync.db import get_session
from todo_sync.deps import get_runner
from todo_sync.models import SyncConflict, utc_now
from todo_sync.repositories import todo_repo
from todo_sync.schemas_sync import (
    SyncConflictListResponse,
    SyncConflictOut,
    SyncConflictResolveRequest,
    SyncRunResponse,
    SyncStatusResponse,
)
from todo_sync.services import change_tracker, sync_state_service
from todo_sync.services.sync_orchestrator import SyncMode
from todo_sync.services.sync_runner import SyncRunner, get_circuit_breaker

router = APIRouter(prefix="/sync", tags=["sync"])


def _conflict_out(row: SyncConflict) -> SyncConflictOut:
    if row.id is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="conflict id missing")
    return SyncConflictOut(
        id=row.id,
        entity_kind=row.entity_kind,
        local_id=row.local_id,
        remote_id=row.remote_id,
        modified_fields=list(row.modified_fields or []),
        local_last_modified=row.local_last_modified,
        remote_last_modified=row.remote_last_modified,
        last_synced_at=row.last_synced_at,
        reason=row.reason,
        resolution=row.resolution,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def _run(runner: SyncRunner, mode: SyncMode) -> SyncRunResponse:
    # SyncAlreadyRunningError -> 409 (error_handlers)
    result = await runner.run(mode)
    out = SyncRunResponse.model_validate(result.to_dict())
    if not result.ok:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "message": result.error or "sync failed",
                "details": jsonable_encoder(out),
            },
        )
    return out


@router.post("/outbound", response_model=SyncRunResponse)
async def sync_outbound(runner: SyncRunner = Depends(get_runner)) -> SyncRunResponse:
    return await _run(runner, "outbound")


@router.post("/inbound", response_model=SyncRunResponse)
async def sync_inbound(runner: SyncRunner = Depends(get_runner)) -> SyncRunResponse:
    return await _run(runner, "inbound")


@router.post("/full", response_model=SyncRunResponse)
async def sync_full(runner: SyncRunner = Depends(get_runner)) -> SyncRunResponse:
    return await _run(runner, "full")


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    runner: SyncRunner = Depends(get_runner),
    session: AsyncSession = Depends(get_session),
) -> SyncStatusResponse:
    counts = await change_tracker.get_pending_changes_count(session)
    last_sync_at = await sync_state_service.get_last_sync_timestamp(session)
    open_conflicts = await todo_repo.list_open_conflicts(session)
    last = runner.last_result
    return SyncStatusResponse(
        running=runner.running,
        pending_lists=counts.lists,
        pending_items=counts.items,
        last_sync_at=last_sync_at,
        delta_sync_available=last_sync_at is not None,
        circuit_state=get_circuit_breaker().state.value,
        open_conflicts=len(open_conflicts),
        last_result=SyncRunResponse.model_validate(last.to_dict()) if last else None,
    )


@router.get("/conflicts", response_model=SyncConflictListResponse)
async def list_conflicts(session: AsyncSession = Depends(get_session)) -> SyncConflictListResponse:
    rows = await todo_repo.list_open_conflicts(session)
    return SyncConflictListResponse(items=[_conflict_out(r) for r in rows])


@router.post("/conflicts/{conflict_id}/resolve", response_model=SyncConflictOut)
async def resolve_conflict(
    conflict_id: int,
    payload: SyncConflictResolveRequest,
    session: AsyncSession = Depends(get_session),
) -> SyncConflictOut:
    """Record the operator's choice; the next inbound pass applies it."""
    row = await session.get(SyncConflict, conflict_id)
    if row is None or row.resolved_at is not None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conflict not found")
    row.resolution = payload.resolution
    row.updated_at = utc_now()
    session.add(row)
    await session.commit()
    return _conflict_out(row)
