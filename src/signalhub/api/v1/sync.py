"""CRM sync trigger endpoints.

Full and incremental sync per connection and entity type, conflict listing
and resolution, best-effort activity logging and connection tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.signalhub.api.deps import get_service
from src.signalhub.connectors.registry import ConnectionNotFoundError
from src.signalhub.connectors.schemas import EntityType, SyncDirection
from src.signalhub.service import SignalHubService
from src.signalhub.sync.schemas import (
    ActivityLogResult,
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    ConflictResolution,
    SyncConflict,
    SyncJob,
)

router = APIRouter(prefix="/sync", tags=["sync"])


# ── Request / Response Schemas ───────────────────────────────────────────────


class SyncRequest(BaseModel):
    direction: SyncDirection = SyncDirection.PULL


class IncrementalSyncRequest(BaseModel):
    since: datetime | None = None


class ResolveConflictRequest(BaseModel):
    resolution: ConflictResolution


class LogActivityRequest(BaseModel):
    """Request body for logging an activity against a mapped CRM record."""

    activity_type: str
    related_type: EntityType = EntityType.CONTACT
    related_internal_id: str
    fields: dict[str, Any] = Field(default_factory=dict)


class ConnectionTestResponse(BaseModel):
    ok: bool
    error: str | None = None


# ── Connection-scoped Endpoints ──────────────────────────────────────────────


@router.post("/connections/{connection_id}/entities/{entity_type}", response_model=SyncJob)
async def sync_entity_type(
    connection_id: str,
    entity_type: EntityType,
    body: SyncRequest | None = None,
    service: SignalHubService = Depends(get_service),
) -> SyncJob:
    """Full sync (pull, push or bidirectional) of one entity type."""
    direction = body.direction if body else SyncDirection.PULL
    return await service.sync_entity_type(connection_id, entity_type, direction)


@router.post(
    "/connections/{connection_id}/entities/{entity_type}/incremental",
    response_model=SyncJob,
)
async def incremental_sync(
    connection_id: str,
    entity_type: EntityType,
    body: IncrementalSyncRequest | None = None,
    service: SignalHubService = Depends(get_service),
) -> SyncJob:
    """Pull records modified since ``since`` (default: the last successful sync)."""
    return await service.incremental_sync(connection_id, entity_type, body.since if body else None)


@router.get("/connections/{connection_id}/conflicts", response_model=list[SyncConflict])
async def list_conflicts(
    connection_id: str,
    conflict_status: str = "open",
    service: SignalHubService = Depends(get_service),
) -> list[SyncConflict]:
    return await service.list_conflicts(connection_id, conflict_status)


@router.post("/connections/{connection_id}/activities", response_model=ActivityLogResult)
async def log_activity(
    connection_id: str,
    body: LogActivityRequest,
    service: SignalHubService = Depends(get_service),
) -> ActivityLogResult:
    """Log an activity to the CRM; skipped when the related record is unmapped."""
    return await service.log_activity_to_crm(
        connection_id,
        body.activity_type,
        body.related_type,
        body.related_internal_id,
        body.fields,
    )


@router.post("/connections/{connection_id}/test", response_model=ConnectionTestResponse)
async def test_connection(
    connection_id: str,
    service: SignalHubService = Depends(get_service),
) -> ConnectionTestResponse:
    try:
        ok, error = await service.test_connection(connection_id)
    except ConnectionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return ConnectionTestResponse(ok=ok, error=error)


# ── Jobs & Conflicts ─────────────────────────────────────────────────────────


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    service: SignalHubService = Depends(get_service),
) -> dict[str, Any]:
    job = await service.get_sync_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"sync job {job_id} not found")
    return job


@router.post("/conflicts/{conflict_id}/resolve", response_model=SyncConflict)
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest,
    service: SignalHubService = Depends(get_service),
) -> SyncConflict:
    """Apply one side of an open conflict."""
    try:
        return await service.resolve_conflict(conflict_id, body.resolution)
    except ConflictNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ConflictAlreadyResolvedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
