"""Enrichment trigger endpoints.

The external scheduler (or a UI action) calls these to enrich one entity or
a batch. Responses always carry per-source outcomes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from src.signalhub.api.deps import get_service
from src.signalhub.enrichment.pipeline import EntityNotFoundError
from src.signalhub.enrichment.schemas import EntityKind, EntityRef, PipelineResult, SignalRecord
from src.signalhub.service import SignalHubService

router = APIRouter(prefix="/enrichment", tags=["enrichment"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class BatchEnrichRequest(BaseModel):
    """Request body for batch enrichment."""

    entities: list[EntityRef] = Field(min_length=1)
    concurrency: int | None = Field(default=None, ge=1, le=32)


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("/batch", response_model=list[PipelineResult])
async def enrich_batch(
    body: BatchEnrichRequest,
    service: SignalHubService = Depends(get_service),
) -> list[PipelineResult]:
    """Enrich several entities independently."""
    return await service.enrich_batch(body.entities, body.concurrency)


@router.post("/{entity_type}/{entity_id}", response_model=PipelineResult)
async def enrich_entity(
    entity_type: EntityKind,
    entity_id: str,
    tenant_id: str | None = None,
    service: SignalHubService = Depends(get_service),
) -> PipelineResult:
    """Run the enrichment waterfall for one prospect or account."""
    ref = EntityRef(entity_type=entity_type, entity_id=entity_id, tenant_id=tenant_id)
    try:
        return await service.enrich_entity(ref)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/{entity_id}/signals", response_model=SignalRecord)
async def get_signals(
    entity_id: str,
    service: SignalHubService = Depends(get_service),
) -> SignalRecord:
    """Return the last persisted SignalRecord for an entity."""
    record = await service.get_signal_record(entity_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"no signal record for {entity_id}",
        )
    return record
