"""Service wiring -- the core entry points behind one object.

SignalHubService owns one Repository and builds the connector registry,
enrichment pipeline and sync engine on top of it. The API, the CLI and
tests all go through this object.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import structlog

from src.signalhub.config import Settings, get_settings
from src.signalhub.connectors.registry import ConnectorRegistry
from src.signalhub.connectors.schemas import EntityType, SyncDirection
from src.signalhub.core.clock import Clock, utc_now
from src.signalhub.core.database import get_session
from src.signalhub.enrichment.pipeline import EnrichmentPipeline
from src.signalhub.enrichment.schemas import EntityRef, PipelineResult, SignalRecord
from src.signalhub.storage.repository import SIGNAL_RECORDS, SYNC_CONFLICTS, SYNC_JOBS, Repository
from src.signalhub.storage.sql import SQLAlchemyRepository
from src.signalhub.sync.engine import SyncEngine
from src.signalhub.sync.schemas import (
    ActivityLogResult,
    ConflictResolution,
    SyncConflict,
    SyncJob,
)

logger = structlog.get_logger(__name__)


class SignalHubService:
    """Facade over the enrichment pipeline and the CRM sync engine.

    Args:
        repository: Storage backend shared by every component.
        settings: Application settings.
        clock: UTC clock handed to every component.
        transport: Optional httpx transport for all provider clients.
    """

    def __init__(
        self,
        repository: Repository,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        transport: Any = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.repository = repository
        self.registry = ConnectorRegistry(repository, self.settings, clock=clock, transport=transport)
        self.pipeline = EnrichmentPipeline(repository, self.registry, self.settings, clock=clock)
        self.sync_engine = SyncEngine(repository, self.registry, self.settings, clock=clock)

    # ── Enrichment ──────────────────────────────────────────────────────────

    async def enrich_entity(
        self, ref: EntityRef, cancel_event: asyncio.Event | None = None
    ) -> PipelineResult:
        return await self.pipeline.enrich_entity(ref, cancel_event)

    async def enrich_batch(
        self, refs: list[EntityRef], concurrency: int | None = None
    ) -> list[PipelineResult]:
        return await self.pipeline.enrich_batch(refs, concurrency)

    async def get_signal_record(self, entity_id: str) -> SignalRecord | None:
        row = await self.repository.get(SIGNAL_RECORDS, entity_id)
        if row is None:
            return None
        return SignalRecord.model_validate(row["record"])

    # ── Sync ────────────────────────────────────────────────────────────────

    async def sync_entity_type(
        self,
        connection_id: str,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.PULL,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncJob:
        return await self.sync_engine.sync_entity_type(connection_id, entity_type, direction, cancel_event)

    async def incremental_sync(
        self,
        connection_id: str,
        entity_type: EntityType,
        since: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncJob:
        return await self.sync_engine.incremental_sync(connection_id, entity_type, since, cancel_event)

    async def resolve_conflict(self, conflict_id: str, resolution: ConflictResolution) -> SyncConflict:
        return await self.sync_engine.resolve_conflict(conflict_id, resolution)

    async def log_activity_to_crm(
        self,
        connection_id: str,
        activity_type: str,
        related_type: EntityType,
        related_internal_id: str,
        fields: dict[str, Any],
    ) -> ActivityLogResult:
        return await self.sync_engine.log_activity_to_crm(
            connection_id, activity_type, related_type, related_internal_id, fields
        )

    async def get_sync_job(self, job_id: str) -> dict[str, Any] | None:
        return await self.repository.get(SYNC_JOBS, job_id)

    async def list_conflicts(self, connection_id: str, status: str = "open") -> list[SyncConflict]:
        rows = await self.repository.query(
            SYNC_CONFLICTS,
            {"connection_id": connection_id, "status": status},
            order_by="detected_at",
        )
        return [SyncConflict.model_validate(row) for row in rows]

    # ── Connections ─────────────────────────────────────────────────────────

    async def test_connection(self, connection_id: str) -> tuple[bool, str | None]:
        """Validate a stored connection's credentials with a cheap provider call."""
        connection = await self.registry.load_connection(connection_id)
        connector = self.registry.instantiate(connection)
        ok, error = await connector.test_connection()
        logger.info("service.connection_tested", connection_id=connection_id, ok=ok)
        return ok, error


def build_service(settings: Settings | None = None) -> SignalHubService:
    """Service over the configured SQL database."""
    return SignalHubService(SQLAlchemyRepository(get_session), settings)
