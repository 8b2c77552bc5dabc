"""CRM sync engine -- identity-mapped pull/push between internal tables and a CRM.

Pull: page through the CRM (or its recently-modified feed), map each entity
through the connection's FieldMapping and upsert the internal record. New
entities get their identity mapping inserted first; the storage layer's
unique constraints reject a second mapping for either side, so concurrent
workers cannot create duplicates.

Push: internal records with no mapping for the connection are created in
the CRM in batches and mapped afterwards.

Update conflicts (both sides changed since last_synced_at) are resolved by
the connection's policy: use_crm, use_internal, or manual (recorded open
until resolve_conflict is called).

Every entity attempt writes one sync_log row, independent of the job record.
"""

from __future__ import annotations

import asyncio
import functools
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from pydantic_core import to_jsonable_python

from src.signalhub.config import Settings, get_settings
from src.signalhub.connectors.base import CRMConnector, call_with_rate_limit_backoff
from src.signalhub.connectors.errors import ConnectorError
from src.signalhub.connectors.registry import ConnectorRegistry
from src.signalhub.connectors.schemas import (
    ConflictPolicy,
    Connection,
    CRMEntity,
    EntityType,
    SyncDirection,
)
from src.signalhub.core.clock import Clock, ensure_utc, parse_datetime, utc_now
from src.signalhub.core.metrics import sync_conflicts_total, sync_records_total
from src.signalhub.storage.repository import (
    CONNECTIONS,
    ENTITY_MAPPINGS,
    SYNC_CONFLICTS,
    SYNC_JOBS,
    SYNC_LOG,
    DuplicateRecordError,
    Repository,
)
from src.signalhub.sync.field_mapping import (
    FieldMapping,
    FieldMappingStore,
    map_crm_to_internal,
    map_internal_to_crm,
)
from src.signalhub.sync.schemas import (
    ENTITY_TABLES,
    ActivityLogResult,
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    ConflictResolution,
    ConflictStatus,
    EntityIdentityMapping,
    SyncAction,
    SyncConflict,
    SyncItemError,
    SyncJob,
    SyncMode,
    SyncResult,
)

logger = structlog.get_logger(__name__)

# Namespace for deterministic conflict ids
_CONFLICT_NAMESPACE = uuid.UUID("0b7e54c1-3f9d-4a62-8e15-7c2d9a4b6e03")


class SyncCancelledError(Exception):
    """Raised inside a job when the caller's cancel event is set."""


@dataclass
class _JobContext:
    job: SyncJob
    connection: Connection
    connector: CRMConnector
    mapping: FieldMapping
    now: datetime
    semaphore: asyncio.Semaphore
    cancel_event: asyncio.Event | None
    result: SyncResult = field(default_factory=SyncResult)

    @property
    def entity_type(self) -> EntityType:
        return self.job.entity_type

    @property
    def table(self) -> str:
        return ENTITY_TABLES[self.job.entity_type]

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SyncCancelledError("sync cancelled by caller")


def conflict_id(connection_id: str, entity_type: EntityType, internal_id: str, crm_updated_at: datetime | None) -> str:
    """Same conflict detected twice maps to the same row."""
    stamp = crm_updated_at.isoformat() if crm_updated_at else ""
    key = "|".join((connection_id, entity_type.value, internal_id, stamp))
    return str(uuid.uuid5(_CONFLICT_NAMESPACE, key))


class SyncEngine:
    """Drives full, incremental and push sync for one CRM connection at a time.

    Args:
        repository: Storage for internal records, mappings, jobs and audit rows.
        registry: Loads connections and builds CRM connectors.
        settings: Page size, record cap, worker pool size, rate-limit budget.
        clock: UTC clock (injected in tests).
        mapping_store: Field mapping lookup; defaults to a repository-backed store.
    """

    def __init__(
        self,
        repository: Repository,
        registry: ConnectorRegistry,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        mapping_store: FieldMappingStore | None = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._settings = settings or get_settings()
        self._clock = clock
        self._mappings = mapping_store or FieldMappingStore(repository)

    # ── Entry points ────────────────────────────────────────────────────────

    async def sync_entity_type(
        self,
        connection_id: str,
        entity_type: EntityType,
        direction: SyncDirection = SyncDirection.PULL,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncJob:
        """Full sync of one entity type; bidirectional pulls then pushes."""
        return await self._run_job(
            connection_id, entity_type, direction, SyncMode.FULL, None, cancel_event
        )

    async def incremental_sync(
        self,
        connection_id: str,
        entity_type: EntityType,
        since: datetime | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncJob:
        """Pull entities modified after ``since`` (default: the connection's last sync).

        A connection that has never synced falls back to a full pull.
        """
        return await self._run_job(
            connection_id, entity_type, SyncDirection.PULL, SyncMode.INCREMENTAL, since, cancel_event
        )

    async def resolve_conflict(self, conflict_id: str, resolution: ConflictResolution) -> SyncConflict:
        """Apply one side of an open conflict and close it.

        Raises:
            ConflictNotFoundError: Unknown conflict id.
            ConflictAlreadyResolvedError: The conflict is no longer open.
        """
        row = await self._repository.get(SYNC_CONFLICTS, conflict_id)
        if row is None:
            raise ConflictNotFoundError(f"conflict {conflict_id} not found")
        conflict = SyncConflict.model_validate(row)
        if conflict.status == ConflictStatus.RESOLVED:
            raise ConflictAlreadyResolvedError(f"conflict {conflict_id} already resolved")

        connection = await self._registry.load_connection(conflict.connection_id)
        connector = await self._registry.build_crm_connector(conflict.connection_id)
        mapping = await self._mappings.get(connection, conflict.entity_type)
        table = ENTITY_TABLES[conflict.entity_type]
        now = self._clock()

        if resolution == ConflictResolution.USE_CRM:
            fresh = await connector.get_entity(conflict.entity_type, conflict.external_id)
            crm_fields = fresh.fields if fresh is not None else conflict.crm_data
            await self._repository.upsert(table, conflict.internal_id, {
                **map_crm_to_internal(crm_fields, mapping),
                "tenant_id": connection.tenant_id,
                "updated_at": now,
            })
        else:
            internal = await self._repository.get(table, conflict.internal_id) or conflict.internal_data
            await connector.update_entity(
                conflict.entity_type, conflict.external_id, map_internal_to_crm(internal, mapping)
            )

        mappings = await self._repository.query(ENTITY_MAPPINGS, {
            "connection_id": conflict.connection_id,
            "entity_type": conflict.entity_type.value,
            "internal_id": conflict.internal_id,
        }, limit=1)
        if mappings:
            identity = EntityIdentityMapping.model_validate(mappings[0])
            await self._repository.upsert(ENTITY_MAPPINGS, identity.id, {"last_synced_at": now})

        resolved = conflict.model_copy(update={
            "status": ConflictStatus.RESOLVED,
            "resolution": resolution,
            "resolved_at": now,
        })
        await self._repository.upsert(SYNC_CONFLICTS, conflict.id, {
            "status": resolved.status.value,
            "resolution": resolution.value,
            "resolved_at": now,
        })
        await self._audit_row(
            connection, conflict.entity_type, None, SyncAction.CONFLICT, "resolved",
            internal_id=conflict.internal_id,
            external_id=conflict.external_id,
            details={"resolution": resolution.value, "conflict_id": conflict.id},
        )
        logger.info(
            "sync.conflict_resolved",
            conflict_id=conflict.id,
            resolution=resolution.value,
            internal_id=conflict.internal_id,
        )
        return resolved

    async def log_activity_to_crm(
        self,
        connection_id: str,
        activity_type: str,
        related_type: EntityType,
        related_internal_id: str,
        fields: dict[str, Any],
    ) -> ActivityLogResult:
        """Best-effort activity logging against the mapped CRM record.

        Never raises: an unmapped record is skipped with a warning and
        connector failures are reported in the result.
        """
        rows = await self._repository.query(ENTITY_MAPPINGS, {
            "connection_id": connection_id,
            "entity_type": related_type.value,
            "internal_id": related_internal_id,
        }, limit=1)
        if not rows:
            logger.warning(
                "sync.activity_skipped_unmapped",
                connection_id=connection_id,
                entity_type=related_type.value,
                internal_id=related_internal_id,
            )
            return ActivityLogResult(logged=False, skipped_reason="no identity mapping for related record")

        external_id = EntityIdentityMapping.model_validate(rows[0]).external_id
        try:
            connection = await self._registry.load_connection(connection_id)
            connector = await self._registry.build_crm_connector(connection_id)
            entity = await connector.log_activity(activity_type, related_type, external_id, fields)
        except Exception as exc:
            logger.warning(
                "sync.activity_failed",
                connection_id=connection_id,
                internal_id=related_internal_id,
                error=str(exc),
            )
            return ActivityLogResult(logged=False, error=str(exc))

        await self._audit_row(
            connection, related_type, None, SyncAction.ACTIVITY, "success",
            internal_id=related_internal_id,
            external_id=entity.id,
            details={"activity_type": activity_type, "related_external_id": external_id},
        )
        return ActivityLogResult(logged=True, external_id=entity.id)

    # ── Job lifecycle ───────────────────────────────────────────────────────

    async def _save_job(self, job: SyncJob) -> None:
        await self._repository.upsert(SYNC_JOBS, job.id, job.to_row())

    async def _finish_job(self, job: SyncJob) -> None:
        try:
            await self._save_job(job)
        except Exception as exc:
            logger.error("sync.job_save_failed", job_id=job.id, status=job.status.value, error=str(exc))

    async def _run_job(
        self,
        connection_id: str,
        entity_type: EntityType,
        direction: SyncDirection,
        mode: SyncMode,
        since: datetime | None,
        cancel_event: asyncio.Event | None,
    ) -> SyncJob:
        job = SyncJob(
            id=str(uuid.uuid4()),
            connection_id=connection_id,
            entity_type=entity_type,
            direction=direction,
            mode=mode,
        )
        await self._save_job(job)

        try:
            connection = await self._registry.load_connection(connection_id)
            connector = await self._registry.build_crm_connector(connection_id)
            mapping = await self._mappings.get(connection, entity_type)
        except ConnectorError as exc:
            job.fail(str(exc), self._clock())
            await self._finish_job(job)
            logger.error("sync.job_setup_failed", job_id=job.id, connection_id=connection_id, error=str(exc))
            return job
        except Exception as exc:
            job.fail(f"setup failed: {exc}", self._clock())
            await self._finish_job(job)
            logger.exception("sync.job_setup_failed", job_id=job.id, connection_id=connection_id)
            return job

        started = time.perf_counter()
        now = self._clock()
        job.start(now)
        await self._finish_job(job)
        ctx = _JobContext(
            job=job,
            connection=connection,
            connector=connector,
            mapping=mapping,
            now=now,
            semaphore=asyncio.Semaphore(self._settings.SYNC_WORKER_POOL_SIZE),
            cancel_event=cancel_event,
            result=SyncResult(started_at=now),
        )
        if mode == SyncMode.INCREMENTAL and since is None:
            since = connection.last_sync_at

        logger.info(
            "sync.job_started",
            job_id=job.id,
            connection_id=connection_id,
            entity_type=entity_type.value,
            direction=direction.value,
            mode=mode.value,
            since=since.isoformat() if since else None,
        )

        try:
            if direction.pulls:
                await self._pull(ctx, since)
            if direction.pushes:
                await self._push(ctx)
        except asyncio.CancelledError:
            self._close(ctx, started, "cancelled")
            await self._finish_job(job)
            raise
        except SyncCancelledError as exc:
            self._close(ctx, started, str(exc))
        except Exception as exc:
            logger.exception("sync.job_error", job_id=job.id)
            self._close(ctx, started, str(exc))
        else:
            result = ctx.result
            if result.failed and result.failed == result.attempted:
                self._close(ctx, started, "all entities failed")
            else:
                self._close(ctx, started, None)
                await self._repository.upsert(CONNECTIONS, connection.id, {"last_sync_at": now})

        await self._finish_job(job)
        logger.info(
            "sync.job_finished",
            job_id=job.id,
            status=job.status.value,
            pulled=ctx.result.pulled,
            pushed=ctx.result.pushed,
            created=ctx.result.created,
            updated=ctx.result.updated,
            conflicts=ctx.result.conflicts,
            failed=ctx.result.failed,
        )
        return job

    def _close(self, ctx: _JobContext, started: float, error: str | None) -> None:
        completed = self._clock()
        ctx.result.completed_at = completed
        ctx.result.duration_ms = int((time.perf_counter() - started) * 1000)
        if error is None:
            ctx.job.complete(ctx.result, completed)
        else:
            ctx.job.fail(error, completed, ctx.result)

    # ── Pull ────────────────────────────────────────────────────────────────

    async def _pull(self, ctx: _JobContext, since: datetime | None) -> None:
        page_size = self._settings.SYNC_PAGE_SIZE
        max_records = self._settings.SYNC_MAX_RECORDS
        max_wait = self._settings.RATE_LIMIT_MAX_WAIT_SECONDS

        if since is not None:
            ctx.check_cancelled()
            entities = await call_with_rate_limit_backoff(
                lambda: ctx.connector.get_recently_modified(ctx.entity_type, since, limit=max_records),
                max_wait,
            )
            for start in range(0, len(entities), page_size):
                ctx.check_cancelled()
                await self._process_page(ctx, entities[start:start + page_size])
            return

        fetched = 0
        cursor: str | None = None
        while fetched < max_records:
            ctx.check_cancelled()
            remaining = max_records - fetched
            page, cursor = await call_with_rate_limit_backoff(
                functools.partial(ctx.connector.query_page, ctx.entity_type, remaining, cursor),
                max_wait,
            )
            page = page[:remaining]
            fetched += len(page)
            for start in range(0, len(page), page_size):
                ctx.check_cancelled()
                await self._process_page(ctx, page[start:start + page_size])
            if cursor is None or not page:
                break

    async def _process_page(self, ctx: _JobContext, entities: list[CRMEntity]) -> None:
        async def worker(entity: CRMEntity) -> None:
            async with ctx.semaphore:
                if ctx.cancel_event is not None and ctx.cancel_event.is_set():
                    return
                await self._pull_entity(ctx, entity)

        await asyncio.gather(*(worker(entity) for entity in entities))
        ctx.check_cancelled()

    async def _find_mapping(self, ctx: _JobContext, external_id: str) -> EntityIdentityMapping | None:
        rows = await self._repository.query(ENTITY_MAPPINGS, {
            "connection_id": ctx.connection.id,
            "entity_type": ctx.entity_type.value,
            "external_id": external_id,
        }, limit=1)
        return EntityIdentityMapping.model_validate(rows[0]) if rows else None

    async def _insert_mapping(self, ctx: _JobContext, internal_id: str, external_id: str) -> None:
        mapping = EntityIdentityMapping(
            id=str(uuid.uuid4()),
            connection_id=ctx.connection.id,
            entity_type=ctx.entity_type,
            internal_id=internal_id,
            external_id=external_id,
            last_synced_at=ctx.now,
        )
        await self._repository.insert(ENTITY_MAPPINGS, mapping.to_row())

    async def _pull_entity(self, ctx: _JobContext, entity: CRMEntity) -> None:
        ctx.result.pulled += 1
        fields = map_crm_to_internal(entity, ctx.mapping)
        identity: EntityIdentityMapping | None = None
        try:
            identity = await self._find_mapping(ctx, entity.id)
            if identity is None:
                await self._create_from_crm(ctx, entity, fields)
            else:
                await self._update_from_crm(ctx, identity, entity, fields)
        except Exception as exc:
            action = SyncAction.CREATE if identity is None else SyncAction.UPDATE
            internal_id = identity.internal_id if identity else None
            self._record_failure(ctx, action, str(exc), internal_id=internal_id, external_id=entity.id)
            await self._audit(ctx, action, "failure", internal_id=internal_id, external_id=entity.id, error=str(exc))
            logger.error(
                "sync.pull_entity_failed",
                job_id=ctx.job.id,
                external_id=entity.id,
                error=str(exc),
            )

    def _internal_fields(self, ctx: _JobContext, fields: dict[str, Any]) -> dict[str, Any]:
        return {**fields, "tenant_id": ctx.connection.tenant_id, "updated_at": ctx.now}

    async def _create_from_crm(self, ctx: _JobContext, entity: CRMEntity, fields: dict[str, Any]) -> None:
        internal_id = str(uuid.uuid4())
        try:
            await self._insert_mapping(ctx, internal_id, entity.id)
        except DuplicateRecordError:
            existing = await self._find_mapping(ctx, entity.id)
            if existing is None:
                raise
            await self._update_from_crm(ctx, existing, entity, fields)
            return

        await self._repository.upsert(ctx.table, internal_id, self._internal_fields(ctx, fields))
        ctx.result.created += 1
        await self._audit(ctx, SyncAction.CREATE, "success", internal_id=internal_id, external_id=entity.id)

    async def _update_from_crm(
        self,
        ctx: _JobContext,
        identity: EntityIdentityMapping,
        entity: CRMEntity,
        fields: dict[str, Any],
    ) -> None:
        internal_id = identity.internal_id
        internal = await self._repository.get(ctx.table, internal_id)
        last_synced = identity.last_synced_at

        if internal is not None and last_synced is not None:
            internal_updated = parse_datetime(internal.get("updated_at"))
            crm_updated = ensure_utc(entity.updated_at)
            internal_changed = internal_updated is not None and internal_updated > last_synced
            # A CRM record without a modification time is assumed changed
            crm_changed = crm_updated is None or crm_updated > last_synced
            if internal_changed and crm_changed:
                await self._handle_conflict(ctx, identity, internal, entity, fields)
                return

        await self._repository.upsert(ctx.table, internal_id, self._internal_fields(ctx, fields))
        await self._repository.upsert(ENTITY_MAPPINGS, identity.id, {"last_synced_at": ctx.now})
        ctx.result.updated += 1
        await self._audit(ctx, SyncAction.UPDATE, "success", internal_id=internal_id, external_id=entity.id)

    async def _handle_conflict(
        self,
        ctx: _JobContext,
        identity: EntityIdentityMapping,
        internal: dict[str, Any],
        entity: CRMEntity,
        fields: dict[str, Any],
    ) -> None:
        internal_id = identity.internal_id
        policy = ctx.connection.conflict_policy
        ctx.result.conflicts += 1
        sync_conflicts_total.labels(
            provider=ctx.connection.provider.value,
            entity_type=ctx.entity_type.value,
            policy=policy.value,
        ).inc()

        if policy == ConflictPolicy.USE_CRM:
            await self._repository.upsert(ctx.table, internal_id, self._internal_fields(ctx, fields))
            await self._repository.upsert(ENTITY_MAPPINGS, identity.id, {"last_synced_at": ctx.now})
            outcome = "use_crm"
        elif policy == ConflictPolicy.USE_INTERNAL:
            await ctx.connector.update_entity(
                ctx.entity_type, entity.id, map_internal_to_crm(internal, ctx.mapping)
            )
            await self._repository.upsert(ENTITY_MAPPINGS, identity.id, {"last_synced_at": ctx.now})
            outcome = "use_internal"
        else:
            cid = conflict_id(ctx.connection.id, ctx.entity_type, internal_id, ensure_utc(entity.updated_at))
            existing = await self._repository.get(SYNC_CONFLICTS, cid)
            if existing is None:
                await self._repository.upsert(SYNC_CONFLICTS, cid, {
                    "connection_id": ctx.connection.id,
                    "entity_type": ctx.entity_type.value,
                    "internal_id": internal_id,
                    "external_id": entity.id,
                    "conflict_type": "update",
                    "internal_data": to_jsonable_python(internal),
                    "crm_data": to_jsonable_python(entity.fields),
                    "status": ConflictStatus.OPEN.value,
                    "detected_at": ctx.now,
                })
            outcome = "open"

        logger.warning(
            "sync.update_conflict",
            job_id=ctx.job.id,
            internal_id=internal_id,
            external_id=entity.id,
            policy=policy.value,
        )
        await self._audit(ctx, SyncAction.CONFLICT, outcome, internal_id=internal_id, external_id=entity.id)

    # ── Push ────────────────────────────────────────────────────────────────

    async def _push(self, ctx: _JobContext) -> None:
        records = await self._repository.query(
            ctx.table, {"tenant_id": ctx.connection.tenant_id}, order_by="created_at"
        )
        mapped_rows = await self._repository.query(ENTITY_MAPPINGS, {
            "connection_id": ctx.connection.id,
            "entity_type": ctx.entity_type.value,
        })
        mapped = {row["internal_id"] for row in mapped_rows}
        unmapped = [r for r in records if r["id"] not in mapped][: self._settings.SYNC_MAX_RECORDS]

        page_size = self._settings.SYNC_PAGE_SIZE
        for start in range(0, len(unmapped), page_size):
            ctx.check_cancelled()
            await self._push_chunk(ctx, unmapped[start:start + page_size])

    async def _push_chunk(self, ctx: _JobContext, records: list[dict[str, Any]]) -> None:
        batch: list[tuple[dict[str, Any], dict[str, Any]]] = []
        for record in records:
            payload = map_internal_to_crm(record, ctx.mapping)
            if not payload:
                ctx.result.skipped += 1
                await self._audit(ctx, SyncAction.PUSH, "skipped", internal_id=record["id"])
                continue
            batch.append((record, payload))
        if not batch:
            return

        payloads = [payload for _, payload in batch]
        try:
            bulk = await call_with_rate_limit_backoff(
                lambda: ctx.connector.bulk_create(ctx.entity_type, payloads),
                self._settings.RATE_LIMIT_MAX_WAIT_SECONDS,
            )
        except ConnectorError as exc:
            for record, _ in batch:
                self._record_failure(ctx, SyncAction.PUSH, str(exc), internal_id=record["id"])
                await self._audit(ctx, SyncAction.PUSH, "failure", internal_id=record["id"], error=str(exc))
            logger.error("sync.push_batch_failed", job_id=ctx.job.id, size=len(batch), error=str(exc))
            return

        for item in bulk.items:
            record, _ = batch[item.index]
            if not item.success or item.entity is None:
                error = item.error or "create failed"
                self._record_failure(ctx, SyncAction.PUSH, error, internal_id=record["id"])
                await self._audit(ctx, SyncAction.PUSH, "failure", internal_id=record["id"], error=error)
                continue
            try:
                await self._insert_mapping(ctx, record["id"], item.entity.id)
            except DuplicateRecordError as exc:
                self._record_failure(
                    ctx, SyncAction.PUSH, str(exc), internal_id=record["id"], external_id=item.entity.id
                )
                await self._audit(
                    ctx, SyncAction.PUSH, "failure",
                    internal_id=record["id"], external_id=item.entity.id, error=str(exc),
                )
                continue
            ctx.result.pushed += 1
            await self._audit(
                ctx, SyncAction.PUSH, "success", internal_id=record["id"], external_id=item.entity.id
            )

    # ── Bookkeeping ─────────────────────────────────────────────────────────

    @staticmethod
    def _record_failure(
        ctx: _JobContext,
        action: SyncAction,
        error: str,
        internal_id: str | None = None,
        external_id: str | None = None,
    ) -> None:
        ctx.result.failed += 1
        ctx.result.errors.append(SyncItemError(
            action=action, internal_id=internal_id, external_id=external_id, error=error
        ))

    async def _audit(
        self,
        ctx: _JobContext,
        action: SyncAction,
        outcome: str,
        internal_id: str | None = None,
        external_id: str | None = None,
        error: str | None = None,
    ) -> None:
        await self._audit_row(
            ctx.connection, ctx.entity_type, ctx.job.id, action, outcome,
            internal_id=internal_id, external_id=external_id, error=error,
        )

    async def _audit_row(
        self,
        connection: Connection,
        entity_type: EntityType,
        job_id: str | None,
        action: SyncAction,
        outcome: str,
        internal_id: str | None = None,
        external_id: str | None = None,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        sync_records_total.labels(
            provider=connection.provider.value,
            entity_type=entity_type.value,
            action=action.value,
            outcome=outcome,
        ).inc()
        try:
            await self._repository.insert_audit_row(SYNC_LOG, {
                "connection_id": connection.id,
                "job_id": job_id,
                "entity_type": entity_type.value,
                "action": action.value,
                "outcome": outcome,
                "internal_id": internal_id,
                "external_id": external_id,
                "error": error,
                "details": details or {},
                "created_at": self._clock(),
            })
        except Exception as exc:
            logger.error("sync.audit_failed", connection_id=connection.id, action=action.value, error=str(exc))
