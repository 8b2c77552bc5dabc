"""Enrichment pipeline -- per-entity waterfall over the tenant's active connectors.

enrich_entity(ref):
1. Load the stored prospect/account (seed values) and the intent-signal log.
2. Build the lookup target; resolve the company domain (public mailbox
   providers skip company-level connectors).
3. Call every runnable connector concurrently, each with a per-call timeout
   and one bounded rate-limit backoff, under an overall deadline.
4. Merge results in priority order (first writer wins, append-only unions),
   then fill remaining gaps from the seed.
5. Score, persist the SignalRecord, extend the intent log, update the
   denormalized entity columns and write one audit row.

A run is FAILED only when every attempted source failed or persistence
failed; sources that failed individually are recorded, never fatal.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError

from src.signalhub.config import Settings, get_settings
from src.signalhub.connectors.base import call_with_rate_limit_backoff
from src.signalhub.connectors.errors import ConnectorError
from src.signalhub.connectors.registry import ActiveConnector, ConnectorRegistry
from src.signalhub.connectors.schemas import EnrichmentTarget, RawFields
from src.signalhub.core.clock import Clock, parse_datetime, utc_now
from src.signalhub.core.metrics import (
    connector_call_duration_seconds,
    connector_calls_total,
    credits_used_total,
    pipeline_runs_total,
)
from src.signalhub.enrichment.merge import (
    MergeState,
    apply_seed,
    finalize,
    merge_source,
    resolve_company_domain,
)
from src.signalhub.enrichment.schemas import (
    EntityKind,
    EntityRef,
    PipelineResult,
    RunStatus,
    SignalRecord,
    SourceResult,
)
from src.signalhub.enrichment.scoring import apply_scores
from src.signalhub.schemas.signals import IntentSignal
from src.signalhub.storage.repository import (
    ACCOUNTS,
    ENRICHMENT_REQUESTS,
    INTENT_SIGNALS,
    PROSPECTS,
    SIGNAL_RECORDS,
    Repository,
)

logger = structlog.get_logger(__name__)

ENTITY_KIND_TABLES: dict[EntityKind, str] = {
    EntityKind.PROSPECT: PROSPECTS,
    EntityKind.ACCOUNT: ACCOUNTS,
}

ENRICHMENT_TYPE = "full"

# Namespace for deterministic intent-log row ids
_SIGNAL_NAMESPACE = uuid.UUID("6f1c2a3e-8d4b-4c5e-9a7f-1b2c3d4e5f60")


class EntityNotFoundError(Exception):
    """The prospect/account to enrich does not exist."""

    def __init__(self, ref: EntityRef) -> None:
        self.ref = ref
        super().__init__(f"{ref.entity_type.value} {ref.entity_id} not found")


@dataclass
class _SourceOutcome:
    result: SourceResult
    raw: RawFields = field(default_factory=dict)


# ── Seeds & targets ─────────────────────────────────────────────────────────


def seed_fields(kind: EntityKind, entity: dict[str, Any]) -> RawFields:
    """Map stored entity columns to SignalRecord paths."""
    if kind == EntityKind.ACCOUNT:
        return {
            "company.name": entity.get("name"),
            "company.domain": entity.get("domain"),
            "company.industry": entity.get("industry"),
            "company.employee_count": entity.get("employee_count"),
        }
    return {
        "contact.email": entity.get("email"),
        "contact.phone": entity.get("phone"),
        "contact.linkedin_url": entity.get("linkedin_url"),
        "professional.title": entity.get("title"),
        "company.name": entity.get("company_name"),
        "company.domain": entity.get("company_domain"),
    }


def build_target(ref: EntityRef, entity: dict[str, Any]) -> EnrichmentTarget:
    """Best available lookup input for the entity."""
    if ref.entity_type == EntityKind.ACCOUNT:
        return EnrichmentTarget(
            entity_id=ref.entity_id,
            entity_type=ref.entity_type.value,
            company_name=entity.get("name"),
            domain=resolve_company_domain(None, entity.get("domain")),
        )
    return EnrichmentTarget(
        entity_id=ref.entity_id,
        entity_type=ref.entity_type.value,
        email=entity.get("email"),
        first_name=entity.get("first_name"),
        last_name=entity.get("last_name"),
        company_name=entity.get("company_name"),
        domain=resolve_company_domain(entity.get("email"), entity.get("company_domain")),
        linkedin_url=entity.get("linkedin_url"),
    )


def signal_row_id(entity_id: str, signal: IntentSignal) -> str:
    """Stable id so re-recording the same signal is an idempotent upsert."""
    return str(uuid.uuid5(_SIGNAL_NAMESPACE, "|".join((entity_id, *signal.dedupe_key))))


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


# ── Pipeline ────────────────────────────────────────────────────────────────


class EnrichmentPipeline:
    """Runs the enrichment waterfall for prospects and accounts.

    Args:
        repository: Storage for entities, signal records and audit rows.
        registry: Builds each tenant's active connectors.
        settings: Timeouts, deadline, rate-limit budget, intent window.
        clock: UTC clock; a fixed clock makes runs byte-for-byte repeatable.
        sleep: Awaitable used for rate-limit backoff (patched in tests).
    """

    def __init__(
        self,
        repository: Repository,
        registry: ConnectorRegistry,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep

    # ── Entry points ────────────────────────────────────────────────────────

    async def enrich_entity(
        self,
        ref: EntityRef,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineResult:
        """Enrich one prospect/account and persist the merged SignalRecord.

        Args:
            ref: Entity to enrich.
            cancel_event: When set, outstanding connector calls are cancelled
                and the run is reported PARTIAL without persisting a record.

        Returns:
            PipelineResult with per-source outcomes and the merged record.

        Raises:
            EntityNotFoundError: The entity does not exist.
        """
        started = time.perf_counter()
        table = ENTITY_KIND_TABLES[ref.entity_type]
        entity = await self._repository.get(table, ref.entity_id)
        if entity is None:
            raise EntityNotFoundError(ref)
        ref = ref.model_copy(update={"tenant_id": ref.tenant_id or entity.get("tenant_id")})

        now = self._clock()
        cutoff = now - timedelta(days=self._settings.INTENT_WINDOW_DAYS)
        target = build_target(ref, entity)
        connectors = await self._registry.build_active_connectors(ref.tenant_id or "")

        outcomes: dict[int, _SourceOutcome] = {}
        runnable: dict[int, ActiveConnector] = {}
        for index, active in enumerate(connectors):
            if active.connector.company_level and target.domain is None:
                outcomes[index] = _SourceOutcome(SourceResult(
                    source=active.source_name,
                    success=False,
                    skipped=True,
                    error="no company domain (public or missing email domain)",
                ))
                logger.info(
                    "pipeline.source_skipped",
                    entity_id=ref.entity_id,
                    source=active.source_name,
                )
            else:
                runnable[index] = active

        called, cancelled = await self._run_sources(runnable, target, cancel_event)
        outcomes.update(called)

        existing_log = await self._load_intent_log(ref.entity_id)
        record, source_results = self._merge(
            connectors, outcomes, seed_fields(ref.entity_type, entity), existing_log, cutoff
        )
        record.metadata.enriched_at = now
        apply_scores(record)

        attempted = [outcomes[i].result for i in runnable]
        failed = [r for r in attempted if not r.success]
        error: str | None = None
        if cancelled:
            status = RunStatus.PARTIAL
            error = "cancelled"
        elif attempted and len(failed) == len(attempted):
            status = RunStatus.FAILED
            error = "all sources failed"
        elif failed:
            status = RunStatus.PARTIAL
        else:
            status = RunStatus.COMPLETED

        if status != RunStatus.FAILED and not cancelled:
            try:
                await self._persist(ref, record, existing_log)
            except Exception as exc:
                status = RunStatus.FAILED
                error = f"persistence failed: {exc}"
                logger.error(
                    "pipeline.persist_failed",
                    entity_id=ref.entity_id,
                    error=str(exc),
                )

        credits = sum(r.credits for r in source_results)
        result = PipelineResult(
            entity=ref,
            status=status,
            signals=record,
            source_results=source_results,
            total_duration_ms=_elapsed_ms(started),
            credits_used=credits,
            cancelled=cancelled,
            error=error,
        )
        await self._audit(result, now)

        pipeline_runs_total.labels(status=status.value).inc()
        logger.info(
            "pipeline.entity_enriched",
            entity_id=ref.entity_id,
            entity_type=ref.entity_type.value,
            status=status.value,
            sources=record.metadata.sources,
            credits_used=credits,
            quality_score=record.metadata.quality_score,
            duration_ms=result.total_duration_ms,
        )
        return result

    async def enrich_batch(
        self,
        refs: list[EntityRef],
        concurrency: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[PipelineResult]:
        """Enrich entities independently with bounded concurrency.

        One entity's failure never affects another; missing entities yield a
        FAILED result. Results are returned in input order.
        """
        semaphore = asyncio.Semaphore(concurrency or self._settings.ENRICH_BATCH_CONCURRENCY)

        async def run(ref: EntityRef) -> PipelineResult:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return PipelineResult(
                        entity=ref,
                        status=RunStatus.PARTIAL,
                        signals=SignalRecord(),
                        cancelled=True,
                        error="cancelled",
                    )
                try:
                    return await self.enrich_entity(ref, cancel_event)
                except EntityNotFoundError as exc:
                    logger.warning("pipeline.entity_not_found", entity_id=ref.entity_id)
                    return PipelineResult(
                        entity=ref,
                        status=RunStatus.FAILED,
                        signals=SignalRecord(),
                        error=str(exc),
                    )

        return list(await asyncio.gather(*(run(ref) for ref in refs)))

    # ── Source calls ────────────────────────────────────────────────────────

    async def _call_source(self, active: ActiveConnector, target: EnrichmentTarget) -> _SourceOutcome:
        connector = active.connector
        timeout = self._settings.CONNECTOR_TIMEOUT_SECONDS
        started = time.perf_counter()

        async def attempt() -> RawFields:
            return await asyncio.wait_for(connector.enrich(target), timeout=timeout)

        error: str | None = None
        raw: RawFields = {}
        try:
            raw = await call_with_rate_limit_backoff(
                attempt, self._settings.RATE_LIMIT_MAX_WAIT_SECONDS, sleep=self._sleep
            ) or {}
        except asyncio.TimeoutError:
            error = f"timed out after {timeout}s"
        except ConnectorError as exc:
            error = str(exc)
        except Exception as exc:
            error = f"unexpected error: {exc}"
            logger.exception("pipeline.source_crashed", source=active.source_name)

        duration_ms = _elapsed_ms(started)
        connector_call_duration_seconds.labels(source=active.source_name).observe(duration_ms / 1000)
        connector_calls_total.labels(
            source=active.source_name, outcome="error" if error else "success"
        ).inc()

        if error:
            logger.warning(
                "pipeline.source_failed",
                entity_id=target.entity_id,
                source=active.source_name,
                error=error,
            )
            return _SourceOutcome(SourceResult(
                source=active.source_name, success=False, duration_ms=duration_ms, error=error
            ))

        credits = 1 if connector.paid and raw else 0
        if credits:
            credits_used_total.labels(source=active.source_name).inc(credits)
        return _SourceOutcome(
            SourceResult(
                source=active.source_name,
                success=True,
                duration_ms=duration_ms,
                credits=credits,
            ),
            raw,
        )

    async def _run_sources(
        self,
        runnable: dict[int, ActiveConnector],
        target: EnrichmentTarget,
        cancel_event: asyncio.Event | None,
    ) -> tuple[dict[int, _SourceOutcome], bool]:
        """Call sources concurrently until all finish, the deadline or cancellation."""
        if not runnable:
            return {}, bool(cancel_event and cancel_event.is_set())

        tasks = {
            asyncio.create_task(self._call_source(active, target)): index
            for index, active in runnable.items()
        }
        waiter = asyncio.create_task(cancel_event.wait()) if cancel_event else None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.PIPELINE_DEADLINE_SECONDS
        pending = set(tasks)
        cancelled = False

        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                watched = pending | {waiter} if waiter else pending
                done, _ = await asyncio.wait(
                    watched, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
                if waiter is not None and waiter in done:
                    cancelled = True
                    break
        finally:
            for task in pending:
                task.cancel()
            if waiter is not None:
                waiter.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        reason = "cancelled" if cancelled else "pipeline deadline exceeded"
        outcomes: dict[int, _SourceOutcome] = {}
        for task, index in tasks.items():
            if task in pending:
                source = runnable[index].source_name
                outcomes[index] = _SourceOutcome(SourceResult(source=source, success=False, error=reason))
                connector_calls_total.labels(source=source, outcome="error").inc()
                logger.warning(
                    "pipeline.source_abandoned",
                    entity_id=target.entity_id,
                    source=source,
                    reason=reason,
                )
            else:
                outcomes[index] = task.result()
        return outcomes, cancelled

    # ── Merge ───────────────────────────────────────────────────────────────

    @staticmethod
    def _merge(
        connectors: list[ActiveConnector],
        outcomes: dict[int, _SourceOutcome],
        seed: RawFields,
        existing_log: list[IntentSignal],
        cutoff: datetime,
    ) -> tuple[SignalRecord, list[SourceResult]]:
        state = MergeState(signal_cutoff=cutoff)
        results: list[SourceResult] = []
        sources: list[str] = []
        for index, active in enumerate(connectors):
            outcome = outcomes[index]
            result = outcome.result
            if result.success:
                points = merge_source(state, outcome.raw)
                result = result.model_copy(update={"data_points": points})
                if points > 0 and active.source_name not in sources:
                    sources.append(active.source_name)
            results.append(result)

        apply_seed(state, {**seed, "intent.signals": existing_log})
        record = finalize(state)
        record.metadata.sources = sources
        return record, results

    # ── Persistence ─────────────────────────────────────────────────────────

    async def _load_intent_log(self, entity_id: str) -> list[IntentSignal]:
        rows = await self._repository.query(INTENT_SIGNALS, {"entity_id": entity_id})
        signals: list[IntentSignal] = []
        for row in rows:
            try:
                signals.append(IntentSignal(
                    type=row["signal_type"],
                    source=row["source"],
                    confidence=row["confidence"],
                    timestamp=parse_datetime(row["occurred_at"]),
                    description=row.get("description") or "",
                    metadata=row.get("metadata_json") or {},
                ))
            except (KeyError, ValidationError) as exc:
                logger.warning("pipeline.intent_row_invalid", row_id=row.get("id"), error=str(exc))
        return signals

    async def _persist(
        self, ref: EntityRef, record: SignalRecord, existing_log: list[IntentSignal]
    ) -> None:
        """Write the signal log, the record, then the entity row.

        Each write is an idempotent upsert keyed by entity id, so a rerun after
        a partial failure converges. The entity row goes last and bumps
        ``updated_at`` so sync conflict detection sees the enrichment.
        """
        known = {s.dedupe_key for s in existing_log}
        for signal in record.intent.signals:
            if signal.dedupe_key in known:
                continue
            await self._repository.upsert(INTENT_SIGNALS, signal_row_id(ref.entity_id, signal), {
                "entity_id": ref.entity_id,
                "signal_type": signal.type.value,
                "source": signal.source,
                "confidence": signal.confidence,
                "occurred_at": signal.timestamp,
                "description": signal.description,
                "metadata_json": signal.metadata,
            })

        payload = record.model_dump(mode="json")
        enriched_at = record.metadata.enriched_at
        await self._repository.upsert(SIGNAL_RECORDS, ref.entity_id, {
            "entity_type": ref.entity_type.value,
            "record": payload,
            "enriched_at": enriched_at,
        })
        await self._repository.upsert(
            ENTITY_KIND_TABLES[ref.entity_type],
            ref.entity_id,
            {**self._denormalized_fields(ref.entity_type, record, payload), "updated_at": enriched_at},
        )

    @staticmethod
    def _denormalized_fields(
        kind: EntityKind, record: SignalRecord, payload: dict[str, Any]
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "intent_score": record.intent.score,
            "quality_score": record.metadata.quality_score,
            "enriched_at": record.metadata.enriched_at,
            "enrichment_data": payload,
        }
        if kind == EntityKind.ACCOUNT:
            optional = {
                "industry": record.company.industry,
                "employee_count": record.company.employee_count,
                "domain": record.company.domain,
            }
        else:
            contact = record.contact
            optional = {
                "title": record.professional.title,
                "phone": contact.phone or contact.direct_dial or contact.mobile_phone,
                "linkedin_url": contact.linkedin_url,
            }
        fields.update({k: v for k, v in optional.items() if v is not None})
        return fields

    async def _audit(self, result: PipelineResult, now: datetime) -> None:
        try:
            await self._repository.insert_audit_row(ENRICHMENT_REQUESTS, {
                "entity_id": result.entity.entity_id,
                "entity_type": result.entity.entity_type.value,
                "enrichment_type": ENRICHMENT_TYPE,
                "status": result.status.value,
                "waterfall_log": [r.model_dump(mode="json") for r in result.source_results],
                "sources": result.signals.metadata.sources,
                "credits_used": result.credits_used,
                "duration_ms": result.total_duration_ms,
                "error": result.error,
                "created_at": now,
            })
        except Exception as exc:
            logger.error(
                "pipeline.audit_failed",
                entity_id=result.entity.entity_id,
                error=str(exc),
            )
