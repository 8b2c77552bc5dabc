"""Enrichment pipeline -- waterfall over connectors into one SignalRecord.

Provides:
- EnrichmentPipeline: enrich_entity / enrich_batch
- merge: first-writer-wins merge with append-only unions and domain resolution
- scoring: pure quality / completeness / intent / freshness scores
- SignalRecord, EntityRef, SourceResult, PipelineResult schemas
"""

from src.signalhub.enrichment.pipeline import EnrichmentPipeline, EntityNotFoundError
from src.signalhub.enrichment.schemas import (
    EntityKind,
    EntityRef,
    PipelineResult,
    RunStatus,
    SignalRecord,
    SourceResult,
)

__all__ = [
    "EnrichmentPipeline",
    "EntityNotFoundError",
    "EntityKind",
    "EntityRef",
    "PipelineResult",
    "RunStatus",
    "SignalRecord",
    "SourceResult",
]
