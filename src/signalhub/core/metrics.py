"""Prometheus metrics for connector calls, pipeline runs and CRM sync.

Provides:
- Connector call counters and latency histogram (per source, per outcome)
- Pipeline run and credit counters
- Sync record counters and conflict counter
- get_metrics_response(): exposition handler for the /metrics route
"""

from __future__ import annotations

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest
from starlette.responses import Response

# ── Connector Metrics ────────────────────────────────────────────────────────

connector_calls_total = Counter(
    "signalhub_connector_calls_total",
    "Total external connector calls",
    ["source", "outcome"],
)

connector_call_duration_seconds = Histogram(
    "signalhub_connector_call_duration_seconds",
    "External connector call duration in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Pipeline Metrics ─────────────────────────────────────────────────────────

pipeline_runs_total = Counter(
    "signalhub_pipeline_runs_total",
    "Total enrichment pipeline runs",
    ["status"],
)

credits_used_total = Counter(
    "signalhub_credits_used_total",
    "Paid provider credits consumed by the enrichment pipeline",
    ["source"],
)

# ── Sync Metrics ─────────────────────────────────────────────────────────────

sync_records_total = Counter(
    "signalhub_sync_records_total",
    "CRM sync record operations",
    ["provider", "entity_type", "action", "outcome"],
)

sync_conflicts_total = Counter(
    "signalhub_sync_conflicts_total",
    "Update conflicts detected during CRM sync",
    ["provider", "entity_type", "policy"],
)


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
