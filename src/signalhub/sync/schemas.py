"""Pydantic schemas for the CRM sync engine.

Defines:
- SyncJob: pending -> running -> completed | failed (terminal exactly once)
- SyncResult: per-job statistics and per-entity error list
- EntityIdentityMapping: internal id <-> CRM id for one connection
- SyncConflict / ConflictResolution: recorded update conflicts
- ActivityLogResult: outcome of best-effort activity logging
- ENTITY_TABLES: CRM entity type -> internal table
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.signalhub.connectors.schemas import EntityType, SyncDirection
from src.signalhub.core.clock import ensure_utc
from src.signalhub.storage.repository import (
    ACCOUNTS,
    ACTIVITIES,
    NOTES,
    OPPORTUNITIES,
    PROSPECTS,
    TASKS,
)

ENTITY_TABLES: dict[EntityType, str] = {
    EntityType.CONTACT: PROSPECTS,
    EntityType.LEAD: PROSPECTS,
    EntityType.ACCOUNT: ACCOUNTS,
    EntityType.OPPORTUNITY: OPPORTUNITIES,
    EntityType.TASK: TASKS,
    EntityType.EVENT: ACTIVITIES,
    EntityType.NOTE: NOTES,
}


# ── Enums ───────────────────────────────────────────────────────────────────


class SyncJobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncAction(str, Enum):
    """Audit-log action per entity attempt."""

    CREATE = "create"
    UPDATE = "update"
    PUSH = "push"
    CONFLICT = "conflict"
    ACTIVITY = "activity"


class ConflictResolution(str, Enum):
    USE_INTERNAL = "use_internal"
    USE_CRM = "use_crm"


class ConflictStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class InvalidTransitionError(Exception):
    """A SyncJob status change that the state machine does not allow."""

    def __init__(self, current: SyncJobStatus, target: SyncJobStatus) -> None:
        self.current = current
        self.target = target
        super().__init__(f"cannot move sync job from {current.value} to {target.value}")


class ConflictNotFoundError(Exception):
    """No conflict with the requested id."""


class ConflictAlreadyResolvedError(Exception):
    """The conflict was already resolved."""


_TRANSITIONS: dict[SyncJobStatus, frozenset[SyncJobStatus]] = {
    SyncJobStatus.PENDING: frozenset({SyncJobStatus.RUNNING, SyncJobStatus.FAILED}),
    SyncJobStatus.RUNNING: frozenset({SyncJobStatus.COMPLETED, SyncJobStatus.FAILED}),
    SyncJobStatus.COMPLETED: frozenset(),
    SyncJobStatus.FAILED: frozenset(),
}


# ── Results ─────────────────────────────────────────────────────────────────


class SyncItemError(BaseModel):
    """One entity that failed during a sync job."""

    action: SyncAction
    internal_id: str | None = None
    external_id: str | None = None
    error: str


class SyncResult(BaseModel):
    """Statistics for one sync job."""

    pulled: int = 0
    pushed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0
    errors: list[SyncItemError] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    @property
    def attempted(self) -> int:
        return self.created + self.updated + self.skipped + self.failed + self.conflicts + self.pushed


# ── Sync Job ────────────────────────────────────────────────────────────────


class SyncJob(BaseModel):
    """One sync run. Status moves forward only and is terminal once set."""

    id: str
    connection_id: str
    entity_type: EntityType
    direction: SyncDirection
    mode: SyncMode = SyncMode.FULL
    status: SyncJobStatus = SyncJobStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: SyncResult | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SyncJobStatus.COMPLETED, SyncJobStatus.FAILED)

    def _transition(self, target: SyncJobStatus) -> None:
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status, target)
        self.status = target

    def start(self, now: datetime) -> None:
        self._transition(SyncJobStatus.RUNNING)
        self.started_at = now

    def complete(self, result: SyncResult, now: datetime) -> None:
        self._transition(SyncJobStatus.COMPLETED)
        self.result = result
        self.completed_at = now

    def fail(self, error: str, now: datetime, result: SyncResult | None = None) -> None:
        self._transition(SyncJobStatus.FAILED)
        self.error = error
        self.result = result
        self.completed_at = now

    def to_row(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "entity_type": self.entity_type.value,
            "direction": self.direction.value,
            "mode": self.mode.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result.model_dump(mode="json") if self.result else None,
            "error": self.error,
        }


# ── Identity & Conflicts ────────────────────────────────────────────────────


class EntityIdentityMapping(BaseModel):
    """Bijection row between an internal record and its CRM counterpart."""

    id: str
    connection_id: str
    entity_type: EntityType
    internal_id: str
    external_id: str
    last_synced_at: datetime | None = None

    @field_validator("last_synced_at")
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value)

    def to_row(self) -> dict[str, Any]:
        return {**self.model_dump(), "entity_type": self.entity_type.value}


class SyncConflict(BaseModel):
    """An update conflict: both sides changed since the last sync."""

    id: str
    connection_id: str
    entity_type: EntityType
    internal_id: str
    external_id: str
    conflict_type: str = "update"
    internal_data: dict[str, Any] = Field(default_factory=dict)
    crm_data: dict[str, Any] = Field(default_factory=dict)
    status: ConflictStatus = ConflictStatus.OPEN
    resolution: ConflictResolution | None = None
    detected_at: datetime | None = None
    resolved_at: datetime | None = None


class ActivityLogResult(BaseModel):
    """Outcome of log_activity_to_crm; never raised as an error."""

    logged: bool
    external_id: str | None = None
    skipped_reason: str | None = None
    error: str | None = None
