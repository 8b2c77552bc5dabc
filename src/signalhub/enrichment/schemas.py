"""Pydantic schemas for the enrichment pipeline.

Defines:
- SignalRecord and its sub-records (contact, professional, company, intent,
  relationship, research, metadata)
- EntityRef: which prospect/account to enrich
- SourceResult / PipelineResult: per-source and per-run outcomes

Sub-records validate on assignment so a connector value of the wrong shape
is rejected at merge time instead of corrupting the stored record.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.signalhub.schemas.signals import BuyingStage, IntentSignal, NewsItem

# ── Enums ───────────────────────────────────────────────────────────────────


class EntityKind(str, Enum):
    """Internal entity kinds the pipeline can enrich."""

    PROSPECT = "prospect"
    ACCOUNT = "account"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


# ── Signal Record ───────────────────────────────────────────────────────────


class _SubRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=True)


class ContactSignals(_SubRecord):
    email: str | None = None
    email_verified: bool = False
    phone: str | None = None
    mobile_phone: str | None = None
    direct_dial: str | None = None
    linkedin_url: str | None = None
    twitter_url: str | None = None


class ProfessionalSignals(_SubRecord):
    title: str | None = None
    headline: str | None = None
    department: str | None = None
    seniority: str | None = None
    years_in_role: int | None = None
    previous_companies: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    certifications: list[str] = Field(default_factory=list)


class CompanySignals(_SubRecord):
    name: str | None = None
    domain: str | None = None
    industry: str | None = None
    employee_count: int | None = None
    revenue: str | None = None
    funding_stage: str | None = None
    total_funding: float | None = None
    technologies: list[str] = Field(default_factory=list)
    headquarters: str | None = None
    founded_year: int | None = None

    @field_validator("revenue", mode="before")
    @classmethod
    def _revenue_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class IntentProfile(_SubRecord):
    signals: list[IntentSignal] = Field(default_factory=list)
    score: int = Field(default=0, ge=0, le=100)
    buying_stage: BuyingStage | None = None


class RelationshipSignals(_SubRecord):
    interaction_count: int | None = None
    last_contact_at: datetime | None = None
    mutual_connections: int | None = None
    response_rate: float | None = None


class ResearchSignals(_SubRecord):
    news: list[NewsItem] = Field(default_factory=list)
    pain_points: list[str] = Field(default_factory=list)
    buying_committee: list[dict[str, Any]] = Field(default_factory=list)
    recent_changes: list[dict[str, Any]] = Field(default_factory=list)


class SignalMetadata(_SubRecord):
    sources: list[str] = Field(default_factory=list)
    quality_score: int = Field(default=0, ge=0, le=100)
    completeness_score: int = Field(default=0, ge=0, le=100)
    freshness_score: int = Field(default=0, ge=0, le=100)
    enriched_at: datetime | None = None


class SignalRecord(BaseModel):
    """Merged enrichment result for one prospect or account."""

    contact: ContactSignals = Field(default_factory=ContactSignals)
    professional: ProfessionalSignals = Field(default_factory=ProfessionalSignals)
    company: CompanySignals = Field(default_factory=CompanySignals)
    intent: IntentProfile = Field(default_factory=IntentProfile)
    relationship: RelationshipSignals = Field(default_factory=RelationshipSignals)
    research: ResearchSignals = Field(default_factory=ResearchSignals)
    metadata: SignalMetadata = Field(default_factory=SignalMetadata)


# ── Pipeline I/O ────────────────────────────────────────────────────────────


class EntityRef(BaseModel):
    """Pointer to the entity to enrich. ``tenant_id`` defaults to the stored one."""

    entity_type: EntityKind = EntityKind.PROSPECT
    entity_id: str
    tenant_id: str | None = None


class SourceResult(BaseModel):
    """Outcome of one connector for one pipeline run."""

    source: str
    success: bool
    data_points: int = 0
    duration_ms: int = 0
    credits: int = 0
    skipped: bool = False
    error: str | None = None


class PipelineResult(BaseModel):
    """Structured result of enrich_entity: never a bare boolean."""

    entity: EntityRef
    status: RunStatus
    signals: SignalRecord
    source_results: list[SourceResult] = Field(default_factory=list)
    total_duration_ms: int = 0
    credits_used: int = 0
    cancelled: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status != RunStatus.FAILED
