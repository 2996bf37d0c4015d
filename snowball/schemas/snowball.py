"""Pydantic schemas for snowball distribution."""

import math
from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import Field, field_validator, model_validator

from snowball.core.config import Settings
from snowball.core.config import settings as app_settings
from snowball.schemas.common import BaseSchema

# --- Repository settings ---


class QualityWeights(BaseSchema):
    """Weights blended into a repository's quality score."""

    verification: float = Field(default=0.4, ge=0.0, le=1.0)
    activity: float = Field(default=0.3, ge=0.0, le=1.0)
    engagement: float = Field(default=0.3, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def check_sum(self) -> "QualityWeights":
        total = self.verification + self.activity + self.engagement
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"Quality weights must sum to 1.0, got {total:.3f}")
        return self


class RepositorySettings(BaseSchema):
    """Repository-level snowball configuration (stored in Repository.settings).

    Keys missing from the stored dict fall back to the environment defaults.
    """

    auto_approve: bool = False
    double_opt_in: bool = False
    max_generation_depth: int = Field(default=3, ge=0)
    quality_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    min_quality_for_auto_approve: float = Field(default=0.5, ge=0.0, le=1.0)
    daily_add_limit: int = Field(default=1000, ge=0)
    quality_weights: QualityWeights = Field(default_factory=QualityWeights)
    blocked_domains: list[str] = Field(default_factory=list)

    @field_validator("blocked_domains")
    @classmethod
    def normalize_domains(cls, domains: list[str]) -> list[str]:
        return sorted({d.strip().lower() for d in domains if d.strip()})

    @classmethod
    def for_repository(
        cls, stored: dict[str, Any] | None, base: Settings = app_settings
    ) -> "RepositorySettings":
        """Merge a repository's stored overrides onto the environment defaults."""
        defaults: dict[str, Any] = {
            "max_generation_depth": base.snowball_max_generation_depth,
            "quality_threshold": base.snowball_quality_threshold,
            "min_quality_for_auto_approve": base.snowball_min_quality_for_auto_approve,
            "daily_add_limit": base.snowball_daily_add_limit,
        }
        return cls.model_validate({**defaults, **(stored or {})})


# --- Ingestion ---


class CandidateRecord(BaseSchema):
    """A validated CSV row, ready for distribution."""

    email: str
    row_index: int
    name: str | None = None
    company: str | None = None
    tags: list[str] = Field(default_factory=list)
    subscribed: bool | None = None


class RowError(BaseSchema):
    """A row that did not make it through ingestion."""

    row: int
    email: str | None = None
    outcome: Literal["rejected", "duplicate"]
    reason: str


class IngestionResult(BaseSchema):
    """Output of CSV ingestion."""

    records: list[CandidateRecord]
    errors: list[RowError]
    content_hash: str
    checksum: str
    total_rows: int
    headers: list[str]


# --- Abuse guard ---


class UploaderProfile(BaseSchema):
    """Identity facts supplied by the caller; the engine never fetches them."""

    user_id: str
    email: str | None = None
    karma: int = 0
    account_age_days: int = 0


class GuardDecision(BaseSchema):
    """Allow/deny answer from the abuse guard."""

    allowed: bool
    reason: str | None = None
    detail: str | None = None

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, detail: str | None = None) -> "GuardDecision":
        return cls(allowed=False, reason=reason, detail=detail)


# --- Jobs ---


class DistributionJob(BaseSchema):
    """Payload of a ``process-snowball`` job."""

    type: Literal["process-snowball"] = "process-snowball"
    event_id: UUID
    repository_id: UUID
    emails: list[CandidateRecord] | None = None
    priority: int | None = Field(default=None, ge=0, le=9)


class DistributionOutcome(BaseSchema):
    """What one run of the distribution worker achieved."""

    event_id: UUID
    status: Literal["completed", "partial", "failed", "deferred", "skipped"]
    processed: int = 0
    added: int = 0
    rejected: int = 0
    duplicates: int = 0
    retry_in: float | None = None
    failure_reason: str | None = None


# --- Read models ---


class UploadAcceptedResponse(BaseSchema):
    """Response for an accepted CSV upload."""

    event_id: UUID
    repository_id: UUID
    status: str
    generation: int
    total_rows: int
    candidates: int
    ingest_errors: int


class EventStats(BaseSchema):
    total_emails: int
    processed: int
    added: int
    rejected: int
    duplicates: int


class SnowballEffect(BaseSchema):
    next_gen_potential: int
    viral_coefficient: float


class EventStatusResponse(BaseSchema):
    """Polled by the UI while an upload is processed."""

    event_id: UUID
    status: str
    failure_reason: str | None = None
    generation: int
    stats: EventStats
    snowball_effect: SnowballEffect
    created_at: datetime
    processed_at: datetime | None = None


class EventResultsResponse(BaseSchema):
    """Itemized per-row outcomes of an upload."""

    event_id: UUID
    status: str
    results: list[dict[str, Any]]


class GenerationCount(BaseSchema):
    generation: int
    members: int


class GrowthMetrics(BaseSchema):
    """Derived viral-growth metrics for one repository."""

    repository_id: UUID
    window_days: int
    viral_coefficient: float
    amplification_rate: float
    growth_rate: float
    engagement_rate: float
    quality_score: float
    generation_breakdown: list[GenerationCount]
    decay_flagged: bool
    total_members: int
    snowball_members: int
    organic_members: int
    verified_members: int
    snowball_added_in_window: int
    uploaders_in_window: int


class GrowthSection(BaseSchema):
    total: int
    organic: int
    snowball: int
    generation_breakdown: list[GenerationCount]


class ViralMetrics(BaseSchema):
    coefficient: float
    amplification_rate: float
    average_gen_size: float
    decay_flagged: bool


class Contributor(BaseSchema):
    user_id: str
    members_added: int


class TimelinePoint(BaseSchema):
    """Snowball members added on one UTC day."""

    date: str
    added: int


class GrowthReportResponse(BaseSchema):
    """Repository growth analytics read model."""

    repository_id: UUID
    window_days: int
    growth: GrowthSection
    viral_metrics: ViralMetrics
    conversion_rate: float
    top_contributors: list[Contributor]
    timeline: list[TimelinePoint]


class MemberRemovalResponse(BaseSchema):
    repository_id: UUID
    address: str
    removed: bool
    total_emails: int


class OptInConfirmation(BaseSchema):
    token: str = Field(..., min_length=1, max_length=64)


class MemberStatusResponse(BaseSchema):
    """Member state after an opt-in or review action."""

    repository_id: UUID
    address: str
    verification_status: str
    opt_in_status: bool
    is_active: bool
    changed: bool
    total_emails: int
    verified_emails: int


class EventSummary(BaseSchema):
    """Row of the repository upload history."""

    id: UUID
    uploader_id: str
    file_name: str
    status: str
    generation: int
    total_emails: int
    added_emails: int
    rejected_emails: int
    duplicate_emails: int
    failure_reason: str | None = None
    created_at: datetime
    processed_at: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, value: Any) -> Any:
        return getattr(value, "value", value)
