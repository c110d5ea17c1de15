"""Domain records flowing between the harvesting stages."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from .cancellation import CancellationToken
from .config.models import SourceType
from .errors import ScrapingError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GrantCategory(str, Enum):
    """Thematic categories assigned by the classifier."""

    HEALTHCARE_PUBLIC_HEALTH = "HEALTHCARE_PUBLIC_HEALTH"
    EDUCATION_TRAINING = "EDUCATION_TRAINING"
    ENVIRONMENT_SUSTAINABILITY = "ENVIRONMENT_SUSTAINABILITY"
    SOCIAL_SERVICES = "SOCIAL_SERVICES"
    ARTS_CULTURE = "ARTS_CULTURE"
    TECHNOLOGY_INNOVATION = "TECHNOLOGY_INNOVATION"
    RESEARCH_DEVELOPMENT = "RESEARCH_DEVELOPMENT"
    COMMUNITY_DEVELOPMENT = "COMMUNITY_DEVELOPMENT"


class FunderType(str, Enum):
    PRIVATE_FOUNDATION = "PRIVATE_FOUNDATION"
    GOVERNMENT = "GOVERNMENT"
    NGO = "NGO"
    CORPORATE = "CORPORATE"

    @classmethod
    def from_source_type(cls, source_type: SourceType | str | None) -> "FunderType":
        value = source_type.value if isinstance(source_type, SourceType) else source_type
        return {
            "FOUNDATION": cls.PRIVATE_FOUNDATION,
            "GOV": cls.GOVERNMENT,
            "NGO": cls.NGO,
            "BUSINESS": cls.CORPORATE,
        }.get(value or "", cls.PRIVATE_FOUNDATION)

    def to_source_type(self) -> SourceType:
        return {
            FunderType.PRIVATE_FOUNDATION: SourceType.FOUNDATION,
            FunderType.GOVERNMENT: SourceType.GOV,
            FunderType.NGO: SourceType.NGO,
            FunderType.CORPORATE: SourceType.BUSINESS,
        }[self]


class GrantStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DUPLICATE = "DUPLICATE"


class SourceStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DuplicateAction(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    SKIP = "skip"


class MatchType(str, Enum):
    EXACT = "exact"
    TITLE = "title"
    FUZZY = "fuzzy"
    NONE = "none"


class ChangeSeverity(str, Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {ChangeSeverity.MINOR: 0, ChangeSeverity.MAJOR: 1, ChangeSeverity.CRITICAL: 2}


class GrantField(str, Enum):
    """Persisted grant fields tracked for change detection and merging."""

    TITLE = "title"
    DESCRIPTION = "description"
    DEADLINE = "deadline"
    FUNDING_AMOUNT_MIN = "funding_amount_min"
    FUNDING_AMOUNT_MAX = "funding_amount_max"
    ELIGIBILITY_CRITERIA = "eligibility_criteria"
    APPLICATION_URL = "application_url"
    CATEGORY = "category"
    LOCATION_ELIGIBILITY = "location_eligibility"
    FUNDER = "funder"
    CONFIDENCE_SCORE = "confidence_score"


@dataclass(slots=True)
class RawExtractedRecord:
    """Untyped record exactly as an extraction engine captured it."""

    title: str
    description: str = ""
    deadline: str | None = None
    funding_amount: str | None = None
    eligibility: str | None = None
    application_url: str | None = None
    funder_name: str | None = None
    source_url: str = ""
    scraped_at: datetime = field(default_factory=utcnow)
    raw_content: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FunderData:
    name: str
    website: str | None = None
    contact_email: str | None = None
    type: SourceType = SourceType.FOUNDATION


@dataclass(slots=True)
class ProcessedRecord:
    """Normalized grant ready for deduplication and persistence.

    ``content_hash`` is only meaningful after a stage re-stamps it through
    :meth:`ContentHasher.stamp`; records are otherwise treated as immutable and
    changed with :func:`dataclasses.replace`.
    """

    title: str
    description: str
    funder: FunderData
    deadline: date | None = None
    funding_amount_min: float | None = None
    funding_amount_max: float | None = None
    eligibility_criteria: str = ""
    application_url: str | None = None
    category: GrantCategory = GrantCategory.COMMUNITY_DEVELOPMENT
    location_eligibility: list[str] = field(default_factory=list)
    confidence_score: float = 0.0
    tags: list[str] = field(default_factory=list)
    content_hash: str = ""


@dataclass(slots=True)
class DuplicateCheckResult:
    is_duplicate: bool
    action: DuplicateAction
    confidence: float
    reason: str
    existing_grant_id: str | None = None
    match_type: MatchType = MatchType.NONE
    conflict_fields: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ContentChangeDetection:
    previous_hash: str
    current_hash: str
    changed_fields: list[str]
    severity: ChangeSeverity
    detected_at: datetime = field(default_factory=utcnow)
    grant_id: str = ""


@dataclass(slots=True)
class BatchOperationResult:
    """Counts for one writer call; per-item failures live in ``errors``."""

    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    duplicates_found: int = 0
    errors: list[ScrapingError] = field(default_factory=list)
    processing_time: float = 0.0

    def absorb(self, other: "BatchOperationResult") -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.duplicates_found += other.duplicates_found
        self.errors.extend(other.errors)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "duplicates_found": self.duplicates_found,
            "processing_time": round(self.processing_time, 4),
            "error_count": len(self.errors),
            "errors": [error.as_dict() for error in self.errors],
        }


@dataclass(slots=True)
class GrantUpdate:
    grant_id: str
    data: dict[str, Any]
    reason: str


@dataclass(slots=True)
class ScrapeJob:
    source_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    scheduled_at: datetime = field(default_factory=utcnow)
    status: JobStatus = JobStatus.PENDING
    priority: int = 5
    metadata: dict[str, Any] = field(default_factory=dict)
    cancel_token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def __post_init__(self) -> None:
        if not 1 <= self.priority <= 10:
            raise ValueError("ScrapeJob priority must be between 1 and 10")


@dataclass(slots=True)
class ScrapingResult:
    """Per-source summary returned by the orchestrator."""

    source_id: str
    total_found: int = 0
    total_inserted: int = 0
    total_updated: int = 0
    total_skipped: int = 0
    duplicates_found: int = 0
    errors: list[ScrapingError] = field(default_factory=list)
    duration: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return bool(self.metadata.get("failed"))

    @property
    def cancelled(self) -> bool:
        return bool(self.metadata.get("cancelled"))

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "total_found": self.total_found,
            "total_inserted": self.total_inserted,
            "total_updated": self.total_updated,
            "total_skipped": self.total_skipped,
            "duplicates_found": self.duplicates_found,
            "duration": round(self.duration, 4),
            "errors": [error.as_dict() for error in self.errors],
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class SourceRunStats:
    """Outcome of one source run, fed into the health metrics."""

    success: bool
    processing_time: float
    grants_found: int
    error: str | None = None


@dataclass(slots=True)
class SourceMetrics:
    total_scrapes: int = 0
    successful_scrapes: int = 0
    failed_scrapes: int = 0
    success_rate: float = 0.0
    average_processing_time: float = 0.0
    average_grants_found: float = 0.0
    last_success: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0


@dataclass(slots=True)
class JobState:
    job_id: str
    source_id: str
    status: JobStatus
    started_at: datetime
    cancel_token: CancellationToken = field(repr=False)


@dataclass(slots=True)
class DatabaseStats:
    total_grants: int
    active_grants: int
    expired_grants: int
    total_funders: int
    recent_scrape_jobs: int
    avg_processing_time: float


__all__ = [
    "BatchOperationResult",
    "ChangeSeverity",
    "ContentChangeDetection",
    "DatabaseStats",
    "DuplicateAction",
    "DuplicateCheckResult",
    "FunderData",
    "FunderType",
    "GrantCategory",
    "GrantField",
    "GrantStatus",
    "GrantUpdate",
    "JobState",
    "JobStatus",
    "MatchType",
    "ProcessedRecord",
    "RawExtractedRecord",
    "ScrapeJob",
    "ScrapingResult",
    "SourceMetrics",
    "SourceRunStats",
    "SourceStatus",
    "utcnow",
]
