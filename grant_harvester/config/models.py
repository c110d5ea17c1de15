"""Pydantic models used across the grant-harvester configuration flow."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

KNOWN_ENGINES = ("static", "browser", "api")


class SourceType(str, Enum):
    """Kinds of organisation publishing funding opportunities."""

    GOV = "GOV"
    FOUNDATION = "FOUNDATION"
    BUSINESS = "BUSINESS"
    NGO = "NGO"
    OTHER = "OTHER"


class ScrapingFrequency(str, Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class AuthType(str, Enum):
    BEARER = "bearer"
    BASIC = "basic"
    APIKEY = "apikey"
    OAUTH2 = "oauth2"


class SourceSelectors(BaseModel):
    """CSS selectors for HTML engines; JSON keys for the API engine."""

    model_config = ConfigDict(frozen=True)

    grant_container: str | None = None
    title: str | None = None
    description: str | None = None
    deadline: str | None = None
    funding_amount: str | None = None
    eligibility: str | None = None
    application_url: str | None = None
    funder_info: str | None = None


class RateLimitConfig(BaseModel):
    """Per-source politeness policy, enforced by the extraction engine."""

    model_config = ConfigDict(frozen=True)

    requests_per_minute: int = 30
    delay_between_requests: float = 2.0
    respect_robots_txt: bool = True


class AuthConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: AuthType
    credentials: dict[str, str] = Field(default_factory=dict)


class PaginationConfig(BaseModel):
    """Offset pagination used by the API engine."""

    model_config = ConfigDict(frozen=True)

    offset_param: str = "offset"
    limit_param: str = "limit"
    page_size: int = 50
    max_pages: int = 5

    @model_validator(mode="after")
    def _validate_bounds(self) -> "PaginationConfig":
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        return self


class SourceConfiguration(BaseModel):
    """Immutable snapshot of a source handed to an engine for one scrape.

    ``engine`` is kept as free text so that an unknown engine reaches the
    orchestrator and is reported as a configuration error at run time.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    url: str
    name: str = ""
    source_type: SourceType = SourceType.OTHER
    engine: str = "static"
    selectors: SourceSelectors = Field(default_factory=SourceSelectors)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    headers: dict[str, str] = Field(default_factory=dict)
    authentication: AuthConfig | None = None
    pagination: PaginationConfig | None = None
    frequency: ScrapingFrequency = ScrapingFrequency.DAILY
    category: str | None = None
    region: str | None = None
    notes: str | None = None

    @field_validator("id")
    @classmethod
    def _validate_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("source id cannot be empty")
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.id


class OrchestratorSettings(BaseModel):
    max_concurrent_sources: int | None = 5
    enable_deduplication: bool = True
    enable_classification: bool = True

    @model_validator(mode="after")
    def _validate_limits(self) -> "OrchestratorSettings":
        if self.max_concurrent_sources is not None and self.max_concurrent_sources < 1:
            raise ValueError("max_concurrent_sources must be >= 1 or null")
        return self


class WriterSettings(BaseModel):
    batch_size: int = 100
    enable_deduplication: bool = True
    enable_audit_logging: bool = True
    transaction_timeout: float = Field(default=30.0, description="Seconds per batch transaction.")

    @model_validator(mode="after")
    def _validate_limits(self) -> "WriterSettings":
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.transaction_timeout <= 0:
            raise ValueError("transaction_timeout must be positive")
        return self


class HarvesterSettings(BaseModel):
    """Global controls shared across sources."""

    database_path: Path = Field(default=Path("data/harvester.db"))
    log_level: str = "INFO"
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    writer: WriterSettings = Field(default_factory=WriterSettings)
    health_check_timeout: float = 10.0
    thread_pool_workers: int = 8
    audit_retention_days: int = 90

    @field_validator("database_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported log level: {value}")
        return level

    def resolved_database_path(self, base_dir: Path) -> Path:
        if not self.database_path.is_absolute():
            return (base_dir / self.database_path).resolve()
        return self.database_path


__all__ = [
    "AuthConfig",
    "AuthType",
    "HarvesterSettings",
    "KNOWN_ENGINES",
    "OrchestratorSettings",
    "PaginationConfig",
    "RateLimitConfig",
    "ScrapingFrequency",
    "SourceConfiguration",
    "SourceSelectors",
    "SourceType",
    "WriterSettings",
]
