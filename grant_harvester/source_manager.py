"""Source configuration lifecycle and health tracking."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from .config.models import KNOWN_ENGINES, SourceConfiguration
from .database.audit_logger import AuditLogger
from .errors import ConfigurationError, SourceNotFoundError
from .logging_conf import configure_logging
from .models import SourceMetrics, SourceRunStats, SourceStatus, utcnow
from .storage.repository import SourceRecord, SourceRepository

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; GrantHarvester/1.0)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}
HIGH_REQUEST_RATE = 60
HEALTH_CHECK_STALE_AFTER = timedelta(hours=1)
HEALTH_CHECK_MIN_FAILURES = 3


@dataclass(slots=True)
class HealthCheckResult:
    is_healthy: bool
    response_time: float
    status_code: int | None = None
    error: str | None = None
    checked_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class ValidationIssue:
    field: str
    message: str
    severity: str = "error"


@dataclass(slots=True)
class ValidationReport:
    is_valid: bool
    errors: list[ValidationIssue]
    warnings: list[ValidationIssue]
    quality_score: int


class SourceManager:
    """Create, update, enable and monitor harvesting sources."""

    def __init__(
        self,
        repository: SourceRepository,
        *,
        audit_logger: AuditLogger | None = None,
        health_check_timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.repository = repository
        self.audit_logger = audit_logger
        self.health_check_timeout = health_check_timeout
        self._client = http_client or httpx.Client(follow_redirects=True, timeout=health_check_timeout)
        self._owns_client = http_client is None
        self.logger = configure_logging().bind(component="source_manager")

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def source_exists(self, source_id: str) -> bool:
        return self.repository.get_source(source_id) is not None

    def get_active_source(self, source_id: str) -> SourceConfiguration | None:
        record = self.repository.get_source(source_id)
        if record is None or record.status is not SourceStatus.ACTIVE:
            return None
        return record.config

    def get_active_sources(self) -> list[SourceConfiguration]:
        return [record.config for record in self.repository.list_sources([SourceStatus.ACTIVE])]

    def list_sources(self) -> list[SourceRecord]:
        return self.repository.list_sources()

    def get_source_status(self, source_id: str) -> SourceStatus:
        record = self.repository.get_source(source_id)
        if record is None:
            raise SourceNotFoundError(source_id)
        return record.status

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def create_source(self, config: SourceConfiguration) -> SourceConfiguration:
        report = self.validate_source_configuration(config)
        if not report.is_valid:
            raise ConfigurationError(
                "Invalid source configuration: " + "; ".join(issue.message for issue in report.errors)
            )
        record = self.repository.insert_source(config, SourceStatus.ACTIVE)
        self.logger.info("source_created", source_id=config.id, engine=config.engine)
        return record.config

    def update_source(self, source_id: str, updates: dict[str, Any]) -> SourceConfiguration:
        record = self.repository.get_source(source_id)
        if record is None:
            raise SourceNotFoundError(source_id)
        merged = {**record.config.model_dump(), **updates, "id": source_id}
        try:
            config = SourceConfiguration.model_validate(merged)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid source configuration: {exc}") from exc
        report = self.validate_source_configuration(config)
        if not report.is_valid:
            raise ConfigurationError(
                "Invalid source configuration: " + "; ".join(issue.message for issue in report.errors)
            )
        updated = self.repository.update_config(config)
        if self.audit_logger is not None:
            self.audit_logger.log_source_config_change(source_id, updates)
        self.logger.info("source_updated", source_id=source_id, fields=sorted(updates))
        return updated.config

    def update_source_metrics(self, source_id: str, run: SourceRunStats) -> SourceMetrics:
        """Fold one run into the stored running metrics and persist them."""

        record = self.repository.get_source(source_id)
        if record is None:
            raise SourceNotFoundError(source_id)
        metrics = record.metrics
        previous_total = metrics.total_scrapes
        metrics.total_scrapes += 1
        if run.success:
            metrics.successful_scrapes += 1
            metrics.last_success = utcnow()
            metrics.consecutive_failures = 0
        else:
            metrics.failed_scrapes += 1
            metrics.last_error = run.error
            metrics.consecutive_failures += 1
        metrics.success_rate = metrics.successful_scrapes / metrics.total_scrapes
        metrics.average_processing_time = (
            metrics.average_processing_time * previous_total + run.processing_time
        ) / metrics.total_scrapes
        metrics.average_grants_found = (
            metrics.average_grants_found * previous_total + run.grants_found
        ) / metrics.total_scrapes
        self.repository.save_metrics(source_id, metrics)
        return metrics

    def get_source_metrics(self, source_id: str) -> SourceMetrics | None:
        record = self.repository.get_source(source_id)
        return record.metrics if record else None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------
    def perform_health_check(self, url: str, headers: dict[str, str] | None = None) -> HealthCheckResult:
        started = time.perf_counter()
        try:
            response = self._client.head(
                url,
                headers={**DEFAULT_HEADERS, **(headers or {})},
                timeout=self.health_check_timeout,
            )
        except httpx.HTTPError as exc:
            elapsed = time.perf_counter() - started
            self.logger.warning("health_check_failed", url=url, error=str(exc))
            return HealthCheckResult(is_healthy=False, response_time=elapsed, error=str(exc) or type(exc).__name__)
        elapsed = time.perf_counter() - started
        return HealthCheckResult(
            is_healthy=response.is_success,
            response_time=elapsed,
            status_code=response.status_code,
            error=None if response.is_success else f"HTTP {response.status_code}",
        )

    def enable_source(self, source_id: str) -> HealthCheckResult:
        record = self.repository.get_source(source_id)
        if record is None:
            raise SourceNotFoundError(source_id)
        health = self.perform_health_check(record.config.url, record.config.headers)
        if health.is_healthy:
            self.repository.set_status(source_id, SourceStatus.ACTIVE)
            self.logger.info("source_enabled", source_id=source_id)
            return health
        self.repository.set_status(source_id, SourceStatus.INACTIVE, last_error=health.error)
        raise ConfigurationError(f"Cannot enable source: Health check failed - {health.error}")

    def disable_source(self, source_id: str, reason: str | None = None) -> None:
        self.repository.set_status(source_id, SourceStatus.INACTIVE, last_error=reason)
        self.logger.info("source_disabled", source_id=source_id, reason=reason)

    def get_sources_for_health_check(self) -> list[SourceConfiguration]:
        records = self.repository.list_for_health_check(
            stale_before=utcnow() - HEALTH_CHECK_STALE_AFTER,
            min_failures=HEALTH_CHECK_MIN_FAILURES,
        )
        return [record.config for record in records]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def validate_source_configuration(self, config: SourceConfiguration) -> ValidationReport:
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        if not config.url:
            errors.append(ValidationIssue("url", "URL is required"))
        else:
            parsed = urlparse(config.url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                errors.append(ValidationIssue("url", "Invalid URL format"))

        if config.engine not in KNOWN_ENGINES:
            errors.append(ValidationIssue("engine", "Valid engine type is required (static, browser, api)"))

        if config.engine != "api":
            if not config.selectors.grant_container:
                errors.append(ValidationIssue("selectors.grant_container", "Grant container selector is required"))
            if not config.selectors.title:
                errors.append(ValidationIssue("selectors.title", "Title selector is required"))

        if config.rate_limit.requests_per_minute <= 0:
            errors.append(ValidationIssue("rate_limit.requests_per_minute", "Requests per minute must be positive"))
        if config.rate_limit.delay_between_requests < 0:
            errors.append(
                ValidationIssue("rate_limit.delay_between_requests", "Delay between requests cannot be negative")
            )

        if config.authentication is not None and not config.authentication.credentials:
            errors.append(ValidationIssue("authentication.credentials", "Authentication credentials are required"))

        if config.rate_limit.requests_per_minute > HIGH_REQUEST_RATE:
            warnings.append(
                ValidationIssue(
                    "rate_limit.requests_per_minute",
                    "High request rate may trigger anti-bot measures",
                    severity="warning",
                )
            )

        return ValidationReport(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            quality_score=max(0, 100 - 25 * len(errors) - 10 * len(warnings)),
        )


__all__ = ["HealthCheckResult", "SourceManager", "ValidationIssue", "ValidationReport"]
