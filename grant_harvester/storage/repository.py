"""Storage interfaces used by the write path and the source manager."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from ..config.models import SourceConfiguration
from ..models import (
    DatabaseStats,
    FunderData,
    GrantStatus,
    ProcessedRecord,
    ScrapeJob,
    ScrapingResult,
    SourceMetrics,
    SourceStatus,
    utcnow,
)


class TransactionContext(ABC):
    """Handle for one open storage transaction.

    Passed explicitly as ``tx`` to repository methods so several calls share a
    single unit of work.
    """

    timeout: float | None

    @abstractmethod
    def check_deadline(self) -> None:
        """Raise :class:`TransactionTimeoutError` once the deadline has passed."""

    @abstractmethod
    def savepoint(self) -> AbstractContextManager[None]:
        """Nested scope rolled back on error without aborting the transaction."""


@dataclass(slots=True)
class StoredGrant:
    id: str
    record: ProcessedRecord
    status: GrantStatus
    funder_id: str
    source_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def content_hash(self) -> str:
        return self.record.content_hash


@dataclass(slots=True)
class AuditEntry:
    action: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: int | None = None


@dataclass(slots=True)
class SourceRecord:
    config: SourceConfiguration
    status: SourceStatus
    metrics: SourceMetrics
    created_at: datetime
    updated_at: datetime


class GrantRepository(ABC):
    """Transactional persistence for grants, funders, tags, jobs and audit rows."""

    @abstractmethod
    def transaction(self, timeout: float | None = None) -> AbstractContextManager[TransactionContext]:
        ...

    # grants ------------------------------------------------------------
    @abstractmethod
    def create_grant(
        self,
        record: ProcessedRecord,
        *,
        funder_id: str,
        source_id: str | None,
        tx: TransactionContext | None = None,
    ) -> str:
        ...

    @abstractmethod
    def update_grant(self, grant_id: str, record: ProcessedRecord, *, tx: TransactionContext | None = None) -> None:
        ...

    @abstractmethod
    def patch_grant(self, grant_id: str, data: dict[str, Any], *, tx: TransactionContext | None = None) -> None:
        ...

    @abstractmethod
    def get_grant(self, grant_id: str, *, tx: TransactionContext | None = None) -> StoredGrant | None:
        ...

    @abstractmethod
    def find_active_by_hash(self, content_hash: str, *, tx: TransactionContext | None = None) -> StoredGrant | None:
        ...

    @abstractmethod
    def find_active_by_title_and_funder(
        self,
        normalized_title: str,
        funder_name: str,
        *,
        limit: int = 5,
        tx: TransactionContext | None = None,
    ) -> list[StoredGrant]:
        ...

    @abstractmethod
    def search_active_by_keywords(
        self,
        title_keywords: Sequence[str],
        description_keywords: Sequence[str],
        *,
        limit: int = 10,
        tx: TransactionContext | None = None,
    ) -> list[StoredGrant]:
        ...

    @abstractmethod
    def set_grant_status(
        self, grant_id: str, status: GrantStatus, *, tx: TransactionContext | None = None
    ) -> None:
        ...

    @abstractmethod
    def expire_grants(
        self, source_id: str, keep_hashes: Iterable[str], *, tx: TransactionContext | None = None
    ) -> int:
        ...

    # funders and tags --------------------------------------------------
    @abstractmethod
    def find_or_create_funder(self, funder: FunderData, *, tx: TransactionContext | None = None) -> str:
        ...

    @abstractmethod
    def add_tags(
        self, grant_id: str, tags: Iterable[str], *, source: str = "system", tx: TransactionContext | None = None
    ) -> None:
        ...

    @abstractmethod
    def delete_tags(
        self, grant_id: str, prefix: str, *, source: str = "system", tx: TransactionContext | None = None
    ) -> int:
        ...

    @abstractmethod
    def get_tags(self, grant_id: str, *, tx: TransactionContext | None = None) -> list[str]:
        ...

    # audit -------------------------------------------------------------
    @abstractmethod
    def append_audit(self, entry: AuditEntry, *, tx: TransactionContext | None = None) -> None:
        ...

    @abstractmethod
    def list_audit(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[AuditEntry]:
        ...

    @abstractmethod
    def count_audit(
        self, *, since: datetime, action: str | None = None, entity_type: str | None = None
    ) -> int:
        ...

    @abstractmethod
    def audit_counts_by_day(self, *, since: datetime) -> list[tuple[str, int]]:
        ...

    @abstractmethod
    def delete_audit_before(self, cutoff: datetime) -> int:
        ...

    # jobs and stats ----------------------------------------------------
    @abstractmethod
    def save_scrape_job(
        self, job: ScrapeJob, result: ScrapingResult | None = None, *, tx: TransactionContext | None = None
    ) -> None:
        ...

    @abstractmethod
    def get_scrape_job(self, job_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    def stats(self, *, jobs_since: datetime) -> DatabaseStats:
        ...


class SourceRepository(ABC):
    """Persistence for source configurations and their health metrics."""

    @abstractmethod
    def get_source(self, source_id: str) -> SourceRecord | None:
        ...

    @abstractmethod
    def list_sources(self, statuses: Iterable[SourceStatus] | None = None) -> list[SourceRecord]:
        ...

    @abstractmethod
    def insert_source(self, config: SourceConfiguration, status: SourceStatus) -> SourceRecord:
        ...

    @abstractmethod
    def update_config(self, config: SourceConfiguration) -> SourceRecord:
        ...

    @abstractmethod
    def set_status(self, source_id: str, status: SourceStatus, *, last_error: str | None = None) -> None:
        ...

    @abstractmethod
    def save_metrics(self, source_id: str, metrics: SourceMetrics) -> None:
        ...

    @abstractmethod
    def list_for_health_check(self, *, stale_before: datetime, min_failures: int) -> list[SourceRecord]:
        ...


__all__ = [
    "AuditEntry",
    "GrantRepository",
    "SourceRecord",
    "SourceRepository",
    "StoredGrant",
    "TransactionContext",
]
