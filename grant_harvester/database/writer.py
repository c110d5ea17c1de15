"""Transactional batch writer for processed grants."""

from __future__ import annotations

import time
from datetime import timedelta
from typing import Iterable, Sequence

from ..config.models import WriterSettings
from ..errors import ErrorType, ScrapingError, StorageError
from ..logging_conf import configure_logging
from ..models import (
    BatchOperationResult,
    DatabaseStats,
    DuplicateAction,
    DuplicateCheckResult,
    GrantStatus,
    GrantUpdate,
    ProcessedRecord,
    ScrapeJob,
    ScrapingResult,
    utcnow,
)
from ..storage.repository import GrantRepository, TransactionContext
from .audit_logger import AuditLogger
from .content_hasher import ContentHasher
from .deduplication import DeduplicationEngine, merge_records

LOCATION_TAG_PREFIX = "location:"
CLASSIFIER_TAG_SOURCE = "classifier"


def _location_tags(record: ProcessedRecord) -> list[str]:
    return [f"{LOCATION_TAG_PREFIX}{location}" for location in record.location_eligibility]


class DatabaseWriter:
    """Persist processed records in fixed-size transactional batches.

    Each batch runs inside one transaction and each record inside a savepoint,
    so a failing record is rolled back alone while a failing or timed-out
    batch leaves no trace at all. Counts from a batch only reach the returned
    :class:`BatchOperationResult` once that batch has committed.
    """

    def __init__(
        self,
        repository: GrantRepository,
        *,
        settings: WriterSettings | None = None,
        hasher: ContentHasher | None = None,
        deduplication: DeduplicationEngine | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or WriterSettings()
        self.hasher = hasher or ContentHasher()
        self.deduplication = deduplication or DeduplicationEngine(repository, self.hasher)
        self.audit = audit or AuditLogger(repository)
        self.logger = configure_logging().bind(component="writer")

    @property
    def auditing(self) -> bool:
        return self.settings.enable_audit_logging

    # ------------------------------------------------------------------
    # Inserts and updates
    # ------------------------------------------------------------------
    def batch_insert_grants(
        self,
        records: Sequence[ProcessedRecord],
        source_id: str | None = None,
        job_id: str | None = None,
    ) -> BatchOperationResult:
        started = time.perf_counter()
        result = BatchOperationResult(total_processed=len(records))
        size = max(1, self.settings.batch_size)

        for offset in range(0, len(records), size):
            batch = records[offset : offset + size]
            try:
                committed = self._write_batch(batch, source_id, job_id)
            except Exception as exc:  # noqa: BLE001
                result.errors.append(
                    ScrapingError.from_exception(
                        exc, error_type=ErrorType.DATABASE, message=f"Batch insert failed: {exc}"
                    )
                )
                self.logger.error(
                    "batch_failed", source_id=source_id, job_id=job_id, offset=offset, size=len(batch), error=str(exc)
                )
                if self.auditing:
                    self.audit.log_database_error(
                        "batch_insert_grants",
                        exc,
                        {"source_id": source_id, "job_id": job_id, "batch_offset": offset, "batch_size": len(batch)},
                    )
                continue
            result.absorb(committed)

        result.processing_time = time.perf_counter() - started
        if self.auditing:
            self.audit.log_batch_operation(job_id, result)
        self.logger.info(
            "batch_insert_completed",
            source_id=source_id,
            job_id=job_id,
            total=result.total_processed,
            inserted=result.inserted,
            updated=result.updated,
            skipped=result.skipped,
            duplicates=result.duplicates_found,
            errors=len(result.errors),
            duration=round(result.processing_time, 3),
        )
        return result

    def _write_batch(
        self, batch: Sequence[ProcessedRecord], source_id: str | None, job_id: str | None
    ) -> BatchOperationResult:
        local = BatchOperationResult()
        with self.repository.transaction(self.settings.transaction_timeout) as tx:
            for record in batch:
                tx.check_deadline()
                try:
                    with tx.savepoint():
                        check, action = self._write_record(record, source_id, job_id, tx)
                except Exception as exc:  # noqa: BLE001
                    local.errors.append(
                        ScrapingError.from_exception(
                            exc,
                            error_type=ErrorType.DATABASE,
                            message=f'Failed to process grant "{record.title}": {exc}',
                        )
                    )
                    self.logger.warning("record_failed", title=record.title, source_id=source_id, error=str(exc))
                    continue
                if check.is_duplicate:
                    local.duplicates_found += 1
                if action is DuplicateAction.INSERT:
                    local.inserted += 1
                elif action is DuplicateAction.UPDATE:
                    local.updated += 1
                else:
                    local.skipped += 1
        return local

    def _write_record(
        self,
        record: ProcessedRecord,
        source_id: str | None,
        job_id: str | None,
        tx: TransactionContext,
    ) -> tuple[DuplicateCheckResult, DuplicateAction]:
        record = self.hasher.stamp(record)
        if self.settings.enable_deduplication:
            check = self.deduplication.check_for_duplicates(record, tx=tx)
        else:
            check = DuplicateCheckResult(
                is_duplicate=False, action=DuplicateAction.INSERT, confidence=0.0, reason="Deduplication disabled"
            )

        if check.action is DuplicateAction.INSERT:
            grant_id = self._insert(record, source_id, tx)
            action = DuplicateAction.INSERT
        elif check.action is DuplicateAction.UPDATE:
            grant_id = check.existing_grant_id
            action = self._update(grant_id, record, tx)
        else:
            grant_id = check.existing_grant_id
            action = DuplicateAction.SKIP

        if self.auditing:
            if check.is_duplicate and check.existing_grant_id:
                self.audit.log_duplicate_detection(
                    check.existing_grant_id,
                    record.title,
                    "merged" if action is DuplicateAction.UPDATE else "skipped",
                    check.confidence,
                    tx,
                    reason=check.reason,
                )
            self.audit.log_grant_processing(job_id, record.title, action, grant_id, tx)
        return check, action

    def _insert(self, record: ProcessedRecord, source_id: str | None, tx: TransactionContext) -> str:
        funder_id = self.repository.find_or_create_funder(record.funder, tx=tx)
        grant_id = self.repository.create_grant(record, funder_id=funder_id, source_id=source_id, tx=tx)
        self.repository.add_tags(grant_id, _location_tags(record), tx=tx)
        self.repository.add_tags(grant_id, record.tags, source=CLASSIFIER_TAG_SOURCE, tx=tx)
        return grant_id

    def _update(self, grant_id: str | None, record: ProcessedRecord, tx: TransactionContext) -> DuplicateAction:
        existing = self.repository.get_grant(grant_id, tx=tx) if grant_id else None
        if existing is None:
            raise StorageError(f"Grant with ID {grant_id} not found for update")

        merged = self.hasher.stamp(merge_records(existing.record, record))
        if existing.content_hash in (record.content_hash, merged.content_hash):
            return DuplicateAction.SKIP

        self.repository.update_grant(existing.id, merged, tx=tx)
        self.repository.delete_tags(existing.id, LOCATION_TAG_PREFIX, tx=tx)
        self.repository.add_tags(existing.id, _location_tags(merged), tx=tx)
        self.repository.add_tags(existing.id, merged.tags, source=CLASSIFIER_TAG_SOURCE, tx=tx)

        change = self.hasher.compare_hashes(existing.content_hash, merged.content_hash, existing.record, merged)
        self.logger.info(
            "grant_content_changed",
            grant_id=existing.id,
            severity=change.severity.value,
            fields=change.changed_fields,
        )
        if self.auditing:
            self.audit.log_content_change(
                existing.id,
                change.changed_fields,
                change.severity.value,
                change.previous_hash,
                change.current_hash,
                tx,
            )
        return DuplicateAction.UPDATE

    def batch_update_grants(self, updates: Sequence[GrantUpdate]) -> BatchOperationResult:
        """Apply targeted field patches in a single transaction."""

        started = time.perf_counter()
        result = BatchOperationResult(total_processed=len(updates))
        local = BatchOperationResult()
        try:
            with self.repository.transaction(self.settings.transaction_timeout) as tx:
                for update in updates:
                    tx.check_deadline()
                    try:
                        with tx.savepoint():
                            self.repository.patch_grant(update.grant_id, update.data, tx=tx)
                            if self.auditing:
                                self.audit.log_grant_update(update.grant_id, update.reason, update.data, tx)
                    except Exception as exc:  # noqa: BLE001
                        local.errors.append(
                            ScrapingError.from_exception(
                                exc,
                                error_type=ErrorType.DATABASE,
                                message=f"Failed to update grant {update.grant_id}: {exc}",
                            )
                        )
                        continue
                    local.updated += 1
        except Exception as exc:  # noqa: BLE001
            result.errors.append(
                ScrapingError.from_exception(exc, error_type=ErrorType.DATABASE, message=f"Batch update failed: {exc}")
            )
            if self.auditing:
                self.audit.log_database_error("batch_update_grants", exc, {"updates": len(updates)})
        else:
            result.absorb(local)
        result.processing_time = time.perf_counter() - started
        self.logger.info("batch_update_completed", updated=result.updated, errors=len(result.errors))
        return result

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    def mark_grants_as_expired(self, source_id: str, active_content_hashes: Iterable[str]) -> int:
        """Expire active grants from ``source_id`` not seen in the latest scrape."""

        with self.repository.transaction(self.settings.transaction_timeout) as tx:
            expired = self.repository.expire_grants(source_id, active_content_hashes, tx=tx)
        self.logger.info("grants_expired", source_id=source_id, count=expired)
        if self.auditing and expired:
            self.audit.log_performance_metrics(
                "mark_grants_as_expired", duration=0.0, records_processed=expired, source_id=source_id
            )
        return expired

    def mark_as_duplicate(self, original_id: str, duplicate_id: str, reason: str) -> None:
        with self.repository.transaction(self.settings.transaction_timeout) as tx:
            duplicate = self.repository.get_grant(duplicate_id, tx=tx)
            if duplicate is None:
                raise StorageError(f"Grant with ID {duplicate_id} not found")
            self.repository.set_grant_status(duplicate_id, GrantStatus.DUPLICATE, tx=tx)
            if self.auditing:
                self.audit.log_duplicate_detection(
                    original_id,
                    duplicate.record.title,
                    "flagged",
                    1.0,
                    tx,
                    reason=reason,
                    duplicate_grant_id=duplicate_id,
                )
        self.logger.info("grant_marked_duplicate", original_id=original_id, duplicate_id=duplicate_id)

    def update_scrape_job_status(self, job: ScrapeJob, result: ScrapingResult | None = None) -> None:
        self.repository.save_scrape_job(job, result)
        if self.auditing:
            self.audit.log_scrape_job_event(
                job.id,
                job.status.value.lower(),
                {"source_id": job.source_id, **(result.as_dict() if result is not None else {})},
            )

    def get_database_stats(self) -> DatabaseStats:
        return self.repository.stats(jobs_since=utcnow() - timedelta(hours=24))

    def cleanup_old_audit_logs(self, days: int = 90) -> int:
        return self.audit.cleanup_old_logs(days)


__all__ = ["CLASSIFIER_TAG_SOURCE", "DatabaseWriter", "LOCATION_TAG_PREFIX"]
