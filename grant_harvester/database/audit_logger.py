"""Append-only audit trail for the write path."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Any, Iterable

from ..logging_conf import configure_logging
from ..models import BatchOperationResult, DuplicateAction, utcnow
from ..storage.repository import AuditEntry, GrantRepository, TransactionContext


class AuditAction(str, Enum):
    SCRAPE_EXECUTED = "SCRAPE_EXECUTED"
    GRANT_SAVED = "GRANT_SAVED"
    GRANT_UPDATED = "GRANT_UPDATED"
    CONFIG_UPDATED = "CONFIG_UPDATED"


class EntityType(str, Enum):
    SCRAPE_JOB = "scrape_job"
    GRANT = "grant"
    GRANT_DUPLICATE = "grant_duplicate"
    GRANT_CONTENT_CHANGE = "grant_content_change"
    DATABASE_ERROR = "database_error"
    SCRAPED_SOURCE = "scraped_source"
    PERFORMANCE_METRICS = "performance_metrics"


_PROCESSING_ACTIONS = {
    DuplicateAction.INSERT: AuditAction.GRANT_SAVED,
    DuplicateAction.UPDATE: AuditAction.GRANT_UPDATED,
    DuplicateAction.SKIP: AuditAction.SCRAPE_EXECUTED,
}


class AuditLogger:
    """Best-effort audit writer.

    Every ``log_*`` call appends one row through the repository. Failures are
    reported as ``audit_write_failed`` warnings and never reach the caller, so
    auditing cannot abort a scrape or a batch.
    """

    def __init__(self, repository: GrantRepository) -> None:
        self.repository = repository
        self.logger = configure_logging().bind(component="audit")

    def _append(
        self,
        action: AuditAction,
        entity_type: EntityType,
        entity_id: str | None,
        metadata: dict[str, Any],
        tx: TransactionContext | None = None,
    ) -> bool:
        entry = AuditEntry(
            action=action.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
            metadata={**metadata, "timestamp": utcnow().isoformat()},
        )
        try:
            self.repository.append_audit(entry, tx=tx)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning(
                "audit_write_failed",
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entity_id,
                error=str(exc),
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------
    def log_batch_operation(
        self, job_id: str | None, result: BatchOperationResult, tx: TransactionContext | None = None
    ) -> bool:
        return self._append(AuditAction.SCRAPE_EXECUTED, EntityType.SCRAPE_JOB, job_id, result.as_dict(), tx)

    def log_grant_processing(
        self,
        job_id: str | None,
        grant_title: str,
        action: DuplicateAction,
        grant_id: str | None = None,
        tx: TransactionContext | None = None,
    ) -> bool:
        return self._append(
            _PROCESSING_ACTIONS[action],
            EntityType.GRANT,
            grant_id,
            {"job_id": job_id, "grant_title": grant_title, "processing_action": action.value},
            tx,
        )

    def log_grant_update(
        self,
        grant_id: str,
        reason: str,
        updated_fields: dict[str, Any],
        tx: TransactionContext | None = None,
    ) -> bool:
        return self._append(
            AuditAction.GRANT_UPDATED,
            EntityType.GRANT,
            grant_id,
            {"reason": reason, "updated_fields": sorted(updated_fields), "field_values": updated_fields},
            tx,
        )

    def log_scrape_job_event(
        self,
        job_id: str,
        event: str,
        metadata: dict[str, Any] | None = None,
        tx: TransactionContext | None = None,
    ) -> bool:
        return self._append(
            AuditAction.SCRAPE_EXECUTED,
            EntityType.SCRAPE_JOB,
            job_id,
            {"event": event, **(metadata or {})},
            tx,
        )

    def log_duplicate_detection(
        self,
        original_grant_id: str,
        duplicate_title: str,
        action: str,
        confidence: float,
        tx: TransactionContext | None = None,
        *,
        reason: str | None = None,
        duplicate_grant_id: str | None = None,
    ) -> bool:
        metadata: dict[str, Any] = {
            "duplicate_title": duplicate_title,
            "deduplication_action": action,
            "confidence": confidence,
        }
        if reason is not None:
            metadata["reason"] = reason
        if duplicate_grant_id is not None:
            metadata["duplicate_grant_id"] = duplicate_grant_id
        return self._append(AuditAction.SCRAPE_EXECUTED, EntityType.GRANT_DUPLICATE, original_grant_id, metadata, tx)

    def log_content_change(
        self,
        grant_id: str,
        changed_fields: Iterable[str],
        severity: str,
        previous_hash: str,
        new_hash: str,
        tx: TransactionContext | None = None,
    ) -> bool:
        return self._append(
            AuditAction.GRANT_UPDATED,
            EntityType.GRANT_CONTENT_CHANGE,
            grant_id,
            {
                "changed_fields": list(changed_fields),
                "change_type": severity,
                "previous_hash": previous_hash,
                "new_hash": new_hash,
            },
            tx,
        )

    def log_database_error(
        self,
        operation: str,
        error: BaseException,
        context: dict[str, Any] | None = None,
    ) -> bool:
        # Written outside any transaction; the failing one is usually rolled back.
        self.logger.error("database_error", operation=operation, error=str(error), context=context or {})
        return self._append(
            AuditAction.SCRAPE_EXECUTED,
            EntityType.DATABASE_ERROR,
            None,
            {
                "operation": operation,
                "error_message": str(error),
                "error_type": type(error).__name__,
                "context": context or {},
            },
        )

    def log_source_config_change(
        self, source_id: str, changes: dict[str, Any], tx: TransactionContext | None = None
    ) -> bool:
        return self._append(
            AuditAction.CONFIG_UPDATED,
            EntityType.SCRAPED_SOURCE,
            source_id,
            {"config_changes": changes},
            tx,
        )

    def log_performance_metrics(
        self,
        operation: str,
        *,
        duration: float,
        records_processed: int,
        tx: TransactionContext | None = None,
        **extra: Any,
    ) -> bool:
        return self._append(
            AuditAction.SCRAPE_EXECUTED,
            EntityType.PERFORMANCE_METRICS,
            None,
            {"operation": operation, "duration": duration, "records_processed": records_processed, **extra},
            tx,
        )

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    def get_entity_audit_logs(self, entity_type: str, entity_id: str, limit: int = 50) -> list[AuditEntry]:
        return self.repository.list_audit(entity_type=entity_type, entity_id=entity_id, limit=limit)

    def get_recent_activity(self, hours: int = 24, limit: int = 100) -> list[AuditEntry]:
        return self.repository.list_audit(
            action=AuditAction.SCRAPE_EXECUTED.value,
            since=utcnow() - timedelta(hours=hours),
            limit=limit,
        )

    def get_audit_statistics(self, days: int = 7) -> dict[str, Any]:
        since = utcnow() - timedelta(days=days)
        return {
            "total_events": self.repository.count_audit(since=since),
            "scrape_events": self.repository.count_audit(since=since, action=AuditAction.SCRAPE_EXECUTED.value),
            "grant_events": self.repository.count_audit(since=since, entity_type=EntityType.GRANT.value),
            "error_events": self.repository.count_audit(since=since, entity_type=EntityType.DATABASE_ERROR.value),
            "events_by_day": [
                {"date": day, "count": count} for day, count in self.repository.audit_counts_by_day(since=since)
            ],
        }

    def cleanup_old_logs(self, days_to_keep: int = 90) -> int:
        """Delete entries older than ``days_to_keep`` days and record the purge."""

        deleted = self.repository.delete_audit_before(utcnow() - timedelta(days=days_to_keep))
        self.log_performance_metrics("audit_log_cleanup", duration=0.0, records_processed=deleted)
        self.logger.info("audit_log_cleanup", deleted=deleted, days_to_keep=days_to_keep)
        return deleted


__all__ = ["AuditAction", "AuditLogger", "EntityType"]
