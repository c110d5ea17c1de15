"""SQLite implementation of :class:`SourceRepository`."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Iterable

from ..config.models import SourceConfiguration
from ..errors import SourceNotFoundError, StorageError
from ..models import SourceMetrics, SourceStatus, utcnow
from .repository import SourceRecord, SourceRepository
from .sqlite_manager import SQLiteManager, from_timestamp, to_timestamp


def _row_to_source(row: sqlite3.Row) -> SourceRecord:
    return SourceRecord(
        config=SourceConfiguration.model_validate_json(row["config"]),
        status=SourceStatus(row["status"]),
        metrics=SourceMetrics(
            total_scrapes=row["total_scrapes"],
            successful_scrapes=row["successful_scrapes"],
            failed_scrapes=row["failed_scrapes"],
            success_rate=row["success_rate"],
            average_processing_time=row["average_processing_time"],
            average_grants_found=row["average_grants_found"],
            last_success=from_timestamp(row["last_success_at"]),
            last_error=row["last_error"],
            consecutive_failures=row["consecutive_failures"],
        ),
        created_at=from_timestamp(row["created_at"]),
        updated_at=from_timestamp(row["updated_at"]),
    )


class SQLiteSourceRepository(SourceRepository):
    def __init__(self, manager: SQLiteManager) -> None:
        self.manager = manager

    def get_source(self, source_id: str) -> SourceRecord | None:
        with self.manager.reader() as conn:
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self, statuses: Iterable[SourceStatus] | None = None) -> list[SourceRecord]:
        query = "SELECT * FROM sources"
        params: list[str] = []
        if statuses is not None:
            wanted = [status.value for status in statuses]
            query += f" WHERE status IN ({', '.join('?' for _ in wanted)})"
            params.extend(wanted)
        with self.manager.reader() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        return [_row_to_source(row) for row in rows]

    def insert_source(self, config: SourceConfiguration, status: SourceStatus) -> SourceRecord:
        now = to_timestamp(utcnow())
        try:
            with self.manager.transaction() as tx:
                tx.conn.execute(
                    "INSERT INTO sources (id, config, status, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                    (config.id, config.model_dump_json(), status.value, now, now),
                )
        except sqlite3.IntegrityError as exc:
            raise StorageError(f"Source already exists: {config.id}") from exc
        return self._require(config.id)

    def update_config(self, config: SourceConfiguration) -> SourceRecord:
        with self.manager.transaction() as tx:
            cursor = tx.conn.execute(
                "UPDATE sources SET config = ?, updated_at = ? WHERE id = ?",
                (config.model_dump_json(), to_timestamp(utcnow()), config.id),
            )
            if cursor.rowcount == 0:
                raise SourceNotFoundError(config.id)
        return self._require(config.id)

    def set_status(self, source_id: str, status: SourceStatus, *, last_error: str | None = None) -> None:
        with self.manager.transaction() as tx:
            cursor = tx.conn.execute(
                "UPDATE sources SET status = ?, last_error = ?, updated_at = ? WHERE id = ?",
                (status.value, last_error, to_timestamp(utcnow()), source_id),
            )
            if cursor.rowcount == 0:
                raise SourceNotFoundError(source_id)

    def save_metrics(self, source_id: str, metrics: SourceMetrics) -> None:
        with self.manager.transaction() as tx:
            cursor = tx.conn.execute(
                """
                UPDATE sources SET
                    total_scrapes = ?, successful_scrapes = ?, failed_scrapes = ?,
                    success_rate = ?, average_processing_time = ?, average_grants_found = ?,
                    last_success_at = ?, last_error = ?, consecutive_failures = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    metrics.total_scrapes,
                    metrics.successful_scrapes,
                    metrics.failed_scrapes,
                    metrics.success_rate,
                    metrics.average_processing_time,
                    metrics.average_grants_found,
                    to_timestamp(metrics.last_success) if metrics.last_success else None,
                    metrics.last_error,
                    metrics.consecutive_failures,
                    to_timestamp(utcnow()),
                    source_id,
                ),
            )
            if cursor.rowcount == 0:
                raise SourceNotFoundError(source_id)

    def list_for_health_check(self, *, stale_before: datetime, min_failures: int) -> list[SourceRecord]:
        with self.manager.reader() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sources
                WHERE updated_at < ? OR consecutive_failures >= ?
                ORDER BY consecutive_failures DESC, updated_at ASC
                """,
                (to_timestamp(stale_before), min_failures),
            ).fetchall()
        return [_row_to_source(row) for row in rows]

    def _require(self, source_id: str) -> SourceRecord:
        record = self.get_source(source_id)
        if record is None:
            raise SourceNotFoundError(source_id)
        return record


__all__ = ["SQLiteSourceRepository"]
