"""SQLite implementation of :class:`GrantRepository`."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterable, Iterator, Sequence

from ..errors import StorageError
from ..models import (
    DatabaseStats,
    FunderData,
    FunderType,
    GrantCategory,
    GrantStatus,
    ProcessedRecord,
    ScrapeJob,
    ScrapingResult,
    utcnow,
)
from ..text import normalize_title
from .repository import AuditEntry, GrantRepository, StoredGrant, TransactionContext
from .sqlite_manager import SQLiteManager, SQLiteTransaction, from_timestamp, to_timestamp

_GRANT_COLUMNS = """
    g.id, g.title, g.description, g.eligibility_criteria, g.deadline,
    g.funding_amount_min, g.funding_amount_max, g.application_url, g.category,
    g.location_eligibility, g.confidence_score, g.content_hash, g.scraped_from,
    g.funder_id, g.status, g.created_at, g.updated_at,
    f.name AS funder_name, f.website AS funder_website,
    f.contact_email AS funder_contact_email, f.type AS funder_type
"""
_GRANT_FROM = "FROM grants g JOIN funders f ON f.id = g.funder_id"

# Columns accepted by patch_grant; anything else is rejected before reaching SQL.
_PATCHABLE = {
    "title",
    "description",
    "eligibility_criteria",
    "deadline",
    "funding_amount_min",
    "funding_amount_max",
    "application_url",
    "category",
    "location_eligibility",
    "confidence_score",
    "status",
}


def _row_to_grant(row: sqlite3.Row) -> StoredGrant:
    deadline = date.fromisoformat(row["deadline"]) if row["deadline"] else None
    record = ProcessedRecord(
        title=row["title"],
        description=row["description"],
        funder=FunderData(
            name=row["funder_name"],
            website=row["funder_website"],
            contact_email=row["funder_contact_email"],
            type=FunderType(row["funder_type"]).to_source_type(),
        ),
        deadline=deadline,
        funding_amount_min=row["funding_amount_min"],
        funding_amount_max=row["funding_amount_max"],
        eligibility_criteria=row["eligibility_criteria"],
        application_url=row["application_url"],
        category=GrantCategory(row["category"]),
        location_eligibility=json.loads(row["location_eligibility"] or "[]"),
        confidence_score=row["confidence_score"],
        content_hash=row["content_hash"],
    )
    return StoredGrant(
        id=row["id"],
        record=record,
        status=GrantStatus(row["status"]),
        funder_id=row["funder_id"],
        source_id=row["scraped_from"],
        created_at=from_timestamp(row["created_at"]),
        updated_at=from_timestamp(row["updated_at"]),
    )


def _patch_value(column: str, value: Any) -> Any:
    if isinstance(value, (GrantCategory, GrantStatus)):
        return value.value
    if column == "deadline" and isinstance(value, date):
        return value.isoformat()
    if column == "location_eligibility":
        return json.dumps(sorted(value or []))
    return value


class SQLiteGrantRepository(GrantRepository):
    """Grant persistence on top of :class:`SQLiteManager`."""

    def __init__(self, manager: SQLiteManager) -> None:
        self.manager = manager

    def transaction(self, timeout: float | None = None):
        return self.manager.transaction(timeout)

    @contextmanager
    def _conn(self, tx: TransactionContext | None) -> Iterator[sqlite3.Connection]:
        if tx is not None:
            if not isinstance(tx, SQLiteTransaction):
                raise StorageError("SQLiteGrantRepository requires an SQLiteTransaction")
            yield tx.conn
            return
        with self.manager.transaction() as own:
            yield own.conn

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------
    def create_grant(
        self,
        record: ProcessedRecord,
        *,
        funder_id: str,
        source_id: str | None,
        tx: TransactionContext | None = None,
    ) -> str:
        grant_id = uuid.uuid4().hex
        now = to_timestamp(utcnow())
        with self._conn(tx) as conn:
            conn.execute(
                """
                INSERT INTO grants (
                    id, title, title_normalized, description, eligibility_criteria,
                    deadline, funding_amount_min, funding_amount_max, application_url,
                    category, location_eligibility, confidence_score, content_hash,
                    scraped_from, funder_id, status, source_updated_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    grant_id,
                    record.title,
                    normalize_title(record.title),
                    record.description,
                    record.eligibility_criteria,
                    record.deadline.isoformat() if record.deadline else None,
                    record.funding_amount_min,
                    record.funding_amount_max,
                    record.application_url,
                    record.category.value,
                    json.dumps(sorted(record.location_eligibility)),
                    record.confidence_score,
                    record.content_hash,
                    source_id,
                    funder_id,
                    GrantStatus.ACTIVE.value,
                    now,
                    now,
                    now,
                ),
            )
        return grant_id

    def update_grant(self, grant_id: str, record: ProcessedRecord, *, tx: TransactionContext | None = None) -> None:
        now = to_timestamp(utcnow())
        with self._conn(tx) as conn:
            cursor = conn.execute(
                """
                UPDATE grants SET
                    title = ?, title_normalized = ?, description = ?, eligibility_criteria = ?,
                    deadline = ?, funding_amount_min = ?, funding_amount_max = ?,
                    application_url = ?, category = ?, location_eligibility = ?,
                    confidence_score = ?, content_hash = ?, source_updated_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    record.title,
                    normalize_title(record.title),
                    record.description,
                    record.eligibility_criteria,
                    record.deadline.isoformat() if record.deadline else None,
                    record.funding_amount_min,
                    record.funding_amount_max,
                    record.application_url,
                    record.category.value,
                    json.dumps(sorted(record.location_eligibility)),
                    record.confidence_score,
                    record.content_hash,
                    now,
                    now,
                    grant_id,
                ),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Grant with ID {grant_id} not found for update")

    def patch_grant(self, grant_id: str, data: dict[str, Any], *, tx: TransactionContext | None = None) -> None:
        # None values mean "leave unchanged", mirroring a partial update.
        fields = {key: value for key, value in data.items() if value is not None}
        unknown = set(fields) - _PATCHABLE
        if unknown:
            raise StorageError(f"Unknown grant fields: {', '.join(sorted(unknown))}")
        assignments = [f"{column} = ?" for column in fields]
        params = [_patch_value(column, value) for column, value in fields.items()]
        if "title" in fields:
            assignments.append("title_normalized = ?")
            params.append(normalize_title(fields["title"]))
        assignments.append("updated_at = ?")
        params.append(to_timestamp(utcnow()))
        with self._conn(tx) as conn:
            cursor = conn.execute(
                f"UPDATE grants SET {', '.join(assignments)} WHERE id = ?",
                (*params, grant_id),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Grant with ID {grant_id} not found for update")

    def get_grant(self, grant_id: str, *, tx: TransactionContext | None = None) -> StoredGrant | None:
        with self._read(tx) as conn:
            row = conn.execute(f"SELECT {_GRANT_COLUMNS} {_GRANT_FROM} WHERE g.id = ?", (grant_id,)).fetchone()
        return _row_to_grant(row) if row else None

    def find_active_by_hash(self, content_hash: str, *, tx: TransactionContext | None = None) -> StoredGrant | None:
        with self._read(tx) as conn:
            row = conn.execute(
                f"SELECT {_GRANT_COLUMNS} {_GRANT_FROM} WHERE g.content_hash = ? AND g.status = ? LIMIT 1",
                (content_hash, GrantStatus.ACTIVE.value),
            ).fetchone()
        return _row_to_grant(row) if row else None

    def find_active_by_title_and_funder(
        self,
        normalized_title: str,
        funder_name: str,
        *,
        limit: int = 5,
        tx: TransactionContext | None = None,
    ) -> list[StoredGrant]:
        with self._read(tx) as conn:
            rows = conn.execute(
                f"""
                SELECT {_GRANT_COLUMNS} {_GRANT_FROM}
                WHERE g.status = ?
                  AND instr(g.title_normalized, ?) > 0
                  AND instr(f.name_key, ?) > 0
                ORDER BY g.created_at
                LIMIT ?
                """,
                (GrantStatus.ACTIVE.value, normalized_title, funder_name.strip().lower(), limit),
            ).fetchall()
        return [_row_to_grant(row) for row in rows]

    def search_active_by_keywords(
        self,
        title_keywords: Sequence[str],
        description_keywords: Sequence[str],
        *,
        limit: int = 10,
        tx: TransactionContext | None = None,
    ) -> list[StoredGrant]:
        clauses = ["instr(lower(g.title), ?) > 0" for _ in title_keywords]
        clauses += ["instr(lower(g.description), ?) > 0" for _ in description_keywords]
        if not clauses:
            return []
        with self._read(tx) as conn:
            rows = conn.execute(
                f"""
                SELECT {_GRANT_COLUMNS} {_GRANT_FROM}
                WHERE g.status = ? AND ({' OR '.join(clauses)})
                ORDER BY g.created_at
                LIMIT ?
                """,
                (GrantStatus.ACTIVE.value, *title_keywords, *description_keywords, limit),
            ).fetchall()
        return [_row_to_grant(row) for row in rows]

    def set_grant_status(self, grant_id: str, status: GrantStatus, *, tx: TransactionContext | None = None) -> None:
        with self._conn(tx) as conn:
            cursor = conn.execute(
                "UPDATE grants SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, to_timestamp(utcnow()), grant_id),
            )
            if cursor.rowcount == 0:
                raise StorageError(f"Grant with ID {grant_id} not found")

    def expire_grants(self, source_id: str, keep_hashes: Iterable[str], *, tx: TransactionContext | None = None) -> int:
        keep = sorted(set(keep_hashes))
        placeholders = ", ".join("?" for _ in keep)
        exclusion = f"AND content_hash NOT IN ({placeholders})" if keep else ""
        with self._conn(tx) as conn:
            cursor = conn.execute(
                f"""
                UPDATE grants SET status = ?, updated_at = ?
                WHERE scraped_from = ? AND status = ? {exclusion}
                """,
                (
                    GrantStatus.EXPIRED.value,
                    to_timestamp(utcnow()),
                    source_id,
                    GrantStatus.ACTIVE.value,
                    *keep,
                ),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Funders and tags
    # ------------------------------------------------------------------
    def find_or_create_funder(self, funder: FunderData, *, tx: TransactionContext | None = None) -> str:
        name_key = funder.name.strip().lower()
        with self._conn(tx) as conn:
            row = conn.execute("SELECT id FROM funders WHERE name_key = ? LIMIT 1", (name_key,)).fetchone()
            if row:
                return row["id"]
            funder_id = uuid.uuid4().hex
            conn.execute(
                """
                INSERT INTO funders (id, name, name_key, website, contact_email, type, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    funder_id,
                    funder.name.strip(),
                    name_key,
                    funder.website,
                    funder.contact_email,
                    FunderType.from_source_type(funder.type).value,
                    to_timestamp(utcnow()),
                ),
            )
            return funder_id

    def add_tags(
        self, grant_id: str, tags: Iterable[str], *, source: str = "system", tx: TransactionContext | None = None
    ) -> None:
        rows = [(grant_id, tag, source) for tag in tags]
        if not rows:
            return
        with self._conn(tx) as conn:
            conn.executemany("INSERT OR IGNORE INTO grant_tags (grant_id, tag, source) VALUES (?, ?, ?)", rows)

    def delete_tags(
        self, grant_id: str, prefix: str, *, source: str = "system", tx: TransactionContext | None = None
    ) -> int:
        with self._conn(tx) as conn:
            cursor = conn.execute(
                "DELETE FROM grant_tags WHERE grant_id = ? AND source = ? AND substr(tag, 1, ?) = ?",
                (grant_id, source, len(prefix), prefix),
            )
            return cursor.rowcount

    def get_tags(self, grant_id: str, *, tx: TransactionContext | None = None) -> list[str]:
        with self._read(tx) as conn:
            rows = conn.execute(
                "SELECT tag FROM grant_tags WHERE grant_id = ? ORDER BY tag", (grant_id,)
            ).fetchall()
        return [row["tag"] for row in rows]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------
    def append_audit(self, entry: AuditEntry, *, tx: TransactionContext | None = None) -> None:
        with self._conn(tx) as conn:
            conn.execute(
                "INSERT INTO audit_log (action, entity_type, entity_id, metadata, created_at) VALUES (?, ?, ?, ?, ?)",
                (
                    entry.action,
                    entry.entity_type,
                    entry.entity_id,
                    json.dumps(entry.metadata, default=str),
                    to_timestamp(entry.created_at),
                ),
            )

    def list_audit(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        action: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[AuditEntry]:
        where, params = self._audit_filters(entity_type=entity_type, action=action, since=since)
        if entity_id is not None:
            where.append("entity_id = ?")
            params.append(entity_id)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        with self.manager.reader() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {clause} ORDER BY created_at DESC, id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [
            AuditEntry(
                id=row["id"],
                action=row["action"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                metadata=json.loads(row["metadata"] or "{}"),
                created_at=from_timestamp(row["created_at"]),
            )
            for row in rows
        ]

    def count_audit(self, *, since: datetime, action: str | None = None, entity_type: str | None = None) -> int:
        where, params = self._audit_filters(entity_type=entity_type, action=action, since=since)
        with self.manager.reader() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM audit_log WHERE {' AND '.join(where)}", params).fetchone()
        return int(row["n"])

    def audit_counts_by_day(self, *, since: datetime) -> list[tuple[str, int]]:
        with self.manager.reader() as conn:
            rows = conn.execute(
                """
                SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS n
                FROM audit_log WHERE created_at >= ?
                GROUP BY day ORDER BY day DESC
                """,
                (to_timestamp(since),),
            ).fetchall()
        return [(row["day"], int(row["n"])) for row in rows]

    def delete_audit_before(self, cutoff: datetime) -> int:
        with self.manager.transaction() as tx:
            cursor = tx.conn.execute("DELETE FROM audit_log WHERE created_at < ?", (to_timestamp(cutoff),))
            return cursor.rowcount

    @staticmethod
    def _audit_filters(
        *, entity_type: str | None, action: str | None, since: datetime | None
    ) -> tuple[list[str], list[Any]]:
        where: list[str] = []
        params: list[Any] = []
        if entity_type is not None:
            where.append("entity_type = ?")
            params.append(entity_type)
        if action is not None:
            where.append("action = ?")
            params.append(action)
        if since is not None:
            where.append("created_at >= ?")
            params.append(to_timestamp(since))
        return where, params

    # ------------------------------------------------------------------
    # Scrape jobs and statistics
    # ------------------------------------------------------------------
    def save_scrape_job(
        self, job: ScrapeJob, result: ScrapingResult | None = None, *, tx: TransactionContext | None = None
    ) -> None:
        metadata = dict(job.metadata)
        totals = (0, 0, 0, 0, 0)
        duration = None
        log = None
        if result is not None:
            totals = (
                result.total_found,
                result.total_inserted,
                result.total_updated,
                result.total_skipped,
                result.duplicates_found,
            )
            duration = result.duration
            metadata.update(result.metadata)
            if result.errors:
                log = json.dumps([error.as_dict() for error in result.errors])
        with self._conn(tx) as conn:
            conn.execute(
                """
                INSERT INTO scrape_jobs (
                    id, source_id, status, priority, scheduled_at, started_at, finished_at,
                    total_found, total_inserted, total_updated, total_skipped, duplicates_found,
                    duration, log, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    started_at = excluded.started_at,
                    finished_at = excluded.finished_at,
                    total_found = excluded.total_found,
                    total_inserted = excluded.total_inserted,
                    total_updated = excluded.total_updated,
                    total_skipped = excluded.total_skipped,
                    duplicates_found = excluded.duplicates_found,
                    duration = excluded.duration,
                    log = excluded.log,
                    metadata = excluded.metadata
                """,
                (
                    job.id,
                    job.source_id,
                    job.status.value,
                    job.priority,
                    to_timestamp(job.scheduled_at),
                    to_timestamp(job.started_at) if job.started_at else None,
                    to_timestamp(job.finished_at) if job.finished_at else None,
                    *totals,
                    duration,
                    log,
                    json.dumps(metadata, default=str),
                ),
            )

    def get_scrape_job(self, job_id: str) -> dict[str, Any] | None:
        with self.manager.reader() as conn:
            row = conn.execute("SELECT * FROM scrape_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        payload = dict(row)
        payload["metadata"] = json.loads(payload["metadata"] or "{}")
        payload["log"] = json.loads(payload["log"]) if payload["log"] else []
        return payload

    def stats(self, *, jobs_since: datetime) -> DatabaseStats:
        with self.manager.reader() as conn:
            counts = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN status = 'ACTIVE' THEN 1 ELSE 0 END), 0) AS active,
                    COALESCE(SUM(CASE WHEN status = 'EXPIRED' THEN 1 ELSE 0 END), 0) AS expired
                FROM grants
                """
            ).fetchone()
            funders = conn.execute("SELECT COUNT(*) AS n FROM funders").fetchone()
            jobs = conn.execute(
                "SELECT COUNT(*) AS n, AVG(COALESCE(duration, 0)) AS avg_duration FROM scrape_jobs WHERE started_at >= ?",
                (to_timestamp(jobs_since),),
            ).fetchone()
        return DatabaseStats(
            total_grants=int(counts["total"]),
            active_grants=int(counts["active"]),
            expired_grants=int(counts["expired"]),
            total_funders=int(funders["n"]),
            recent_scrape_jobs=int(jobs["n"]),
            avg_processing_time=float(jobs["avg_duration"] or 0.0),
        )

    @contextmanager
    def _read(self, tx: TransactionContext | None) -> Iterator[sqlite3.Connection]:
        if tx is not None:
            with self._conn(tx) as conn:
                yield conn
            return
        with self.manager.reader() as conn:
            yield conn


__all__ = ["SQLiteGrantRepository"]
