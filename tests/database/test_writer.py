from __future__ import annotations

import sqlite3
from datetime import date

from grant_harvester.config import WriterSettings
from grant_harvester.database import DatabaseWriter, DeduplicationEngine, EntityType
from grant_harvester.errors import ErrorType
from grant_harvester.models import FunderData, GrantStatus, GrantUpdate, JobStatus, ScrapeJob, ScrapingResult
from grant_harvester.storage import SQLiteGrantRepository


class ExplodingDeduplication(DeduplicationEngine):
    def check_for_duplicates(self, record, tx=None):
        if record.title == "boom":
            raise RuntimeError("dedup exploded")
        return super().check_for_duplicates(record, tx=tx)


class FirstTransactionFails(SQLiteGrantRepository):
    def __init__(self, manager) -> None:
        super().__init__(manager)
        self.calls = 0

    def transaction(self, timeout=None):
        self.calls += 1
        if self.calls == 1:
            raise sqlite3.OperationalError("database is locked")
        return super().transaction(timeout)


_TITLES = ("Arts Access Fund", "Rural Broadband Expansion", "Youth Science Fellowship", "Coastal Wetland Restoration")


def _distinct_records(make_record, count: int):
    return [
        make_record(
            title=_TITLES[index],
            funder=FunderData(name=f"Funder {index}"),
            deadline=None,
            funding_amount_min=None,
            funding_amount_max=None,
        )
        for index in range(count)
    ]


def test_inserts_new_records_with_tags(writer, grant_repository, hasher, make_record) -> None:
    records = [
        make_record(location_eligibility=["Canada"], tags=["health"]),
        make_record(title="Arts Access Fund", funder=FunderData(name="Culture Council")),
    ]

    result = writer.batch_insert_grants(records, source_id="example", job_id="job-1")

    assert result.total_processed == 2
    assert result.inserted == 2
    assert result.errors == []
    stored = grant_repository.find_active_by_hash(hasher.hash(records[0]))
    assert stored is not None
    assert stored.source_id == "example"
    assert grant_repository.get_tags(stored.id) == ["health", "location:Canada"]


def test_rewriting_same_records_skips_them(writer, make_record) -> None:
    records = _distinct_records(make_record, 3)
    writer.batch_insert_grants(records)

    result = writer.batch_insert_grants(records)

    assert result.inserted == 0
    assert result.skipped == 3
    assert result.duplicates_found == 3


def test_title_match_updates_existing_grant(writer, grant_repository, hasher, make_record) -> None:
    original = make_record(deadline=date(2099, 1, 1))
    writer.batch_insert_grants([original])
    grant_id = grant_repository.find_active_by_hash(hasher.hash(original)).id

    result = writer.batch_insert_grants([make_record(deadline=date(2099, 2, 1), location_eligibility=["Texas"])])

    assert result.updated == 1
    assert result.duplicates_found == 1
    stored = grant_repository.get_grant(grant_id)
    assert stored.record.deadline == date(2099, 2, 1)
    assert grant_repository.get_tags(grant_id) == ["location:Texas"]
    change = writer.audit.get_entity_audit_logs(EntityType.GRANT_CONTENT_CHANGE.value, grant_id)[0]
    assert change.metadata["change_type"] == "critical"
    assert change.metadata["changed_fields"] == ["deadline", "location_eligibility"]


def test_failing_record_does_not_abort_batch(grant_repository, hasher, make_record) -> None:
    writer = DatabaseWriter(
        grant_repository,
        hasher=hasher,
        deduplication=ExplodingDeduplication(grant_repository, hasher),
    )
    records = _distinct_records(make_record, 2) + [make_record(title="boom")]

    result = writer.batch_insert_grants(records)

    assert result.inserted == 2
    assert len(result.errors) == 1
    assert result.errors[0].type is ErrorType.DATABASE
    assert result.errors[0].message.startswith('Failed to process grant "boom"')
    assert writer.get_database_stats().total_grants == 2


def test_failed_batch_is_reported_and_later_batches_continue(sqlite_manager, hasher, make_record) -> None:
    repository = FirstTransactionFails(sqlite_manager)
    writer = DatabaseWriter(repository, settings=WriterSettings(batch_size=2), hasher=hasher)

    result = writer.batch_insert_grants(_distinct_records(make_record, 3))

    assert result.total_processed == 3
    assert result.inserted == 1
    assert len(result.errors) == 1
    assert result.errors[0].message.startswith("Batch insert failed: database is locked")
    errors = repository.list_audit(entity_type=EntityType.DATABASE_ERROR.value)
    assert errors[0].metadata["context"]["batch_offset"] == 0


def test_deduplication_can_be_disabled(grant_repository, hasher, make_record) -> None:
    writer = DatabaseWriter(grant_repository, settings=WriterSettings(enable_deduplication=False), hasher=hasher)
    writer.batch_insert_grants([make_record()])

    result = writer.batch_insert_grants([make_record()])

    assert result.inserted == 1
    assert result.duplicates_found == 0


def test_audit_logging_can_be_disabled(grant_repository, hasher, make_record) -> None:
    writer = DatabaseWriter(grant_repository, settings=WriterSettings(enable_audit_logging=False), hasher=hasher)
    writer.batch_insert_grants([make_record()])

    assert grant_repository.list_audit(limit=10) == []


def test_batch_update_grants_patches_and_reports_missing(writer, grant_repository, hasher, make_record) -> None:
    record = make_record()
    writer.batch_insert_grants([record])
    grant_id = grant_repository.find_active_by_hash(hasher.hash(record)).id

    result = writer.batch_update_grants(
        [
            GrantUpdate(grant_id=grant_id, data={"title": "Renamed Grant"}, reason="manual fix"),
            GrantUpdate(grant_id="missing", data={"title": "Nope"}, reason="manual fix"),
        ]
    )

    assert result.updated == 1
    assert len(result.errors) == 1
    assert result.errors[0].message.startswith("Failed to update grant missing")
    assert grant_repository.get_grant(grant_id).record.title == "Renamed Grant"


def test_mark_grants_as_expired_keeps_seen_hashes(writer, grant_repository, hasher, make_record) -> None:
    keep, drop = _distinct_records(make_record, 2)
    writer.batch_insert_grants([keep, drop], source_id="example")

    expired = writer.mark_grants_as_expired("example", [hasher.hash(keep)])

    assert expired == 1
    assert grant_repository.find_active_by_hash(hasher.hash(keep)) is not None
    assert grant_repository.find_active_by_hash(hasher.hash(drop)) is None


def test_mark_as_duplicate_sets_status(writer, grant_repository, hasher, make_record) -> None:
    first, second = _distinct_records(make_record, 2)
    writer.batch_insert_grants([first, second])
    original_id = grant_repository.find_active_by_hash(hasher.hash(first)).id
    duplicate_id = grant_repository.find_active_by_hash(hasher.hash(second)).id

    writer.mark_as_duplicate(original_id, duplicate_id, "same call")

    assert grant_repository.get_grant(duplicate_id).status is GrantStatus.DUPLICATE
    entry = writer.audit.get_entity_audit_logs(EntityType.GRANT_DUPLICATE.value, original_id)[0]
    assert entry.metadata["duplicate_grant_id"] == duplicate_id


def test_update_scrape_job_status_persists_job(writer, grant_repository) -> None:
    job = ScrapeJob(source_id="example", status=JobStatus.SUCCESS)
    result = ScrapingResult(source_id="example", total_found=4, total_inserted=3)

    writer.update_scrape_job_status(job, result)

    stored = grant_repository.get_scrape_job(job.id)
    assert stored["status"] == "SUCCESS"
    assert stored["total_found"] == 4
    assert stored["total_inserted"] == 3


def test_database_stats(writer, make_record) -> None:
    writer.batch_insert_grants(_distinct_records(make_record, 3))

    stats = writer.get_database_stats()

    assert stats.total_grants == 3
    assert stats.active_grants == 3
    assert stats.total_funders == 3
