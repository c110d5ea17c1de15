from __future__ import annotations

import sqlite3
import time
from threading import Lock
from typing import Callable
from unittest.mock import MagicMock

import pytest

from grant_harvester.config import OrchestratorSettings
from grant_harvester.database import DatabaseWriter
from grant_harvester.engines import EngineRegistry, ExtractionEngine
from grant_harvester.errors import ErrorType, RateLimitError
from grant_harvester.models import JobStatus, RawExtractedRecord, ScrapeJob
from grant_harvester.orchestrator import Orchestrator
from grant_harvester.source_manager import SourceManager
from grant_harvester.thread_pool import ThreadPoolManager


def raw(title: str = "Community Health Grant", **overrides) -> RawExtractedRecord:
    base = {
        "title": title,
        "description": "Funding for community clinics that expand preventive care.",
        "deadline": "2099-03-01",
        "funding_amount": "$10,000 - $50,000",
        "application_url": "/apply/health",
        "funder_name": "Acme Foundation",
        "source_url": "https://grants.example.org/list",
    }
    base.update(overrides)
    return RawExtractedRecord(**base)


class StubEngine(ExtractionEngine):
    name = "stub"

    def __init__(
        self,
        records: list[RawExtractedRecord] | None = None,
        *,
        delays: dict[str, float] | None = None,
        error: Exception | None = None,
        on_scrape: Callable[[], None] | None = None,
    ) -> None:
        self.records = records if records is not None else [raw()]
        self.delays = delays or {}
        self.error = error
        self.on_scrape = on_scrape
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0
        self._lock = Lock()

    def scrape(self, source, *, cancel_token=None):
        with self._lock:
            self.calls.append(source.id)
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(self.delays.get(source.id, 0.0))
            if self.on_scrape is not None:
                self.on_scrape()
            if self.error is not None:
                raise self.error
            return list(self.records)
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture
def build(source_repository, grant_repository, make_source):
    created: list[Orchestrator] = []

    def _build(engine: StubEngine, source_ids=("example",), **settings) -> Orchestrator:
        manager = SourceManager(source_repository, http_client=MagicMock())
        for source_id in source_ids:
            manager.create_source(make_source(id=source_id))
        registry = EngineRegistry()
        registry.register("static", engine)
        orchestrator = Orchestrator(
            manager,
            registry,
            DatabaseWriter(grant_repository),
            settings=OrchestratorSettings(**settings),
            thread_pool=ThreadPoolManager(4),
        )
        created.append(orchestrator)
        return orchestrator

    yield _build
    for orchestrator in created:
        orchestrator.thread_pool.shutdown(wait=True)


def test_process_source_inserts_then_skips_exact_duplicates(build, make_source) -> None:
    engine = StubEngine([raw(), raw("Arts Access Fund", funder_name="Culture Council", description="Grants for artists.")])
    orchestrator = build(engine)
    source = make_source()

    first = orchestrator.process_source(source)
    second = orchestrator.process_source(source)

    assert first.total_found == 2
    assert first.total_inserted == 2
    assert first.errors == []
    assert not first.failed
    assert second.total_inserted == 0
    assert second.total_skipped == 2
    assert second.duplicates_found == 2
    assert second.metadata["processed_count"] == 2
    assert second.metadata["validated_count"] == 2


def test_in_scrape_duplicates_are_collapsed(build, make_source) -> None:
    orchestrator = build(StubEngine([raw(), raw(), raw(title="Community Health Grant!")]))

    result = orchestrator.process_source(make_source())

    assert result.total_found == 3
    assert result.total_inserted == 1
    assert result.duplicates_found == 2


def test_batch_processing_falls_back_to_single_records(build, make_source) -> None:
    orchestrator = build(StubEngine([raw(), raw(title="")]))

    result = orchestrator.process_source(make_source())

    assert result.total_inserted == 1
    assert len(result.errors) == 1
    assert result.errors[0].message.startswith('Failed to process record ""')
    assert result.errors[0].type is ErrorType.VALIDATION
    assert not result.failed


def test_invalid_records_are_excluded_without_errors(build, make_source) -> None:
    orchestrator = build(StubEngine([raw(deadline="2000-01-01")]))

    result = orchestrator.process_source(make_source())

    assert result.total_inserted == 0
    assert result.errors == []
    assert result.metadata["processed_count"] == 1
    assert result.metadata["validated_count"] == 0


def test_classification_is_applied(build, grant_repository, make_source) -> None:
    orchestrator = build(StubEngine([raw()]))
    orchestrator.process_source(make_source())

    grant = grant_repository.search_active_by_keywords(["health"], [])[0]
    # "community" scores 3 (title and body), "health" 2 (title only)
    assert grant.record.category.value == "COMMUNITY_DEVELOPMENT"
    assert grant.record.confidence_score == pytest.approx(0.75)
    assert set(grant_repository.get_tags(grant.id)) >= {"community", "health"}
    assert grant.record.application_url == "https://grants.example.org/apply/health"


def test_engine_errors_fail_the_source_and_update_metrics(build, make_source) -> None:
    orchestrator = build(StubEngine(error=RateLimitError("Rate limited by grants.example.org")))

    result = orchestrator.process_source(make_source())

    assert result.failed
    assert not result.cancelled
    assert len(result.errors) == 1
    assert result.errors[0].type is ErrorType.RATE_LIMIT
    metrics = orchestrator.source_manager.get_source_metrics("example")
    assert metrics.failed_scrapes == 1
    assert metrics.consecutive_failures == 1


def test_unknown_engine_is_reported_as_configuration_error(build, make_source) -> None:
    orchestrator = build(StubEngine(), source_ids=("browser-source",))
    orchestrator.source_manager.update_source("browser-source", {"engine": "browser"})

    result = orchestrator.execute_scrape_job(ScrapeJob(source_id="browser-source"))

    assert result.failed
    assert result.errors[0].type is ErrorType.PARSING
    assert result.errors[0].message == "Unsupported scraping engine: browser"


def test_empty_scrape_is_a_success(build, make_source) -> None:
    orchestrator = build(StubEngine([]))

    result = orchestrator.process_source(make_source())

    assert not result.failed
    assert result.total_found == 0
    assert result.errors == []


def test_execute_scrape_job_persists_status(build, grant_repository) -> None:
    orchestrator = build(StubEngine())
    job = ScrapeJob(source_id="example")

    result = orchestrator.execute_scrape_job(job)

    assert job.status is JobStatus.SUCCESS
    assert job.finished_at is not None
    assert result.metadata["job_id"] == job.id
    stored = grant_repository.get_scrape_job(job.id)
    assert stored["status"] == "SUCCESS"
    assert stored["total_inserted"] == 1
    assert orchestrator.get_active_job_status(job.id) is None


def test_missing_source_aborts_job(build) -> None:
    engine = StubEngine()
    orchestrator = build(engine)
    job = ScrapeJob(source_id="nope")

    result = orchestrator.execute_scrape_job(job)

    assert result.failed
    assert job.status is JobStatus.FAILED
    assert "nope" in result.errors[0].message
    assert engine.calls == []


def test_source_lookup_failure_fails_and_persists_job(grant_repository) -> None:
    manager = MagicMock()
    manager.get_active_source.side_effect = sqlite3.OperationalError("database is locked")
    orchestrator = Orchestrator(
        manager, EngineRegistry(), DatabaseWriter(grant_repository), thread_pool=ThreadPoolManager(1)
    )
    job = ScrapeJob(source_id="example")

    try:
        result = orchestrator.execute_scrape_job(job)
    finally:
        orchestrator.thread_pool.shutdown(wait=True)

    assert result.failed
    assert [error.type for error in result.errors] == [ErrorType.DATABASE]
    assert result.errors[0].message == "database is locked"
    assert job.status is JobStatus.FAILED
    assert grant_repository.get_scrape_job(job.id)["status"] == "FAILED"
    assert orchestrator.get_active_job_status(job.id) is None


def test_pre_cancelled_job_reports_single_cancellation(build) -> None:
    engine = StubEngine()
    orchestrator = build(engine)
    job = ScrapeJob(source_id="example")
    job.cancel_token.cancel()

    result = orchestrator.execute_scrape_job(job)

    assert [error.message for error in result.errors] == ["Job was cancelled"]
    assert result.cancelled
    assert job.status is JobStatus.CANCELLED
    assert engine.calls == []


def test_cancel_during_scrape_stops_before_persistence(build, grant_repository) -> None:
    job = ScrapeJob(source_id="example")
    holder: dict[str, Orchestrator] = {}
    engine = StubEngine(on_scrape=lambda: holder["orchestrator"].cancel_active_job(job.id))
    orchestrator = build(engine)
    holder["orchestrator"] = orchestrator

    result = orchestrator.execute_scrape_job(job)

    assert [error.message for error in result.errors] == ["Job was cancelled"]
    assert result.total_inserted == 0
    assert job.status is JobStatus.CANCELLED
    assert orchestrator.writer.get_database_stats().total_grants == 0


def test_cancel_unknown_job_returns_false(build) -> None:
    assert build(StubEngine()).cancel_active_job("missing") is False


def test_concurrency_limit_of_one_runs_sources_serially(build, make_source) -> None:
    engine = StubEngine([], delays={"a": 0.05, "b": 0.05, "c": 0.05})
    orchestrator = build(engine, source_ids=("a", "b", "c"), max_concurrent_sources=1)

    results = orchestrator.process_multiple_sources([make_source(id=i) for i in ("a", "b", "c")])

    assert engine.peak == 1
    assert [result.source_id for result in results] == ["a", "b", "c"]


def test_results_keep_input_order_under_concurrency(build, make_source) -> None:
    engine = StubEngine([], delays={"slow": 0.2, "medium": 0.1, "fast": 0.0})
    orchestrator = build(engine, source_ids=("slow", "medium", "fast"), max_concurrent_sources=3)

    results = orchestrator.process_multiple_sources([make_source(id=i) for i in ("slow", "medium", "fast")])

    assert [result.source_id for result in results] == ["slow", "medium", "fast"]
    assert engine.peak > 1


def test_register_schedules_uses_scheduler(build, make_source) -> None:
    orchestrator = build(StubEngine())
    scheduler = MagicMock()
    orchestrator.scheduler = scheduler
    sources = [make_source(id="a"), make_source(id="b")]

    orchestrator.register_schedules(sources)

    assert scheduler.schedule_source.call_count == 2
    scheduler.schedule_source.assert_any_call(sources[0], orchestrator.run_source_async)
    scheduler.start.assert_called_once()


def test_run_source_async_submits_job(build, make_source) -> None:
    orchestrator = build(StubEngine())

    result = orchestrator.run_source_async(make_source()).result(timeout=10)

    assert result.source_id == "example"
    assert result.total_inserted == 1
