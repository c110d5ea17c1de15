from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from grant_harvester.app import AppState, app
from grant_harvester.config import HarvesterSettings, SourceSelectors
from grant_harvester.database import AuditLogger, DatabaseWriter
from grant_harvester.errors import ErrorType, ScrapingError, StorageError
from grant_harvester.models import DatabaseStats, JobStatus, ScrapingResult
from grant_harvester.source_manager import SourceManager

runner = CliRunner()


class StubOrchestrator:
    def __init__(self, results: dict[str, ScrapingResult] | None = None) -> None:
        self.results = results or {}
        self.jobs: list[str] = []
        self.batches: list[list[str]] = []
        self.scheduled: list[str] = []
        self.shutdown_called = False

    def _result(self, source_id: str) -> ScrapingResult:
        return self.results.get(source_id) or ScrapingResult(source_id=source_id, total_found=2, total_inserted=2)

    def execute_scrape_job(self, job):
        self.jobs.append(job.source_id)
        result = self._result(job.source_id)
        job.status = JobStatus.FAILED if result.failed else JobStatus.SUCCESS
        return result

    def process_multiple_sources(self, sources):
        self.batches.append([source.id for source in sources])
        return [self._result(source.id) for source in sources]

    def register_schedules(self, sources) -> None:
        self.scheduled.extend(source.id for source in sources)

    def shutdown(self) -> None:
        self.shutdown_called = True


@pytest.fixture
def make_state(monkeypatch, temp_config_repository, source_repository, grant_repository):
    def _make(orchestrator: StubOrchestrator | None = None, writer=None, settings=None) -> AppState:
        state = AppState(
            config=temp_config_repository,
            settings=settings or HarvesterSettings(),
            source_manager=SourceManager(source_repository, http_client=MagicMock()),
            writer=writer or DatabaseWriter(grant_repository),
            orchestrator=orchestrator or StubOrchestrator(),
            scheduler=SimpleNamespace(),
        )
        monkeypatch.setattr("grant_harvester.app.build_state", lambda verbose: state)
        return state

    return _make


def test_sources_list_empty(make_state) -> None:
    make_state()

    result = runner.invoke(app, ["sources", "list"])

    assert result.exit_code == 0, result.stdout
    assert "No sources registered" in result.stdout


def test_sources_import_then_list(make_state, make_source) -> None:
    state = make_state()
    state.config.save_source(make_source(id="city"))
    state.config.save_source(make_source(id="state"))

    imported = runner.invoke(app, ["sources", "import"])
    listed = runner.invoke(app, ["sources", "list"])

    assert imported.exit_code == 0, imported.stdout
    assert "Imported 2 source(s): city, state" in imported.stdout
    assert listed.exit_code == 0, listed.stdout
    assert "Sources (2)" in listed.stdout
    assert "city" in listed.stdout


def test_sources_import_without_files(make_state) -> None:
    make_state()

    result = runner.invoke(app, ["sources", "import"])

    assert result.exit_code == 0
    assert "No source files found." in result.stdout


def test_sources_import_reports_invalid_source(make_state, make_source) -> None:
    state = make_state()
    state.config.save_source(make_source(id="broken", selectors=SourceSelectors()))

    result = runner.invoke(app, ["sources", "import"])

    assert result.exit_code == 1
    assert "Import failed" in result.stdout


def test_sources_validate(make_state, make_source) -> None:
    state = make_state()
    state.config.save_source(make_source(id="good"))

    ok = runner.invoke(app, ["sources", "validate", "good"])
    missing = runner.invoke(app, ["sources", "validate", "ghost"])
    state.config.save_source(make_source(id="bad", url="not a url"))
    all_sources = runner.invoke(app, ["sources", "validate"])

    assert ok.exit_code == 0, ok.stdout
    assert "Source validation" in ok.stdout
    assert missing.exit_code == 1
    assert all_sources.exit_code == 1


def test_run_prints_results(make_state) -> None:
    state = make_state()

    result = runner.invoke(app, ["run", "example"])

    assert result.exit_code == 0, result.stdout
    assert state.orchestrator.jobs == ["example"]
    assert "Scrape results" in result.stdout


def test_run_failure_exits_non_zero(make_state) -> None:
    failed = ScrapingResult(
        source_id="example",
        errors=[ScrapingError(type=ErrorType.NETWORK, message="connection refused")],
        metadata={"failed": True},
    )
    make_state(StubOrchestrator({"example": failed}))

    result = runner.invoke(app, ["run", "example", "--quiet"])

    assert result.exit_code == 1
    assert "FAILED" in result.stdout
    assert "errors 1" in result.stdout


def test_run_all(make_state, make_source) -> None:
    state = make_state()
    for source_id in ("a", "b"):
        state.source_manager.create_source(make_source(id=source_id))

    result = runner.invoke(app, ["run-all"])

    assert result.exit_code == 0, result.stdout
    assert state.orchestrator.batches == [["a", "b"]]


def test_run_all_reports_failures(make_state, make_source) -> None:
    failed = ScrapingResult(source_id="b", metadata={"failed": True})
    state = make_state(StubOrchestrator({"b": failed}))
    for source_id in ("a", "b"):
        state.source_manager.create_source(make_source(id=source_id))

    result = runner.invoke(app, ["run-all"])

    assert result.exit_code == 1
    assert "1 of 2 source(s) failed." in result.stdout


def test_run_all_without_sources(make_state) -> None:
    state = make_state()

    result = runner.invoke(app, ["run-all"])

    assert result.exit_code == 0
    assert state.orchestrator.batches == []


def test_serve_registers_and_shuts_down(make_state, make_source, monkeypatch) -> None:
    state = make_state()
    state.source_manager.create_source(make_source())

    def interrupt(seconds: float) -> None:
        raise KeyboardInterrupt

    monkeypatch.setattr("grant_harvester.app.time.sleep", interrupt)

    result = runner.invoke(app, ["serve"])

    assert result.exit_code == 0, result.stdout
    assert state.orchestrator.scheduled == ["example"]
    assert state.orchestrator.shutdown_called


def test_stats(make_state, grant_repository) -> None:
    make_state(writer=DatabaseWriter(grant_repository, audit=AuditLogger(grant_repository)))

    result = runner.invoke(app, ["stats", "--days", "3"])

    assert result.exit_code == 0, result.stdout
    assert "Total grants" in result.stdout
    assert "Audit log (last 3 days)" in result.stdout


def test_stats_storage_error(make_state) -> None:
    writer = MagicMock()
    writer.get_database_stats.side_effect = StorageError("database is locked")
    make_state(writer=writer)

    result = runner.invoke(app, ["stats"])

    assert result.exit_code == 1
    assert "database is locked" in result.stdout


def test_cleanup_audit_uses_retention_setting(make_state) -> None:
    writer = MagicMock()
    writer.cleanup_old_audit_logs.return_value = 4
    make_state(writer=writer, settings=HarvesterSettings(audit_retention_days=45))

    result = runner.invoke(app, ["cleanup-audit"])
    rejected = runner.invoke(app, ["cleanup-audit", "--days", "0"])

    assert result.exit_code == 0, result.stdout
    writer.cleanup_old_audit_logs.assert_called_once_with(45)
    assert "Deleted 4 audit entries older than 45 days." in result.stdout
    assert rejected.exit_code == 1


def test_stats_row_values(make_state) -> None:
    writer = MagicMock()
    writer.get_database_stats.return_value = DatabaseStats(
        total_grants=12,
        active_grants=10,
        expired_grants=2,
        total_funders=3,
        recent_scrape_jobs=1,
        avg_processing_time=1.5,
    )
    writer.audit.get_audit_statistics.return_value = {
        "total_events": 7,
        "scrape_events": 2,
        "grant_events": 4,
        "error_events": 1,
    }
    make_state(writer=writer)

    result = runner.invoke(app, ["stats"])

    assert result.exit_code == 0, result.stdout
    assert "12" in result.stdout
    assert "1.50s" in result.stdout
    writer.audit.get_audit_statistics.assert_called_once_with(7)
