from __future__ import annotations

from datetime import timedelta

import pytest

from grant_harvester.errors import SourceNotFoundError, StorageError
from grant_harvester.models import SourceMetrics, SourceStatus, utcnow


def test_insert_and_fetch_source(source_repository, make_source) -> None:
    config = make_source()
    record = source_repository.insert_source(config, SourceStatus.ACTIVE)

    assert record.config == config
    assert record.status is SourceStatus.ACTIVE
    assert record.metrics.total_scrapes == 0
    assert source_repository.get_source("missing") is None


def test_duplicate_source_is_rejected(source_repository, make_source) -> None:
    source_repository.insert_source(make_source(), SourceStatus.ACTIVE)
    with pytest.raises(StorageError):
        source_repository.insert_source(make_source(), SourceStatus.ACTIVE)


def test_status_filter_and_updates(source_repository, make_source) -> None:
    source_repository.insert_source(make_source(id="a"), SourceStatus.ACTIVE)
    source_repository.insert_source(make_source(id="b"), SourceStatus.ACTIVE)
    source_repository.set_status("b", SourceStatus.INACTIVE, last_error="HTTP 500")

    active = source_repository.list_sources([SourceStatus.ACTIVE])
    assert [record.config.id for record in active] == ["a"]
    assert source_repository.get_source("b").metrics.last_error == "HTTP 500"

    updated = source_repository.update_config(make_source(id="a", name="Renamed"))
    assert updated.config.name == "Renamed"
    with pytest.raises(SourceNotFoundError):
        source_repository.set_status("zzz", SourceStatus.ACTIVE)


def test_metrics_and_health_check_selection(source_repository, make_source) -> None:
    source_repository.insert_source(make_source(id="healthy"), SourceStatus.ACTIVE)
    source_repository.insert_source(make_source(id="failing"), SourceStatus.ACTIVE)
    now = utcnow()
    source_repository.save_metrics(
        "failing",
        SourceMetrics(total_scrapes=3, failed_scrapes=3, consecutive_failures=3, last_error="timeout"),
    )
    source_repository.save_metrics(
        "healthy",
        SourceMetrics(total_scrapes=1, successful_scrapes=1, success_rate=1.0, last_success=now),
    )

    stored = source_repository.get_source("healthy").metrics
    assert stored.success_rate == 1.0
    assert stored.last_success == now

    due = source_repository.list_for_health_check(stale_before=now - timedelta(hours=1), min_failures=3)
    assert [record.config.id for record in due] == ["failing"]
