"""Shared fixtures: settings, builders and SQLite-backed repositories on tmp_path."""

from __future__ import annotations

import os
import tempfile
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

os.environ.setdefault("GRANT_HARVESTER_HOME", tempfile.mkdtemp(prefix="grant-harvester-tests-"))

from grant_harvester.config import (  # noqa: E402
    ConfigLocator,
    ConfigRepository,
    HarvesterSettings,
    RateLimitConfig,
    SourceConfiguration,
    SourceSelectors,
    SourceType,
)
from grant_harvester.database import ContentHasher, DatabaseWriter  # noqa: E402
from grant_harvester.models import FunderData, GrantCategory, ProcessedRecord  # noqa: E402
from grant_harvester.storage import (  # noqa: E402
    SQLiteGrantRepository,
    SQLiteManager,
    SQLiteSourceRepository,
)


@pytest.fixture
def harvester_settings(tmp_path: Path) -> HarvesterSettings:
    return HarvesterSettings(database_path=tmp_path / "harvester.db")


@pytest.fixture
def make_source() -> Callable[..., SourceConfiguration]:
    def _builder(**overrides: Any) -> SourceConfiguration:
        base: dict[str, Any] = {
            "id": "example",
            "url": "https://grants.example.org/list",
            "name": "Example Foundation",
            "source_type": SourceType.FOUNDATION,
            "engine": "static",
            "selectors": SourceSelectors(grant_container="div.grant", title="h2"),
            "rate_limit": RateLimitConfig(requests_per_minute=30, delay_between_requests=0.0),
        }
        base.update(overrides)
        return SourceConfiguration(**base)

    return _builder


@pytest.fixture
def make_record() -> Callable[..., ProcessedRecord]:
    def _builder(**overrides: Any) -> ProcessedRecord:
        base: dict[str, Any] = {
            "title": "Community Health Grant",
            "description": "Funding for community clinics that expand preventive care.",
            "funder": FunderData(name="Acme Foundation", website="https://acme.example.org"),
            "deadline": date(2099, 1, 1),
            "funding_amount_min": 10000.0,
            "funding_amount_max": 50000.0,
            "eligibility_criteria": "Registered nonprofits",
            "application_url": "https://acme.example.org/apply",
            "category": GrantCategory.HEALTHCARE_PUBLIC_HEALTH,
            "location_eligibility": [],
        }
        base.update(overrides)
        return ProcessedRecord(**base)

    return _builder


@pytest.fixture
def sqlite_manager(tmp_path: Path) -> SQLiteManager:
    return SQLiteManager(tmp_path / "harvester.db", busy_timeout=10.0)


@pytest.fixture
def grant_repository(sqlite_manager: SQLiteManager) -> SQLiteGrantRepository:
    return SQLiteGrantRepository(sqlite_manager)


@pytest.fixture
def source_repository(sqlite_manager: SQLiteManager) -> SQLiteSourceRepository:
    return SQLiteSourceRepository(sqlite_manager)


@pytest.fixture
def hasher() -> ContentHasher:
    return ContentHasher()


@pytest.fixture
def writer(grant_repository: SQLiteGrantRepository, hasher: ContentHasher) -> DatabaseWriter:
    return DatabaseWriter(grant_repository, hasher=hasher)


@pytest.fixture
def store_grant(grant_repository: SQLiteGrantRepository, hasher: ContentHasher) -> Callable[..., str]:
    """Insert a record directly, bypassing deduplication."""

    def _store(record: ProcessedRecord, source_id: str | None = "example") -> str:
        record = hasher.stamp(record)
        funder_id = grant_repository.find_or_create_funder(record.funder)
        return grant_repository.create_grant(record, funder_id=funder_id, source_id=source_id)

    return _store


@pytest.fixture
def temp_config_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterable[ConfigRepository]:
    monkeypatch.setenv("GRANT_HARVESTER_HOME", str(tmp_path))
    locator = ConfigLocator(project_root=tmp_path)
    yield ConfigRepository(locator)
