from __future__ import annotations

from datetime import date

import pytest

from grant_harvester.config import SourceType
from grant_harvester.errors import RecordValidationError
from grant_harvester.models import RawExtractedRecord
from grant_harvester.pipeline import BasicDataProcessor
from grant_harvester.pipeline.processor import (
    UNKNOWN_FUNDER,
    clean_text,
    extract_locations,
    parse_deadline,
    parse_funding,
)


def test_clean_text_unescapes_and_collapses_whitespace() -> None:
    assert clean_text("  Arts &amp; Culture\n\t Fund ") == "Arts & Culture Fund"
    assert clean_text(None) == ""


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Applications close 2099-05-01 at noon", date(2099, 5, 1)),
        ("Deadline: March 5, 2099", date(2099, 3, 5)),
        ("05/03/2099", date(2099, 5, 3)),
        ("13/03/2099", date(2099, 3, 13)),
        ("rolling", None),
        (None, None),
    ],
)
def test_parse_deadline(text, expected) -> None:
    assert parse_deadline(text) == expected


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("$10,000 - $50,000", (10000.0, 50000.0)),
        ("Up to $2 million", (None, 2_000_000.0)),
        ("At least 5k per project", (5000.0, None)),
        ("Three awards of 3 per year", (None, None)),
        (None, (None, None)),
    ],
)
def test_parse_funding(text, expected) -> None:
    assert parse_funding(text) == expected


def test_extract_locations_uses_whole_words() -> None:
    assert extract_locations("Open to Canadian and US-based groups", None) == ["United States", "Canada"]
    assert extract_locations("Focus on business development") == []


def test_process_record_normalises_fields(make_source) -> None:
    raw = RawExtractedRecord(
        title="  Arts &amp; Culture Fund ",
        description="Project grants for museums in Texas.",
        deadline="Closes 2099-06-30",
        funding_amount="$5,000",
        application_url="/apply/arts",
        source_url="https://grants.example.org/list",
    )

    record = BasicDataProcessor().process_record(raw, make_source())

    assert record.title == "Arts & Culture Fund"
    assert record.deadline == date(2099, 6, 30)
    assert (record.funding_amount_min, record.funding_amount_max) == (5000.0, 5000.0)
    assert record.application_url == "https://grants.example.org/apply/arts"
    assert record.funder.name == "Example Foundation"
    assert record.funder.website == "https://grants.example.org"
    assert record.funder.type is SourceType.FOUNDATION
    assert record.location_eligibility == ["Texas"]


def test_funder_type_is_inferred_without_source() -> None:
    processor = BasicDataProcessor()

    def funder_type(name: str | None, url: str = "https://example.org") -> SourceType:
        raw = RawExtractedRecord(title="Grant", funder_name=name, source_url=url)
        return processor.process_record(raw).funder.type

    assert funder_type("Federal Energy Office") is SourceType.GOV
    assert funder_type("City Office", "https://city.example.gov/grants") is SourceType.GOV
    assert funder_type("Global Health Trust") is SourceType.NGO
    assert funder_type("Acme Corp") is SourceType.BUSINESS
    assert funder_type(None) is SourceType.FOUNDATION


def test_unknown_funder_and_invalid_urls() -> None:
    raw = RawExtractedRecord(title="Grant", application_url="mailto:grants@example.org")

    record = BasicDataProcessor().process_record(raw)

    assert record.funder.name == UNKNOWN_FUNDER
    assert record.funder.website is None
    assert record.application_url is None


def test_batch_fails_as_a_unit_on_missing_title() -> None:
    records = [RawExtractedRecord(title="Good grant"), RawExtractedRecord(title="   ")]

    with pytest.raises(RecordValidationError, match="has no title"):
        BasicDataProcessor().process_raw_data(records)
