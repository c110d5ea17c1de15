"""Normalise raw extracted records into processed grants."""

from __future__ import annotations

import html
import re
from datetime import date, datetime
from typing import Sequence
from urllib.parse import urljoin, urlparse

from ..config.models import SourceConfiguration, SourceType
from ..errors import RecordValidationError
from ..models import FunderData, ProcessedRecord, RawExtractedRecord
from .base import DataProcessor

UNKNOWN_FUNDER = "Unknown Funder"

_WHITESPACE = re.compile(r"\s+")
_AMOUNT = re.compile(
    r"(?P<currency>[$€£])?\s*(?P<number>\d[\d,]*(?:\.\d+)?)\s*(?P<suffix>thousand|million|billion|k|m|b)?\b",
    re.IGNORECASE,
)
_MULTIPLIERS = {"k": 1e3, "thousand": 1e3, "m": 1e6, "million": 1e6, "b": 1e9, "billion": 1e9}

_DATE_CANDIDATES = (
    (re.compile(r"\d{4}-\d{1,2}-\d{1,2}"), ("%Y-%m-%d",)),
    (re.compile(r"\d{4}/\d{1,2}/\d{1,2}"), ("%Y/%m/%d",)),
    (re.compile(r"\d{1,2}/\d{1,2}/\d{4}"), ("%m/%d/%Y", "%d/%m/%Y")),
    (re.compile(r"[A-Za-z]+\.? \d{1,2},? \d{4}"), ("%B %d %Y", "%b %d %Y")),
    (re.compile(r"\d{1,2} [A-Za-z]+\.?,? \d{4}"), ("%d %B %Y", "%d %b %Y")),
)

# Canonical name -> aliases matched as whole words
_LOCATIONS: dict[str, tuple[str, ...]] = {
    "United States": ("united states", "usa", "us-based", "american"),
    "Canada": ("canada", "canadian"),
    "Mexico": ("mexico", "mexican"),
    "United Kingdom": ("united kingdom", "uk", "britain", "british"),
    "Australia": ("australia", "australian"),
    "Germany": ("germany", "german"),
    "France": ("france", "french"),
    "India": ("india", "indian"),
    "Brazil": ("brazil", "brazilian"),
    "California": ("california",),
    "New York": ("new york",),
    "Texas": ("texas",),
    "Florida": ("florida",),
    "Washington": ("washington",),
    "Illinois": ("illinois",),
    "North America": ("north america",),
    "Latin America": ("latin america",),
    "Europe": ("europe", "european union"),
    "Africa": ("africa",),
    "Asia": ("asia",),
}
_LOCATION_PATTERNS = {
    name: re.compile(r"\b(?:" + "|".join(re.escape(alias) for alias in aliases) + r")\b")
    for name, aliases in _LOCATIONS.items()
}


def clean_text(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE.sub(" ", html.unescape(value)).strip()


def parse_deadline(text: str | None) -> date | None:
    """Find the first recognisable date in ``text``; ISO wins over other formats."""

    if not text:
        return None
    cleaned = clean_text(text)
    for pattern, formats in _DATE_CANDIDATES:
        match = pattern.search(cleaned)
        if not match:
            continue
        candidate = match.group(0).replace(",", "").replace(".", "")
        for fmt in formats:
            try:
                return datetime.strptime(candidate, fmt).date()
            except ValueError:
                continue
    return None


def parse_funding(text: str | None) -> tuple[float | None, float | None]:
    """Return ``(minimum, maximum)`` parsed from a free-text funding description."""

    if not text:
        return None, None
    lowered = text.lower()
    amounts: list[float] = []
    for match in _AMOUNT.finditer(text):
        value = float(match.group("number").replace(",", ""))
        suffix = (match.group("suffix") or "").lower()
        if suffix:
            value *= _MULTIPLIERS[suffix]
        elif not match.group("currency") and value < 1000:
            continue
        if value > 0:
            amounts.append(value)
    if not amounts:
        return None, None
    if "up to" in lowered or "maximum" in lowered:
        return None, max(amounts)
    if "minimum" in lowered or "at least" in lowered:
        return min(amounts), None
    return min(amounts), max(amounts)


def extract_locations(*texts: str | None) -> list[str]:
    haystack = " ".join(text for text in texts if text).lower()
    return [name for name, pattern in _LOCATION_PATTERNS.items() if pattern.search(haystack)]


def _absolute_url(url: str | None, base: str) -> str | None:
    if not url:
        return None
    candidate = urljoin(base, url.strip()) if base else url.strip()
    parsed = urlparse(candidate)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None
    return candidate


def _funder_type(name: str, source_url: str, source: SourceConfiguration | None) -> SourceType:
    if source is not None and source.source_type is not SourceType.OTHER:
        return source.source_type
    lowered = name.lower()
    if ".gov" in source_url.lower() or "government" in lowered or "federal" in lowered:
        return SourceType.GOV
    if any(word in lowered for word in ("international", "world", "global")):
        return SourceType.NGO
    if any(word in lowered for word in ("corp", "company", "inc")):
        return SourceType.BUSINESS
    return SourceType.FOUNDATION


class BasicDataProcessor(DataProcessor):
    """Deterministic cleanup of raw records.

    The batch call fails as a whole when any record is unusable, so callers can
    fall back to :meth:`process_record` one record at a time.
    """

    def process_raw_data(
        self, records: Sequence[RawExtractedRecord], source: SourceConfiguration | None = None
    ) -> list[ProcessedRecord]:
        return [self.process_record(record, source) for record in records]

    def process_record(self, raw: RawExtractedRecord, source: SourceConfiguration | None = None) -> ProcessedRecord:
        title = clean_text(raw.title)
        if not title:
            raise RecordValidationError(f"validation failed: record from {raw.source_url or 'unknown'} has no title")
        description = clean_text(raw.description)
        eligibility = clean_text(raw.eligibility)
        funding_min, funding_max = parse_funding(raw.funding_amount)

        funder_name = clean_text(raw.funder_name) or (source.name if source and source.name else UNKNOWN_FUNDER)
        parsed_source = urlparse(raw.source_url)
        website = f"{parsed_source.scheme}://{parsed_source.netloc}" if parsed_source.netloc else None

        return ProcessedRecord(
            title=title,
            description=description,
            funder=FunderData(
                name=funder_name,
                website=website,
                type=_funder_type(funder_name, raw.source_url, source),
            ),
            deadline=parse_deadline(raw.deadline),
            funding_amount_min=funding_min,
            funding_amount_max=funding_max,
            eligibility_criteria=eligibility,
            application_url=_absolute_url(raw.application_url, raw.source_url),
            location_eligibility=extract_locations(title, description, eligibility),
        )


__all__ = [
    "BasicDataProcessor",
    "clean_text",
    "extract_locations",
    "parse_deadline",
    "parse_funding",
]
