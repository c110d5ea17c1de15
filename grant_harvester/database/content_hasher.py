"""Stable content hashing and field-level change classification."""

from __future__ import annotations

import dataclasses
import hashlib
import json
import re
from datetime import datetime
from typing import Any, Callable, Iterable

from ..models import ChangeSeverity, ContentChangeDetection, GrantField, ProcessedRecord
from ..text import normalize_text

FIELD_SEVERITY: dict[GrantField, ChangeSeverity] = {
    GrantField.DEADLINE: ChangeSeverity.CRITICAL,
    GrantField.FUNDING_AMOUNT_MIN: ChangeSeverity.CRITICAL,
    GrantField.FUNDING_AMOUNT_MAX: ChangeSeverity.CRITICAL,
    GrantField.ELIGIBILITY_CRITERIA: ChangeSeverity.CRITICAL,
    GrantField.TITLE: ChangeSeverity.MAJOR,
    GrantField.DESCRIPTION: ChangeSeverity.MAJOR,
    GrantField.CATEGORY: ChangeSeverity.MAJOR,
    GrantField.APPLICATION_URL: ChangeSeverity.MAJOR,
    GrantField.LOCATION_ELIGIBILITY: ChangeSeverity.MINOR,
    GrantField.FUNDER: ChangeSeverity.MINOR,
    GrantField.CONFIDENCE_SCORE: ChangeSeverity.MINOR,
}

UNKNOWN_FIELD = "unknown"
_SHA256_HEX = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)


def _amount(value: float | None) -> float | None:
    return float(value) if value else None


def _digest(payload: Any, algorithm: str = "sha256") -> str:
    content = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.new(algorithm, content.encode("utf-8")).hexdigest()


# Comparators return True when the field differs between the two records.
_FIELD_COMPARATORS: dict[GrantField, Callable[[ProcessedRecord, ProcessedRecord], bool]] = {
    GrantField.TITLE: lambda a, b: normalize_text(a.title) != normalize_text(b.title),
    GrantField.DESCRIPTION: lambda a, b: normalize_text(a.description) != normalize_text(b.description),
    GrantField.DEADLINE: lambda a, b: a.deadline != b.deadline,
    GrantField.FUNDING_AMOUNT_MIN: lambda a, b: _amount(a.funding_amount_min) != _amount(b.funding_amount_min),
    GrantField.FUNDING_AMOUNT_MAX: lambda a, b: _amount(a.funding_amount_max) != _amount(b.funding_amount_max),
    GrantField.ELIGIBILITY_CRITERIA: lambda a, b: (
        normalize_text(a.eligibility_criteria) != normalize_text(b.eligibility_criteria)
    ),
    GrantField.APPLICATION_URL: lambda a, b: (a.application_url or None) != (b.application_url or None),
    GrantField.CATEGORY: lambda a, b: a.category != b.category,
    GrantField.LOCATION_ELIGIBILITY: lambda a, b: sorted(a.location_eligibility) != sorted(b.location_eligibility),
    GrantField.FUNDER: lambda a, b: a.funder.name != b.funder.name,
    GrantField.CONFIDENCE_SCORE: lambda a, b: a.confidence_score != b.confidence_score,
}

for _table_name, _table in (("FIELD_SEVERITY", FIELD_SEVERITY), ("_FIELD_COMPARATORS", _FIELD_COMPARATORS)):
    _missing = set(GrantField) - set(_table)
    if _missing:
        raise RuntimeError(f"{_table_name} is missing fields: {sorted(field.value for field in _missing)}")


class ContentHasher:
    """Canonicalise processed records into SHA-256 content hashes.

    Only fields that signal a meaningful change participate: normalised text,
    the ISO deadline, the funding range, the application URL, the category and
    the sorted location list. Funder details and confidence do not.
    """

    def canonical(self, record: ProcessedRecord) -> dict[str, Any]:
        return {
            "title": normalize_text(record.title),
            "description": normalize_text(record.description),
            "deadline": record.deadline.isoformat() if record.deadline else None,
            "funding_amount_min": _amount(record.funding_amount_min),
            "funding_amount_max": _amount(record.funding_amount_max),
            "eligibility_criteria": normalize_text(record.eligibility_criteria),
            "application_url": record.application_url or None,
            "category": record.category.value,
            "location_eligibility": sorted(record.location_eligibility),
        }

    def hash(self, record: ProcessedRecord) -> str:
        return _digest(self.canonical(record))

    def stamp(self, record: ProcessedRecord) -> ProcessedRecord:
        """Return a copy of ``record`` carrying its current content hash."""

        return dataclasses.replace(record, content_hash=self.hash(record))

    def compare_hashes(
        self,
        previous_hash: str,
        current_hash: str,
        previous: ProcessedRecord | None = None,
        current: ProcessedRecord | None = None,
    ) -> ContentChangeDetection:
        if previous_hash == current_hash:
            return ContentChangeDetection(previous_hash, current_hash, [], ChangeSeverity.MINOR)
        if previous is None or current is None:
            return ContentChangeDetection(previous_hash, current_hash, [UNKNOWN_FIELD], ChangeSeverity.MAJOR)
        changed = self.identify_changed_fields(previous, current)
        return ContentChangeDetection(previous_hash, current_hash, changed, self.classify(changed))

    def identify_changed_fields(self, old: ProcessedRecord, new: ProcessedRecord) -> list[str]:
        return [field.value for field, differs in _FIELD_COMPARATORS.items() if differs(old, new)]

    @staticmethod
    def classify(changed_fields: Iterable[str]) -> ChangeSeverity:
        severity = ChangeSeverity.MINOR
        for name in changed_fields:
            try:
                candidate = FIELD_SEVERITY[GrantField(name)]
            except ValueError:
                candidate = ChangeSeverity.MAJOR
            if candidate.rank > severity.rank:
                severity = candidate
        return severity

    def quick_hash(self, title: str, funder_name: str) -> str:
        """Cheap identity over title and funder only."""

        return _digest({"title": normalize_text(title), "funder": normalize_text(funder_name)}, "md5")

    def field_hash(self, record: ProcessedRecord, fields: Iterable[str]) -> str:
        canonical = self.canonical(record)
        payload: dict[str, Any] = {}
        for name in fields:
            if name == "funder":
                payload["funder"] = normalize_text(record.funder.name)
            elif name == "funding_amount":
                payload["funding_amount_min"] = canonical["funding_amount_min"]
                payload["funding_amount_max"] = canonical["funding_amount_max"]
            elif name in canonical:
                payload[name] = canonical[name]
            elif name == "confidence_score":
                payload[name] = record.confidence_score
        return _digest(payload)

    @staticmethod
    def is_valid_hash(value: str) -> bool:
        return bool(_SHA256_HEX.match(value or ""))

    def versioned_hash(self, record: ProcessedRecord, timestamp: datetime) -> str:
        version = f"{self.hash(record)}:{timestamp.isoformat()}"
        return hashlib.sha256(version.encode("utf-8")).hexdigest()


__all__ = ["ContentHasher", "FIELD_SEVERITY", "UNKNOWN_FIELD"]
