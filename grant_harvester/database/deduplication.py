"""Duplicate detection against storage and within one scrape."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..logging_conf import configure_logging
from ..models import (
    ChangeSeverity,
    DuplicateAction,
    DuplicateCheckResult,
    GrantField,
    MatchType,
    ProcessedRecord,
)
from ..storage.repository import GrantRepository, StoredGrant, TransactionContext
from ..text import extract_words, normalize_title
from .content_hasher import FIELD_SEVERITY, ContentHasher

TITLE_MATCH_THRESHOLD = 0.85
FUZZY_MATCH_THRESHOLD = 0.8
FUZZY_CANDIDATE_FLOOR = 0.6
TITLE_CANDIDATE_LIMIT = 5
FUZZY_CANDIDATE_LIMIT = 10
MAX_KEYWORDS = 10

_STOP_WORDS = frozenset(
    """
    the and for are but not you all can had her was one our out day get has him his
    how its may new now old see two who boy did she use way many oil sit set run
    """.split()
)


class MergeStrategy(str, Enum):
    """How an update combines the stored value with the freshly scraped one."""

    USE_NEW = "use_new"
    PREFER_AUTHORITATIVE = "prefer_authoritative"
    KEEP_EXISTING = "keep_existing"

    def apply(self, existing: Any, incoming: Any) -> Any:
        if self is MergeStrategy.KEEP_EXISTING:
            return existing
        if self is MergeStrategy.PREFER_AUTHORITATIVE:
            # The live source wins unless it came back blank.
            return incoming if incoming not in (None, "", []) else existing
        return incoming


MERGE_STRATEGIES: dict[GrantField, MergeStrategy] = {
    GrantField.TITLE: MergeStrategy.PREFER_AUTHORITATIVE,
    GrantField.DESCRIPTION: MergeStrategy.PREFER_AUTHORITATIVE,
    GrantField.ELIGIBILITY_CRITERIA: MergeStrategy.PREFER_AUTHORITATIVE,
    GrantField.APPLICATION_URL: MergeStrategy.PREFER_AUTHORITATIVE,
    GrantField.DEADLINE: MergeStrategy.USE_NEW,
    GrantField.FUNDING_AMOUNT_MIN: MergeStrategy.USE_NEW,
    GrantField.FUNDING_AMOUNT_MAX: MergeStrategy.USE_NEW,
    GrantField.CATEGORY: MergeStrategy.USE_NEW,
    GrantField.LOCATION_ELIGIBILITY: MergeStrategy.USE_NEW,
    GrantField.CONFIDENCE_SCORE: MergeStrategy.USE_NEW,
    GrantField.FUNDER: MergeStrategy.KEEP_EXISTING,
}

_unmerged = set(GrantField) - set(MERGE_STRATEGIES)
if _unmerged:
    raise RuntimeError(f"MERGE_STRATEGIES is missing fields: {sorted(field.value for field in _unmerged)}")


def merge_records(existing: ProcessedRecord, incoming: ProcessedRecord) -> ProcessedRecord:
    """Combine a stored record with an incoming one field by field.

    The result carries the incoming tags and an empty content hash; callers
    stamp it before persisting.
    """

    values = {
        grant_field.value: strategy.apply(
            getattr(existing, grant_field.value), getattr(incoming, grant_field.value)
        )
        for grant_field, strategy in MERGE_STRATEGIES.items()
    }
    return dataclasses.replace(incoming, content_hash="", **values)


def levenshtein_distance(first: str, second: str) -> int:
    if first == second:
        return 0
    if not first:
        return len(second)
    if not second:
        return len(first)
    previous = list(range(len(second) + 1))
    for i, char_a in enumerate(first, start=1):
        current = [i]
        for j, char_b in enumerate(second, start=1):
            current.append(
                min(
                    current[j - 1] + 1,
                    previous[j] + 1,
                    previous[j - 1] + (char_a != char_b),
                )
            )
        previous = current
    return previous[-1]


def _ratio(first: str, second: str) -> float:
    longest = max(len(first), len(second))
    if longest == 0:
        return 1.0
    return 1 - levenshtein_distance(first, second) / longest


@dataclass(slots=True)
class BatchDeduplicationResult:
    records: list[ProcessedRecord]
    duplicates_found: int = 0
    # (kept index, dropped index) into the input sequence
    pairs: list[tuple[int, int]] = field(default_factory=list)


class DeduplicationEngine:
    """Decide whether a processed record is new, an update, or a duplicate.

    Matching runs three stages in order and stops at the first hit: exact
    content hash, title plus funder containment, and a keyword-driven fuzzy
    search. The engine only reads from storage.
    """

    def __init__(self, repository: GrantRepository, hasher: ContentHasher | None = None) -> None:
        self.repository = repository
        self.hasher = hasher or ContentHasher()
        self.logger = configure_logging().bind(component="deduplication")

    def check_for_duplicates(
        self, record: ProcessedRecord, tx: TransactionContext | None = None
    ) -> DuplicateCheckResult:
        content_hash = self.hasher.hash(record)
        exact = self.repository.find_active_by_hash(content_hash, tx=tx)
        if exact is not None:
            return DuplicateCheckResult(
                is_duplicate=True,
                action=DuplicateAction.SKIP,
                confidence=1.0,
                reason="Exact content hash match found",
                existing_grant_id=exact.id,
                match_type=MatchType.EXACT,
            )

        title_match = self._find_title_match(record, tx)
        if title_match is not None:
            candidate, confidence = title_match
            conflicts = self._conflicting_fields(candidate.record, record)
            action = DuplicateAction.UPDATE if conflicts else DuplicateAction.SKIP
            return DuplicateCheckResult(
                is_duplicate=True,
                action=action,
                confidence=confidence,
                reason=(
                    "Title match found with content differences - updating"
                    if conflicts
                    else "Title match found with minimal differences - skipping"
                ),
                existing_grant_id=candidate.id,
                match_type=MatchType.TITLE,
                conflict_fields=conflicts,
            )

        fuzzy = self._find_fuzzy_match(record, tx)
        if fuzzy is not None and fuzzy[1] > FUZZY_MATCH_THRESHOLD:
            candidate, confidence = fuzzy
            return DuplicateCheckResult(
                is_duplicate=True,
                action=DuplicateAction.SKIP,
                confidence=confidence,
                reason=f"High confidence fuzzy match ({confidence:.2f})",
                existing_grant_id=candidate.id,
                match_type=MatchType.FUZZY,
            )

        return DuplicateCheckResult(
            is_duplicate=False,
            action=DuplicateAction.INSERT,
            confidence=0.0,
            reason="No duplicates found",
        )

    def deduplicate_batch(self, records: list[ProcessedRecord]) -> BatchDeduplicationResult:
        """Collapse duplicates inside one scrape onto the first record seen.

        Each dropped record counts as one duplicate.
        """

        kept: list[ProcessedRecord] = []
        kept_positions: list[int] = []
        by_hash: dict[str, int] = {}
        result = BatchDeduplicationResult(records=kept)
        for position, record in enumerate(records):
            content_hash = self.hasher.hash(record)
            match = by_hash.get(content_hash)
            if match is None:
                match = next(
                    (index for index, other in enumerate(kept) if self._same_listing(other, record)),
                    None,
                )
            if match is not None:
                result.duplicates_found += 1
                result.pairs.append((kept_positions[match], position))
                continue
            by_hash[content_hash] = len(kept)
            kept.append(record)
            kept_positions.append(position)
        if result.duplicates_found:
            self.logger.info(
                "batch_duplicates_collapsed",
                received=len(records),
                kept=len(kept),
                duplicates=result.duplicates_found,
            )
        return result

    # ------------------------------------------------------------------
    # Similarity
    # ------------------------------------------------------------------
    @staticmethod
    def calculate_title_similarity(first: str, second: str) -> float:
        return _ratio(normalize_title(first), normalize_title(second))

    @staticmethod
    def calculate_funder_similarity(first: str, second: str) -> float:
        left = (first or "").strip().lower()
        right = (second or "").strip().lower()
        if not left or not right:
            return 0.0
        if left == right:
            return 1.0
        if left in right or right in left:
            return 0.9
        return _ratio(left, right)

    def calculate_overall_similarity(self, record: ProcessedRecord, candidate: ProcessedRecord) -> float:
        title = self.calculate_title_similarity(record.title, candidate.title)
        funder = self.calculate_funder_similarity(record.funder.name, candidate.funder.name)

        deadline = 0.0
        if record.deadline and candidate.deadline:
            days = abs((record.deadline - candidate.deadline).days)
            deadline = 1.0 if days <= 7 else max(0.0, 1 - days / 30)

        funding = 0.0
        if record.funding_amount_min and candidate.funding_amount_min:
            first, second = float(record.funding_amount_min), float(candidate.funding_amount_min)
            funding = max(0.0, 1 - abs(first - second) / ((first + second) / 2))

        return title * 0.4 + funder * 0.3 + deadline * 0.2 + funding * 0.1

    @staticmethod
    def extract_keywords(text: str | None) -> list[str]:
        words = [word for word in extract_words(text) if len(word) > 3 and word not in _STOP_WORDS]
        return words[:MAX_KEYWORDS]

    # ------------------------------------------------------------------
    # Matching stages
    # ------------------------------------------------------------------
    def _title_funder_score(self, first: ProcessedRecord, second: ProcessedRecord) -> float:
        return (
            self.calculate_title_similarity(first.title, second.title) * 0.7
            + self.calculate_funder_similarity(first.funder.name, second.funder.name) * 0.3
        )

    def _find_title_match(
        self, record: ProcessedRecord, tx: TransactionContext | None
    ) -> tuple[StoredGrant, float] | None:
        normalized = normalize_title(record.title)
        funder_name = record.funder.name.strip()
        if not normalized or not funder_name:
            return None
        candidates = self.repository.find_active_by_title_and_funder(
            normalized, funder_name, limit=TITLE_CANDIDATE_LIMIT, tx=tx
        )
        for candidate in candidates:
            confidence = self._title_funder_score(record, candidate.record)
            if confidence > TITLE_MATCH_THRESHOLD:
                return candidate, confidence
        return None

    def _find_fuzzy_match(
        self, record: ProcessedRecord, tx: TransactionContext | None
    ) -> tuple[StoredGrant, float] | None:
        candidates = self.repository.search_active_by_keywords(
            self.extract_keywords(record.title),
            self.extract_keywords(record.description),
            limit=FUZZY_CANDIDATE_LIMIT,
            tx=tx,
        )
        best: tuple[StoredGrant, float] | None = None
        for candidate in candidates:
            confidence = self.calculate_overall_similarity(record, candidate.record)
            if confidence > FUZZY_CANDIDATE_FLOOR and (best is None or confidence > best[1]):
                best = (candidate, confidence)
        return best

    def _conflicting_fields(self, existing: ProcessedRecord, incoming: ProcessedRecord) -> list[str]:
        changed = self.hasher.identify_changed_fields(existing, incoming)
        return [
            name
            for name in changed
            if FIELD_SEVERITY[GrantField(name)] in (ChangeSeverity.CRITICAL, ChangeSeverity.MAJOR)
        ]

    def _same_listing(self, first: ProcessedRecord, second: ProcessedRecord) -> bool:
        if self._title_funder_score(first, second) <= TITLE_MATCH_THRESHOLD:
            return False
        return not self._conflicting_fields(first, second)


__all__ = [
    "BatchDeduplicationResult",
    "DeduplicationEngine",
    "FUZZY_MATCH_THRESHOLD",
    "MERGE_STRATEGIES",
    "MergeStrategy",
    "TITLE_MATCH_THRESHOLD",
    "levenshtein_distance",
    "merge_records",
]
