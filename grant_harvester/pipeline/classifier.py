"""Keyword-table grant classifier."""

from __future__ import annotations

import re

from ..models import GrantCategory, ProcessedRecord
from .base import ClassificationResult, GrantClassifier

CATEGORY_KEYWORDS: dict[GrantCategory, tuple[str, ...]] = {
    GrantCategory.HEALTHCARE_PUBLIC_HEALTH: (
        "health", "medical", "hospital", "clinic", "disease", "mental health", "wellness", "patient",
    ),
    GrantCategory.EDUCATION_TRAINING: (
        "education", "school", "student", "teacher", "training", "scholarship", "literacy", "curriculum",
    ),
    GrantCategory.ENVIRONMENT_SUSTAINABILITY: (
        "environment", "climate", "sustainability", "conservation", "renewable", "energy", "wildlife", "water",
    ),
    GrantCategory.SOCIAL_SERVICES: (
        "housing", "homeless", "food", "poverty", "family", "youth", "senior", "social services",
    ),
    GrantCategory.ARTS_CULTURE: (
        "arts", "art", "culture", "museum", "music", "theatre", "theater", "heritage",
    ),
    GrantCategory.TECHNOLOGY_INNOVATION: (
        "technology", "innovation", "digital", "software", "startup", "broadband", "artificial intelligence",
    ),
    GrantCategory.RESEARCH_DEVELOPMENT: (
        "research", "science", "scientific", "laboratory", "study", "r&d", "fellowship",
    ),
    GrantCategory.COMMUNITY_DEVELOPMENT: (
        "community", "neighborhood", "neighbourhood", "local", "economic development", "nonprofit", "capacity",
    ),
}

_PATTERNS = {
    category: [(keyword, re.compile(r"\b" + re.escape(keyword) + r"\b")) for keyword in keywords]
    for category, keywords in CATEGORY_KEYWORDS.items()
}
TITLE_WEIGHT = 2
MAX_TAGS = 10


class KeywordClassifier(GrantClassifier):
    """Score each category by keyword hits; title hits count double."""

    def classify_grant(self, record: ProcessedRecord) -> ClassificationResult:
        title = record.title.lower()
        body = f"{record.description} {record.eligibility_criteria}".lower()

        scores: dict[GrantCategory, int] = {}
        matched: dict[GrantCategory, list[str]] = {}
        for category, patterns in _PATTERNS.items():
            score = 0
            for keyword, pattern in patterns:
                hit = False
                if pattern.search(title):
                    score += TITLE_WEIGHT
                    hit = True
                if pattern.search(body):
                    score += 1
                    hit = True
                if hit:
                    matched.setdefault(category, []).append(keyword)
            if score:
                scores[category] = score

        if not scores:
            return ClassificationResult(
                category=GrantCategory.COMMUNITY_DEVELOPMENT,
                tags=[],
                confidence=0.1,
                reasoning=["No category keywords matched; defaulted to community development"],
            )

        # Ties resolve to the earlier category in the table.
        best = max(scores, key=lambda category: scores[category])
        total = sum(scores.values())
        confidence = round(min(1.0, 0.3 + 0.5 * scores[best] / total + 0.05 * scores[best]), 2)

        tags: list[str] = []
        for keyword in matched[best] + [kw for category in scores if category is not best for kw in matched[category]]:
            if keyword not in tags:
                tags.append(keyword)
        return ClassificationResult(
            category=best,
            tags=tags[:MAX_TAGS],
            confidence=confidence,
            reasoning=[
                f"{best.value} matched: {', '.join(matched[best])}",
                f"score {scores[best]} of {total} across {len(scores)} categories",
            ],
        )


__all__ = ["CATEGORY_KEYWORDS", "KeywordClassifier"]
