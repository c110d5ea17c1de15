"""Contracts for the normalisation, validation and classification stages."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence

from ..config.models import SourceConfiguration
from ..models import GrantCategory, ProcessedRecord, RawExtractedRecord


@dataclass(slots=True)
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    quality_score: int = 100


@dataclass(slots=True)
class ClassificationResult:
    category: GrantCategory
    tags: list[str] = field(default_factory=list)
    confidence: float = 0.0
    reasoning: list[str] = field(default_factory=list)


class DataProcessor(ABC):
    @abstractmethod
    def process_raw_data(
        self, records: Sequence[RawExtractedRecord], source: SourceConfiguration | None = None
    ) -> list[ProcessedRecord]:
        """Normalise a whole batch; raising fails the batch as a unit."""


class GrantValidator(ABC):
    @abstractmethod
    def validate_grant(self, record: ProcessedRecord) -> ValidationResult:
        ...


class GrantClassifier(ABC):
    @abstractmethod
    def classify_grant(self, record: ProcessedRecord) -> ClassificationResult:
        ...


__all__ = [
    "ClassificationResult",
    "DataProcessor",
    "GrantClassifier",
    "GrantValidator",
    "ValidationResult",
]
