"""Reference normalisation, validation and classification stages."""

from .base import ClassificationResult, DataProcessor, GrantClassifier, GrantValidator, ValidationResult
from .classifier import KeywordClassifier
from .processor import BasicDataProcessor
from .validator import BasicValidator

__all__ = [
    "BasicDataProcessor",
    "BasicValidator",
    "ClassificationResult",
    "DataProcessor",
    "GrantClassifier",
    "GrantValidator",
    "KeywordClassifier",
    "ValidationResult",
]
