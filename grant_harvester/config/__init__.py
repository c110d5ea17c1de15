"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    KNOWN_ENGINES,
    AuthConfig,
    AuthType,
    HarvesterSettings,
    OrchestratorSettings,
    PaginationConfig,
    RateLimitConfig,
    ScrapingFrequency,
    SourceConfiguration,
    SourceSelectors,
    SourceType,
    WriterSettings,
)

__all__ = [
    "AuthConfig",
    "AuthType",
    "ConfigLocator",
    "ConfigRepository",
    "HarvesterSettings",
    "KNOWN_ENGINES",
    "OrchestratorSettings",
    "PaginationConfig",
    "RateLimitConfig",
    "ScrapingFrequency",
    "SourceConfiguration",
    "SourceSelectors",
    "SourceType",
    "WriterSettings",
]
