"""Reference extraction engines."""

from .api_client import ApiClientEngine
from .base import EngineRegistry, ExtractionEngine, PoliteHttpFetcher
from .static_html import StaticHtmlEngine


def default_registry(fetcher: PoliteHttpFetcher | None = None) -> EngineRegistry:
    """Registry with the HTTP engines; ``browser`` sources need an engine registered separately."""

    shared = fetcher or PoliteHttpFetcher()
    registry = EngineRegistry()
    registry.register("static", StaticHtmlEngine(shared))
    registry.register("api", ApiClientEngine(shared))
    return registry


__all__ = [
    "ApiClientEngine",
    "EngineRegistry",
    "ExtractionEngine",
    "PoliteHttpFetcher",
    "StaticHtmlEngine",
    "default_registry",
]
