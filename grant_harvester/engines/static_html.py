"""Static HTML extraction with httpx and selectolax."""

from __future__ import annotations

from typing import Any
from urllib.parse import urljoin

import structlog
from selectolax.parser import HTMLParser, Node

from ..cancellation import CancellationToken
from ..config.models import SourceConfiguration
from ..errors import ConfigurationError
from ..models import RawExtractedRecord
from .base import ExtractionEngine, PoliteHttpFetcher

# Selector name on SourceSelectors -> field on RawExtractedRecord
_FIELD_SELECTORS = {
    "title": "title",
    "description": "description",
    "deadline": "deadline",
    "funding_amount": "funding_amount",
    "eligibility": "eligibility",
    "application_url": "application_url",
    "funder_info": "funder_name",
}


def split_selector(selector: str) -> tuple[str, str]:
    """Split ``"css::mode"`` into the CSS part and a mode (text, html or attr:NAME)."""

    if "::" in selector:
        css, mode = selector.split("::", 1)
        return css.strip(), mode.strip().lower()
    return selector.strip(), "text"


def _node_value(node: Node, mode: str) -> str | None:
    if mode == "html":
        return node.html
    if mode.startswith("attr:"):
        return node.attributes.get(mode.split(":", 1)[1])
    return node.text(separator=" ", strip=True)


class StaticHtmlEngine(ExtractionEngine):
    """One GET per scrape; one raw record per container match."""

    name = "static"

    def __init__(self, fetcher: PoliteHttpFetcher | None = None, logger: structlog.BoundLogger | None = None) -> None:
        self.fetcher = fetcher or PoliteHttpFetcher()
        self.logger = logger or structlog.get_logger("grant_harvester.engines.static")

    def close(self) -> None:
        self.fetcher.close()

    def scrape(
        self, source: SourceConfiguration, *, cancel_token: CancellationToken | None = None
    ) -> list[RawExtractedRecord]:
        container = source.selectors.grant_container
        if not container:
            raise ConfigurationError(f"Source {source.id} has no grant container selector")
        response = self.fetcher.get(source, source.url, cancel_token=cancel_token)
        records = self.parse(source, response.text, str(response.url))
        self.logger.info("static_scrape_completed", source_id=source.id, records=len(records))
        return records

    def parse(self, source: SourceConfiguration, html: str, base_url: str) -> list[RawExtractedRecord]:
        tree = HTMLParser(html)
        records: list[RawExtractedRecord] = []
        for node in tree.css(source.selectors.grant_container or ""):
            values = self._extract_fields(source, node, base_url)
            if not values.get("title"):
                continue
            records.append(
                RawExtractedRecord(
                    title=values["title"],
                    description=values.get("description") or "",
                    deadline=values.get("deadline"),
                    funding_amount=values.get("funding_amount"),
                    eligibility=values.get("eligibility"),
                    application_url=values.get("application_url"),
                    funder_name=values.get("funder_name"),
                    source_url=base_url,
                    raw_content={"html": node.html or ""},
                )
            )
        return records

    def _extract_fields(self, source: SourceConfiguration, container: Node, base_url: str) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for selector_name, field_name in _FIELD_SELECTORS.items():
            selector = getattr(source.selectors, selector_name)
            if not selector:
                continue
            css, mode = split_selector(selector)
            node = container.css_first(css) if css else None
            if node is None:
                continue
            if field_name == "application_url" and mode == "text":
                value = node.attributes.get("href") or node.text(strip=True)
            else:
                value = _node_value(node, mode)
            if value and value.strip():
                values[field_name] = value.strip()
        if values.get("application_url"):
            values["application_url"] = urljoin(base_url, values["application_url"])
        return values


__all__ = ["StaticHtmlEngine", "split_selector"]
