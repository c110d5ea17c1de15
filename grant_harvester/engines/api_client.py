"""JSON API extraction with offset pagination."""

from __future__ import annotations

from typing import Any

import structlog

from ..cancellation import CancellationToken
from ..config.models import SourceConfiguration
from ..errors import ExtractionError
from ..models import RawExtractedRecord
from .base import ExtractionEngine, PoliteHttpFetcher

_DEFAULT_KEYS = {
    "title": "title",
    "description": "description",
    "deadline": "deadline",
    "funding_amount": "funding_amount",
    "eligibility": "eligibility",
    "application_url": "application_url",
    "funder_info": "funder",
}


def lookup(payload: Any, path: str | None) -> Any:
    """Resolve a dotted path such as ``data.items`` against nested JSON."""

    if not path:
        return payload
    current = payload
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        value = value.get("name") or value.get("title")
        return str(value) if value else None
    return str(value)


class ApiClientEngine(ExtractionEngine):
    """Fetch records from a JSON endpoint.

    ``selectors.grant_container`` is the dotted path to the record list and
    the remaining selectors name the JSON keys of each field, falling back to
    the field name itself. With ``pagination`` configured the engine walks
    offset pages until a short page or ``max_pages``.
    """

    name = "api"

    def __init__(self, fetcher: PoliteHttpFetcher | None = None, logger: structlog.BoundLogger | None = None) -> None:
        self.fetcher = fetcher or PoliteHttpFetcher()
        self.logger = logger or structlog.get_logger("grant_harvester.engines.api")

    def close(self) -> None:
        self.fetcher.close()

    def scrape(
        self, source: SourceConfiguration, *, cancel_token: CancellationToken | None = None
    ) -> list[RawExtractedRecord]:
        pagination = source.pagination
        if pagination is None:
            items = self._fetch_page(source, None, cancel_token)
        else:
            items = []
            for page in range(pagination.max_pages):
                params = {
                    pagination.offset_param: page * pagination.page_size,
                    pagination.limit_param: pagination.page_size,
                }
                batch = self._fetch_page(source, params, cancel_token)
                items.extend(batch)
                if len(batch) < pagination.page_size:
                    break
        records = [self._to_record(source, item) for item in items if isinstance(item, dict)]
        records = [record for record in records if record.title]
        self.logger.info("api_scrape_completed", source_id=source.id, records=len(records))
        return records

    def _fetch_page(
        self,
        source: SourceConfiguration,
        params: dict[str, Any] | None,
        cancel_token: CancellationToken | None,
    ) -> list[Any]:
        response = self.fetcher.get(source, source.url, params=params, cancel_token=cancel_token)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExtractionError(f"Failed to parse JSON from {source.url}: {exc}") from exc
        items = lookup(payload, source.selectors.grant_container)
        if items is None:
            return []
        if not isinstance(items, list):
            raise ExtractionError(
                f"Failed to parse records at '{source.selectors.grant_container}' from {source.url}: not a list"
            )
        return items

    def _to_record(self, source: SourceConfiguration, item: dict[str, Any]) -> RawExtractedRecord:
        def field(name: str) -> str | None:
            key = getattr(source.selectors, name) or _DEFAULT_KEYS[name]
            return _text(lookup(item, key))

        return RawExtractedRecord(
            title=(field("title") or "").strip(),
            description=field("description") or "",
            deadline=field("deadline"),
            funding_amount=field("funding_amount"),
            eligibility=field("eligibility"),
            application_url=field("application_url"),
            funder_name=field("funder_info"),
            source_url=source.url,
            raw_content=item,
        )


__all__ = ["ApiClientEngine", "lookup"]
