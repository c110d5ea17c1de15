"""Extraction engine contract, registry and shared HTTP helpers."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from threading import Lock
from typing import Any, Callable, Dict

import httpx

from ..cancellation import CancellationToken
from ..config.models import AuthType, SourceConfiguration
from ..errors import AuthenticationError, CaptchaError, ConfigurationError, RateLimitError, UnknownEngineError
from ..models import RawExtractedRecord

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; GrantHarvester/1.0)"
_CAPTCHA_MARKERS = ("g-recaptcha", "h-captcha", "cf-challenge", "captcha")


class ExtractionEngine(ABC):
    """Turn one source configuration into raw records."""

    name: str = "engine"

    @abstractmethod
    def scrape(
        self, source: SourceConfiguration, *, cancel_token: CancellationToken | None = None
    ) -> list[RawExtractedRecord]:
        ...

    def close(self) -> None:
        return None


class EngineRegistry:
    """Thread-safe mapping from engine selector to engine instance."""

    def __init__(self) -> None:
        self._engines: Dict[str, ExtractionEngine] = {}
        self._lock = Lock()

    def register(self, engine_type: str, engine: ExtractionEngine) -> None:
        with self._lock:
            self._engines[engine_type] = engine

    def get(self, engine_type: str) -> ExtractionEngine:
        with self._lock:
            engine = self._engines.get(engine_type)
        if engine is None:
            raise UnknownEngineError(engine_type)
        return engine

    def registered(self) -> list[str]:
        with self._lock:
            return sorted(self._engines)

    def close(self) -> None:
        with self._lock:
            engines = list(self._engines.values())
        for engine in engines:
            engine.close()


def request_credentials(source: SourceConfiguration) -> tuple[dict[str, str], httpx.Auth | None]:
    """Build request headers and an optional httpx auth object for ``source``."""

    headers = {"User-Agent": DEFAULT_USER_AGENT, **source.headers}
    auth = source.authentication
    if auth is None:
        return headers, None
    credentials = auth.credentials
    if auth.type is AuthType.BASIC:
        try:
            return headers, httpx.BasicAuth(credentials["username"], credentials["password"])
        except KeyError as exc:
            raise ConfigurationError(f"Basic auth for {source.id} needs {exc.args[0]}") from exc
    if auth.type is AuthType.APIKEY:
        key = credentials.get("key") or credentials.get("api_key")
        if not key:
            raise ConfigurationError(f"API key auth for {source.id} needs a key")
        headers[credentials.get("header", "X-API-Key")] = key
        return headers, None
    token = credentials.get("token") or credentials.get("access_token")
    if not token:
        raise ConfigurationError(f"{auth.type.value} auth for {source.id} needs a token")
    headers["Authorization"] = f"Bearer {token}"
    return headers, None


class PoliteHttpFetcher:
    """httpx wrapper enforcing per-source delays and bounded transport retries.

    Status codes 429 and 401/403, and pages carrying a captcha challenge, are
    raised as typed extraction errors. Other failing statuses surface as
    :class:`httpx.HTTPStatusError`.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        *,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client or httpx.Client(follow_redirects=True, timeout=20)
        self._owns_client = client is None
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        self._last_request: Dict[str, float] = {}
        self._lock = Lock()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def get(
        self,
        source: SourceConfiguration,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> httpx.Response:
        headers, auth = request_credentials(source)
        attempt = 0
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            self._respect_delay(source)
            try:
                response = self._client.get(url, params=params, headers=headers, auth=auth)
            except httpx.TransportError:
                if attempt >= self.max_retries:
                    raise
                attempt += 1
                self._sleep(self.retry_backoff * attempt)
                continue
            self._raise_for_block(response)
            return response

    def _respect_delay(self, source: SourceConfiguration) -> None:
        delay = source.rate_limit.delay_between_requests
        with self._lock:
            last = self._last_request.get(source.id)
            now = time.monotonic()
            wait = max(0.0, last + delay - now) if last is not None else 0.0
            self._last_request[source.id] = now + wait
        if wait:
            self._sleep(wait)

    @staticmethod
    def _raise_for_block(response: httpx.Response) -> None:
        status = response.status_code
        if status == 429:
            raise RateLimitError(f"Rate limited by {response.url} (429 Too Many Requests)")
        if status in (401, 403):
            raise AuthenticationError(f"Access denied by {response.url} ({status})")
        response.raise_for_status()
        content_type = response.headers.get("content-type", "")
        if "html" in content_type:
            body = response.text.lower()
            if any(marker in body for marker in _CAPTCHA_MARKERS) and "<form" in body:
                raise CaptchaError(f"Captcha challenge served by {response.url}")


__all__ = ["EngineRegistry", "ExtractionEngine", "PoliteHttpFetcher", "request_credentials"]
