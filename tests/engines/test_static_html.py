from __future__ import annotations

import httpx
import pytest

from grant_harvester.cancellation import CancellationToken
from grant_harvester.config import AuthConfig, AuthType, RateLimitConfig, SourceSelectors
from grant_harvester.engines import EngineRegistry, PoliteHttpFetcher, StaticHtmlEngine
from grant_harvester.engines.base import request_credentials
from grant_harvester.engines.static_html import split_selector
from grant_harvester.errors import (
    AuthenticationError,
    CaptchaError,
    ConfigurationError,
    JobCancelledError,
    RateLimitError,
    UnknownEngineError,
)

LISTING = """
<html><body>
  <div class="grant">
    <h2> Arts Access Fund </h2>
    <p class="summary">Grants for community artists.</p>
    <span class="deadline">2099-04-01</span>
    <a class="apply" href="/apply/arts">Apply</a>
    <span class="funder" data-name="Culture Council">CC</span>
  </div>
  <div class="grant"><p class="summary">No title here</p></div>
  <div class="grant"><h2>Youth Sports Grant</h2></div>
</body></html>
"""

SELECTORS = SourceSelectors(
    grant_container="div.grant",
    title="h2",
    description="p.summary",
    deadline="span.deadline",
    application_url="a.apply",
    funder_info="span.funder::attr:data-name",
)


def _fetcher(handler, sleeps: list[float] | None = None, **kwargs) -> PoliteHttpFetcher:
    recorder = sleeps if sleeps is not None else []
    return PoliteHttpFetcher(
        httpx.Client(transport=httpx.MockTransport(handler)), sleep=recorder.append, **kwargs
    )


def test_static_engine_extracts_records(make_source) -> None:
    engine = StaticHtmlEngine(_fetcher(lambda request: httpx.Response(200, html=LISTING)))

    records = engine.scrape(make_source(selectors=SELECTORS))

    assert [record.title for record in records] == ["Arts Access Fund", "Youth Sports Grant"]
    first = records[0]
    assert first.description == "Grants for community artists."
    assert first.deadline == "2099-04-01"
    assert first.application_url == "https://grants.example.org/apply/arts"
    assert first.funder_name == "Culture Council"
    assert first.source_url == "https://grants.example.org/list"
    assert "Arts Access Fund" in first.raw_content["html"]
    assert records[1].description == ""


def test_static_engine_requires_container(make_source) -> None:
    engine = StaticHtmlEngine(_fetcher(lambda request: httpx.Response(200, html=LISTING)))

    with pytest.raises(ConfigurationError):
        engine.scrape(make_source(selectors=SourceSelectors(title="h2")))


def test_split_selector_modes() -> None:
    assert split_selector("a.apply") == ("a.apply", "text")
    assert split_selector("div.body :: HTML") == ("div.body", "html")
    assert split_selector("span::attr:data-name") == ("span", "attr:data-name")


def test_parse_supports_html_and_attribute_modes(make_source) -> None:
    selectors = SourceSelectors(
        grant_container="article",
        title="h3",
        description="div.body::html",
        application_url="a::attr:data-href",
    )
    html = (
        '<article><h3>Seed Fund</h3><div class="body"><b>Bold</b> text</div>'
        '<a data-href="/seed" href="/ignored">Apply</a></article>'
    )

    (record,) = StaticHtmlEngine(_fetcher(lambda request: httpx.Response(200))).parse(
        make_source(selectors=selectors), html, "https://grants.example.org/list"
    )

    assert record.title == "Seed Fund"
    assert record.description.startswith('<div class="body">')
    assert "<b>Bold</b> text" in record.description
    assert record.application_url == "https://grants.example.org/seed"


@pytest.mark.parametrize(
    ("response", "error"),
    [
        (httpx.Response(429), RateLimitError),
        (httpx.Response(403), AuthenticationError),
        (httpx.Response(401), AuthenticationError),
        (httpx.Response(200, html='<form class="g-recaptcha"></form>'), CaptchaError),
    ],
)
def test_blocked_responses_raise_typed_errors(make_source, response, error) -> None:
    fetcher = _fetcher(lambda request: response)

    with pytest.raises(error):
        fetcher.get(make_source(), "https://grants.example.org/list")


def test_server_errors_surface_as_http_errors(make_source) -> None:
    fetcher = _fetcher(lambda request: httpx.Response(500))

    with pytest.raises(httpx.HTTPStatusError):
        fetcher.get(make_source(), "https://grants.example.org/list")


def test_transport_errors_are_retried(make_source) -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset")
        return httpx.Response(200, text="ok")

    sleeps: list[float] = []
    response = _fetcher(handler, sleeps).get(make_source(), "https://grants.example.org/list")

    assert response.text == "ok"
    assert len(calls) == 2
    assert sleeps == [1.0]


def test_retries_are_bounded(make_source) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down")

    sleeps: list[float] = []
    with pytest.raises(httpx.ConnectError):
        _fetcher(handler, sleeps, max_retries=2).get(make_source(), "https://grants.example.org/list")
    assert sleeps == [1.0, 2.0]


def test_delay_between_requests_is_enforced(make_source) -> None:
    sleeps: list[float] = []
    fetcher = _fetcher(lambda request: httpx.Response(200), sleeps)
    source = make_source(rate_limit=RateLimitConfig(delay_between_requests=5.0))

    fetcher.get(source, source.url)
    fetcher.get(source, source.url)

    assert len(sleeps) == 1
    assert 4.0 < sleeps[0] <= 5.0


def test_cancelled_token_stops_before_request(make_source) -> None:
    calls: list[httpx.Request] = []
    fetcher = _fetcher(lambda request: calls.append(request) or httpx.Response(200))
    token = CancellationToken()
    token.cancel()

    with pytest.raises(JobCancelledError):
        fetcher.get(make_source(), "https://grants.example.org/list", cancel_token=token)
    assert calls == []


def test_request_credentials(make_source) -> None:
    headers, auth = request_credentials(
        make_source(
            authentication=AuthConfig(type=AuthType.BEARER, credentials={"token": "abc"}),
            headers={"X-Trace": "1"},
        )
    )
    assert headers["Authorization"] == "Bearer abc"
    assert headers["X-Trace"] == "1"
    assert auth is None

    headers, _ = request_credentials(
        make_source(authentication=AuthConfig(type=AuthType.APIKEY, credentials={"key": "k", "header": "X-Key"}))
    )
    assert headers["X-Key"] == "k"

    _, auth = request_credentials(
        make_source(authentication=AuthConfig(type=AuthType.BASIC, credentials={"username": "u", "password": "p"}))
    )
    assert isinstance(auth, httpx.BasicAuth)

    with pytest.raises(ConfigurationError):
        request_credentials(make_source(authentication=AuthConfig(type=AuthType.BASIC, credentials={"username": "u"})))
    with pytest.raises(ConfigurationError):
        request_credentials(make_source(authentication=AuthConfig(type=AuthType.OAUTH2)))


def test_engine_registry() -> None:
    registry = EngineRegistry()
    engine = StaticHtmlEngine(_fetcher(lambda request: httpx.Response(200)))
    registry.register("static", engine)

    assert registry.get("static") is engine
    assert registry.registered() == ["static"]
    with pytest.raises(UnknownEngineError, match="browser"):
        registry.get("browser")
