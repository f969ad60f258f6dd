"""Graph API 클라이언트 -- httpx.MockTransport로 업스트림 흉내."""

from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import json

import httpx
import pytest

from crawler.config import MetaApiSettings
from crawler.errors import MetaApiError, UnsupportedOperationError
from crawler.facebook_api import (
    AdSearchParams,
    ExternalAdArchiveClient,
    MetaAdLibraryClient,
    mask_token,
)
from crawler.retry import RateLimiter, RetryPolicy


async def _no_sleep(_seconds):
    pass


def _settings(**overrides):
    values = dict(app_id="", app_secret="", access_token="test-token-abcdef", api_versions="v24.0,v21.0")
    values.update(overrides)
    return MetaApiSettings(**values)


def _client(handler, **settings):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MetaAdLibraryClient(
        _settings(**settings),
        client=http,
        rate_limiter=RateLimiter(0, sleep=_no_sleep),
        retry_policy=RetryPolicy(max_retries=2, base_delay_ms=500),
        sleep=_no_sleep,
    )


def _ads(*ids):
    return [{"id": i, "page_name": "Acme", "page_id": "42"} for i in ids]


def _graph_error(status, code, message="boom"):
    return httpx.Response(status, json={"error": {"message": message, "code": code}})


def test_mask_token():
    assert mask_token("") == "(empty)"
    assert mask_token("short") == "***"
    assert mask_token("EAAB1234567890xyz") == "EAAB12...0xyz"


def test_app_token_takes_precedence():
    settings = _settings(app_id="123", app_secret="shh")
    assert settings.resolved_token == "123|shh"


@pytest.mark.asyncio
async def test_search_ads_query():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"data": _ads("1", "2"), "paging": {}})

    client = _client(handler)
    result = await client.search_ads(AdSearchParams(search_terms="shoes", ad_reached_countries=["BR"], limit=2))

    assert [ad["id"] for ad in result["data"]] == ["1", "2"]
    url = seen[0].url
    assert url.path == "/v24.0/ads_archive"
    assert url.params["search_terms"] == "shoes"
    assert json.loads(url.params["ad_reached_countries"]) == ["BR"]
    assert url.params["access_token"] == "test-token-abcdef"


@pytest.mark.asyncio
async def test_fetch_all_follows_cursor_and_caps_at_max():
    def handler(request):
        after = request.url.params.get("after")
        if after is None:
            return httpx.Response(200, json={"data": _ads("1", "2"), "paging": {"cursors": {"after": "c1"}}})
        if after == "c1":
            return httpx.Response(200, json={"data": _ads("3", "4"), "paging": {"cursors": {"after": "c2"}}})
        return httpx.Response(200, json={"data": _ads("5", "6"), "paging": {}})

    client = _client(handler)
    result = await client.fetch_all_ads(AdSearchParams(search_terms="x", limit=2), max_ads=5)

    assert [ad["id"] for ad in result.ads] == ["1", "2", "3", "4", "5"]
    assert result.partial is False


@pytest.mark.asyncio
async def test_fetch_all_returns_partial_on_mid_stream_failure():
    def handler(request):
        if request.url.params.get("after") is None:
            return httpx.Response(200, json={"data": _ads("1", "2"), "paging": {"cursors": {"after": "c1"}}})
        return _graph_error(400, 100, "Invalid parameter")

    client = _client(handler)
    result = await client.fetch_all_ads(AdSearchParams(search_terms="x", limit=2), max_ads=10)

    assert [ad["id"] for ad in result.ads] == ["1", "2"]
    assert result.partial is True
    assert isinstance(result.error, MetaApiError)


@pytest.mark.asyncio
async def test_first_page_failure_propagates():
    client = _client(lambda request: _graph_error(400, 100))
    with pytest.raises(MetaApiError):
        await client.fetch_all_ads(AdSearchParams(search_terms="x"), max_ads=10)


@pytest.mark.asyncio
async def test_transient_errors_fall_back_to_next_version():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if request.url.path.startswith("/v24.0"):
            return httpx.Response(503, text="Service Unavailable")
        return httpx.Response(200, json={"data": _ads("1")})

    client = _client(handler)
    result = await client.search_ads(AdSearchParams(search_terms="x"))

    assert [ad["id"] for ad in result["data"]] == ["1"]
    # v24.0: 최초 + 재시도 2회, 그다음 v21.0
    assert calls == ["/v24.0/ads_archive"] * 3 + ["/v21.0/ads_archive"]


@pytest.mark.asyncio
async def test_token_error_is_not_retried_or_fallen_back():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return _graph_error(400, 190, "Error validating access token")

    client = _client(handler)
    with pytest.raises(MetaApiError) as exc_info:
        await client.search_ads(AdSearchParams(search_terms="x"))

    assert exc_info.value.code == 190
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_rate_limit_is_retried_in_place():
    responses = [_graph_error(400, 4, "Application request limit reached"), httpx.Response(200, json={"data": []})]
    client = _client(lambda request: responses.pop(0))

    result = await client.search_ads(AdSearchParams(search_terms="x"))
    assert result == {"data": [], "paging": {}}


@pytest.mark.asyncio
async def test_missing_token_fails_before_any_request():
    def handler(request):
        raise AssertionError("no request expected")

    client = _client(handler, access_token="")
    with pytest.raises(MetaApiError):
        await client.search_ads(AdSearchParams(search_terms="x"))


@pytest.mark.asyncio
async def test_validate_token():
    def handler(request):
        assert request.url.path == "/v24.0/debug_token"
        return httpx.Response(200, json={
            "data": {"is_valid": True, "app_id": "123", "type": "APP", "scopes": ["ads_read", "public_profile"]},
        })

    info = await _client(handler).validate_token()
    assert info.usable
    assert info.app_id == "123"
    assert info.token_type == "APP"


@pytest.mark.asyncio
async def test_validate_token_without_ads_read():
    def handler(request):
        return httpx.Response(200, json={"data": {"is_valid": True, "scopes": ["public_profile"]}})

    info = await _client(handler).validate_token()
    assert info.is_valid and not info.has_ads_read
    assert not info.usable


# ── 외부 아카이브 ──

@pytest.mark.asyncio
async def test_archive_fetch_ad():
    def handler(request):
        assert request.url.path == "/ad/999"
        return httpx.Response(200, json={"data": {"id": "999", "page_name": "Acme"}})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    archive = ExternalAdArchiveClient("https://archive.test/", client=http, sleep=_no_sleep)

    payload = await archive.fetch_ad(" 999 ")
    assert payload["data"]["id"] == "999"


@pytest.mark.asyncio
async def test_archive_requires_ad_id():
    with pytest.raises(ValueError):
        await ExternalAdArchiveClient("https://archive.test").fetch_ad("  ")


@pytest.mark.asyncio
async def test_archive_page_import_is_unsupported():
    with pytest.raises(UnsupportedOperationError) as exc_info:
        await ExternalAdArchiveClient("https://archive.test").fetch_page("123")
    assert "manual JSON/CSV" in exc_info.value.suggestion
