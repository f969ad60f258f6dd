from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import json

import httpx
import pytest

from processor.normalizer import SourceFormat, normalize_ad
from processor.sinks import DatabaseSink, WebhookSink


def _records(*ids):
    return [normalize_ad({"ad_library_id": i, "page_name": "Acme"}, SourceFormat.SCRAPE) for i in ids]


@pytest.mark.asyncio
async def test_webhook_sink_posts_batch_import():
    captured = []

    def handler(request):
        captured.append(request)
        return httpx.Response(200, json={"success": True, "imported": 2, "updated": 0, "errors": 0, "details": []})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sink = WebhookSink("https://hook.test/api/scraper-webhook", "s3cret", "scraper-1", 7, client=client)

    result = await sink.deliver(_records("1", "2"))

    assert result.imported == 2
    request = captured[0]
    assert request.headers["x-webhook-secret"] == "s3cret"
    body = json.loads(request.content)
    assert body["action"] == "batch_import"
    assert body["scraper_id"] == "scraper-1"
    assert body["metadata"] == {"tenant_id": 7}
    assert [ad["ad_library_id"] for ad in body["ads"]] == ["1", "2"]


@pytest.mark.asyncio
async def test_webhook_sink_raises_on_http_error():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    sink = WebhookSink("https://hook.test", "", "scraper-1", 7, client=client)

    with pytest.raises(httpx.HTTPStatusError):
        await sink.deliver(_records("1"))


@pytest.mark.asyncio
async def test_webhook_ping():
    def handler(request):
        assert "x-webhook-secret" not in request.headers
        return httpx.Response(200, json={"success": True, "message": "pong"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    assert await WebhookSink("https://hook.test", "", client=client).ping() is True

    unauthorized = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401)))
    assert await WebhookSink("https://hook.test", "bad", client=unauthorized).ping() is False


def test_webhook_sink_requires_url(monkeypatch):
    from crawler.config import crawler_settings

    monkeypatch.setattr(crawler_settings, "webhook_url", "")
    with pytest.raises(ValueError):
        WebhookSink()


@pytest.mark.asyncio
async def test_database_sink(session_factory, tenant_id):
    sink = DatabaseSink(session_factory, tenant_id)
    assert await sink.ping() is True
    assert (await sink.deliver(_records("1", "2"))).imported == 2
    assert await DatabaseSink(session_factory, tenant_id + 100).ping() is False
