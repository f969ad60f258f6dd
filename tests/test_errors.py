from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import asyncio

import httpx
import pytest

from crawler.errors import ErrorCategory, MetaApiError, classify_error, describe_failure


@pytest.mark.parametrize(
    "code, category",
    [
        (190, ErrorCategory.TOKEN_ERROR),
        (463, ErrorCategory.TOKEN_ERROR),
        (17, ErrorCategory.RATE_LIMIT),
        (613, ErrorCategory.RATE_LIMIT),
        (10, ErrorCategory.PERMISSION_ERROR),
        (200, ErrorCategory.PERMISSION_ERROR),
        (2, ErrorCategory.TRANSIENT),
    ],
)
def test_graph_api_codes(code, category):
    info = classify_error(MetaApiError("x", status_code=400, code=code))
    assert info.category == category
    assert info.code == code


def test_http_status_fallback():
    assert classify_error(MetaApiError("nope", status_code=401)).category == ErrorCategory.TOKEN_ERROR
    assert classify_error(MetaApiError("nope", status_code=403)).category == ErrorCategory.PERMISSION_ERROR
    assert classify_error(MetaApiError("slow down", status_code=429)).transient is True
    assert classify_error(MetaApiError("bad gateway", status_code=502)).category == ErrorCategory.TRANSIENT
    unknown = classify_error(MetaApiError("weird", status_code=400))
    assert unknown.category == ErrorCategory.UNKNOWN
    assert unknown.transient is False


def test_network_and_timeouts_are_transient():
    assert classify_error(httpx.ConnectError("refused")).transient is True
    assert classify_error(asyncio.TimeoutError()).category == ErrorCategory.TRANSIENT


def test_http_status_error_from_httpx():
    request = httpx.Request("POST", "https://example.test/hook")
    response = httpx.Response(503, request=request)
    exc = httpx.HTTPStatusError("503", request=request, response=response)
    assert classify_error(exc).transient is True


def test_from_response_reads_error_body():
    payload = {"error": {"message": "Invalid OAuth access token.", "code": "190", "type": "OAuthException"}}
    exc = MetaApiError.from_response(400, payload)
    assert exc.code == 190
    assert str(exc) == "Invalid OAuth access token."
    assert classify_error(exc).category == ErrorCategory.TOKEN_ERROR


def test_describe_failure_includes_category_and_suggestion():
    text = describe_failure(MetaApiError("Application request limit reached", code=4))
    assert text.startswith("[RATE_LIMIT] Application request limit reached (")
