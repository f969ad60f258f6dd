"""수집 파이프라인 에러 분류. retry 여부 판단의 단일 기준.

모든 원격 호출(브라우저 내비게이션, Graph API, 외부 아카이브 API, webhook 전송)은
여기서 분류된 ``transient`` 값만 보고 재시도 여부를 결정한다.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum

import httpx
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class ErrorCategory(str, Enum):
    TOKEN_ERROR = "TOKEN_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    PERMISSION_ERROR = "PERMISSION_ERROR"
    TRANSIENT = "TRANSIENT"
    UNKNOWN = "UNKNOWN"


# ── Graph API 에러 코드 ──

TOKEN_ERROR_CODES = {102, 190, 463, 467, 459}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 341, 613}
PERMISSION_ERROR_CODES = {10, 200, 294}
TRANSIENT_ERROR_CODES = {1, 2}

SUGGESTIONS = {
    ErrorCategory.TOKEN_ERROR: (
        "Check FACEBOOK_APP_ID / FACEBOOK_APP_SECRET or regenerate the access token"
    ),
    ErrorCategory.RATE_LIMIT: "Wait a few minutes before retrying or lower the import limit",
    ErrorCategory.PERMISSION_ERROR: (
        "The app needs the ads_read permission and Ad Library API access"
    ),
    ErrorCategory.TRANSIENT: "Temporary upstream failure, try again shortly",
    ErrorCategory.UNKNOWN: "Check the logs for details",
}

_RETRYABLE = {ErrorCategory.RATE_LIMIT, ErrorCategory.TRANSIENT}


@dataclass(frozen=True)
class Classification:
    category: ErrorCategory
    transient: bool
    message: str
    suggestion: str
    code: int | None = None


class HarvestError(Exception):
    """수집 파이프라인 예외 베이스."""


class MetaApiError(HarvestError):
    """Graph API / 외부 아카이브 API 에러 응답."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: int | None = None,
        payload: dict | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.payload = payload

    @classmethod
    def from_response(cls, status_code: int, payload: dict | None, response_text: str = ""):
        error = payload.get("error") if isinstance(payload, dict) else None

        message = ""
        if isinstance(error, dict):
            message = str(error.get("message") or "").strip()
        if not message:
            message = (response_text or "").strip()
        message = message[:240] or f"http {status_code}"

        code_int: int | None = None
        if isinstance(error, dict) and error.get("code") is not None:
            try:
                code_int = int(error.get("code"))
            except (TypeError, ValueError):
                code_int = None

        return cls(message, status_code=status_code, code=code_int, payload=payload)


class SessionOpenError(HarvestError):
    """브라우징 컨텍스트를 열 수 없음. 재시도 없이 런 실패."""


class UnsupportedOperationError(HarvestError):
    """검증된 업스트림 접근 없이 지원되지 않는 작업."""

    def __init__(self, message: str, suggestion: str):
        super().__init__(message)
        self.suggestion = suggestion


def _categorize(status_code: int | None, code: int | None, message: str) -> ErrorCategory:
    lower = message.lower()

    if code in TOKEN_ERROR_CODES:
        return ErrorCategory.TOKEN_ERROR
    if code in RATE_LIMIT_ERROR_CODES:
        return ErrorCategory.RATE_LIMIT
    if code in PERMISSION_ERROR_CODES:
        return ErrorCategory.PERMISSION_ERROR
    if code in TRANSIENT_ERROR_CODES:
        return ErrorCategory.TRANSIENT

    # 코드가 없거나 모르는 코드 → HTTP 상태로 판단
    if status_code == 401 or ("oauth" in lower and "invalid" in lower):
        return ErrorCategory.TOKEN_ERROR
    if status_code == 429 or "rate limit" in lower or "request limit" in lower:
        return ErrorCategory.RATE_LIMIT
    if status_code == 403:
        return ErrorCategory.PERMISSION_ERROR
    if status_code is not None and (status_code >= 500 or status_code == 408):
        return ErrorCategory.TRANSIENT
    return ErrorCategory.UNKNOWN


def classify_error(exc: BaseException) -> Classification:
    """예외를 taxonomy 카테고리로 분류.

    UNKNOWN은 보수적으로 fatal 처리한다 (무한 재시도 방지).
    """
    if isinstance(exc, MetaApiError):
        category = _categorize(exc.status_code, exc.code, str(exc))
        return Classification(
            category=category,
            transient=category in _RETRYABLE,
            message=str(exc),
            suggestion=SUGGESTIONS[category],
            code=exc.code,
        )

    if isinstance(exc, httpx.HTTPStatusError):
        category = _categorize(exc.response.status_code, None, str(exc))
        return Classification(
            category=category,
            transient=category in _RETRYABLE,
            message=str(exc),
            suggestion=SUGGESTIONS[category],
        )

    # 네트워크 끊김 / 타임아웃 → transient
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, PlaywrightTimeoutError)):
        return Classification(
            category=ErrorCategory.TRANSIENT,
            transient=True,
            message=str(exc) or type(exc).__name__,
            suggestion=SUGGESTIONS[ErrorCategory.TRANSIENT],
        )

    if isinstance(exc, PlaywrightError) and "net::" in str(exc):
        return Classification(
            category=ErrorCategory.TRANSIENT,
            transient=True,
            message=str(exc),
            suggestion=SUGGESTIONS[ErrorCategory.TRANSIENT],
        )

    return Classification(
        category=ErrorCategory.UNKNOWN,
        transient=False,
        message=str(exc) or type(exc).__name__,
        suggestion=SUGGESTIONS[ErrorCategory.UNKNOWN],
    )


def describe_failure(exc: BaseException) -> str:
    """사용자 노출용 최종 실패 메시지 (카테고리 + 조치 안내)."""
    info = classify_error(exc)
    return f"[{info.category.value}] {info.message} ({info.suggestion})"
