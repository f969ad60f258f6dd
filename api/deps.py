"""FastAPI dependencies: tenant JWT, webhook secret, DB/클라이언트 주입."""

import hmac
import logging
import secrets
import warnings
from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import api_settings
from crawler.errors import classify_error
from crawler.facebook_api import ExternalAdArchiveClient, MetaAdLibraryClient
from database import async_session
from processor.importer import ImportReconciler
from processor.job_recorder import JobRecorder

logger = logging.getLogger("adharvest.api")

if api_settings.jwt_secret_key:
    JWT_SECRET_KEY = api_settings.jwt_secret_key
else:
    if api_settings.is_production:
        raise RuntimeError("JWT_SECRET_KEY must be set in production!")
    # 프로세스마다 새 키: 재시작하면 기존 토큰은 무효
    JWT_SECRET_KEY = secrets.token_urlsafe(32)
    warnings.warn("JWT_SECRET_KEY was not set - using an ephemeral key")
JWT_ALGORITHM = api_settings.jwt_algorithm

_bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(tenant_id: int, expire_hours: int | None = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(hours=expire_hours or api_settings.jwt_expire_hours)
    payload = {"tenant_id": tenant_id, "exp": expire}
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


async def get_current_tenant(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> int:
    """Bearer 토큰 → tenant_id."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    tenant_id = payload.get("tenant_id")
    if not isinstance(tenant_id, int):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return tenant_id


def webhook_secret_matches(provided: str | None) -> bool:
    """x-webhook-secret 검증. 시크릿 미설정이면 통과 (개발 모드)."""
    expected = api_settings.webhook_secret
    if not expected:
        logger.warning("WEBHOOK_SECRET not set - webhook authentication disabled (development mode)")
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


# ── 세션 팩토리 / 서비스 ──

def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncSession:
    async with session_factory() as session:
        yield session


_recorders: dict[int, JobRecorder] = {}


def get_job_recorder(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> JobRecorder:
    # 백그라운드 기록 태스크를 붙잡아 둘 수 있게 팩토리당 하나
    recorder = _recorders.get(id(session_factory))
    if recorder is None or recorder.session_factory is not session_factory:
        recorder = _recorders[id(session_factory)] = JobRecorder(session_factory)
    return recorder


def get_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ImportReconciler:
    return ImportReconciler(session_factory)


async def get_meta_client():
    async with MetaAdLibraryClient() as client:
        yield client


def get_archive_client() -> ExternalAdArchiveClient:
    return ExternalAdArchiveClient()


async def drain_recorders():
    for recorder in _recorders.values():
        await recorder.drain()


def classified_error_response(exc: Exception) -> JSONResponse:
    """외부 API 실패 → 분류 포함 JSON 응답 (transient는 503, 나머지는 502)."""
    info = classify_error(exc)
    logger.warning("Upstream API failure [%s]: %s", info.category.value, info.message)
    return JSONResponse(
        status_code=503 if info.transient else 502,
        content={
            "success": False,
            "error": info.message,
            "category": info.category.value,
            "suggestion": info.suggestion,
            "is_transient": info.transient,
        },
    )
