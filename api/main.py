"""FastAPI app entrypoint."""

import logging
import time
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.middleware.base import BaseHTTPMiddleware

from api.config import api_settings
from api.deps import drain_recorders
from api.logging_config import setup_logging
from api.routers import ad_library, imports, jobs, webhook
from database import init_db

logger = logging.getLogger("adharvest.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """앱 시작/종료 시 DB 초기화 + 대기 중인 job 기록 정리."""
    setup_logging()
    logger.info("AdHarvest API starting up")
    await init_db()
    try:
        yield
    finally:
        logger.info("AdHarvest API shutting down")
        await drain_recorders()
        from database import engine
        await engine.dispose()
        logger.info("Database engine disposed")


app = FastAPI(
    title="AdHarvest API",
    description="광고 라이브러리 수집/적재 파이프라인",
    version="0.1.0",
    lifespan=lifespan,
    redirect_slashes=False,
)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        duration = time.time() - start
        logger.info(
            "%s %s -> %d (%.2fs)",
            request.method,
            request.url.path,
            response.status_code,
            duration,
        )
        return response


app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=api_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handler
# ---------------------------------------------------------------------------
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    if isinstance(exc, HTTPException):
        headers = getattr(exc, "headers", None) or {}
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=headers,
        )
    logger.error(
        "Unhandled exception on %s %s: %s (type=%s)",
        request.method,
        request.url.path,
        str(exc),
        type(exc).__name__,
    )
    logger.debug(traceback.format_exc())
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )


app.include_router(webhook.router)
app.include_router(imports.router)
app.include_router(ad_library.router)
app.include_router(jobs.router)


@app.get("/health")
async def health():
    from database import engine

    health_status = {"status": "ok", "service": "adharvest-api", "version": "0.1.0"}
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["status"] = "degraded"
        health_status["database"] = f"error: {str(e)}"
    return health_status
