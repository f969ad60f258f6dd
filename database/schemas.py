"""Pydantic 스키마 -- API 요청/응답 직렬화.

필드 네이밍은 외부 스크레이퍼/프론트가 이미 쓰는 JSON 키를 따른다
(errorDetails 등 camelCase 키는 alias로 유지).
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Webhook (외부 스크레이퍼 push) ──
class WebhookRequest(BaseModel):
    action: Literal["batch_import", "single_import", "ping"]
    ads: list[dict[str, Any]] | None = None
    ad: dict[str, Any] | None = None
    scraper_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class WebhookImportResponse(BaseModel):
    success: bool
    total: int
    imported: int
    updated: int
    errors: int
    rejected: int
    details: list[str] = Field(default_factory=list)
    timestamp: datetime


class PongResponse(BaseModel):
    success: bool = True
    message: str = "pong"
    timestamp: datetime


# ── 외부 광고 import (fetch_ad / fetch_page / import_manual) ──
class ExternalImportRequest(BaseModel):
    action: Literal["fetch_ad", "fetch_page", "import_manual"]
    ad_id: str | None = None
    page_id: str | None = None
    limit: int = Field(default=50, ge=1, le=500)
    format: str | None = None
    data: Any = None


class ImportSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    total: int
    imported: int
    updated: int
    errors: int
    rejected: int = 0
    error_details: list[str] = Field(default_factory=list, alias="errorDetails")


# ── Ad Library (Graph API) ──
class AdLibrarySearchRequest(BaseModel):
    search_terms: str | None = None
    search_page_ids: list[str] = Field(default_factory=list)
    countries: list[str] = Field(default_factory=lambda: ["US"])
    ad_active_status: Literal["ALL", "ACTIVE", "INACTIVE"] = "ALL"
    limit: int = Field(default=50, ge=1, le=1000)


class AdLibrarySearchResponse(BaseModel):
    success: bool = True
    total: int
    ads: list[dict[str, Any]] = Field(default_factory=list)
    partial: bool = False
    error: str | None = None


class ApiStatusResponse(BaseModel):
    success: bool
    category: str | None = None
    message: str | None = None
    suggestion: str | None = None
    recovered: bool = False


# ── Job run ──
class JobRunOut(BaseModel):
    id: int
    tenant_id: int | None = None
    job_name: str
    task_type: str
    schedule_type: str | None = None
    status: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    ads_processed: int = 0
    errors_count: int = 0
    metadata: dict | None = Field(default=None, validation_alias="run_metadata")
    model_config = ConfigDict(from_attributes=True)
