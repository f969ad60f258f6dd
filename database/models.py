"""AdHarvest DB 모델 - 6개 핵심 테이블. (SQLite/PostgreSQL 호환)"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


# ─────────────────────────────────────────────
# 1. 테넌트 (격리 경계)
# ─────────────────────────────────────────────
class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    advertisers = relationship("Advertiser", back_populates="tenant")


# ─────────────────────────────────────────────
# 2. 광고주 (import 중 최초 발견 시 생성, 파이프라인은 삭제하지 않음)
# ─────────────────────────────────────────────
class Advertiser(Base):
    __tablename__ = "advertisers"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    name = Column(String(300), nullable=False)
    external_page_id = Column(String(100), nullable=True)  # Facebook page id
    total_ads = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    tenant = relationship("Tenant", back_populates="advertisers")
    ads = relationship("Ad", back_populates="advertiser")

    __table_args__ = (
        Index("ix_advertisers_tenant_page", "tenant_id", "external_page_id"),
        Index("ix_advertisers_tenant_name", "tenant_id", "name"),
    )


# ─────────────────────────────────────────────
# 3. 광고 (자연키: tenant_id + external_id)
# ─────────────────────────────────────────────
class Ad(Base):
    __tablename__ = "ads"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    advertiser_id = Column(Integer, ForeignKey("advertisers.id"), nullable=True)
    external_id = Column(String(100), nullable=False)  # ad_library_id
    advertiser_name = Column(String(300), nullable=False)
    primary_text = Column(Text)
    headline = Column(Text)
    call_to_action = Column(String(100))
    media_url = Column(Text)
    media_type = Column(String(20), default="image", nullable=False)  # image/video/carousel
    start_date = Column(DateTime)
    end_date = Column(DateTime)
    countries = Column(JSON, default=list)  # ["BR", "US"]
    status = Column(String(20), default="active", nullable=False)  # active/inactive
    platform = Column(String(50), default="facebook")
    snapshot_url = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    advertiser = relationship("Advertiser", back_populates="ads")

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_id", name="uq_ads_tenant_external"),
        Index("ix_ads_advertiser", "advertiser_id"),
        Index("ix_ads_status", "tenant_id", "status"),
    )


# ─────────────────────────────────────────────
# 4. 수집/적재 잡 실행 이력
# ─────────────────────────────────────────────
class HarvestJobRun(Base):
    __tablename__ = "harvest_job_runs"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=True)  # health_check는 전역
    job_name = Column(String(300), nullable=False)
    task_type = Column(String(50), nullable=False)  # scrape/api_import/webhook_import/manual_import/health_check
    schedule_type = Column(String(20), default="manual")  # manual/scheduled/external
    status = Column(String(20), default="pending", nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)
    ads_processed = Column(Integer, default=0)
    errors_count = Column(Integer, default=0)
    run_metadata = Column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_job_runs_tenant_started", "tenant_id", "started_at"),
        Index("ix_job_runs_task_type", "task_type", "started_at"),
    )


# ─────────────────────────────────────────────
# 5. 정기 수집 스케줄
# ─────────────────────────────────────────────
class HarvestSchedule(Base):
    __tablename__ = "harvest_schedules"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    name = Column(String(200), nullable=False)
    mode = Column(String(20), default="api")  # api / browser
    search_terms = Column(String(500))
    page_ids = Column(JSON, default=list)
    countries = Column(JSON, default=lambda: ["US"])
    active_status = Column(String(20), default="ALL")  # ALL / ACTIVE / INACTIVE
    import_limit = Column(Integer, default=50)
    is_active = Column(Boolean, default=True)
    last_run_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)


# ─────────────────────────────────────────────
# 6. 알림 (API 복구 알림 fan-out)
# ─────────────────────────────────────────────
class Alert(Base):
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id"), nullable=False)
    title = Column(String(300), nullable=False)
    message = Column(Text)
    alert_type = Column(String(50), default="system")
    severity = Column(String(20), default="info")
    is_read = Column(Boolean, default=False)
    alert_metadata = Column("metadata", JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)
