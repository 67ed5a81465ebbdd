"""
SQLAlchemy ORM models for tenants, social accounts and synced analytics.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(128), unique=True, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_demo = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    accounts = relationship("SocialAccount", back_populates="tenant")


class SocialAccount(Base):
    __tablename__ = "social_accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "external_account_id", name="uq_social_accounts_identity"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    platform = Column(String(32), nullable=False)
    external_account_id = Column(String(256), nullable=False)
    account_name = Column(String(255))
    auth_status = Column(String(16), nullable=False, default="pending")
    token_encrypted = Column(Text)
    refresh_token_encrypted = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    last_sync_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    tenant = relationship("Tenant", back_populates="accounts")


Index("idx_social_accounts_expiry", SocialAccount.auth_status, SocialAccount.token_expires_at)


class SocialDailyMetric(Base):
    __tablename__ = "social_daily_metrics"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "social_account_id", "date", name="uq_social_daily_metrics"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    social_account_id = Column(
        UUID(as_uuid=True), ForeignKey("social_accounts.id", ondelete="CASCADE"), nullable=False
    )
    platform = Column(String(32), nullable=False)
    date = Column(Date, nullable=False)
    followers = Column(Integer, nullable=False, default=0)
    impressions = Column(Integer, nullable=False, default=0)
    reach = Column(Integer, nullable=False, default=0)
    engagements = Column(Integer, nullable=False, default=0)
    likes = Column(Integer, nullable=False, default=0)
    comments = Column(Integer, nullable=False, default=0)
    shares = Column(Integer, nullable=False, default=0)
    saves = Column(Integer, nullable=False, default=0)
    views = Column(Integer, nullable=False, default=0)
    watch_time = Column(Integer, nullable=False, default=0)
    posts_count = Column(Integer, nullable=False, default=0)
    raw_json = Column(JSONB)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class SocialPost(Base):
    __tablename__ = "social_posts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "social_account_id", "external_post_id", name="uq_social_posts"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    social_account_id = Column(
        UUID(as_uuid=True), ForeignKey("social_accounts.id", ondelete="CASCADE"), nullable=False
    )
    platform = Column(String(32), nullable=False)
    external_post_id = Column(String(256), nullable=False)
    posted_at = Column(DateTime(timezone=True))
    url = Column(Text)
    caption = Column(Text)
    media_type = Column(String(32))
    thumbnail_url = Column(Text)
    media_url = Column(Text)
    metrics = Column(JSONB, default=dict)
    raw_json = Column(JSONB)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AdCampaignMetricDaily(Base):
    __tablename__ = "ad_campaign_metrics_daily"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "platform", "social_account_id", "external_campaign_id", "date",
            name="uq_ad_campaign_metrics_daily",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    social_account_id = Column(
        UUID(as_uuid=True), ForeignKey("social_accounts.id", ondelete="CASCADE"), nullable=False
    )
    platform = Column(String(32), nullable=False)
    external_campaign_id = Column(String(256), nullable=False)
    campaign_name = Column(Text)
    date = Column(Date, nullable=False)
    impressions = Column(Integer, nullable=False, default=0)
    reach = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    spend = Column(Numeric(14, 2), nullable=False, default=0)
    ctr = Column(Numeric(10, 4), nullable=False, default=0)
    cpc = Column(Numeric(12, 4), nullable=False, default=0)
    cpm = Column(Numeric(12, 4), nullable=False, default=0)
    conversions = Column(Integer, nullable=False, default=0)
    results = Column(Integer, nullable=False, default=0)
    raw_json = Column(JSONB)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    social_account_id = Column(UUID(as_uuid=True), ForeignKey("social_accounts.id", ondelete="SET NULL"))
    platform = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="running")
    started_at = Column(DateTime(timezone=True), default=_utcnow)
    finished_at = Column(DateTime(timezone=True))
    rows_upserted = Column(Integer, nullable=False, default=0)
    error_message = Column(Text)


Index("idx_sync_logs_tenant_started", SyncLog.tenant_id, SyncLog.started_at)
