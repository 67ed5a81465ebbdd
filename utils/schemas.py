"""
Pydantic schemas for the token lifecycle & sync core.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field, field_validator


# ═══════════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════════


class Platform(str, Enum):
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    LINKEDIN = "linkedin"
    TIKTOK = "tiktok"
    YOUTUBE = "youtube"
    TWITTER = "twitter"
    META_ADS = "meta_ads"
    LINKEDIN_ADS = "linkedin_ads"

    @property
    def is_ads(self) -> bool:
        return self in (Platform.META_ADS, Platform.LINKEDIN_ADS)


class AuthStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class RefreshStatus(str, Enum):
    REFRESHED = "refreshed"
    SKIPPED = "skipped"
    FAILED = "failed"


class PairStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


# ═══════════════════════════════════════════════════════════════════════════════
# Numeric coercion
# ═══════════════════════════════════════════════════════════════════════════════


def coerce_count(value: Any) -> int:
    """Turn an upstream counter into a non-negative int (missing → 0)."""
    amount = coerce_amount(value)
    return int(round(amount))


def coerce_amount(value: Any) -> float:
    """Turn an upstream amount into a non-negative float (missing → 0.0)."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


# ═══════════════════════════════════════════════════════════════════════════════
# Tenants & accounts
# ═══════════════════════════════════════════════════════════════════════════════


class TenantRecord(BaseModel):
    id: str
    name: str = ""
    slug: str = ""
    is_active: bool = True
    is_demo: bool = False


class AccountRecord(BaseModel):
    """A stored SocialAccount.  Token fields hold vault payloads, never plaintext."""

    id: Optional[str] = None
    tenant_id: str
    platform: Platform
    external_account_id: str
    display_name: str = ""
    auth_status: AuthStatus = AuthStatus.PENDING
    token_encrypted: Optional[str] = Field(None, repr=False)
    refresh_token_encrypted: Optional[str] = Field(None, repr=False)
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


class ConnectorAccount(BaseModel):
    """The view of an account handed to a connector, with decrypted tokens."""

    account_id: Optional[str] = None
    tenant_id: str
    platform: Platform
    external_account_id: str
    access_token: Optional[str] = Field(None, repr=False)
    refresh_token: Optional[str] = Field(None, repr=False)
    token_expires_at: Optional[datetime] = None


class TokenGrant(BaseModel):
    """Result of a token refresh.  ``refresh_token`` is None when the platform omits it."""

    access_token: str = Field(..., repr=False)
    refresh_token: Optional[str] = Field(None, repr=False)
    expires_at: Optional[datetime] = None

    @classmethod
    def from_expires_in(
        cls,
        access_token: str,
        expires_in: Any,
        refresh_token: Optional[str] = None,
    ) -> "TokenGrant":
        seconds = coerce_count(expires_in)
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=seconds) if seconds else None
        )
        return cls(
            access_token=access_token,
            refresh_token=refresh_token or None,
            expires_at=expires_at,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Sync payloads
# ═══════════════════════════════════════════════════════════════════════════════


class DateRange(BaseModel):
    start: date
    end: date

    @classmethod
    def trailing(cls, days: int, today: Optional[date] = None) -> "DateRange":
        """Inclusive window of ``days`` days ending ``today`` (UTC)."""
        end = today or datetime.now(timezone.utc).date()
        return cls(start=end - timedelta(days=max(days, 1) - 1), end=end)

    def iter_days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


class DailyMetricRow(BaseModel):
    date: date
    followers: int = 0
    impressions: int = 0
    reach: int = 0
    engagements: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    saves: int = 0
    views: int = 0
    watch_time: int = 0
    posts_count: int = 0
    raw_json: Optional[Dict[str, Any]] = None

    @field_validator(
        "followers", "impressions", "reach", "engagements", "likes", "comments",
        "shares", "saves", "views", "watch_time", "posts_count",
        mode="before",
    )
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        return coerce_count(value)


class PostRow(BaseModel):
    external_post_id: str
    posted_at: Optional[datetime] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    media_type: Optional[str] = None
    thumbnail_url: Optional[str] = None
    media_url: Optional[str] = None
    metrics: Dict[str, int] = Field(default_factory=dict)
    raw_json: Optional[Dict[str, Any]] = None

    @field_validator("metrics", mode="before")
    @classmethod
    def _clean_metrics(cls, value: Any) -> Dict[str, int]:
        if not isinstance(value, dict):
            return {}
        return {str(k): coerce_count(v) for k, v in value.items()}


class CampaignMetricRow(BaseModel):
    external_campaign_id: str
    date: date
    campaign_name: Optional[str] = None
    impressions: int = 0
    reach: int = 0
    clicks: int = 0
    spend: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    conversions: int = 0
    results: int = 0
    raw_json: Optional[Dict[str, Any]] = None

    @field_validator("impressions", "reach", "clicks", "conversions", "results", mode="before")
    @classmethod
    def _counts(cls, value: Any) -> int:
        return coerce_count(value)

    @field_validator("spend", "ctr", "cpc", "cpm", mode="before")
    @classmethod
    def _amounts(cls, value: Any) -> float:
        return coerce_amount(value)


class SyncResult(BaseModel):
    daily_metrics: List[DailyMetricRow] = Field(default_factory=list)
    posts: List[PostRow] = Field(default_factory=list)
    campaign_metrics: List[CampaignMetricRow] = Field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.daily_metrics) + len(self.posts) + len(self.campaign_metrics)


# ═══════════════════════════════════════════════════════════════════════════════
# Job reports
# ═══════════════════════════════════════════════════════════════════════════════


class RefreshOutcome(BaseModel):
    account_id: Optional[str] = None
    tenant_id: str
    platform: Platform
    status: RefreshStatus
    reason: Optional[str] = None


class RefreshReport(BaseModel):
    outcomes: List[RefreshOutcome] = Field(default_factory=list)

    def _count(self, status: RefreshStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def refreshed(self) -> int:
        return self._count(RefreshStatus.REFRESHED)

    @property
    def failed(self) -> int:
        return self._count(RefreshStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(RefreshStatus.SKIPPED)


class PairOutcome(BaseModel):
    tenant_id: str
    account_id: Optional[str] = None
    platform: Platform
    status: PairStatus
    rows_upserted: int = 0
    error: Optional[str] = None


class SyncReport(BaseModel):
    scope: str
    platform: str = "all"
    skipped: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    outcomes: List[PairOutcome] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status == PairStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return sum(
            1 for o in self.outcomes
            if o.status in (PairStatus.FAILED, PairStatus.TIMEOUT)
        )

    @property
    def cancelled(self) -> int:
        return sum(1 for o in self.outcomes if o.status == PairStatus.CANCELLED)
