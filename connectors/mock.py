"""
MockConnector — deterministic synthetic data, no network.

Serves demo tenants and ``DEMO_MODE``.  Every value is drawn from a PRNG
seeded with (tenant, platform, external id, date), so repeated syncs of the
same window produce identical rows and upserts stay no-ops.
"""

from __future__ import annotations

import hashlib
import random
import secrets
from datetime import date, datetime, time, timedelta, timezone
from typing import List

from connectors.ads import campaigns_to_daily
from connectors.base import BaseConnector
from utils.schemas import (
    CampaignMetricRow,
    ConnectorAccount,
    DailyMetricRow,
    DateRange,
    Platform,
    PostRow,
    SyncResult,
    TokenGrant,
)

MOCK_POST_COUNT = 8
MOCK_CAMPAIGN_COUNT = 2
MOCK_TOKEN_LIFETIME = timedelta(days=60)
_FOLLOWER_EPOCH = date(2024, 1, 1)


def _rng(*parts: object) -> random.Random:
    seed = hashlib.sha256(":".join(str(p) for p in parts).encode("utf-8")).hexdigest()
    return random.Random(int(seed[:16], 16))


class MockConnector(BaseConnector):
    """Stand-in for any platform; never touches the network."""

    def __init__(self, platform: Platform, **kwargs):
        super().__init__(**kwargs)
        self._platform = platform

    @property
    def platform(self) -> Platform:
        return self._platform

    @property
    def display_name(self) -> str:
        return f"Mock {self._platform.value}"

    @property
    def uses_refresh_token(self) -> bool:
        return False

    def is_configured(self) -> bool:
        return True

    def _followers(self, account: ConnectorAccount, day: date) -> int:
        # Linear in the day number, so any window is non-decreasing.
        base_rng = _rng(account.tenant_id, self._platform.value, account.external_account_id)
        base = base_rng.randint(1200, 8000)
        slope = base_rng.randint(0, 40)
        return base + slope * max((day - _FOLLOWER_EPOCH).days, 0)

    def _day_rng(self, account: ConnectorAccount, day: date) -> random.Random:
        return _rng(account.tenant_id, self._platform.value, account.external_account_id, day.isoformat())

    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        if self._platform.is_ads:
            return campaigns_to_daily(await self.fetch_campaign_metrics(account, date_range))
        rows = []
        for day in date_range.iter_days():
            rng = self._day_rng(account, day)
            rows.append(
                DailyMetricRow(
                    date=day,
                    followers=self._followers(account, day),
                    impressions=rng.randint(500, 9000),
                    reach=rng.randint(400, 7000),
                    engagements=rng.randint(50, 900),
                    likes=rng.randint(20, 600),
                    comments=rng.randint(2, 120),
                    shares=rng.randint(1, 80),
                    saves=rng.randint(1, 50),
                    views=rng.randint(100, 10000),
                    watch_time=rng.randint(200, 5000),
                    posts_count=rng.randint(0, 4),
                    raw_json={"mock": True},
                )
            )
        return rows

    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        if self._platform.is_ads:
            return []
        span = (date_range.end - date_range.start).days
        posts = []
        for index in range(1, MOCK_POST_COUNT + 1):
            rng = _rng(account.tenant_id, self._platform.value, account.external_account_id,
                       date_range.end.isoformat(), index)
            day = date_range.end - timedelta(days=rng.randint(0, span))
            posts.append(
                PostRow(
                    external_post_id=f"mock-{self._platform.value}-{index}",
                    posted_at=datetime.combine(day, time(12, 0), tzinfo=timezone.utc),
                    url="https://example.com",
                    caption="Campaign highlight: driving real results for our clients.",
                    media_type="image",
                    metrics={
                        "impressions": rng.randint(400, 9000),
                        "reach": rng.randint(300, 7000),
                        "engagements": rng.randint(30, 900),
                        "likes": rng.randint(20, 500),
                        "comments": rng.randint(2, 120),
                        "shares": rng.randint(1, 80),
                        "saves": rng.randint(1, 50),
                        "views": rng.randint(100, 6000),
                    },
                    raw_json={"mock": True},
                )
            )
        return posts

    async def fetch_campaign_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[CampaignMetricRow]:
        rows = []
        for day in date_range.iter_days():
            for index in range(1, MOCK_CAMPAIGN_COUNT + 1):
                rng = _rng(account.tenant_id, self._platform.value,
                           account.external_account_id, day.isoformat(), "campaign", index)
                impressions = rng.randint(1000, 20000)
                clicks = rng.randint(10, impressions // 50)
                spend = round(rng.uniform(5, 250), 2)
                conversions = rng.randint(0, clicks // 5)
                rows.append(
                    CampaignMetricRow(
                        external_campaign_id=f"mock-campaign-{index}",
                        date=day,
                        campaign_name=f"Mock campaign {index}",
                        impressions=impressions,
                        reach=rng.randint(impressions // 2, impressions),
                        clicks=clicks,
                        spend=spend,
                        ctr=round(clicks / impressions * 100, 4),
                        cpc=round(spend / clicks, 4),
                        cpm=round(spend / impressions * 1000, 4),
                        conversions=conversions,
                        results=conversions,
                        raw_json={"mock": True},
                    )
                )
        return rows

    async def sync(self, account: ConnectorAccount, date_range: DateRange) -> SyncResult:
        if not self._platform.is_ads:
            return await super().sync(account, date_range)
        campaigns = await self.fetch_campaign_metrics(account, date_range)
        return SyncResult(
            daily_metrics=campaigns_to_daily(campaigns),
            campaign_metrics=campaigns,
        )

    async def refresh_access_token(self, account: ConnectorAccount) -> TokenGrant:
        return TokenGrant(
            access_token=f"mock-{secrets.token_hex(16)}",
            expires_at=datetime.now(timezone.utc) + MOCK_TOKEN_LIFETIME,
        )
