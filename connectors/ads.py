"""
Ads connectors — Meta Marketing API and LinkedIn Marketing API.

Both produce per-campaign daily rows; the account-level daily row is the sum
of its campaigns for that day.  Ads accounts have no organic posts.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import date
from typing import Any, Dict, List
from urllib.parse import quote

from connectors.linkedin import LinkedInConnector, linkedin_headers
from connectors.meta import _MetaConnector
from utils.schemas import (
    CampaignMetricRow,
    ConnectorAccount,
    DailyMetricRow,
    DateRange,
    Platform,
    PostRow,
    SyncResult,
    coerce_amount,
)

logger = logging.getLogger(__name__)

_LI_ADS_API = "https://api.linkedin.com/v2"

# Meta action types that count as conversions (matched by substring).
CONVERSION_ACTIONS = [
    "offsite_conversion",
    "purchase",
    "omni_purchase",
    "lead",
    "app_install",
    "complete_registration",
]


def normalize_ad_account_id(value: str) -> str:
    return value if value.startswith("act_") else f"act_{value}"


def normalize_sponsored_account(value: str) -> str:
    prefix = "urn:li:sponsoredAccount:"
    return value if value.startswith(prefix) else f"{prefix}{value}"


def sum_action_values(actions: Any, conversions_only: bool = False) -> float:
    if not isinstance(actions, list):
        return 0.0
    total = 0.0
    for action in actions:
        if not isinstance(action, dict):
            continue
        action_type = str(action.get("action_type", ""))
        if conversions_only and not any(label in action_type for label in CONVERSION_ACTIONS):
            continue
        total += coerce_amount(action.get("value"))
    return total


def campaigns_to_daily(rows: List[CampaignMetricRow]) -> List[DailyMetricRow]:
    """Sum campaign rows per date into account-level daily rows."""
    per_day: Dict[date, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
    for row in rows:
        bucket = per_day[row.date]
        bucket["impressions"] += row.impressions
        bucket["reach"] += row.reach
        bucket["clicks"] += row.clicks
        bucket["spend"] += row.spend
        bucket["conversions"] += row.conversions
        bucket["campaigns"] += 1
    return [
        DailyMetricRow(
            date=day,
            impressions=v["impressions"],
            reach=v["reach"],
            engagements=v["clicks"],
            views=v["impressions"],
            raw_json={k: round(val, 2) for k, val in v.items()},
        )
        for day, v in sorted(per_day.items())
    ]


class _AdsMixin:
    """Daily metrics and sync built on ``fetch_campaign_metrics``."""

    async def fetch_campaign_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[CampaignMetricRow]:
        raise NotImplementedError

    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        return campaigns_to_daily(await self.fetch_campaign_metrics(account, date_range))

    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        return []

    async def sync(self, account: ConnectorAccount, date_range: DateRange) -> SyncResult:
        campaigns = await self.fetch_campaign_metrics(account, date_range)
        return SyncResult(
            daily_metrics=campaigns_to_daily(campaigns),
            posts=[],
            campaign_metrics=campaigns,
        )


class MetaAdsConnector(_AdsMixin, _MetaConnector):
    """Campaign-level daily insights for a Meta ad account."""

    @property
    def platform(self) -> Platform:
        return Platform.META_ADS

    @property
    def display_name(self) -> str:
        return "Meta Ads"

    async def fetch_campaign_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[CampaignMetricRow]:
        ad_account = normalize_ad_account_id(account.external_account_id)
        body = await self._graph(
            account,
            f"{ad_account}/insights",
            {
                "level": "campaign",
                "time_increment": 1,
                "time_range": json.dumps(
                    {"since": date_range.start.isoformat(), "until": date_range.end.isoformat()}
                ),
                "fields": "campaign_id,campaign_name,impressions,reach,clicks,spend,ctr,cpc,cpm,actions",
            },
            "meta_ads_insights",
        )
        rows = []
        for raw in body.get("data") or []:
            try:
                day = date.fromisoformat(str(raw.get("date_start")))
            except ValueError:
                continue
            if not raw.get("campaign_id"):
                continue
            actions = raw.get("actions")
            rows.append(
                CampaignMetricRow(
                    external_campaign_id=str(raw["campaign_id"]),
                    date=day,
                    campaign_name=raw.get("campaign_name"),
                    impressions=raw.get("impressions"),
                    reach=raw.get("reach"),
                    clicks=raw.get("clicks"),
                    spend=raw.get("spend"),
                    ctr=raw.get("ctr"),
                    cpc=raw.get("cpc"),
                    cpm=raw.get("cpm"),
                    conversions=sum_action_values(actions, conversions_only=True),
                    results=sum_action_values(actions),
                    raw_json=raw,
                )
            )
        return rows


class LinkedInAdsConnector(_AdsMixin, LinkedInConnector):
    """Campaign-pivoted daily analytics for a LinkedIn sponsored account."""

    @property
    def platform(self) -> Platform:
        return Platform.LINKEDIN_ADS

    @property
    def display_name(self) -> str:
        return "LinkedIn Ads"

    async def fetch_campaign_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[CampaignMetricRow]:
        account_urn = quote(normalize_sponsored_account(account.external_account_id), safe="")
        s, e = date_range.start, date_range.end
        date_param = (
            f"dateRange=(start:(year:{s.year},month:{s.month},day:{s.day}),"
            f"end:(year:{e.year},month:{e.month},day:{e.day}))"
        )
        token = self._require_access_token(account)
        body = await self._request(
            account,
            "GET",
            f"{_LI_ADS_API}/adAnalyticsV2?q=analytics&pivot=CAMPAIGN&timeGranularity=DAILY"
            f"&{date_param}&accounts=List({account_urn})",
            endpoint="linkedin_ads_analytics",
            headers=linkedin_headers(token),
        )
        body = body if isinstance(body, dict) else {}

        rows = []
        for element in body.get("elements") or []:
            start = (element.get("dateRange") or {}).get("start") or {}
            try:
                day = date(int(start["year"]), int(start["month"]), int(start["day"]))
            except (KeyError, TypeError, ValueError):
                continue
            pivots = element.get("pivotValues") or []
            if not pivots:
                continue
            impressions = coerce_amount(element.get("impressions"))
            clicks = coerce_amount(element.get("clicks"))
            spend = coerce_amount(element.get("costInLocalCurrency"))
            conversions = element.get("externalWebsiteConversions")
            rows.append(
                CampaignMetricRow(
                    external_campaign_id=str(pivots[0]),
                    date=day,
                    impressions=impressions,
                    reach=element.get("approximateUniqueImpressions"),
                    clicks=clicks,
                    spend=spend,
                    ctr=round(clicks / impressions * 100, 4) if impressions else 0,
                    cpc=round(spend / clicks, 4) if clicks else 0,
                    cpm=round(spend / impressions * 1000, 4) if impressions else 0,
                    conversions=conversions,
                    results=conversions,
                    raw_json=element,
                )
            )
        return rows
