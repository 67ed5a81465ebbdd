"""
Meta connectors — Instagram business accounts and Facebook pages.

Both talk to the Graph API with a long-lived page/user token.  Meta tokens
are not refreshed with a refresh token; instead the token is validated
through ``debug_token`` and its reported expiry is recorded.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional

from config.settings import config
from connectors.base import BaseConnector
from utils.errors import AuthError, ConfigError, TransientError
from utils.schemas import (
    ConnectorAccount,
    DailyMetricRow,
    DateRange,
    Platform,
    PostRow,
    TokenGrant,
    coerce_amount,
    coerce_count,
)

logger = logging.getLogger(__name__)

_IG_TIME_SERIES_METRICS = ["reach"]
_IG_TOTAL_VALUE_METRICS = [
    "accounts_engaged", "total_interactions", "likes", "comments",
    "shares", "saves", "views",
]
_FB_INSIGHT_METRICS = [
    "page_impressions_unique", "page_impressions", "page_post_engagements",
    "page_video_views",
]


def _range_epoch(date_range: DateRange) -> Dict[str, int]:
    since = datetime.combine(date_range.start, time.min, tzinfo=timezone.utc)
    until = datetime.combine(date_range.end, time.max, tzinfo=timezone.utc)
    return {"since": int(since.timestamp()), "until": int(until.timestamp())}


def _parse_time(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00").replace("+0000", "+00:00"))
    except ValueError:
        return None


def _value_of(raw: Any) -> float:
    """Insight values are either numbers or breakdown dicts to be summed."""
    if isinstance(raw, dict):
        return sum(coerce_amount(v) for v in raw.values())
    return coerce_amount(raw)


def map_insights_to_daily(
    insights: List[Dict[str, Any]],
    date_range: DateRange,
    followers: int = 0,
) -> List[DailyMetricRow]:
    """
    Fold Graph insights into one row per day.

    Time-series metrics land on their ``end_time`` date.  ``total_value``
    metrics only have a period total; it is spread across days in proportion
    to daily reach, or assigned to the last day when there is no reach.
    """
    daily: Dict[date, Dict[str, float]] = defaultdict(dict)
    totals: Dict[str, float] = {}

    for metric in insights:
        name = metric.get("name", "")
        values = metric.get("values") or []
        if not values and metric.get("total_value"):
            totals[name] = _value_of(metric["total_value"].get("value"))
            continue
        for value in values:
            when = _parse_time(value.get("end_time"))
            day = when.date() if when else date_range.end
            if date_range.contains(day):
                daily[day][name] = _value_of(value.get("value"))

    if totals:
        total_reach = sum(v.get("reach", v.get("page_impressions_unique", 0)) for v in daily.values())
        if total_reach > 0:
            for values in daily.values():
                share = values.get("reach", values.get("page_impressions_unique", 0)) / total_reach
                for name, total in totals.items():
                    values[name] = round(total * share)
        else:
            daily[date_range.end].update(totals)

    rows = []
    for day in sorted(daily):
        v = daily[day]
        likes, comments = v.get("likes", 0), v.get("comments", 0)
        shares, saves = v.get("shares", 0), v.get("saves", 0)
        impressions = v.get("page_impressions", v.get("impressions", 0))
        manual = likes + comments + shares + saves
        engagements = v.get("page_post_engagements") or manual or v.get("total_interactions", 0)
        views = v.get("views") or v.get("page_video_views") or impressions
        rows.append(
            DailyMetricRow(
                date=day,
                followers=followers,
                impressions=impressions,
                reach=v.get("reach", v.get("page_impressions_unique", 0)),
                engagements=engagements,
                likes=likes,
                comments=comments,
                shares=shares,
                saves=saves,
                views=views,
                raw_json=dict(v),
            )
        )
    return rows


class _MetaConnector(BaseConnector):
    """Shared Graph API plumbing for Instagram and Facebook."""

    @property
    def uses_refresh_token(self) -> bool:
        return False

    @property
    def graph_url(self) -> str:
        return config.meta_graph_url

    async def _graph(
        self,
        account: ConnectorAccount,
        path: str,
        params: Dict[str, Any],
        endpoint: str,
    ) -> Dict[str, Any]:
        token = self._require_access_token(account)
        body = await self._request(
            account,
            "GET",
            f"{self.graph_url}/{path}",
            endpoint=endpoint,
            params={**params, "access_token": token},
        )
        return body if isinstance(body, dict) else {}

    async def refresh_access_token(self, account: ConnectorAccount) -> TokenGrant:
        """Validate the long-lived token; Meta page tokens are not rotated."""
        if not self.is_configured():
            raise ConfigError("META_APP_ID / META_APP_SECRET are not configured")
        token = self._require_access_token(account)
        body = await self._request(
            account,
            "GET",
            f"{self.graph_url}/debug_token",
            endpoint="debug_token",
            params={
                "input_token": token,
                "access_token": f"{config.meta_app_id}|{config.meta_app_secret}",
            },
        )
        data = body.get("data")
        if not isinstance(data, dict):
            raise TransientError(
                "Unexpected debug_token response from Meta", platform=self.platform.value
            )
        if data.get("is_valid") is not True:
            raise AuthError(
                "Meta token invalid - manual reconnection required",
                platform=self.platform.value,
            )
        expires = coerce_count(data.get("expires_at"))
        return TokenGrant(
            access_token=token,
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc) if expires else None,
        )


class InstagramConnector(_MetaConnector):
    """Instagram business account insights and media."""

    @property
    def platform(self) -> Platform:
        return Platform.INSTAGRAM

    @property
    def display_name(self) -> str:
        return "Instagram"

    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        info = await self._graph(
            account,
            account.external_account_id,
            {"fields": "followers_count,media_count,username"},
            "account_info",
        )
        window = _range_epoch(date_range)
        series = await self._graph(
            account,
            f"{account.external_account_id}/insights",
            {"metric": ",".join(_IG_TIME_SERIES_METRICS), "period": "day", **window},
            "insights",
        )
        totals = await self._graph(
            account,
            f"{account.external_account_id}/insights",
            {
                "metric": ",".join(_IG_TOTAL_VALUE_METRICS),
                "metric_type": "total_value",
                "period": "day",
                **window,
            },
            "insights_total",
        )
        insights = list(series.get("data") or []) + list(totals.get("data") or [])
        return map_insights_to_daily(insights, date_range, coerce_count(info.get("followers_count")))

    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        body = await self._graph(
            account,
            f"{account.external_account_id}/media",
            {
                "fields": "id,caption,media_type,media_url,thumbnail_url,permalink,"
                          "timestamp,like_count,comments_count",
                "limit": config.instagram_post_limit,
            },
            "media",
        )
        posts = []
        for item in body.get("data") or []:
            posted_at = _parse_time(item.get("timestamp"))
            if posted_at and not date_range.contains(posted_at.date()):
                continue
            posts.append(
                PostRow(
                    external_post_id=str(item.get("id", "")),
                    posted_at=posted_at,
                    url=item.get("permalink"),
                    caption=item.get("caption"),
                    media_type=(item.get("media_type") or "").lower() or None,
                    thumbnail_url=item.get("thumbnail_url"),
                    media_url=item.get("media_url"),
                    metrics={
                        "likes": item.get("like_count"),
                        "comments": item.get("comments_count"),
                    },
                    raw_json=item,
                )
            )
        return posts


class FacebookConnector(_MetaConnector):
    """Facebook page insights and posts."""

    @property
    def platform(self) -> Platform:
        return Platform.FACEBOOK

    @property
    def display_name(self) -> str:
        return "Facebook"

    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        info = await self._graph(
            account,
            account.external_account_id,
            {"fields": "fan_count,followers_count"},
            "page_info",
        )
        followers = coerce_count(info.get("followers_count") or info.get("fan_count"))
        body = await self._graph(
            account,
            f"{account.external_account_id}/insights",
            {"metric": ",".join(_FB_INSIGHT_METRICS), "period": "day", **_range_epoch(date_range)},
            "page_insights",
        )
        return map_insights_to_daily(body.get("data") or [], date_range, followers)

    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        body = await self._graph(
            account,
            f"{account.external_account_id}/posts",
            {
                "fields": "id,message,created_time,permalink_url,full_picture,"
                          "shares,reactions.summary(true),comments.summary(true)",
                "limit": config.facebook_post_limit,
                **_range_epoch(date_range),
            },
            "page_posts",
        )
        posts = []
        for item in body.get("data") or []:
            posts.append(
                PostRow(
                    external_post_id=str(item.get("id", "")),
                    posted_at=_parse_time(item.get("created_time")),
                    url=item.get("permalink_url"),
                    caption=item.get("message"),
                    media_type="image" if item.get("full_picture") else "text",
                    thumbnail_url=item.get("full_picture"),
                    media_url=item.get("full_picture"),
                    metrics={
                        "likes": ((item.get("reactions") or {}).get("summary") or {}).get("total_count"),
                        "comments": ((item.get("comments") or {}).get("summary") or {}).get("total_count"),
                        "shares": (item.get("shares") or {}).get("count"),
                    },
                    raw_json=item,
                )
            )
        return posts
