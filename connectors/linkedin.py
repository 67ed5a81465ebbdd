"""
LinkedInConnector — organization page analytics via the Pages Data
Portability (DMA) endpoints.

Endpoints used:
  • /dmaOrganizationalPageFollows          (current follower total)
  • /dmaOrganizationalPageEdgeAnalytics    (daily follower gains)
  • /dmaOrganizationalPageContentAnalytics (daily impressions, clicks, …)
  • /dmaFeedContentsExternal + /dmaPosts   (recent posts)
  • /dmaSocialMetadata                     (per-post reaction/comment counts)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List
from urllib.parse import quote

from config.settings import config
from connectors.base import BaseConnector
from utils.schemas import (
    ConnectorAccount,
    DailyMetricRow,
    DateRange,
    Platform,
    PostRow,
    TokenGrant,
    coerce_amount,
)

logger = logging.getLogger(__name__)

_LI_TOKEN_URL = "https://www.linkedin.com/oauth/v2/accessToken"
_LI_REST = "https://api.linkedin.com/rest"

MAX_POSTS_SYNC = 20
_CONTENT_METRICS = "List(IMPRESSIONS,UNIQUE_IMPRESSIONS,CLICKS,COMMENTS,REACTIONS,REPOSTS)"


def normalize_organization_id(value: str) -> str:
    return value.replace("urn:li:organization:", "").replace("urn:li:organizationalPage:", "")


def linkedin_version() -> str:
    """LinkedIn-Version header value, normalised to YYYYMM."""
    digits = "".join(ch for ch in config.linkedin_version if ch.isdigit())
    return digits[:6] if len(digits) >= 6 else (digits or "202501")


def linkedin_headers(access_token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "X-Restli-Protocol-Version": "2.0.0",
        "LinkedIn-Version": linkedin_version(),
    }


def _range_ms(date_range: DateRange) -> tuple[int, int]:
    start = datetime.combine(date_range.start, time.min, tzinfo=timezone.utc)
    end = datetime.combine(date_range.end, time.max, tzinfo=timezone.utc)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)


def _day_from_ms(value: Any) -> date | None:
    if not value:
        return None
    return datetime.fromtimestamp(coerce_amount(value) / 1000, tz=timezone.utc).date()


def _total_count(value: Dict[str, Any]) -> float:
    total = value.get("totalCount") or {}
    if "long" in total:
        return coerce_amount(total["long"])
    if "bigDecimal" in total:
        return coerce_amount(total["bigDecimal"])
    content = (value.get("typeSpecificValue") or {}).get("contentAnalyticsValue") or {}
    organic = (content.get("organicValue") or {}).get("long")
    sponsored = (content.get("sponsoredValue") or {}).get("long")
    return coerce_amount(organic) + coerce_amount(sponsored)


def detect_media_type(content: Dict[str, Any] | None) -> str:
    if not content:
        return "text"
    if content.get("carousel") or content.get("multiImage"):
        return "carousel"
    if content.get("article"):
        return "link"
    media = content.get("media")
    if isinstance(media, dict):
        if media.get("video"):
            return "video"
        if media.get("document"):
            return "link"
        return "image"
    return "text"


class LinkedInConnector(BaseConnector):
    """DMA connector for LinkedIn organization pages."""

    @property
    def platform(self) -> Platform:
        return Platform.LINKEDIN

    @property
    def display_name(self) -> str:
        return "LinkedIn"

    async def _get(self, account: ConnectorAccount, url: str, endpoint: str) -> Dict[str, Any]:
        token = self._require_access_token(account)
        body = await self._request(
            account, "GET", url, endpoint=endpoint, headers=linkedin_headers(token)
        )
        return body if isinstance(body, dict) else {}

    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        org_id = normalize_organization_id(account.external_account_id)
        page_urn = quote(f"urn:li:organizationalPage:{org_id}", safe="")
        start_ms, end_ms = _range_ms(date_range)

        follows = await self._get(
            account,
            f"{_LI_REST}/dmaOrganizationalPageFollows?q=followee&followee={page_urn}"
            f"&edgeType=MEMBER_FOLLOWS_ORGANIZATIONAL_PAGE&maxPaginationCount=1",
            "follower_count",
        )
        total_followers = int(coerce_amount((follows.get("paging") or {}).get("total")))

        gains_body = await self._get(
            account,
            f"{_LI_REST}/dmaOrganizationalPageEdgeAnalytics?q=trend&organizationalPage={page_urn}"
            f"&analyticsType=FOLLOWER&timeIntervals=(timeRange:(start:{start_ms},end:{end_ms}),"
            f"timeGranularityType:DAY)",
            "follower_trend",
        )
        gains: Dict[date, float] = {}
        for element in gains_body.get("elements") or []:
            day = _day_from_ms(((element.get("timeIntervals") or {}).get("timeRange") or {}).get("start"))
            if day is None:
                continue
            edge = ((element.get("value") or {}).get("typeSpecificValue") or {}).get(
                "followerEdgeAnalyticsValue"
            ) or {}
            gains[day] = coerce_amount(edge.get("organicValue")) + coerce_amount(edge.get("sponsoredValue"))

        content_body = await self._get(
            account,
            f"{_LI_REST}/dmaOrganizationalPageContentAnalytics?q=trend&sourceEntity={page_urn}"
            f"&metricTypes={_CONTENT_METRICS}&timeIntervals=(timeRange:(start:{start_ms},"
            f"end:{end_ms}),timeGranularityType:DAY)",
            "content_trend",
        )
        content: Dict[date, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        for element in content_body.get("elements") or []:
            metric = element.get("metric") or {}
            day = _day_from_ms(((metric.get("timeIntervals") or {}).get("timeRange") or {}).get("start"))
            if day is None:
                continue
            content[day][element.get("type", "")] += _total_count(metric.get("value") or {})

        # Walk backwards from today's total so each day carries its follower count.
        followers_by_day: Dict[date, float] = {}
        running = float(total_followers)
        for day in sorted(date_range.iter_days(), reverse=True):
            followers_by_day[day] = max(running, 0)
            running -= gains.get(day, 0)

        rows = []
        for day in date_range.iter_days():
            if day not in content and day not in gains:
                continue
            values = content.get(day, {})
            reactions, comments = values.get("REACTIONS", 0), values.get("COMMENTS", 0)
            reposts, clicks = values.get("REPOSTS", 0), values.get("CLICKS", 0)
            rows.append(
                DailyMetricRow(
                    date=day,
                    followers=followers_by_day.get(day, total_followers),
                    impressions=values.get("IMPRESSIONS", 0),
                    reach=values.get("UNIQUE_IMPRESSIONS", 0),
                    engagements=reactions + comments + reposts + clicks,
                    likes=reactions,
                    comments=comments,
                    shares=reposts,
                    views=values.get("IMPRESSIONS", 0),
                    raw_json={"follower_gain": gains.get(day, 0), **dict(values)},
                )
            )
        return rows

    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        org_id = normalize_organization_id(account.external_account_id)
        org_urn = quote(f"urn:li:organization:{org_id}", safe="")
        feed = await self._get(
            account,
            f"{_LI_REST}/dmaFeedContentsExternal?q=postsByAuthor&author=List({org_urn})"
            f"&maxPaginationCount={MAX_POSTS_SYNC}",
            "feed_contents",
        )
        urns = [e.get("id") or e.get("contentUrn") for e in feed.get("elements") or []]
        urns = [u for u in urns if u][:MAX_POSTS_SYNC]

        posts = []
        for urn in urns:
            encoded = quote(urn, safe="")
            post = await self._get(account, f"{_LI_REST}/dmaPosts/{encoded}?viewContext=AUTHOR", "post_detail")
            published_ms = post.get("publishedAt") or (post.get("created") or {}).get("time")
            posted_at = (
                datetime.fromtimestamp(coerce_amount(published_ms) / 1000, tz=timezone.utc)
                if published_ms else None
            )
            if posted_at and not date_range.contains(posted_at.date()):
                continue
            social = await self._get(account, f"{_LI_REST}/dmaSocialMetadata/{encoded}", "social_metadata")
            posts.append(
                PostRow(
                    external_post_id=urn,
                    posted_at=posted_at,
                    url=f"https://www.linkedin.com/feed/update/{urn}",
                    caption=post.get("commentary"),
                    media_type=detect_media_type(post.get("content")),
                    metrics={
                        "likes": (social.get("reactionSummary") or {}).get("totalCount"),
                        "comments": (social.get("commentSummary") or {}).get("totalCount"),
                        "shares": social.get("shareCount"),
                    },
                    raw_json=post,
                )
            )
        return posts

    async def refresh_access_token(self, account: ConnectorAccount) -> TokenGrant:
        """Exchange the refresh token at LinkedIn's OAuth endpoint."""
        refresh_token = self._require_refresh_token(account)
        data = await self._request(
            account,
            "POST",
            _LI_TOKEN_URL,
            endpoint="token_refresh",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": config.linkedin_client_id,
                "client_secret": config.linkedin_client_secret,
            },
        )
        return self._parse_grant(data)
