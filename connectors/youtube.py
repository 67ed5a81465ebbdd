"""
YouTubeConnector — YouTube Data API v3 + YouTube Analytics API v2.

Channel statistics give the current subscriber total; the Analytics report
gives daily views, watch time and interactions.  Google never rotates the
refresh token, so refreshed grants carry ``refresh_token=None`` and the
stored value is kept.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List

from config.settings import config
from connectors.base import BaseConnector
from utils.errors import AuthError
from utils.schemas import (
    ConnectorAccount,
    DailyMetricRow,
    DateRange,
    Platform,
    PostRow,
    TokenGrant,
    coerce_count,
)

logger = logging.getLogger(__name__)

_YT_API = "https://www.googleapis.com/youtube/v3"
_YT_ANALYTICS = "https://youtubeanalytics.googleapis.com/v2/reports"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_REPORT_METRICS = "views,estimatedMinutesWatched,likes,comments,shares,subscribersGained"
MAX_VIDEOS = 10


class YouTubeConnector(BaseConnector):
    """OAuth (or API-key) connector for YouTube channels."""

    @property
    def platform(self) -> Platform:
        return Platform.YOUTUBE

    @property
    def display_name(self) -> str:
        return "YouTube"

    def _auth(self, account: ConnectorAccount) -> tuple[Dict[str, str], Dict[str, str]]:
        """(headers, params) — OAuth bearer when connected, public API key otherwise."""
        if account.access_token:
            return {"Authorization": f"Bearer {account.access_token}"}, {}
        if config.youtube_api_key:
            return {}, {"key": config.youtube_api_key}
        raise AuthError("No YouTube authentication available", platform="youtube")

    async def _get(
        self, account: ConnectorAccount, url: str, params: Dict[str, Any], endpoint: str
    ) -> Dict[str, Any]:
        headers, auth_params = self._auth(account)
        body = await self._request(
            account, "GET", url, endpoint=endpoint, headers=headers, params={**params, **auth_params}
        )
        return body if isinstance(body, dict) else {}

    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        channel_body = await self._get(
            account,
            f"{_YT_API}/channels",
            {"part": "statistics", "id": account.external_account_id},
            "channels",
        )
        items = channel_body.get("items") or []
        stats = (items[0].get("statistics") if items else None) or {}
        subscribers = coerce_count(stats.get("subscriberCount"))

        rows: Dict[date, DailyMetricRow] = {}
        if account.access_token:
            report = await self._get(
                account,
                _YT_ANALYTICS,
                {
                    "ids": "channel==MINE",
                    "startDate": date_range.start.isoformat(),
                    "endDate": date_range.end.isoformat(),
                    "metrics": _REPORT_METRICS,
                    "dimensions": "day",
                    "sort": "day",
                },
                "analytics_report",
            )
            columns = [h.get("name") for h in report.get("columnHeaders") or []]
            for raw in report.get("rows") or []:
                record = dict(zip(columns, raw))
                try:
                    day = date.fromisoformat(str(record.get("day")))
                except ValueError:
                    continue
                likes = coerce_count(record.get("likes"))
                comments = coerce_count(record.get("comments"))
                shares = coerce_count(record.get("shares"))
                rows[day] = DailyMetricRow(
                    date=day,
                    views=record.get("views"),
                    watch_time=record.get("estimatedMinutesWatched"),
                    likes=likes,
                    comments=comments,
                    shares=shares,
                    engagements=likes + comments + shares,
                    raw_json=record,
                )

        today = date_range.end
        latest = rows.get(today) or DailyMetricRow(date=today)
        rows[today] = latest.model_copy(
            update={
                "followers": subscribers,
                "posts_count": coerce_count(stats.get("videoCount")),
                "raw_json": {**(latest.raw_json or {}), "statistics": stats},
            }
        )
        return [rows[d] for d in sorted(rows)]

    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        search = await self._get(
            account,
            f"{_YT_API}/search",
            {
                "part": "id",
                "channelId": account.external_account_id,
                "order": "date",
                "maxResults": MAX_VIDEOS,
                "type": "video",
                "publishedAfter": f"{date_range.start.isoformat()}T00:00:00Z",
            },
            "search",
        )
        video_ids = [
            (item.get("id") or {}).get("videoId") for item in search.get("items") or []
        ]
        video_ids = [v for v in video_ids if v]
        if not video_ids:
            return []

        videos = await self._get(
            account,
            f"{_YT_API}/videos",
            {"part": "snippet,statistics", "id": ",".join(video_ids)},
            "videos",
        )
        posts = []
        for video in videos.get("items") or []:
            snippet = video.get("snippet") or {}
            statistics = video.get("statistics") or {}
            thumbs = snippet.get("thumbnails") or {}
            published = snippet.get("publishedAt")
            watch_url = f"https://www.youtube.com/watch?v={video.get('id')}"
            posts.append(
                PostRow(
                    external_post_id=str(video.get("id", "")),
                    posted_at=datetime.fromisoformat(published.replace("Z", "+00:00")) if published else None,
                    url=watch_url,
                    caption=snippet.get("title"),
                    media_type="video",
                    thumbnail_url=(thumbs.get("medium") or thumbs.get("default") or {}).get("url"),
                    media_url=watch_url,
                    metrics={
                        "views": statistics.get("viewCount"),
                        "likes": statistics.get("likeCount"),
                        "comments": statistics.get("commentCount"),
                    },
                    raw_json=video,
                )
            )
        return posts

    async def refresh_access_token(self, account: ConnectorAccount) -> TokenGrant:
        """Google keeps the refresh token stable; only the access token changes."""
        refresh_token = self._require_refresh_token(account)
        data = await self._request(
            account,
            "POST",
            _GOOGLE_TOKEN_URL,
            endpoint="token_refresh",
            data={
                "client_id": config.google_client_id,
                "client_secret": config.google_client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        grant = self._parse_grant(data)
        return grant.model_copy(update={"refresh_token": None})
