"""
TikTokConnector — TikTok Display API v2 (user info + video list).

TikTok returns HTTP 200 with an ``error`` envelope; a code of ``ok`` means
success, ``access_token_invalid`` means the credential is dead.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timezone
from typing import Any, Dict, List

from config.settings import config
from connectors.base import BaseConnector
from utils.errors import AuthError, TransientError
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

_TT_API = "https://open.tiktokapis.com/v2"
_TT_TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"
_USER_FIELDS = "open_id,display_name,avatar_url,follower_count,following_count,likes_count,video_count"
_VIDEO_FIELDS = "id,title,cover_image_url,share_url,create_time,like_count,comment_count,share_count,view_count"
MAX_VIDEOS = 20


def _check_envelope(body: Dict[str, Any]) -> None:
    error = body.get("error") or {}
    code = str(error.get("code", "ok")).lower()
    if code in ("ok", "0", ""):
        return
    if code in ("access_token_invalid", "invalid_grant", "scope_not_authorized"):
        raise AuthError("TikTok rejected the access token", platform="tiktok", detail=code)
    raise TransientError("TikTok API error", platform="tiktok", detail=code)


class TikTokConnector(BaseConnector):
    """TikTok creator account connector."""

    @property
    def platform(self) -> Platform:
        return Platform.TIKTOK

    @property
    def display_name(self) -> str:
        return "TikTok"

    def _headers(self, account: ConnectorAccount) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._require_access_token(account)}"}

    async def _videos(self, account: ConnectorAccount) -> List[Dict[str, Any]]:
        body = await self._request(
            account,
            "POST",
            f"{_TT_API}/video/list/",
            endpoint="video_list",
            params={"fields": _VIDEO_FIELDS},
            headers=self._headers(account),
            json={"max_count": MAX_VIDEOS},
        )
        body = body if isinstance(body, dict) else {}
        _check_envelope(body)
        return list((body.get("data") or {}).get("videos") or [])

    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        body = await self._request(
            account,
            "GET",
            f"{_TT_API}/user/info/",
            endpoint="user_info",
            params={"fields": _USER_FIELDS},
            headers=self._headers(account),
        )
        body = body if isinstance(body, dict) else {}
        _check_envelope(body)
        user = (body.get("data") or {}).get("user") or {}
        followers = coerce_count(user.get("follower_count"))

        # TikTok has no account-level daily insights; fold recent videos by publish day.
        per_day: Dict[date, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for video in await self._videos(account):
            day = datetime.fromtimestamp(coerce_count(video.get("create_time")), tz=timezone.utc).date()
            if not date_range.contains(day):
                continue
            bucket = per_day[day]
            bucket["views"] += coerce_count(video.get("view_count"))
            bucket["likes"] += coerce_count(video.get("like_count"))
            bucket["comments"] += coerce_count(video.get("comment_count"))
            bucket["shares"] += coerce_count(video.get("share_count"))
            bucket["posts_count"] += 1

        today = date_range.end
        per_day.setdefault(today, defaultdict(int))
        rows = []
        for day in sorted(per_day):
            v = per_day[day]
            rows.append(
                DailyMetricRow(
                    date=day,
                    followers=followers if day == today else 0,
                    views=v["views"],
                    impressions=v["views"],
                    likes=v["likes"],
                    comments=v["comments"],
                    shares=v["shares"],
                    engagements=v["likes"] + v["comments"] + v["shares"],
                    posts_count=v["posts_count"],
                    raw_json={"user": user} if day == today else dict(v),
                )
            )
        return rows

    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        posts = []
        for video in await self._videos(account):
            posted_at = datetime.fromtimestamp(coerce_count(video.get("create_time")), tz=timezone.utc)
            if not date_range.contains(posted_at.date()):
                continue
            posts.append(
                PostRow(
                    external_post_id=str(video.get("id", "")),
                    posted_at=posted_at,
                    url=video.get("share_url"),
                    caption=video.get("title"),
                    media_type="video",
                    thumbnail_url=video.get("cover_image_url"),
                    media_url=video.get("share_url"),
                    metrics={
                        "views": video.get("view_count"),
                        "likes": video.get("like_count"),
                        "comments": video.get("comment_count"),
                        "shares": video.get("share_count"),
                    },
                    raw_json=video,
                )
            )
        return posts

    async def refresh_access_token(self, account: ConnectorAccount) -> TokenGrant:
        refresh_token = self._require_refresh_token(account)
        data = await self._request(
            account,
            "POST",
            _TT_TOKEN_URL,
            endpoint="token_refresh",
            data={
                "client_key": config.tiktok_client_key,
                "client_secret": config.tiktok_client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        return self._parse_grant(data)
