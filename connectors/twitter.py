"""
TwitterConnector — X API v2 (users/me + user tweets).

X rotates the refresh token on every exchange, so the grant always carries
the new one.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Dict, List

from config.settings import config
from connectors.base import BaseConnector
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

_X_API = "https://api.twitter.com/2"
_X_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
MAX_TWEETS = 100


def _parse_created(raw: Any) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None


class TwitterConnector(BaseConnector):
    """X (Twitter) user timeline connector."""

    @property
    def platform(self) -> Platform:
        return Platform.TWITTER

    @property
    def display_name(self) -> str:
        return "X (Twitter)"

    async def _get(
        self, account: ConnectorAccount, path: str, params: Dict[str, Any], endpoint: str
    ) -> Dict[str, Any]:
        token = self._require_access_token(account)
        body = await self._request(
            account,
            "GET",
            f"{_X_API}/{path}",
            endpoint=endpoint,
            params=params,
            headers={"Authorization": f"Bearer {token}"},
        )
        return body if isinstance(body, dict) else {}

    async def _tweets(self, account: ConnectorAccount, date_range: DateRange) -> List[Dict[str, Any]]:
        body = await self._get(
            account,
            f"users/{account.external_account_id}/tweets",
            {
                "max_results": MAX_TWEETS,
                "tweet.fields": "created_at,public_metrics,attachments",
                "start_time": f"{date_range.start.isoformat()}T00:00:00Z",
                "exclude": "retweets,replies",
            },
            "user_tweets",
        )
        return list(body.get("data") or [])

    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        me = await self._get(account, "users/me", {"user.fields": "public_metrics"}, "users_me")
        user = me.get("data") or {}
        followers = coerce_count((user.get("public_metrics") or {}).get("followers_count"))

        per_day: Dict[date, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for tweet in await self._tweets(account, date_range):
            created = _parse_created(tweet.get("created_at"))
            if created is None or not date_range.contains(created.date()):
                continue
            metrics = tweet.get("public_metrics") or {}
            bucket = per_day[created.date()]
            bucket["impressions"] += coerce_count(metrics.get("impression_count"))
            bucket["likes"] += coerce_count(metrics.get("like_count"))
            bucket["comments"] += coerce_count(metrics.get("reply_count"))
            bucket["shares"] += coerce_count(metrics.get("retweet_count")) + coerce_count(
                metrics.get("quote_count")
            )
            bucket["saves"] += coerce_count(metrics.get("bookmark_count"))
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
                    impressions=v["impressions"],
                    views=v["impressions"],
                    likes=v["likes"],
                    comments=v["comments"],
                    shares=v["shares"],
                    saves=v["saves"],
                    engagements=v["likes"] + v["comments"] + v["shares"] + v["saves"],
                    posts_count=v["posts_count"],
                    raw_json={"user": user} if day == today else dict(v),
                )
            )
        return rows

    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        posts = []
        for tweet in await self._tweets(account, date_range):
            created = _parse_created(tweet.get("created_at"))
            if created and not date_range.contains(created.date()):
                continue
            metrics = tweet.get("public_metrics") or {}
            tweet_id = str(tweet.get("id", ""))
            posts.append(
                PostRow(
                    external_post_id=tweet_id,
                    posted_at=created,
                    url=f"https://x.com/i/web/status/{tweet_id}",
                    caption=tweet.get("text"),
                    media_type="image" if tweet.get("attachments") else "text",
                    metrics={
                        "impressions": metrics.get("impression_count"),
                        "likes": metrics.get("like_count"),
                        "comments": metrics.get("reply_count"),
                        "shares": metrics.get("retweet_count"),
                        "saves": metrics.get("bookmark_count"),
                    },
                    raw_json=tweet,
                )
            )
        return posts

    async def refresh_access_token(self, account: ConnectorAccount) -> TokenGrant:
        """Confidential-client refresh: app credentials go in Basic auth."""
        refresh_token = self._require_refresh_token(account)
        data = await self._request(
            account,
            "POST",
            _X_TOKEN_URL,
            endpoint="token_refresh",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": config.twitter_client_id,
            },
            auth=(config.twitter_client_id, config.twitter_client_secret),
        )
        return self._parse_grant(data)
