"""
BaseConnector — abstract interface for all platform connectors.

Every platform (Instagram, LinkedIn, TikTok, …) subclasses this and implements
the three core capabilities: daily metrics, posts and token refresh.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx

from config.settings import config
from connectors.http import api_request, is_auth_failure
from core.rate_limiter import SlidingWindowRateLimiter
from utils.errors import AuthError, TransientError
from utils.schemas import (
    ConnectorAccount,
    DailyMetricRow,
    DateRange,
    Platform,
    PostRow,
    SyncResult,
    TokenGrant,
)


class BaseConnector(ABC):
    """Abstract base for all platform connectors."""

    def __init__(
        self,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.limiter = limiter or SlidingWindowRateLimiter()
        self.transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def platform(self) -> Platform:
        """Platform tag this connector serves."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Instagram', 'LinkedIn', …"""
        ...

    @property
    def uses_refresh_token(self) -> bool:
        """True when refreshing requires a stored refresh token."""
        return True

    # ── Capabilities ────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_daily_metrics(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[DailyMetricRow]:
        """
        Fetch account-level daily metrics for ``date_range``.

        Returns rows ordered by date; missing upstream counters are 0.
        """
        ...

    @abstractmethod
    async def fetch_posts(
        self, account: ConnectorAccount, date_range: DateRange
    ) -> List[PostRow]:
        """Fetch posts published in ``date_range`` with their metrics."""
        ...

    @abstractmethod
    async def refresh_access_token(self, account: ConnectorAccount) -> TokenGrant:
        """
        Obtain a fresh access token.

        Returns
        -------
        TokenGrant with ``refresh_token`` set only when the platform rotated it.

        Raises ``AuthError`` when the refresh credential is invalid.
        """
        ...

    async def sync(self, account: ConnectorAccount, date_range: DateRange) -> SyncResult:
        """Metrics then posts, sequentially."""
        daily = await self.fetch_daily_metrics(account, date_range)
        posts = await self.fetch_posts(account, date_range)
        return SyncResult(daily_metrics=daily, posts=posts)

    # ── Helpers ─────────────────────────────────────────────────────────

    def is_configured(self) -> bool:
        """
        Return True if this connector has the app credentials it needs
        (client IDs, secrets, …).
        """
        client_id, client_secret = config.oauth_credentials(self.platform.value)
        return bool(client_id and client_secret)

    async def _request(
        self,
        account: ConnectorAccount,
        method: str,
        url: str,
        *,
        endpoint: str = "default",
        **kwargs: Any,
    ) -> Any:
        return await api_request(
            self.platform.value,
            account.tenant_id,
            method,
            url,
            limiter=self.limiter,
            endpoint=endpoint,
            transport=self.transport,
            **kwargs,
        )

    def _parse_grant(self, data: Any) -> TokenGrant:
        """Build a TokenGrant from an OAuth token-endpoint response body."""
        if is_auth_failure(data):
            raise AuthError(
                f"{self.display_name} refused the refresh token",
                platform=self.platform.value,
            )
        if not isinstance(data, dict) or not data.get("access_token"):
            raise TransientError(
                f"{self.display_name} token refresh returned no access token",
                platform=self.platform.value,
            )
        return TokenGrant.from_expires_in(
            data["access_token"], data.get("expires_in"), data.get("refresh_token")
        )

    def _require_access_token(self, account: ConnectorAccount) -> str:
        if not account.access_token:
            raise AuthError(
                f"Missing {self.display_name} access token", platform=self.platform.value
            )
        return account.access_token

    def _require_refresh_token(self, account: ConnectorAccount) -> str:
        if not account.refresh_token:
            raise AuthError(
                f"No {self.display_name} refresh token available",
                platform=self.platform.value,
            )
        return account.refresh_token
