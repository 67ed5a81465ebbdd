"""
ConnectorRegistry — maps every Platform to its connector.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Union

from config.settings import config
from connectors.ads import LinkedInAdsConnector, MetaAdsConnector
from connectors.base import BaseConnector
from connectors.linkedin import LinkedInConnector
from connectors.meta import FacebookConnector, InstagramConnector
from connectors.mock import MockConnector
from connectors.tiktok import TikTokConnector
from connectors.twitter import TwitterConnector
from connectors.youtube import YouTubeConnector
from core.rate_limiter import SlidingWindowRateLimiter
from utils.errors import UnknownPlatformError
from utils.schemas import Platform

logger = logging.getLogger(__name__)

# ── All known connectors — add new ones here ─────────────────────────────

_CONNECTOR_CLASSES = [
    InstagramConnector,
    FacebookConnector,
    LinkedInConnector,
    TikTokConnector,
    YouTubeConnector,
    TwitterConnector,
    MetaAdsConnector,
    LinkedInAdsConnector,
]


class ConnectorRegistry:
    """Singleton registry; every connector shares one rate limiter."""

    _instance: Optional["ConnectorRegistry"] = None

    def __new__(cls) -> "ConnectorRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._setup()
        return cls._instance

    def _setup(self) -> None:
        self.limiter = SlidingWindowRateLimiter()
        self._connectors: Dict[Platform, BaseConnector] = {}
        self._mocks: Dict[Platform, BaseConnector] = {}
        for connector_cls in _CONNECTOR_CLASSES:
            conn = connector_cls(limiter=self.limiter)
            self._connectors[conn.platform] = conn

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests only)."""
        cls._instance = None

    def register(self, connector: BaseConnector) -> None:
        """Replace the connector for ``connector.platform``."""
        self._connectors[connector.platform] = connector

    def get(self, platform: Union[Platform, str], demo: bool = False) -> BaseConnector:
        """
        Resolve the connector for ``platform``.

        Demo tenants (or ``DEMO_MODE``) always get the mock variant.

        Raises
        ------
        UnknownPlatformError – platform not in the enum, or real connector
        lacks app credentials.
        """
        try:
            key = Platform(platform)
        except ValueError:
            raise UnknownPlatformError(f"Unknown platform: {platform}", platform=str(platform))

        if demo or config.demo_mode:
            if key not in self._mocks:
                self._mocks[key] = MockConnector(key, limiter=self.limiter)
            return self._mocks[key]

        conn = self._connectors.get(key)
        if conn is None or not conn.is_configured():
            raise UnknownPlatformError(
                f"Connector {key.value} is not configured", platform=key.value
            )
        return conn

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all known connectors."""
        return [
            {
                "platform": c.platform.value,
                "display_name": c.display_name,
                "configured": c.is_configured(),
                "demo_mode": config.demo_mode,
            }
            for c in self._connectors.values()
        ]

    def list_configured(self) -> List[str]:
        return [p.value for p, c in self._connectors.items() if c.is_configured()]
