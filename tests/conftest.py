"""
Shared fixtures: in-memory repository, fake connectors and a fake registry.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from config.settings import config
from connectors.base import BaseConnector
from connectors.encryption import encrypt_token
from connectors.registry import ConnectorRegistry
from utils.errors import UnknownPlatformError
from utils.schemas import (
    AccountRecord,
    AuthStatus,
    CampaignMetricRow,
    ConnectorAccount,
    DailyMetricRow,
    DateRange,
    Platform,
    PostRow,
    TenantRecord,
    TokenGrant,
)

TEST_SECRET = "unit-test-encryption-secret"
CRON_SECRET = "unit-test-cron-secret"

MUTATING_CALLS = {
    "upsert_account",
    "upsert_daily_metrics",
    "upsert_posts",
    "upsert_campaign_metrics",
    "update_account_status",
    "mark_account_synced",
    "start_sync_log",
    "finish_sync_log",
}


class InMemoryRepository:
    """Dict-backed ``SyncRepository`` that records every call."""

    def __init__(self):
        self.tenants: Dict[str, TenantRecord] = {}
        self.accounts: Dict[str, AccountRecord] = {}
        self.daily: Dict[Tuple, DailyMetricRow] = {}
        self.posts: Dict[Tuple, PostRow] = {}
        self.campaigns: Dict[Tuple, CampaignMetricRow] = {}
        self.sync_logs: Dict[str, dict] = {}
        self.calls: List[str] = []

    # ── test helpers ──
    def add_tenant(self, tenant_id: str, *, is_demo: bool = False, is_active: bool = True) -> TenantRecord:
        tenant = TenantRecord(id=tenant_id, name=tenant_id, slug=tenant_id, is_demo=is_demo, is_active=is_active)
        self.tenants[tenant_id] = tenant
        return tenant

    def add_account(
        self,
        tenant_id: str,
        platform: Platform = Platform.INSTAGRAM,
        external_account_id: Optional[str] = None,
        *,
        access_token: Optional[str] = "access-token",
        refresh_token: Optional[str] = "refresh-token",
        expires_in: Optional[timedelta] = timedelta(days=30),
        status: AuthStatus = AuthStatus.ACTIVE,
    ) -> AccountRecord:
        account = AccountRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            platform=platform,
            external_account_id=external_account_id or f"ext-{len(self.accounts) + 1}",
            auth_status=status,
            token_encrypted=encrypt_token(access_token, TEST_SECRET) if access_token else None,
            refresh_token_encrypted=encrypt_token(refresh_token, TEST_SECRET) if refresh_token else None,
            token_expires_at=datetime.now(timezone.utc) + expires_in if expires_in else None,
        )
        self.accounts[account.id] = account
        return account

    @property
    def mutating_calls(self) -> List[str]:
        return [c for c in self.calls if c in MUTATING_CALLS]

    # ── SyncRepository ──
    async def get_tenant(self, tenant_id):
        self.calls.append("get_tenant")
        return self.tenants.get(tenant_id)

    async def list_active_non_demo_tenants(self):
        self.calls.append("list_active_non_demo_tenants")
        return [t.id for t in self.tenants.values() if t.is_active and not t.is_demo]

    async def get_account(self, tenant_id, platform, external_account_id):
        self.calls.append("get_account")
        for a in self.accounts.values():
            if (a.tenant_id, a.platform, a.external_account_id) == (tenant_id, Platform(platform), external_account_id):
                return a
        return None

    async def list_tenant_accounts(self, tenant_id, platform=None):
        self.calls.append("list_tenant_accounts")
        return [
            a for a in self.accounts.values()
            if a.tenant_id == tenant_id
            and a.auth_status == AuthStatus.ACTIVE
            and (platform is None or a.platform == platform)
        ]

    async def list_accounts_nearing_expiry(self, threshold):
        self.calls.append("list_accounts_nearing_expiry")
        return [
            a for a in self.accounts.values()
            if a.auth_status == AuthStatus.ACTIVE
            and a.token_expires_at is not None
            and a.token_expires_at <= threshold
        ]

    async def upsert_account(self, tenant_id, account, status):
        self.calls.append("upsert_account")
        existing = None
        for a in self.accounts.values():
            if (a.tenant_id, a.platform, a.external_account_id) == (tenant_id, account.platform, account.external_account_id):
                existing = a
        update = {"tenant_id": tenant_id, "auth_status": status}
        if existing is not None:
            update["id"] = existing.id
            if account.refresh_token_encrypted is None:
                update["refresh_token_encrypted"] = existing.refresh_token_encrypted
            if account.token_encrypted is None:
                update["token_encrypted"] = existing.token_encrypted
        else:
            update["id"] = account.id or str(uuid.uuid4())
        stored = account.model_copy(update=update)
        self.accounts[stored.id] = stored
        return stored

    async def update_account_status(self, account_id, status, error=None):
        self.calls.append("update_account_status")
        account = self.accounts[account_id]
        self.accounts[account_id] = account.model_copy(update={"auth_status": status, "last_error": error})

    async def mark_account_synced(self, account_id, synced_at):
        self.calls.append("mark_account_synced")
        account = self.accounts[account_id]
        self.accounts[account_id] = account.model_copy(update={"last_sync_at": synced_at, "last_error": None})

    async def upsert_daily_metrics(self, tenant_id, platform, rows, *, account_id):
        self.calls.append("upsert_daily_metrics")
        for r in rows:
            self.daily[(tenant_id, Platform(platform), account_id, r.date)] = r
        return len(rows)

    async def upsert_posts(self, tenant_id, platform, rows, *, account_id):
        self.calls.append("upsert_posts")
        for r in rows:
            self.posts[(tenant_id, Platform(platform), account_id, r.external_post_id)] = r
        return len(rows)

    async def upsert_campaign_metrics(self, tenant_id, platform, rows, *, account_id):
        self.calls.append("upsert_campaign_metrics")
        for r in rows:
            self.campaigns[(tenant_id, Platform(platform), account_id, r.external_campaign_id, r.date)] = r
        return len(rows)

    async def start_sync_log(self, tenant_id, account_id, platform):
        self.calls.append("start_sync_log")
        log_id = str(uuid.uuid4())
        self.sync_logs[log_id] = {"tenant_id": tenant_id, "account_id": account_id, "status": "running"}
        return log_id

    async def finish_sync_log(self, log_id, status, rows_upserted=0, error=None):
        self.calls.append("finish_sync_log")
        self.sync_logs[log_id].update(status=status, rows_upserted=rows_upserted, error=error)


class FakeConnector(BaseConnector):
    """Scriptable connector.  ``behaviour(account)`` may raise or sleep."""

    def __init__(
        self,
        platform: Platform = Platform.INSTAGRAM,
        *,
        followers: int = 100,
        behaviour: Optional[Callable] = None,
        grant: Optional[TokenGrant] = None,
        refresh_error: Optional[Exception] = None,
        uses_refresh_token: bool = True,
    ):
        super().__init__()
        self._platform = platform
        self.followers = followers
        self.behaviour = behaviour
        self.grant = grant or TokenGrant(
            access_token="new-access-token",
            expires_at=datetime.now(timezone.utc) + timedelta(days=60),
        )
        self.refresh_error = refresh_error
        self._uses_refresh_token = uses_refresh_token
        self.refresh_calls: List[ConnectorAccount] = []
        self.fetch_calls: List[ConnectorAccount] = []

    @property
    def platform(self) -> Platform:
        return self._platform

    @property
    def display_name(self) -> str:
        return f"Fake {self._platform.value}"

    @property
    def uses_refresh_token(self) -> bool:
        return self._uses_refresh_token

    async def fetch_daily_metrics(self, account, date_range: DateRange):
        self.fetch_calls.append(account)
        if self.behaviour is not None:
            result = self.behaviour(account)
            if asyncio.iscoroutine(result):
                await result
        return [DailyMetricRow(date=d, followers=self.followers) for d in date_range.iter_days()]

    async def fetch_posts(self, account, date_range: DateRange):
        return [PostRow(external_post_id=f"post-{account.external_account_id}", metrics={"likes": 3})]

    async def refresh_access_token(self, account):
        self.refresh_calls.append(account)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.grant


class FakeRegistry:
    """Registry stand-in: platform → connector, no configuration checks."""

    def __init__(self, *connectors: BaseConnector):
        self.connectors = {c.platform: c for c in connectors}
        self.demo_lookups: List[Platform] = []

    def get(self, platform, demo: bool = False):
        platform = Platform(platform)
        if demo:
            self.demo_lookups.append(platform)
        if platform not in self.connectors:
            raise UnknownPlatformError(f"No connector for {platform.value}", platform=platform.value)
        return self.connectors[platform]

    def list_providers(self):
        return [{"platform": p.value, "display_name": c.display_name, "configured": True}
                for p, c in self.connectors.items()]

    def list_configured(self):
        return [p.value for p in self.connectors]


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    monkeypatch.setattr(config, "encryption_secret", TEST_SECRET)
    monkeypatch.setattr(config, "cron_secret", CRON_SECRET)
    monkeypatch.setattr(config, "demo_mode", False)
    ConnectorRegistry.reset()
    yield
    ConnectorRegistry.reset()


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def today() -> date:
    return datetime.now(timezone.utc).date()
