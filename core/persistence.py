"""
Persistence contract consumed by the scheduler, orchestrator and account
management flows.

``database.repository.SqlAlchemyRepository`` implements it on PostgreSQL;
tests use an in-memory fake.  Every ``upsert_*`` is keyed by a uniqueness
constraint so repeated calls overwrite rather than duplicate.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, runtime_checkable

from utils.schemas import (
    AccountRecord,
    AuthStatus,
    CampaignMetricRow,
    DailyMetricRow,
    Platform,
    PostRow,
    TenantRecord,
)


@runtime_checkable
class SyncRepository(Protocol):
    # ── Core operations ─────────────────────────────────────────────────

    async def get_account(
        self, tenant_id: str, platform: Platform, external_account_id: str
    ) -> Optional[AccountRecord]:
        ...

    async def upsert_account(
        self, tenant_id: str, account: AccountRecord, status: AuthStatus
    ) -> AccountRecord:
        """
        Insert or update on (tenant, platform, external id).

        A ``refresh_token_encrypted`` of None keeps the stored value.
        """
        ...

    async def upsert_daily_metrics(
        self,
        tenant_id: str,
        platform: Platform,
        rows: List[DailyMetricRow],
        *,
        account_id: str,
    ) -> int:
        ...

    async def upsert_posts(
        self,
        tenant_id: str,
        platform: Platform,
        rows: List[PostRow],
        *,
        account_id: str,
    ) -> int:
        ...

    async def list_accounts_nearing_expiry(self, threshold: datetime) -> List[AccountRecord]:
        """Active accounts whose token expires at or before ``threshold``."""
        ...

    async def list_active_non_demo_tenants(self) -> List[str]:
        ...

    # ── Supporting operations ───────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Optional[TenantRecord]:
        ...

    async def list_tenant_accounts(
        self, tenant_id: str, platform: Optional[Platform] = None
    ) -> List[AccountRecord]:
        """Active accounts of one tenant, optionally for one platform."""
        ...

    async def update_account_status(
        self, account_id: str, status: AuthStatus, error: Optional[str] = None
    ) -> None:
        ...

    async def mark_account_synced(self, account_id: str, synced_at: datetime) -> None:
        ...

    async def upsert_campaign_metrics(
        self,
        tenant_id: str,
        platform: Platform,
        rows: List[CampaignMetricRow],
        *,
        account_id: str,
    ) -> int:
        ...

    async def start_sync_log(
        self, tenant_id: str, account_id: str, platform: Platform
    ) -> str:
        ...

    async def finish_sync_log(
        self,
        log_id: str,
        status: str,
        rows_upserted: int = 0,
        error: Optional[str] = None,
    ) -> None:
        ...
