"""
Token manager — store / get / disconnect per-account platform tokens.

This is the single interface the OAuth callback and on-demand API reads use
for a given tenant + platform + external account.  Every write is guarded
against demo tenants.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from config.settings import config
from connectors.encryption import decrypt_optional, encrypt_token
from connectors.registry import ConnectorRegistry
from core.demo_guard import DemoTenantGuard
from core.persistence import SyncRepository
from core.token_refresh import TokenRefreshScheduler
from utils.errors import IntegrityError
from utils.schemas import AccountRecord, AuthStatus, Platform, RefreshStatus, TokenGrant

logger = logging.getLogger(__name__)


async def store_account_tokens(
    repository: SyncRepository,
    tenant_id: str,
    platform: Platform,
    external_account_id: str,
    grant: TokenGrant,
    *,
    display_name: str = "",
    guard: Optional[DemoTenantGuard] = None,
) -> AccountRecord:
    """
    Store a freshly authorized account (or update the existing one).

    Upserts on (tenant, platform, external id) with status ``active``.  When
    the grant carries no refresh token the stored one is kept.

    Raises
    ------
    DemoWriteBlockedError – ``tenant_id`` is a demo tenant.
    ConfigError           – no encryption secret.
    """
    guard = guard or DemoTenantGuard(repository)
    await guard.assert_not_demo_writable(tenant_id, "store_account_tokens")

    account = AccountRecord(
        tenant_id=tenant_id,
        platform=platform,
        external_account_id=external_account_id,
        display_name=display_name,
        auth_status=AuthStatus.ACTIVE,
        token_encrypted=encrypt_token(grant.access_token),
        refresh_token_encrypted=encrypt_token(grant.refresh_token) if grant.refresh_token else None,
        token_expires_at=grant.expires_at,
    )
    stored = await repository.upsert_account(tenant_id, account, AuthStatus.ACTIVE)
    logger.info("Stored %s account %s for tenant %s", platform.value, external_account_id, tenant_id)
    return stored


async def get_valid_access_token(
    repository: SyncRepository,
    tenant_id: str,
    platform: Platform,
    external_account_id: str,
    *,
    registry: Optional[ConnectorRegistry] = None,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Return a usable access token, refreshing it first when it expires within
    ``TOKEN_ON_DEMAND_BUFFER_SECONDS``.

    Returns None when the account is missing, not active, or the refresh
    failed (the account status is updated by the refresh itself).
    """
    now = now or datetime.now(timezone.utc)
    account = await repository.get_account(tenant_id, platform, external_account_id)
    if account is None or account.auth_status != AuthStatus.ACTIVE:
        return None

    scheduler = TokenRefreshScheduler(
        repository,
        registry,
        threshold=timedelta(seconds=config.token_on_demand_buffer_seconds),
    )
    outcome = await scheduler.refresh_account(account, now)
    if outcome.status == RefreshStatus.FAILED:
        logger.warning(
            "On-demand refresh failed for %s account %s: %s",
            platform.value, external_account_id, outcome.reason,
        )
        return None
    if outcome.status == RefreshStatus.REFRESHED:
        account = await repository.get_account(tenant_id, platform, external_account_id)
        if account is None:
            return None

    try:
        return decrypt_optional(account.token_encrypted)
    except IntegrityError:
        logger.error("Stored token for %s account %s is corrupted", platform.value, external_account_id)
        if account.id:
            await repository.update_account_status(account.id, AuthStatus.EXPIRED, IntegrityError.code)
        return None


async def list_account_summaries(repository: SyncRepository, tenant_id: str) -> List[Dict]:
    """Return a tenant's active accounts (no tokens exposed)."""
    accounts = await repository.list_tenant_accounts(tenant_id)
    return [
        {
            "account_id": a.id,
            "platform": a.platform.value,
            "external_account_id": a.external_account_id,
            "display_name": a.display_name,
            "auth_status": a.auth_status.value,
            "token_expires_at": a.token_expires_at.isoformat() if a.token_expires_at else None,
            "last_sync_at": a.last_sync_at.isoformat() if a.last_sync_at else None,
            "last_error": a.last_error,
        }
        for a in accounts
    ]


async def disconnect_account(
    repository: SyncRepository,
    tenant_id: str,
    platform: Platform,
    external_account_id: str,
    *,
    guard: Optional[DemoTenantGuard] = None,
) -> bool:
    """
    Soft-invalidate an account (status → revoked).  Rows are never deleted.

    Returns True if the account existed, False if not found.
    """
    guard = guard or DemoTenantGuard(repository)
    await guard.assert_not_demo_writable(tenant_id, "disconnect_account")

    account = await repository.get_account(tenant_id, platform, external_account_id)
    if account is None or account.id is None:
        return False
    await repository.update_account_status(account.id, AuthStatus.REVOKED, "disconnected")
    logger.info("Disconnected %s account %s for tenant %s", platform.value, external_account_id, tenant_id)
    return True
