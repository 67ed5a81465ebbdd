"""
Token Refresh Scheduler — keeps stored platform tokens ahead of expiry.

One run visits every active account whose token expires within the refresh
threshold.  Per-account state machine:

  active + far expiry            → skipped (no network)
  active + expiry ≤ threshold    → refresh; success stores new token(s)
  refresh → AuthError            → revoked, failed
  refresh → Transient/RateLimit  → failed, status unchanged
  no refresh token / bad cipher  → expired, failed
  demo tenant                    → skipped

Failures are isolated per account; only ``ConfigError`` aborts a run.
Nothing is retried in-process — the next scheduled run picks it up.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from config.settings import config
from connectors.encryption import decrypt_optional, encrypt_token
from connectors.registry import ConnectorRegistry
from core.demo_guard import DemoTenantGuard
from core.persistence import SyncRepository
from utils.errors import (
    AuthError,
    ConfigError,
    IntegrityError,
    RateLimitedError,
    TransientError,
    UnknownPlatformError,
)
from utils.schemas import (
    AccountRecord,
    AuthStatus,
    ConnectorAccount,
    RefreshOutcome,
    RefreshReport,
    RefreshStatus,
)

logger = logging.getLogger(__name__)


class TokenRefreshScheduler:
    """Scans accounts nearing expiry and refreshes their tokens."""

    def __init__(
        self,
        repository: SyncRepository,
        registry: Optional[ConnectorRegistry] = None,
        *,
        guard: Optional[DemoTenantGuard] = None,
        threshold: Optional[timedelta] = None,
        call_timeout: Optional[float] = None,
    ):
        self.repository = repository
        self.registry = registry or ConnectorRegistry()
        self.guard = guard or DemoTenantGuard(repository)
        self.threshold = threshold or timedelta(hours=config.token_refresh_threshold_hours)
        self.call_timeout = call_timeout or config.connector_timeout_seconds

    async def run(self, now: Optional[datetime] = None) -> RefreshReport:
        now = now or datetime.now(timezone.utc)
        start = time.perf_counter()
        accounts = await self.repository.list_accounts_nearing_expiry(now + self.threshold)

        report = RefreshReport()
        for account in accounts:
            try:
                outcome = await self.refresh_account(account, now)
            except ConfigError:
                raise
            except Exception as exc:
                logger.exception(
                    "Unexpected refresh error for %s account %s", account.platform.value, account.id
                )
                outcome = RefreshOutcome(
                    account_id=account.id,
                    tenant_id=account.tenant_id,
                    platform=account.platform,
                    status=RefreshStatus.FAILED,
                    reason=getattr(exc, "code", "internal_error"),
                )
            report.outcomes.append(outcome)

        logger.info(
            "Token refresh run: %d refreshed, %d failed, %d skipped (%.2fs)",
            report.refreshed,
            report.failed,
            report.skipped,
            time.perf_counter() - start,
        )
        return report

    async def refresh_account(
        self, account: AccountRecord, now: Optional[datetime] = None
    ) -> RefreshOutcome:
        now = now or datetime.now(timezone.utc)

        def outcome(status: RefreshStatus, reason: Optional[str] = None) -> RefreshOutcome:
            return RefreshOutcome(
                account_id=account.id,
                tenant_id=account.tenant_id,
                platform=account.platform,
                status=status,
                reason=reason,
            )

        if await self.guard.is_demo_tenant(account.tenant_id):
            return outcome(RefreshStatus.SKIPPED, "demo_tenant")
        if account.auth_status != AuthStatus.ACTIVE:
            return outcome(RefreshStatus.SKIPPED, "inactive")
        expires_at = _as_utc(account.token_expires_at)
        if expires_at is None or expires_at > now + self.threshold:
            return outcome(RefreshStatus.SKIPPED, "not_due")

        try:
            connector = self.registry.get(account.platform)
        except UnknownPlatformError as exc:
            logger.warning("No connector for %s account %s", account.platform.value, account.id)
            return outcome(RefreshStatus.FAILED, exc.code)

        try:
            access_token = decrypt_optional(account.token_encrypted)
            refresh_token = decrypt_optional(account.refresh_token_encrypted)
        except IntegrityError as exc:
            logger.error("Stored credential for account %s failed integrity check", account.id)
            await self._set_status(account, AuthStatus.EXPIRED, exc.code)
            return outcome(RefreshStatus.FAILED, exc.code)

        if connector.uses_refresh_token and not refresh_token:
            await self._set_status(account, AuthStatus.EXPIRED, "missing_refresh_token")
            return outcome(RefreshStatus.FAILED, "missing_refresh_token")

        connector_account = ConnectorAccount(
            account_id=account.id,
            tenant_id=account.tenant_id,
            platform=account.platform,
            external_account_id=account.external_account_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=expires_at,
        )
        try:
            grant = await asyncio.wait_for(
                connector.refresh_access_token(connector_account), timeout=self.call_timeout
            )
        except AuthError as exc:
            logger.warning(
                "Refresh rejected for %s account %s — marking revoked",
                account.platform.value,
                account.id,
            )
            await self._set_status(account, AuthStatus.REVOKED, exc.code)
            return outcome(RefreshStatus.FAILED, exc.code)
        except (TransientError, RateLimitedError) as exc:
            logger.warning(
                "Refresh failed for %s account %s: %s", account.platform.value, account.id, exc
            )
            return outcome(RefreshStatus.FAILED, exc.code)
        except asyncio.TimeoutError:
            logger.warning("Refresh timed out for %s account %s", account.platform.value, account.id)
            return outcome(RefreshStatus.FAILED, "timeout")

        await self.guard.assert_not_demo_writable(account.tenant_id, "token_refresh")
        updated = account.model_copy(
            update={
                "token_encrypted": encrypt_token(grant.access_token),
                # None keeps the stored refresh token.
                "refresh_token_encrypted": (
                    encrypt_token(grant.refresh_token) if grant.refresh_token else None
                ),
                "token_expires_at": grant.expires_at,
                "last_error": None,
            }
        )
        await self.repository.upsert_account(account.tenant_id, updated, AuthStatus.ACTIVE)
        logger.info("Refreshed %s token for account %s", account.platform.value, account.id)
        return outcome(RefreshStatus.REFRESHED)

    async def _set_status(self, account: AccountRecord, status: AuthStatus, error: str) -> None:
        if account.id is None:
            return
        await self.repository.update_account_status(account.id, status, error)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
