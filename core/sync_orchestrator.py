"""
Sync Orchestrator — pulls platform data for (tenant, account) pairs and
upserts it.

Two entry points:
  • ``sync_tenant``  — one tenant, optionally one platform
  • ``sync_global``  — every active, non-demo tenant

Pairs go through a fixed-size worker pool with a per-pair timeout.  Each
pair's failure is recorded on its own outcome; only ``ConfigError`` aborts
the run.  Once ``cancel_event`` is set no new pair starts: in-flight pairs
finish and the rest are reported as cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, List, Optional

from config.settings import config
from connectors.encryption import decrypt_optional
from connectors.registry import ConnectorRegistry
from core.demo_guard import DemoTenantGuard
from core.persistence import SyncRepository
from utils.errors import (
    AuthError,
    ConfigError,
    DemoWriteBlockedError,
    IntegrityError,
    SyncError,
)
from utils.schemas import (
    AccountRecord,
    AuthStatus,
    ConnectorAccount,
    DateRange,
    PairOutcome,
    PairStatus,
    Platform,
    SyncReport,
)

logger = logging.getLogger(__name__)

DEMO_SKIP_REASON = "demo_tenant"
COOLDOWN_SKIP_REASON = "cooldown"


class SyncOrchestrator:
    def __init__(
        self,
        repository: SyncRepository,
        registry: Optional[ConnectorRegistry] = None,
        *,
        guard: Optional[DemoTenantGuard] = None,
        concurrency: Optional[int] = None,
        pair_timeout: Optional[float] = None,
        lookback_days: Optional[int] = None,
    ):
        """
        Parameters
        ----------
        repository    : persistence backend (``SyncRepository``).
        registry      : connector registry; falls back to the singleton.
        concurrency   : worker pool size (``SYNC_CONCURRENCY``).
        pair_timeout  : seconds allowed for one pair (``SYNC_PAIR_TIMEOUT_SECONDS``).
        lookback_days : trailing window length (``SYNC_LOOKBACK_DAYS``).
        """
        self.repository = repository
        self.registry = registry or ConnectorRegistry()
        self.guard = guard or DemoTenantGuard(repository)
        self.concurrency = max(1, concurrency or config.sync_concurrency)
        self.pair_timeout = pair_timeout or config.sync_pair_timeout_seconds
        self.lookback_days = lookback_days or config.sync_lookback_days

    # ── public entry points ─────────────────────────────────────────────

    async def sync_tenant(
        self,
        tenant_id: str,
        platform: Optional[Platform] = None,
        cancel_event: Optional[asyncio.Event] = None,
        today: Optional[date] = None,
        cooldown: Optional[timedelta] = None,
    ) -> SyncReport:
        """
        Sync one tenant.  With ``cooldown`` set, a tenant whose most recent
        account sync is younger than the cooldown is skipped.
        """
        report = SyncReport(
            scope=f"tenant:{tenant_id}",
            platform=platform.value if platform else "all",
        )
        if await self.guard.is_demo_tenant(tenant_id):
            logger.info("Sync skipped for demo tenant %s", tenant_id)
            report.skipped = DEMO_SKIP_REASON
            return report

        accounts = await self.repository.list_tenant_accounts(tenant_id, platform)
        if cooldown:
            remaining = _cooldown_remaining(accounts, cooldown)
            if remaining > 0:
                logger.info("Sync skipped for tenant %s: cooldown (%ds left)", tenant_id, remaining)
                report.skipped = COOLDOWN_SKIP_REASON
                report.retry_after_seconds = remaining
                return report
        report.outcomes = await self._run_pairs(accounts, cancel_event, today)
        self._log_report(report)
        return report

    async def sync_global(
        self,
        cancel_event: Optional[asyncio.Event] = None,
        platform: Optional[Platform] = None,
        today: Optional[date] = None,
    ) -> SyncReport:
        report = SyncReport(scope="global", platform=platform.value if platform else "all")
        accounts: List[AccountRecord] = []
        for tenant_id in await self.repository.list_active_non_demo_tenants():
            accounts.extend(await self.repository.list_tenant_accounts(tenant_id, platform))

        report.outcomes = await self._run_pairs(accounts, cancel_event, today)
        self._log_report(report)
        return report

    # ── worker pool ─────────────────────────────────────────────────────

    async def _run_pairs(
        self,
        accounts: List[AccountRecord],
        cancel_event: Optional[asyncio.Event],
        today: Optional[date],
    ) -> List[PairOutcome]:
        date_range = DateRange.trailing(self.lookback_days, today)
        cancel_event = cancel_event or asyncio.Event()
        abort = asyncio.Event()

        queue: asyncio.Queue = asyncio.Queue()
        for index, account in enumerate(accounts):
            queue.put_nowait((index, account))
        outcomes: List[Optional[PairOutcome]] = [None] * len(accounts)

        async def worker() -> None:
            while True:
                try:
                    index, account = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if cancel_event.is_set() or abort.is_set():
                    outcomes[index] = _outcome(account, PairStatus.CANCELLED, error="cancelled")
                    continue
                try:
                    outcomes[index] = await self._process_pair(account, date_range)
                except ConfigError:
                    abort.set()
                    raise

        workers = [worker() for _ in range(min(self.concurrency, len(accounts)))]
        results = await asyncio.gather(*workers, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result

        if cancel_event.is_set():
            logger.warning("Sync run cancelled — %d pair(s) not started",
                           sum(1 for o in outcomes if o and o.status == PairStatus.CANCELLED))
        return [o for o in outcomes if o is not None]

    # ── per-pair work ───────────────────────────────────────────────────

    async def _process_pair(self, account: AccountRecord, date_range: DateRange) -> PairOutcome:
        """Run one pair.  Anything but ``ConfigError`` ends as this pair's outcome."""
        try:
            return await self._run_pair(account, date_range)
        except ConfigError:
            raise
        except Exception as exc:
            logger.exception(
                "Sync bookkeeping failed for %s account %s", account.platform.value, account.id
            )
            return _outcome(account, PairStatus.FAILED, error=getattr(exc, "code", "internal_error"))

    async def _run_pair(self, account: AccountRecord, date_range: DateRange) -> PairOutcome:
        try:
            await self.guard.assert_not_demo_writable(account.tenant_id, "sync")
        except DemoWriteBlockedError:
            return _outcome(account, PairStatus.SKIPPED, error=DEMO_SKIP_REASON)

        log_id = await self.repository.start_sync_log(
            account.tenant_id, account.id, account.platform
        )
        try:
            rows = await asyncio.wait_for(
                self._sync_pair(account, date_range), timeout=self.pair_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Sync timed out for %s account %s after %.0fs",
                account.platform.value, account.id, self.pair_timeout,
            )
            await self._best_effort(self.repository.finish_sync_log(log_id, "failed", error="timeout"), account)
            return _outcome(account, PairStatus.TIMEOUT, error="timeout")
        except ConfigError as exc:
            await self._best_effort(self.repository.finish_sync_log(log_id, "failed", error=exc.code), account)
            raise
        except (AuthError, IntegrityError) as exc:
            logger.warning(
                "Credential unusable for %s account %s (%s) — marking expired",
                account.platform.value, account.id, exc.code,
            )
            await self._best_effort(
                self.repository.update_account_status(account.id, AuthStatus.EXPIRED, exc.code), account
            )
            await self._best_effort(self.repository.finish_sync_log(log_id, "failed", error=exc.code), account)
            return _outcome(account, PairStatus.FAILED, error=exc.code)
        except SyncError as exc:
            logger.warning("Sync failed for %s account %s: %s", account.platform.value, account.id, exc)
            await self._best_effort(self.repository.finish_sync_log(log_id, "failed", error=exc.code), account)
            return _outcome(account, PairStatus.FAILED, error=exc.code)
        except Exception:
            logger.exception("Unexpected sync error for %s account %s", account.platform.value, account.id)
            await self._best_effort(
                self.repository.finish_sync_log(log_id, "failed", error="internal_error"), account
            )
            return _outcome(account, PairStatus.FAILED, error="internal_error")

        try:
            await self.repository.mark_account_synced(account.id, datetime.now(timezone.utc))
        except ConfigError:
            raise
        except Exception as exc:
            code = getattr(exc, "code", "internal_error")
            logger.exception("Could not mark %s account %s synced", account.platform.value, account.id)
            await self._best_effort(self.repository.finish_sync_log(log_id, "failed", error=code), account)
            return _outcome(account, PairStatus.FAILED, rows_upserted=rows, error=code)
        await self._best_effort(
            self.repository.finish_sync_log(log_id, "success", rows_upserted=rows), account
        )
        return _outcome(account, PairStatus.SUCCESS, rows_upserted=rows)

    @staticmethod
    async def _best_effort(write: Awaitable[None], account: AccountRecord) -> None:
        """Await a bookkeeping write whose failure must not change the pair's outcome."""
        try:
            await write
        except ConfigError:
            raise
        except Exception:
            logger.exception(
                "Bookkeeping write failed for %s account %s", account.platform.value, account.id
            )

    async def _sync_pair(self, account: AccountRecord, date_range: DateRange) -> int:
        """Fetch through ``connector.sync``, then upsert each kind of row.  Returns rows written."""
        connector = self.registry.get(account.platform)
        connector_account = ConnectorAccount(
            account_id=account.id,
            tenant_id=account.tenant_id,
            platform=account.platform,
            external_account_id=account.external_account_id,
            access_token=decrypt_optional(account.token_encrypted),
            refresh_token=decrypt_optional(account.refresh_token_encrypted),
            token_expires_at=account.token_expires_at,
        )
        result = await connector.sync(connector_account, date_range)
        tenant_id, platform = account.tenant_id, account.platform
        rows = 0
        if result.campaign_metrics:
            rows += await self.repository.upsert_campaign_metrics(
                tenant_id, platform, result.campaign_metrics, account_id=account.id
            )
        rows += await self.repository.upsert_daily_metrics(
            tenant_id, platform, result.daily_metrics, account_id=account.id
        )
        rows += await self.repository.upsert_posts(
            tenant_id, platform, result.posts, account_id=account.id
        )
        return rows

    @staticmethod
    def _log_report(report: SyncReport) -> None:
        logger.info(
            "Sync %s (%s): %d succeeded, %d failed, %d cancelled",
            report.scope, report.platform, report.succeeded, report.failed, report.cancelled,
        )


def _outcome(
    account: AccountRecord,
    status: PairStatus,
    *,
    rows_upserted: int = 0,
    error: Optional[str] = None,
) -> PairOutcome:
    return PairOutcome(
        tenant_id=account.tenant_id,
        account_id=account.id,
        platform=account.platform,
        status=status,
        rows_upserted=rows_upserted,
        error=error,
    )


def _cooldown_remaining(accounts: List[AccountRecord], cooldown: timedelta) -> int:
    """Seconds until the newest ``last_sync_at`` is older than ``cooldown`` (0 if already)."""
    synced = [a.last_sync_at for a in accounts if a.last_sync_at is not None]
    if not synced:
        return 0
    latest = max(s if s.tzinfo else s.replace(tzinfo=timezone.utc) for s in synced)
    remaining = (latest + cooldown - datetime.now(timezone.utc)).total_seconds()
    return max(0, math.ceil(remaining))
