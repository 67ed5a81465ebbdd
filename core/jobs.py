"""
Invokable jobs wrapping the scheduler and the orchestrator.

The HTTP triggers only call ``job.run()``; the same jobs can be driven from
a CLI, a test or any other scheduler.  Retry/backoff covers one thing only:
a ``TransientError`` while resolving the work set (e.g. the tenant listing
query failing).  Per-account failures are never retried in-process.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from config.settings import config
from connectors.registry import ConnectorRegistry
from core.demo_guard import DemoTenantGuard
from core.persistence import SyncRepository
from core.sync_orchestrator import SyncOrchestrator
from core.token_refresh import TokenRefreshScheduler
from utils.errors import TransientError
from utils.schemas import Platform, RefreshReport, SyncReport

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_retry(
    name: str,
    func: Callable[[], Awaitable[T]],
    max_retries: Optional[int] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``func`` retrying on ``TransientError`` with ``2**attempt`` second backoff."""
    max_retries = config.job_max_retries if max_retries is None else max_retries
    for attempt in range(max_retries + 1):
        try:
            return await func()
        except TransientError as exc:
            logger.warning(
                "%s attempt %d/%d failed: %s", name, attempt + 1, max_retries + 1, exc
            )
            if attempt >= max_retries:
                raise
            await sleep(2**attempt)
    raise RuntimeError("unreachable")


class _Deadline:
    """Sets ``event`` once ``seconds`` have elapsed (if given)."""

    def __init__(self, event: asyncio.Event, seconds: Optional[float]):
        self.event = event
        self.seconds = seconds
        self._handle: Optional[asyncio.TimerHandle] = None

    def __enter__(self) -> "_Deadline":
        if self.seconds:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self.seconds, self._expire)
        return self

    def _expire(self) -> None:
        logger.warning("Job deadline of %.0fs reached — cancelling remaining work", self.seconds)
        self.event.set()

    def __exit__(self, *exc) -> None:
        if self._handle is not None:
            self._handle.cancel()


class TokenRefreshJob:
    def __init__(
        self,
        repository: SyncRepository,
        registry: Optional[ConnectorRegistry] = None,
        max_retries: Optional[int] = None,
    ):
        self.scheduler = TokenRefreshScheduler(repository, registry)
        self.max_retries = max_retries

    async def run(self) -> RefreshReport:
        return await run_with_retry("token_refresh", self.scheduler.run, self.max_retries)


class SyncJob:
    def __init__(
        self,
        repository: SyncRepository,
        registry: Optional[ConnectorRegistry] = None,
        *,
        tenant_id: Optional[str] = None,
        platform: Optional[Platform] = None,
        deadline_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        lookback_days: Optional[int] = None,
        cooldown: Optional[timedelta] = None,
    ):
        guard = DemoTenantGuard(repository)
        self.orchestrator = SyncOrchestrator(
            repository, registry, guard=guard, lookback_days=lookback_days
        )
        self.cooldown = cooldown
        self.tenant_id = tenant_id
        self.platform = platform
        self.deadline_seconds = deadline_seconds
        self.max_retries = max_retries
        self.cancel_event = asyncio.Event()

    async def run(self) -> SyncReport:
        async def resolve_and_sync() -> SyncReport:
            if self.tenant_id:
                return await self.orchestrator.sync_tenant(
                    self.tenant_id,
                    self.platform,
                    cancel_event=self.cancel_event,
                    cooldown=self.cooldown,
                )
            return await self.orchestrator.sync_global(
                cancel_event=self.cancel_event, platform=self.platform
            )

        with _Deadline(self.cancel_event, self.deadline_seconds):
            return await run_with_retry("sync", resolve_and_sync, self.max_retries)
