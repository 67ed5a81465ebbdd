"""
REST API routes — cron triggers and provider listing.

Both triggers accept GET and POST (schedulers differ) and require the cron
bearer secret.  The HTTP layer only builds and runs a job.
"""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_registry, get_repository, require_cron_secret
from config.settings import config
from connectors.registry import ConnectorRegistry
from core.jobs import SyncJob, TokenRefreshJob
from core.persistence import SyncRepository
from utils.errors import UnknownPlatformError
from utils.schemas import Platform, SyncReport

logger = logging.getLogger(__name__)

router = APIRouter()


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _parse_platform(value: Optional[str]) -> Optional[Platform]:
    if not value or value == "all":
        return None
    try:
        return Platform(value.strip().lower())
    except ValueError:
        raise UnknownPlatformError(f"Unknown platform filter: {value}", platform=value)


def _parse_days(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    if not 1 <= value <= config.sync_max_backfill_days:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_days",
                "message": f"days must be between 1 and {config.sync_max_backfill_days}",
            },
        )
    return value


@router.api_route(
    "/cron/refresh-tokens",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
async def cron_refresh_tokens(
    repository: SyncRepository = Depends(get_repository),
    registry: ConnectorRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Refresh every token expiring within the threshold."""
    start = time.perf_counter()
    report = await TokenRefreshJob(repository, registry).run()
    return {
        "ok": True,
        "refreshed": report.refreshed,
        "failed": report.failed,
        "skipped": report.skipped,
        "durationMs": _duration_ms(start),
    }


@router.api_route(
    "/cron/sync",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
async def cron_sync(
    tenant_id: Optional[str] = Query(None),
    tenant_id_camel: Optional[str] = Query(None, alias="tenantId"),
    platform: Optional[str] = Query(None),
    days: Optional[int] = Query(None),
    repository: SyncRepository = Depends(get_repository),
    registry: ConnectorRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """
    Global sync, or one tenant (optionally one platform) when ``tenant_id``
    (or ``tenantId``) is set.  ``days`` widens the trailing window for a
    historical backfill, up to ``SYNC_MAX_BACKFILL_DAYS``.
    """
    start = time.perf_counter()
    job = SyncJob(
        repository,
        registry,
        tenant_id=tenant_id or tenant_id_camel,
        platform=_parse_platform(platform),
        deadline_seconds=config.cron_deadline_seconds,
        lookback_days=_parse_days(days),
    )
    return _sync_response(await job.run(), start)


@router.post(
    "/tenants/{tenant_id}/sync",
    dependencies=[Depends(require_cron_secret)],
)
async def tenant_resync(
    tenant_id: str,
    repository: SyncRepository = Depends(get_repository),
    registry: ConnectorRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """On-demand re-sync of one tenant, refused while its last sync is recent."""
    start = time.perf_counter()
    job = SyncJob(
        repository,
        registry,
        tenant_id=tenant_id,
        deadline_seconds=config.cron_deadline_seconds,
        cooldown=timedelta(minutes=config.tenant_sync_cooldown_minutes),
    )
    return _sync_response(await job.run(), start)


def _sync_response(report: SyncReport, start: float) -> Dict[str, Any]:
    if report.skipped:
        body: Dict[str, Any] = {"ok": True, "skipped": report.skipped}
        if report.retry_after_seconds is not None:
            body["retryAfterSeconds"] = report.retry_after_seconds
        body["durationMs"] = _duration_ms(start)
        return body
    return {
        "ok": True,
        "scope": report.scope,
        "platform": report.platform,
        "succeeded": report.succeeded,
        "failed": report.failed,
        "durationMs": _duration_ms(start),
    }


@router.get("/providers")
async def list_providers(
    registry: ConnectorRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """List known platform connectors and whether each is configured."""
    return {"providers": registry.list_providers()}
