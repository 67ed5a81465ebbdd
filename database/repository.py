"""
PostgreSQL implementation of ``core.persistence.SyncRepository``.

Each method runs in its own short session so concurrent sync workers never
share one.  Upserts use ``INSERT … ON CONFLICT DO UPDATE`` on the table's
identity constraint; re-running a sync overwrites rows in place.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    AdCampaignMetricDaily,
    SocialAccount,
    SocialDailyMetric,
    SocialPost,
    SyncLog,
    Tenant,
)
from utils.errors import TransientError
from utils.schemas import (
    AccountRecord,
    AuthStatus,
    CampaignMetricRow,
    DailyMetricRow,
    Platform,
    PostRow,
    TenantRecord,
)

logger = logging.getLogger(__name__)

_DAILY_COLUMNS = (
    "followers", "impressions", "reach", "engagements", "likes", "comments",
    "shares", "saves", "views", "watch_time", "posts_count",
)
_CAMPAIGN_COLUMNS = (
    "campaign_name", "impressions", "reach", "clicks", "spend", "ctr", "cpc",
    "cpm", "conversions", "results",
)


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


def _maybe_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    try:
        return _to_uuid(value) if value else None
    except ValueError:
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _account_record(row: SocialAccount) -> AccountRecord:
    return AccountRecord(
        id=str(row.id),
        tenant_id=str(row.tenant_id),
        platform=Platform(row.platform),
        external_account_id=row.external_account_id,
        display_name=row.account_name or "",
        auth_status=AuthStatus(row.auth_status),
        token_encrypted=row.token_encrypted,
        refresh_token_encrypted=row.refresh_token_encrypted,
        token_expires_at=row.token_expires_at,
        last_sync_at=row.last_sync_at,
        last_error=row.last_error,
    )


class SqlAlchemyRepository:
    """``SyncRepository`` backed by the async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _read(self, stmt) -> List[Any]:
        """Run a listing query; connectivity failures become ``TransientError``."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except (OperationalError, OSError) as exc:
            logger.error("Database read failed: %s", exc)
            raise TransientError("Database unavailable", detail=str(exc)) from exc

    # ── Tenants ─────────────────────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Optional[TenantRecord]:
        tid = _maybe_uuid(tenant_id)
        if tid is None:
            return None
        rows = await self._read(select(Tenant).where(Tenant.id == tid))
        if not rows:
            return None
        t = rows[0]
        return TenantRecord(
            id=str(t.id), name=t.name, slug=t.slug, is_active=t.is_active, is_demo=t.is_demo
        )

    async def list_active_non_demo_tenants(self) -> List[str]:
        rows = await self._read(
            select(Tenant.id)
            .where(Tenant.is_active.is_(True), Tenant.is_demo.is_(False))
            .order_by(Tenant.created_at)
        )
        return [str(r) for r in rows]

    # ── Accounts ────────────────────────────────────────────────────────

    async def get_account(
        self, tenant_id: str, platform: Platform, external_account_id: str
    ) -> Optional[AccountRecord]:
        tid = _maybe_uuid(tenant_id)
        if tid is None:
            return None
        rows = await self._read(
            select(SocialAccount).where(
                SocialAccount.tenant_id == tid,
                SocialAccount.platform == Platform(platform).value,
                SocialAccount.external_account_id == external_account_id,
            )
        )
        return _account_record(rows[0]) if rows else None

    async def list_tenant_accounts(
        self, tenant_id: str, platform: Optional[Platform] = None
    ) -> List[AccountRecord]:
        tid = _maybe_uuid(tenant_id)
        if tid is None:
            return []
        stmt = select(SocialAccount).where(
            SocialAccount.tenant_id == tid,
            SocialAccount.auth_status == AuthStatus.ACTIVE.value,
        )
        if platform is not None:
            stmt = stmt.where(SocialAccount.platform == Platform(platform).value)
        rows = await self._read(stmt.order_by(SocialAccount.created_at))
        return [_account_record(r) for r in rows]

    async def list_accounts_nearing_expiry(self, threshold: datetime) -> List[AccountRecord]:
        rows = await self._read(
            select(SocialAccount)
            .join(Tenant, Tenant.id == SocialAccount.tenant_id)
            .where(
                Tenant.is_active.is_(True),
                SocialAccount.auth_status == AuthStatus.ACTIVE.value,
                SocialAccount.token_expires_at.is_not(None),
                SocialAccount.token_expires_at <= threshold,
            )
            .order_by(SocialAccount.token_expires_at)
        )
        return [_account_record(r) for r in rows]

    async def upsert_account(
        self, tenant_id: str, account: AccountRecord, status: AuthStatus
    ) -> AccountRecord:
        stmt = pg_insert(SocialAccount).values(
            tenant_id=_to_uuid(tenant_id),
            platform=account.platform.value,
            external_account_id=account.external_account_id,
            account_name=account.display_name or None,
            auth_status=AuthStatus(status).value,
            token_encrypted=account.token_encrypted,
            refresh_token_encrypted=account.refresh_token_encrypted,
            token_expires_at=account.token_expires_at,
            last_error=account.last_error,
            updated_at=_utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_social_accounts_identity",
            set_={
                "account_name": func.coalesce(stmt.excluded.account_name, SocialAccount.account_name),
                "auth_status": stmt.excluded.auth_status,
                "token_encrypted": func.coalesce(stmt.excluded.token_encrypted, SocialAccount.token_encrypted),
                # An omitted refresh token never erases the stored one.
                "refresh_token_encrypted": func.coalesce(
                    stmt.excluded.refresh_token_encrypted, SocialAccount.refresh_token_encrypted
                ),
                "token_expires_at": stmt.excluded.token_expires_at,
                "last_error": stmt.excluded.last_error,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(SocialAccount)

        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one()
            await session.commit()
            return _account_record(row)

    async def update_account_status(
        self, account_id: str, status: AuthStatus, error: Optional[str] = None
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SocialAccount)
                .where(SocialAccount.id == _to_uuid(account_id))
                .values(auth_status=AuthStatus(status).value, last_error=error, updated_at=_utcnow())
            )
            await session.commit()

    async def mark_account_synced(self, account_id: str, synced_at: datetime) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SocialAccount)
                .where(SocialAccount.id == _to_uuid(account_id))
                .values(last_sync_at=synced_at, last_error=None, updated_at=_utcnow())
            )
            await session.commit()

    # ── Synced rows ─────────────────────────────────────────────────────

    async def _upsert(self, model, constraint: str, values: List[Dict[str, Any]], columns) -> int:
        if not values:
            return 0
        stmt = pg_insert(model).values(values)
        stmt = stmt.on_conflict_do_update(
            constraint=constraint,
            set_={**{c: stmt.excluded[c] for c in columns}, "updated_at": stmt.excluded.updated_at},
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()
        return len(values)

    async def upsert_daily_metrics(
        self,
        tenant_id: str,
        platform: Platform,
        rows: List[DailyMetricRow],
        *,
        account_id: str,
    ) -> int:
        # One row per date; a later duplicate wins.
        by_date = {r.date: r for r in rows}
        now = _utcnow()
        values = [
            {
                "tenant_id": _to_uuid(tenant_id),
                "social_account_id": _to_uuid(account_id),
                "platform": Platform(platform).value,
                "date": r.date,
                **{c: getattr(r, c) for c in _DAILY_COLUMNS},
                "raw_json": r.raw_json,
                "updated_at": now,
            }
            for r in by_date.values()
        ]
        return await self._upsert(
            SocialDailyMetric, "uq_social_daily_metrics", values, (*_DAILY_COLUMNS, "raw_json")
        )

    async def upsert_posts(
        self,
        tenant_id: str,
        platform: Platform,
        rows: List[PostRow],
        *,
        account_id: str,
    ) -> int:
        by_id = {r.external_post_id: r for r in rows if r.external_post_id}
        now = _utcnow()
        columns = ("posted_at", "url", "caption", "media_type", "thumbnail_url", "media_url", "metrics", "raw_json")
        values = [
            {
                "tenant_id": _to_uuid(tenant_id),
                "social_account_id": _to_uuid(account_id),
                "platform": Platform(platform).value,
                "external_post_id": r.external_post_id,
                **{c: getattr(r, c) for c in columns},
                "updated_at": now,
            }
            for r in by_id.values()
        ]
        return await self._upsert(SocialPost, "uq_social_posts", values, columns)

    async def upsert_campaign_metrics(
        self,
        tenant_id: str,
        platform: Platform,
        rows: List[CampaignMetricRow],
        *,
        account_id: str,
    ) -> int:
        by_key = {(r.external_campaign_id, r.date): r for r in rows}
        now = _utcnow()
        values = [
            {
                "tenant_id": _to_uuid(tenant_id),
                "social_account_id": _to_uuid(account_id),
                "platform": Platform(platform).value,
                "external_campaign_id": r.external_campaign_id,
                "date": r.date,
                **{c: getattr(r, c) for c in _CAMPAIGN_COLUMNS},
                "raw_json": r.raw_json,
                "updated_at": now,
            }
            for r in by_key.values()
        ]
        return await self._upsert(
            AdCampaignMetricDaily, "uq_ad_campaign_metrics_daily", values, (*_CAMPAIGN_COLUMNS, "raw_json")
        )

    # ── Sync logs ───────────────────────────────────────────────────────

    async def start_sync_log(self, tenant_id: str, account_id: str, platform: Platform) -> str:
        log = SyncLog(
            id=uuid.uuid4(),
            tenant_id=_to_uuid(tenant_id),
            social_account_id=_maybe_uuid(account_id),
            platform=Platform(platform).value,
            status="running",
            started_at=_utcnow(),
        )
        async with self._session_factory() as session:
            session.add(log)
            await session.commit()
            return str(log.id)

    async def finish_sync_log(
        self,
        log_id: str,
        status: str,
        rows_upserted: int = 0,
        error: Optional[str] = None,
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SyncLog)
                .where(SyncLog.id == _to_uuid(log_id))
                .values(
                    status=status,
                    finished_at=_utcnow(),
                    rows_upserted=rows_upserted,
                    error_message=error,
                )
            )
            await session.commit()
