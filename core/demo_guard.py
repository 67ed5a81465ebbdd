"""
Demo tenant guard — keeps synthetic sandbox tenants read-only.

The demo flag lives on the tenant row; lookups are cached for the lifetime
of one guard instance (one job run or one request).
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, TypeVar

from core.persistence import SyncRepository
from utils.errors import DemoWriteBlockedError
from utils.schemas import TenantRecord

logger = logging.getLogger(__name__)

AGENCY_ADMIN_ROLE = "agency_admin"

T = TypeVar("T", bound=TenantRecord)


class DemoTenantGuard:
    """Answers "is this tenant a demo sandbox?" and blocks writes to it."""

    def __init__(self, repository: SyncRepository):
        self._repository = repository
        self._cache: Dict[str, bool] = {}

    async def is_demo_tenant(self, tenant_id: str) -> bool:
        if tenant_id not in self._cache:
            tenant = await self._repository.get_tenant(tenant_id)
            # Unknown tenants are not demo; callers find out they do not exist elsewhere.
            self._cache[tenant_id] = bool(tenant and tenant.is_demo)
        return self._cache[tenant_id]

    async def assert_not_demo_writable(self, tenant_id: str, action: str) -> None:
        """
        Guard clause for mutating operations.

        Raises
        ------
        DemoWriteBlockedError – ``tenant_id`` is a demo tenant.
        """
        if not await self.is_demo_tenant(tenant_id):
            return
        logger.info("[demo_access] blocked_write tenant=%s action=%s", tenant_id, action)
        raise DemoWriteBlockedError(f"Write '{action}' blocked for demo tenant {tenant_id}")

    def forget(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id is None:
            self._cache.clear()
        else:
            self._cache.pop(tenant_id, None)


def enforce_demo_tenant_isolation(
    tenants: Iterable[T],
    primary_tenant_id: Optional[str],
    role: Optional[str] = None,
) -> List[T]:
    """
    Restrict a user whose primary tenant is a demo to demo tenants only.

    Agency admins, and users without a primary tenant, see everything.
    """
    tenants = list(tenants)
    if not primary_tenant_id or role == AGENCY_ADMIN_ROLE:
        return tenants
    primary = next((t for t in tenants if t.id == primary_tenant_id), None)
    if primary is None or not primary.is_demo:
        return tenants
    return [t for t in tenants if t.is_demo]
