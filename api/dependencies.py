"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from config.settings import config
from connectors.registry import ConnectorRegistry
from core.persistence import SyncRepository
from database.repository import SqlAlchemyRepository
from database.session import async_session_factory
from utils.errors import ConfigError

logger = logging.getLogger(__name__)

# Query parameters that must never carry the cron secret (they end up in access logs).
_FORBIDDEN_QUERY_SECRETS = ("secret", "token", "cron_secret")


def _reject(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": code, "message": message})


async def require_cron_secret(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> None:
    """
    Verify ``Authorization: Bearer <CRON_SECRET>`` in constant time.

    Raises
    ------
    HTTPException 400 – secret passed in the query string
    ConfigError       – CRON_SECRET not configured (rendered as 500)
    HTTPException 401 – header missing or wrong
    """
    if any(name in request.query_params for name in _FORBIDDEN_QUERY_SECRETS):
        logger.warning("Rejected cron call with a secret in the query string (%s)", request.url.path)
        raise _reject(
            status.HTTP_400_BAD_REQUEST,
            "secret_in_query",
            "Pass the cron secret in the Authorization header, not the query string",
        )

    if not config.cron_secret:
        raise ConfigError("CRON_SECRET is not configured")

    if not authorization or not authorization.startswith("Bearer "):
        raise _reject(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing Bearer token")
    provided = authorization[7:].strip()
    if not hmac.compare_digest(provided.encode("utf-8"), config.cron_secret.encode("utf-8")):
        raise _reject(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Invalid cron secret")


def get_repository() -> SyncRepository:
    return SqlAlchemyRepository(async_session_factory)


def get_registry() -> ConnectorRegistry:
    return ConnectorRegistry()
