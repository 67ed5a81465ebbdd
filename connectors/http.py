"""
Shared upstream request helper for every platform connector.

Funnels each call through the rate limiter, applies the per-call timeout and
converts transport failures into the connector error taxonomy so callers
never see raw ``httpx`` exceptions or upstream response bodies.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import httpx

from config.settings import config
from core.rate_limiter import SlidingWindowRateLimiter, platform_key, platform_rate_limit
from utils.errors import AuthError, RateLimitedError, TransientError

logger = logging.getLogger(__name__)

# OAuth / Graph error markers that mean "the credential itself is dead".
_AUTH_ERROR_CODES = {"invalid_grant", "invalid_token", "unauthorized_client", "access_token_invalid"}
_META_INVALID_TOKEN_CODE = 190


async def api_request(
    platform: str,
    tenant_id: str,
    method: str,
    url: str,
    *,
    limiter: SlidingWindowRateLimiter,
    endpoint: str = "default",
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    data: Optional[Dict[str, Any]] = None,
    json: Optional[Any] = None,
    auth: Optional[tuple] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """
    Perform one upstream call and return the decoded JSON object.

    Raises
    ------
    RateLimitedError – local budget exhausted or upstream 429
    AuthError        – credential rejected
    TransientError   – timeout, network failure, 5xx or other unexpected status
                       or a success body that is not a JSON object
    """
    decision = limiter.check(platform_key(platform, tenant_id), platform_rate_limit(platform))
    if not decision.allowed:
        raise RateLimitedError(
            f"Local rate limit reached for {platform}",
            retry_after=decision.retry_after,
            platform=platform,
        )

    timeout = timeout or config.connector_timeout_seconds
    start = time.perf_counter()
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            resp = await client.request(
                method,
                url,
                headers=headers,
                params=params,
                data=data,
                json=json,
                auth=auth,
            )
    except httpx.TimeoutException as exc:
        raise TransientError(
            f"Request timeout for {platform} API", status_code=408, platform=platform
        ) from exc
    except httpx.HTTPError as exc:
        raise TransientError(
            f"Network error calling {platform} API", platform=platform, detail=str(exc)
        ) from exc

    elapsed = time.perf_counter() - start
    logger.debug("[%s] %s %s — %d (%.3fs)", platform, method, endpoint, resp.status_code, elapsed)

    body = _decode(resp)
    if resp.is_success:
        if not isinstance(body, dict):
            # Maintenance pages and truncated payloads arrive as 200 text.
            logger.debug("[%s] %s non-object body: %s", platform, endpoint, str(body)[:500])
            raise TransientError(
                f"Unexpected response format from {platform} API",
                status_code=resp.status_code,
                platform=platform,
                detail=str(body)[:500],
            )
        return body

    _raise_for_status(platform, endpoint, resp, body)


def _decode(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


def _raise_for_status(platform: str, endpoint: str, resp: httpx.Response, body: Any) -> None:
    status_code = resp.status_code
    detail = str(body)[:500]
    logger.debug("[%s] %s error body: %s", platform, endpoint, detail)

    if status_code == 429:
        retry_after = _retry_after_seconds(resp.headers.get("Retry-After"))
        raise RateLimitedError(
            f"{platform} API rate limit reached",
            retry_after=retry_after,
            platform=platform,
            detail=detail,
        )

    if status_code in (401, 403) or is_auth_failure(body):
        raise AuthError(
            f"{platform} rejected the access token ({status_code})",
            platform=platform,
            detail=detail,
        )

    raise TransientError(
        f"{platform} API error {status_code} on {endpoint}",
        status_code=status_code,
        platform=platform,
        detail=detail,
    )


def is_auth_failure(body: Any) -> bool:
    """Recognise credential errors that platforms return with a 400 or a 200."""
    if not isinstance(body, dict):
        return False
    error = body.get("error")
    if isinstance(error, str):
        return error in _AUTH_ERROR_CODES
    if isinstance(error, dict):
        if error.get("code") == _META_INVALID_TOKEN_CODE:
            return True
        return str(error.get("code", "")) in _AUTH_ERROR_CODES
    return False


def _retry_after_seconds(raw: Optional[str]) -> float:
    if not raw:
        return 60.0
    try:
        return max(0.0, float(raw))
    except ValueError:
        return 60.0
