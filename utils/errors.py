"""
Error taxonomy shared by the vault, connectors, scheduler and orchestrator.

Every error carries a stable ``code`` and a ``public_message`` that is safe
to return from the trigger endpoints.  Upstream response bodies are never
part of either.
"""

from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync core."""

    code = "sync_error"
    public_message = "Internal error"

    def __init__(self, message: str = "", *, detail: Optional[str] = None):
        super().__init__(message or self.public_message)
        # Raw upstream detail, for DEBUG logs only.
        self.detail = detail


class ConfigError(SyncError):
    """A required secret or credential is missing.  Fatal, never retried."""

    code = "config_error"
    public_message = "Server misconfiguration"


class IntegrityError(SyncError):
    """An encrypted payload failed authentication or could not be decoded."""

    code = "integrity_error"
    public_message = "Stored credential is corrupted"


class DemoWriteBlockedError(SyncError):
    """A mutating operation was attempted against a demo tenant."""

    code = "demo_tenant_write_blocked"
    public_message = "This workspace is in demo mode. Changes are disabled."


class ConnectorError(SyncError):
    """Base class for errors surfaced by a platform connector call."""

    code = "connector_error"
    public_message = "Upstream platform error"

    def __init__(
        self,
        message: str = "",
        *,
        platform: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message, detail=detail)
        self.platform = platform


class AuthError(ConnectorError):
    """The upstream platform rejected the token.  Needs re-authorization."""

    code = "auth_error"
    public_message = "Platform credentials were rejected"


class RateLimitedError(ConnectorError):
    """Local or upstream throttling.  Retry later, never immediately."""

    code = "rate_limited"
    public_message = "Rate limit reached"

    def __init__(
        self,
        message: str = "",
        *,
        retry_after: float = 0.0,
        platform: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message, platform=platform, detail=detail)
        self.retry_after = retry_after


class TransientError(ConnectorError):
    """Network failure, timeout or 5xx.  Eligible for the next scheduled cycle."""

    code = "transient_error"
    public_message = "Temporary upstream failure"

    def __init__(
        self,
        message: str = "",
        *,
        status_code: int = 0,
        platform: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message, platform=platform, detail=detail)
        self.status_code = status_code


class UnknownPlatformError(ConnectorError):
    """No connector is registered (or configured) for the platform."""

    code = "unknown_platform"
    public_message = "Unsupported platform"
