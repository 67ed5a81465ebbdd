"""
Sliding-window rate limiter keyed by arbitrary strings.

Keys look like ``"login:<ip>"`` or ``"platform:<name>:<tenant_id>"``.  Each
key owns a window: while attempts inside the window stay within
``max_attempts`` the call is allowed.  The first attempt over the limit puts
the key into a blocked state for ``block_seconds``; every call during the
block is rejected with the remaining ``retry_after``.  Once the block has
elapsed the window restarts and the call that observes it counts as 1.

State is process-local and in memory.  Expired keys are evicted lazily on
access; there is no background sweeper.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

MAX_KEYS = 10_000
_IDLE_EVICTION_SECONDS = 3600.0


@dataclass(frozen=True)
class RateLimit:
    max_attempts: int
    window_seconds: float
    block_seconds: Optional[float] = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


@dataclass
class _Window:
    count: int
    window_start: float
    blocked_until: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class SlidingWindowRateLimiter:
    """Concurrency-safe keyed counter map.  Only ``check`` is public."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        max_keys: int = MAX_KEYS,
    ):
        self._clock = clock
        self._max_keys = max_keys
        self._windows: Dict[str, _Window] = {}
        self._map_lock = threading.Lock()

    def check(
        self,
        key: str,
        limit: RateLimit,
        now: Optional[float] = None,
    ) -> RateLimitDecision:
        """Register one attempt for ``key`` and say whether it may proceed."""
        now = self._clock() if now is None else now
        while True:
            window = self._window_for(key, now)
            with window.lock:
                # Evicted or reset between lookup and lock: use the live window.
                if self._is_current(key, window):
                    return self._admit(key, window, limit, now)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key, or every key when ``key`` is None."""
        with self._map_lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def __len__(self) -> int:
        return len(self._windows)

    # ── internals ───────────────────────────────────────────────────────

    def _is_current(self, key: str, window: _Window) -> bool:
        with self._map_lock:
            return self._windows.get(key) is window

    def _admit(self, key: str, window: _Window, limit: RateLimit, now: float) -> RateLimitDecision:
        """Apply one attempt to ``window``.  Caller holds ``window.lock``."""
        if window.count == 0:
            window.count = 1
            window.window_start = now
            return RateLimitDecision(True, max(0, limit.max_attempts - 1))

        if window.blocked_until > now:
            return RateLimitDecision(False, 0, window.blocked_until - now)

        block_elapsed = window.blocked_until and window.blocked_until <= now
        if block_elapsed or now - window.window_start >= limit.window_seconds:
            window.count = 1
            window.window_start = now
            window.blocked_until = 0.0
            return RateLimitDecision(True, max(0, limit.max_attempts - 1))

        window.count += 1
        if window.count > limit.max_attempts:
            if limit.block_seconds is not None:
                retry_after = limit.block_seconds
            else:
                retry_after = limit.window_seconds - (now - window.window_start)
            window.blocked_until = now + retry_after
            logger.info("Rate limit exceeded for %s — blocked %.1fs", key, retry_after)
            return RateLimitDecision(False, 0, retry_after)

        return RateLimitDecision(True, max(0, limit.max_attempts - window.count))

    def _window_for(self, key: str, now: float) -> _Window:
        with self._map_lock:
            window = self._windows.get(key)
            if window is None:
                if len(self._windows) >= self._max_keys:
                    self._evict(now)
                window = _Window(count=0, window_start=now)
                self._windows[key] = window
            return window

    def _evict(self, now: float) -> None:
        """Drop idle, unblocked keys until the map is back under its bound.

        A window whose lock is held is mid-check and is left alone.
        """
        for key in list(self._windows):
            window = self._windows[key]
            if not window.lock.acquire(blocking=False):
                continue
            try:
                idle = now - window.window_start > _IDLE_EVICTION_SECONDS
                if idle and window.blocked_until <= now:
                    del self._windows[key]
            finally:
                window.lock.release()
            if len(self._windows) < self._max_keys:
                break


# ── Per-platform upstream budgets ────────────────────────────────────────

PLATFORM_RATE_LIMITS: Dict[str, RateLimit] = {
    "facebook": RateLimit(200, 3600, 3600),
    "instagram": RateLimit(200, 3600, 3600),
    "meta_ads": RateLimit(200, 3600, 3600),
    "tiktok": RateLimit(100, 60, 60),
    "youtube": RateLimit(10_000, 86_400, 86_400),
    "twitter": RateLimit(300, 900, 900),
    "linkedin": RateLimit(100, 86_400, 86_400),
    "linkedin_ads": RateLimit(100, 86_400, 86_400),
    "mock": RateLimit(10_000, 60, 60),
}


def platform_rate_limit(platform: str) -> RateLimit:
    """Budget for calls to one platform's API on behalf of one tenant."""
    return PLATFORM_RATE_LIMITS.get(platform, RateLimit(100, 60, 60))


def platform_key(platform: str, tenant_id: str) -> str:
    return f"platform:{platform}:{tenant_id}"
