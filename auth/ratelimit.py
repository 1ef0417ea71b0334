"""
auth/ratelimit.py -- Windowed attempt counter for abuse-prone auth actions.

Pattern: injected service. One RateLimiter instance lives on app.state and
every route that needs it receives the same object, so counters are shared
by all requests in the process. Nothing here is a module-level global.

Counters live in a `limits` storage backend (the library slowapi is built on):
  memory://            per-process dict with a lock per key (default)
  redis://host:6379    atomic INCR + EXPIRE, shared across worker processes

Window semantics:
  The first attempt for a key starts the window (count = 1, window ends at
  first attempt + window). Every attempt inside the window increments the
  counter atomically. Once the count exceeds max_attempts the attempt is denied
  until the window ends; the next attempt after that starts a fresh window.

Failure policy:
  If the storage backend raises (e.g. Redis is down), the attempt is denied
  unless RATE_LIMIT_FAIL_OPEN=true. A lost memory:// counter on restart only
  ever resets limits; it never locks anybody out permanently.

Layer rule: no imports from api/ or web/. core/ is allowed.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

from limits.storage import Storage, storage_from_string

from auth.models import RateLimitResult
from core.config import Settings

logger = logging.getLogger("evblog.auth.ratelimit")

_KEY_PREFIX = "evblog/ratelimit/"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limit for one named action, e.g. 3 signups per 15 minutes."""

    action: str
    max_attempts: int
    window_ms: int

    def key_for(self, origin: str) -> str:
        return f"{self.action}:{origin}"


class RateLimiter:
    """check(key, max_attempts, window_ms) over a pluggable counter storage.

    Usage:
        limiter = RateLimiter("memory://")
        result = limiter.check("signup:203.0.113.7", 3, 15 * 60 * 1000)
        if not result.allowed:
            ...  # 429 until result.reset_at
    """

    def __init__(self, storage_uri: str = "memory://", *, fail_open: bool = False) -> None:
        self._storage: Storage = storage_from_string(storage_uri)
        self.fail_open = fail_open

    def check(self, key: str, max_attempts: int, window_ms: int) -> RateLimitResult:
        """Record one attempt for `key` and report whether it is allowed."""
        # Storage backends expire keys in whole seconds.
        window_seconds = max(1, math.ceil(window_ms / 1000))
        storage_key = _KEY_PREFIX + key
        try:
            count = self._storage.incr(storage_key, window_seconds)
            reset_at = self._storage.get_expiry(storage_key)
        except Exception:
            logger.exception("Rate limit storage failed for %r (fail_open=%s)", key, self.fail_open)
            return RateLimitResult(
                allowed=self.fail_open,
                remaining=0,
                reset_at=time.time() + window_seconds,
            )

        allowed = count <= max_attempts
        if not allowed:
            logger.warning("Rate limit exceeded for %r (%d/%d)", key, count, max_attempts)
        return RateLimitResult(allowed=allowed, remaining=max(0, max_attempts - count), reset_at=reset_at)

    def check_policy(self, policy: RateLimitPolicy, origin: str) -> RateLimitResult:
        return self.check(policy.key_for(origin), policy.max_attempts, policy.window_ms)

    def reset(self) -> None:
        """Drop every counter."""
        self._storage.reset()


def build_policies(settings: Settings) -> dict[str, RateLimitPolicy]:
    """Return the per-action policies configured in Settings, keyed by action."""
    policies = [
        RateLimitPolicy("signup", settings.signup_max_attempts, settings.signup_window_seconds * 1000),
        RateLimitPolicy(
            "password-reset",
            settings.forgot_password_max_attempts,
            settings.forgot_password_window_seconds * 1000,
        ),
        RateLimitPolicy(
            "reset-password",
            settings.reset_password_max_attempts,
            settings.reset_password_window_seconds * 1000,
        ),
    ]
    return {p.action: p for p in policies}
