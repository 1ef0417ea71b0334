"""
api/limiter.py -- Shared slowapi rate limiter instance and client origin key.

Two limiters guard the auth API:
  limiter (slowapi)      -- per-route limits declared with @limiter.limit(),
                            e.g. POST /api/auth/signin. Exceeding one raises
                            RateLimitExceeded, handled in api/main.py.
  RateLimiter (auth/)    -- per-action attempt windows (signup, forgot and
                            reset password) checked explicitly by the route
                            so the 429 body can carry resetTime. Lives on
                            app.state.rate_limiter.

Both key on client_origin() so one client address shares one bucket per action.

Using a single shared slowapi instance ensures all routes share the same
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.
"""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)


def client_origin(request: Request) -> str:
    """Return the address that identifies the caller for rate limiting."""
    return get_remote_address(request) or "unknown"
