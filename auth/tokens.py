"""
auth/tokens.py -- Opaque token issuing for email verification and password reset.

secrets.token_urlsafe(32) gives 256 bits of entropy encoded as 43 URL-safe
characters, so tokens can travel in a query string unescaped. Tokens carry no
claims and cannot be decoded; they are lookup keys into the credential store,
which owns expiry.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone

_TOKEN_BYTES = 32


def issue_token() -> str:
    """Return a new random URL-safe token."""
    return secrets.token_urlsafe(_TOKEN_BYTES)


def issue_token_with_expiry(ttl: timedelta, now: datetime | None = None) -> tuple[str, datetime]:
    """Return (token, expires_at) where expires_at is exactly now + ttl."""
    issued_at = now or datetime.now(timezone.utc)
    return issue_token(), issued_at + ttl
