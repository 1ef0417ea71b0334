"""
auth/sessions.py -- Signed session claims and their cookie.

Security design decisions:
  JWT: python-jose with HS256. A session is a signed claim bundle
       {sub: user_id, role, iat, exp} trusted without a store lookup. Any
       failure to decode -- bad signature, missing claim, unknown role,
       expiry -- yields None and the request is treated as unauthenticated.

  Lifetime: absolute expiry of max_age (30 days) from issue. Once a session
       is older than update_age (24 hours) but still valid it is "stale":
       the next request re-reads the user from the store and re-signs the
       claims with the current role and a fresh 30-day expiry.

  Staleness bound: because role is only re-read on refresh, a role change
       (e.g. an admin demoting a user) reaches that user's session within at
       most update_age. There is no server-side revocation list; sign-out
       deletes the cookie and nothing else.

  Cookie: httpOnly (no JS access), SameSite=Lax (not sent on cross-site
       POST), Secure when SECURE_COOKIES is on, path "/".

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

from jose import JWTError, jwt

from auth.models import Role, SessionClaims

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("evblog.auth.sessions")

COOKIE_NAME = "session_token"
_ALGORITHM = "HS256"


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    FRESH = "fresh"
    STALE = "stale"  # valid, but due for refresh
    EXPIRED = "expired"


class SessionManager:
    """Issue, validate and refresh session tokens.

    Usage:
        sessions = SessionManager(settings.secret_key)
        token = sessions.issue(user.id, user.role)
        claims = sessions.validate(token)           # None if invalid
        claims, new_token = sessions.load(token, store)
    """

    def __init__(
        self,
        secret_key: str,
        *,
        max_age: timedelta = timedelta(days=30),
        update_age: timedelta = timedelta(hours=24),
        secure_cookies: bool = True,
    ) -> None:
        self._secret_key = secret_key
        self.max_age = max_age
        self.update_age = update_age
        self.secure_cookies = secure_cookies

    # ------------------------------------------------------------------
    # Encode / decode
    # ------------------------------------------------------------------

    def issue(self, user_id: int, role: Role, now: datetime | None = None) -> str:
        """Sign a new session for `user_id` expiring max_age from now."""
        issued_at = now or datetime.now(timezone.utc)
        payload = {
            "sub": str(user_id),
            "role": Role(role).value,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + self.max_age).timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def validate(self, token: str | None, now: datetime | None = None) -> SessionClaims | None:
        """Decode and verify a session token. Returns None on any failure.

        Expiry is checked here against `now` rather than inside jose so tests
        can drive the clock.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
            claims = SessionClaims(
                user_id=int(payload["sub"]),
                role=Role(payload["role"]),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (JWTError, KeyError, ValueError, TypeError):
            return None
        if self.state(claims, now) is SessionState.EXPIRED:
            return None
        return claims

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def state(self, claims: SessionClaims | None, now: datetime | None = None) -> SessionState:
        if claims is None:
            return SessionState.UNAUTHENTICATED
        now = now or datetime.now(timezone.utc)
        if claims.expires_at <= now:
            return SessionState.EXPIRED
        if now - claims.issued_at > self.update_age:
            return SessionState.STALE
        return SessionState.FRESH

    def refresh(
        self,
        claims: SessionClaims,
        store: CredentialStore,
        now: datetime | None = None,
    ) -> tuple[SessionClaims | None, str | None]:
        """Re-sign a stale session with the user's current role.

        Returns (claims, new_token). new_token is None when no refresh was
        needed. (None, None) means the user no longer exists and the session
        must be dropped.
        """
        now = now or datetime.now(timezone.utc)
        if self.state(claims, now) is not SessionState.STALE:
            return claims, None
        user = store.get_user_by_id(claims.user_id)
        if user is None:
            logger.warning("Dropping session for missing user %d", claims.user_id)
            return None, None
        if user.role != claims.role:
            logger.info("Session role for user %d refreshed %s -> %s", user.id, claims.role.value, user.role.value)
        token = self.issue(user.id, user.role, now=now)
        return self.validate(token, now=now), token

    def load(
        self,
        token: str | None,
        store: CredentialStore,
        now: datetime | None = None,
    ) -> tuple[SessionClaims | None, str | None]:
        """validate() then refresh() in one call -- what the request middleware uses."""
        claims = self.validate(token, now=now)
        if claims is None:
            return None, None
        return self.refresh(claims, store, now=now)

    # ------------------------------------------------------------------
    # Cookie helpers
    # ------------------------------------------------------------------

    def set_cookie(self, response, token: str) -> None:
        """Write the session token as an httpOnly cookie on the response.

        max_age matches the JWT expiry so both expire together.
        """
        response.set_cookie(
            COOKIE_NAME,
            value=token,
            httponly=True,
            samesite="lax",
            secure=self.secure_cookies,
            path="/",
            max_age=int(self.max_age.total_seconds()),
        )

    def clear_cookie(self, response) -> None:
        response.delete_cookie(
            COOKIE_NAME,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.secure_cookies,
        )
