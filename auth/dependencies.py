"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Sessions travel in two carriers, checked in priority order:
  1. "session_token" cookie -- set by sign-in and the OAuth callback.
  2. Authorization: Bearer <token> header -- API clients.

The session middleware in api/main.py validates (and, if stale, refreshes)
the cookie once per request and leaves the claims on request.state.session.
try_get_session() reuses that result and only decodes a Bearer token itself.

try_get_session() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_role(role) wraps get_current_session() and raises auth.errors.Forbidden
(403 through the AuthError handler) when the session role is below `role`.

Authorization decisions use the session claim, not the store row, so a role
change is honored only after the session refreshes (see auth/sessions.py).

Layer rule: no imports from web/ or core/.
  auth/dependencies.py may import from fastapi because this module is part of
  the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import Forbidden
from auth.models import Role, SessionClaims, User
from auth.sessions import COOKIE_NAME, SessionManager

_UNSET = object()


def try_get_session(request: Request) -> SessionClaims | None:
    """Return the request's session claims, or None. Never raises."""
    claims = getattr(request.state, "session", _UNSET)
    if claims is not _UNSET and claims is not None:
        return claims

    sessions: SessionManager = request.app.state.sessions
    if claims is _UNSET:
        # Middleware did not run (e.g. a sub-application); decode the cookie here.
        cookie_claims = sessions.validate(request.cookies.get(COOKIE_NAME))
        if cookie_claims is not None:
            return cookie_claims

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return sessions.validate(auth_header[7:])
    return None


def get_current_session(request: Request) -> SessionClaims:
    """Require a valid session. Raises HTTP 401 otherwise."""
    claims = try_get_session(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return claims


def get_current_user(request: Request) -> User:
    """Require a session whose user still exists. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    claims = get_current_session(request)
    user = request.app.state.user_store.get_user_by_id(claims.user_id, with_accounts=True)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_role(role: Role):
    """Build a dependency that requires the session role to satisfy `role`.

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        async def route(claims: SessionClaims = Depends(require_role(Role.ADMIN))): ...
    """

    def dependency(request: Request) -> SessionClaims:
        claims = get_current_session(request)
        if not claims.role.satisfies(role):
            raise Forbidden(
                f"user {claims.user_id} with role {claims.role.value} denied {request.url.path}",
                public_message=f"{role.value.title()} access required.",
            )
        return claims

    return dependency


require_admin = require_role(Role.ADMIN)
