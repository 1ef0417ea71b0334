"""
api/routes/auth.py -- Credential, verification and session REST endpoints.

Routes:
  POST /api/auth/signup            -- create a password account; 201
  GET  /api/auth/verify-email      -- consume a verification token; 302
  POST /api/auth/forgot-password   -- issue a reset token; always 200
  POST /api/auth/reset-password    -- consume a reset token, set password
  POST /api/auth/signin            -- password sign-in; sets session cookie
  POST /api/auth/signout           -- clears session cookie; 200
  GET  /api/auth/session           -- current session summary (public)
  GET  /api/auth/providers         -- enabled OAuth providers (public)

Security:
  [H2] POST /signin is rate-limited per client address by slowapi.
  [H3] signup, forgot-password and reset-password are gated by the injected
       RateLimiter before the body fields are validated; a 429 carries resetTime.
  [C1] IdentityResolver.authenticate_with_password() equalizes timing.
  [M5] Cache-Control: no-store on every response that sets or clears a session.
  Enumeration: forgot-password answers identically for unknown, OAuth-only
  and password accounts. Sign-in failures all surface as invalid_credentials
  (see auth/errors.py).
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import client_origin, limiter
from api.models import (
    ForgotPasswordRequest,
    MessageResponse,
    OAuthProviderInfo,
    ResetPasswordRequest,
    SessionResponse,
    SessionUser,
    SigninRequest,
    SigninResponse,
    SignupRequest,
    SignupResponse,
    UserPublic,
)
from auth.dependencies import try_get_session
from auth.errors import InvalidToken, RateLimited
from auth.identity import IdentityResolver
from auth.oauth import get_enabled_providers
from auth.policy import ERROR_PATH, SIGNIN_PATH
from auth.ratelimit import RateLimiter
from auth.sessions import SessionManager
from auth.store import CredentialStore
from core.config import get_settings

logger = logging.getLogger("evblog.api.auth")

# Auth policy: every route here is public. Sign-out needs no prior session,
# and /session answers {"authenticated": false} rather than 401.
router = APIRouter()

_RATE_LIMIT_MESSAGES = {
    "signup": "Too many signup attempts. Please try again later.",
    "password-reset": "Too many password reset requests. Please try again later.",
    "reset-password": "Too many password reset attempts. Please try again later.",
}

_FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, we've sent a password reset link."


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def rate_limit(action: str):
    """Build a dependency that records one attempt for `action` from this client.

    Dependencies resolve before the body fields are validated, so a request
    whose JSON fails field validation still counts. A body that is not JSON
    at all is rejected while parsing, before this runs, and does not count.
    """

    def dependency(request: Request) -> None:
        limiter_: RateLimiter = request.app.state.rate_limiter
        policy = request.app.state.rate_limit_policies[action]
        origin = client_origin(request)
        result = limiter_.check_policy(policy, origin)
        if not result.allowed:
            raise RateLimited(
                f"{action} limit reached for {origin}",
                reset_at=result.reset_at,
                public_message=_RATE_LIMIT_MESSAGES.get(action),
            )

    return dependency


def _deliver_link(kind: str, user_ref: object, path: str, token: str) -> None:
    """Hand a one-time link to the mail collaborator.

    There is no mail transport; in debug mode the link is logged so the flow
    can be completed by hand. Outside debug only the event is logged.
    """
    settings = get_settings()
    if settings.debug:
        logger.info("%s link for %s: %s%s?token=%s", kind, user_ref, settings.base_url, path, token)
    else:
        logger.info("%s link issued for %s", kind, user_ref)


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


# ---------------------------------------------------------------------------
# Signup and email verification
# ---------------------------------------------------------------------------


@router.post(
    "/auth/signup",
    response_model=SignupResponse,
    status_code=201,
    dependencies=[Depends(rate_limit("signup"))],
)
def signup(request: Request, body: SignupRequest) -> SignupResponse:
    """Create an unverified password account and send its verification link.

    Conflicts (email taken) surface as 400 conflict; the message names the
    linked provider when the existing account signs in through OAuth.
    """
    identity: IdentityResolver = request.app.state.identity
    summary, verification = identity.create_account(body.name, body.email, body.password)
    _deliver_link("Verification", f"user {summary.id}", "/api/auth/verify-email", verification.token)
    return SignupResponse(
        message="Account created successfully. Please check your email to verify your account.",
        user=UserPublic(id=summary.id, name=summary.name, email=summary.email),
    )


@router.get("/auth/verify-email")
def verify_email(request: Request, token: str | None = None) -> RedirectResponse:
    """Consume a verification token and redirect to the sign-in page."""
    if not token:
        return RedirectResponse(f"{ERROR_PATH}?error=Verification", status_code=302)

    identity: IdentityResolver = request.app.state.identity
    try:
        identity.consume_verification_token(token)
    except InvalidToken as exc:
        logger.info("Email verification failed: %s", exc.message)
        return RedirectResponse(f"{ERROR_PATH}?error=Verification", status_code=302)
    return RedirectResponse(f"{SIGNIN_PATH}?message=verified", status_code=302)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post(
    "/auth/forgot-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit("password-reset"))],
)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Issue a reset token if the email belongs to a password account.

    The response is the same whether or not a token was issued.
    """
    identity: IdentityResolver = request.app.state.identity
    reset = identity.request_password_reset(body.email)
    if reset is not None:
        _deliver_link("Password reset", f"user {reset.user_id}", "/auth/reset-password", reset.token)
    return MessageResponse(message=_FORGOT_PASSWORD_MESSAGE)


@router.post(
    "/auth/reset-password",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit("reset-password"))],
)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    identity: IdentityResolver = request.app.state.identity
    identity.reset_password(body.token, body.password)
    return MessageResponse(message="Password has been reset successfully. You can now sign in with your new password.")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.post("/auth/signin", response_model=SigninResponse)
@limiter.limit(get_settings().login_rate_limit)  # [H2] below @router so the route calls the limited wrapper
def signin(request: Request, body: SigninRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Every failure raises an AuthError whose public form is the same
    invalid_credentials 401, so the response never reveals whether the
    account exists, is unverified, or signs in through OAuth.
    """
    identity: IdentityResolver = request.app.state.identity
    sessions: SessionManager = request.app.state.sessions

    summary = identity.authenticate_with_password(body.email, body.password)
    token = sessions.issue(summary.id, summary.role)
    logger.info("User %d signed in with password", summary.id)

    resp = JSONResponse(
        content=SigninResponse(message="Signed in.", user=SessionUser.from_summary(summary)).model_dump(mode="json")
    )
    sessions.set_cookie(resp, token)
    return _no_store(resp)


@router.post("/auth/signout", response_model=MessageResponse)
def signout(request: Request) -> JSONResponse:
    """Delete the session cookie. Sessions are stateless, so nothing else is revoked."""
    sessions: SessionManager = request.app.state.sessions
    resp = JSONResponse(content=MessageResponse(message="Signed out.").model_dump())
    sessions.clear_cookie(resp)
    return _no_store(resp)


@router.get("/auth/session", response_model=SessionResponse)
def session(request: Request) -> JSONResponse:
    """Return who the current session belongs to.

    The role comes from the session claim; name and email are read from the
    store so profile edits show up immediately.
    """
    claims = try_get_session(request)
    user = None
    if claims is not None:
        user_store: CredentialStore = request.app.state.user_store
        user = user_store.get_user_by_id(claims.user_id)

    if claims is None or user is None:
        body = SessionResponse(authenticated=False)
    else:
        body = SessionResponse(
            authenticated=True,
            user=SessionUser(
                id=user.id,
                email=user.email,
                name=user.name,
                role=claims.role,
                avatar_url=user.avatar_url,
            ),
            expires=claims.expires_at.isoformat(),
        )
    return _no_store(JSONResponse(content=body.model_dump(mode="json", exclude_none=True)))


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    The sign-in page calls this to decide which provider buttons to render.
    Returns an empty list if no OAuth credentials are configured.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]
