"""
web/routes.py -- Browser-facing routes for evBlog: OAuth flow and landing pages.

These routes share app.state with the API routes (same credential store,
identity resolver and session manager) but speak in redirects instead of
JSON error envelopes. Rendering is out of scope; where a page must exist for
the access policy to be observable, it answers with a small JSON summary.

Access control for these paths happens before any handler runs: the
session_guard middleware in api/main.py applies auth.policy.decide() to every
non-/api path. Handlers here can assume the policy already allowed the request.

Route registration order: /auth/signin/{provider} is registered before
/auth/signin so the provider sub-path is never shadowed.

Routes:
  GET  /auth/signin/{provider}    -- redirect to the provider's consent page
  GET  /auth/callback/{provider}  -- provider callback; sets session cookie
  POST /auth/signout              -- clear cookie, redirect /
  GET  /auth/signin               -- sign-in page stub (providers, message)
  GET  /auth/error                -- error page stub (whitelisted error code)
  GET  /                          -- public landing
  GET  /dashboard                 -- AUTHOR and above
  GET  /admin                     -- ADMIN only
"""

import logging

import httpx
from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from auth.errors import AccountNotLinked
from auth.identity import IdentityResolver
from auth.oauth import get_enabled_providers, get_oauth_profile
from auth.policy import ERROR_PATH, sanitize_callback_url
from auth.sessions import SessionManager

logger = logging.getLogger("evblog.web")

router = APIRouter()

# Whitelist mapping for ?error= query params on /auth/error [M3].
# The raw query param is NEVER echoed back -- only the message from this dict.
_ERROR_MESSAGES: dict[str, str] = {
    "OAuthSignin": "Sign in with that provider failed. Please try again.",
    "OAuthAccountNotLinked": (
        "This email is already registered. Sign in with the method you used originally to link this account."
    ),
    "Verification": "The verification link is invalid or has expired.",
}

_SIGNIN_MESSAGES: dict[str, str] = {
    "verified": "Your email has been verified. You can now sign in.",
}

_CALLBACK_SESSION_KEY = "callbackUrl"


def _error_redirect(code: str) -> RedirectResponse:
    return RedirectResponse(f"{ERROR_PATH}?error={code}", status_code=302)


def _session_summary(request: Request) -> dict:
    claims = getattr(request.state, "session", None)
    if claims is None:
        return {"authenticated": False}
    return {"authenticated": True, "user_id": claims.user_id, "role": claims.role.value}


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/signin/{provider}")
async def oauth_redirect(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the OAuth provider's authorization page.

    Validates the provider name against the enabled provider list before
    redirecting. The sanitized callbackUrl is kept in the signed Starlette
    session until the callback returns [C2].
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return _error_redirect("OAuthSignin")

    request.session[_CALLBACK_SESSION_KEY] = sanitize_callback_url(request.query_params.get("callbackUrl"))
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the OAuth provider callback and issue a session cookie.

    Flow:
      1. Exchange authorization code for token (authlib checks the state).
      2. Normalize the provider profile; unverified email is rejected [H1].
      3. Resolve to a canonical user: linked account first, then email.
      4. Issue the session, set cookie, redirect to the remembered callbackUrl.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return _error_redirect("OAuthSignin")

    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _error_redirect("OAuthSignin")

    try:
        profile = await get_oauth_profile(client, provider, token)
    except (ValueError, httpx.HTTPError) as exc:
        logger.warning("OAuth login rejected for %r: %s", provider, exc)
        return _error_redirect("OAuthSignin")

    identity: IdentityResolver = request.app.state.identity
    try:
        user = await run_in_threadpool(
            identity.resolve_oauth_identity, provider, profile.provider_account_id, profile
        )
    except AccountNotLinked as exc:
        logger.info("OAuth login refused: %s", exc.message)
        return _error_redirect("OAuthAccountNotLinked")

    sessions: SessionManager = request.app.state.sessions
    next_url = sanitize_callback_url(request.session.pop(_CALLBACK_SESSION_KEY, None))  # [C2]
    resp = RedirectResponse(next_url, status_code=302)
    sessions.set_cookie(resp, sessions.issue(user.id, user.role))
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    logger.info("User %d signed in with %s", user.id, provider)
    return resp


@router.post("/auth/signout")
def signout(request: Request) -> RedirectResponse:
    """Clear the session cookie and redirect to the public landing page."""
    sessions: SessionManager = request.app.state.sessions
    resp = RedirectResponse("/", status_code=302)
    sessions.clear_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Page stubs
# ---------------------------------------------------------------------------


@router.get("/auth/signin")
def signin_page(request: Request) -> JSONResponse:
    """Sign-in page stub. Signed-in visitors never get here (policy rule 1)."""
    message = _SIGNIN_MESSAGES.get(request.query_params.get("message", ""))
    return JSONResponse(
        {
            "page": "signin",
            "providers": get_enabled_providers(),
            "callbackUrl": sanitize_callback_url(request.query_params.get("callbackUrl")),
            "message": message,
        }
    )


@router.get("/auth/error")
def error_page(request: Request) -> JSONResponse:
    code = request.query_params.get("error", "")
    if code not in _ERROR_MESSAGES:
        code = "OAuthSignin"
    return JSONResponse({"page": "error", "error": code, "message": _ERROR_MESSAGES[code]})


@router.get("/")
def home(request: Request) -> JSONResponse:
    return JSONResponse({"page": "home", **_session_summary(request)})


@router.get("/dashboard")
def dashboard(request: Request) -> JSONResponse:
    return JSONResponse({"page": "dashboard", **_session_summary(request)})


@router.get("/admin")
def admin(request: Request) -> JSONResponse:
    return JSONResponse({"page": "admin", **_session_summary(request)})
