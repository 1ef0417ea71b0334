"""
api/main.py -- FastAPI application entry point for the evBlog auth service.

Exposes the auth core over HTTP: signup, verification, password reset,
password sign-in, session introspection, profile and admin endpoints. The
browser OAuth flow and landing pages live in web/routes.py and are mounted by
asgi.py.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. security_headers      -- X-Frame-Options, CSP, nosniff, Referrer-Policy
  2. log_requests          -- method, path, status, latency, client
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SessionMiddleware     -- signed cookie holding the OAuth state (authlib)
  6. SlowAPIMiddleware     -- enforces per-route limits from api.limiter
  7. session_guard         -- validates/refreshes the session cookie, CSRF
                              origin check, access policy for page paths

Lifespan builds the credential store and the services that share it
(identity resolver, session manager, rate limiter) and puts them on app.state.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, FieldError, HealthResponse
from api.routes.admin import router as admin_router
from api.routes.auth import router as auth_router
from api.routes.users import router as users_router
from auth.dependencies import get_current_user
from auth.errors import AuthError, Forbidden, RateLimited, StoreUnavailable, ValidationFailed
from auth.identity import IdentityResolver
from auth.models import User
from auth.oauth import get_enabled_providers
from auth.oauth import oauth as oauth_client
from auth.policy import API_PREFIX, Deny, RedirectTo, check_csrf, decide, matches
from auth.ratelimit import RateLimiter, build_policies
from auth.sessions import COOKIE_NAME, SessionManager
from auth.store import CredentialStore
from core.config import Settings, get_settings

VERSION = "0.3.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("evblog.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


def init_services(app: FastAPI, user_store: CredentialStore, cfg: Settings | None = None) -> None:
    """Attach the auth services to app.state around an existing store.

    Shared by the real lifespan and the test fixtures, which pass an isolated
    in-memory store.
    """
    cfg = cfg or get_settings()
    app.state.user_store = user_store
    app.state.identity = IdentityResolver(
        user_store,
        merge_by_email=cfg.oauth_merge_by_email,
        verification_ttl=timedelta(seconds=cfg.verification_token_ttl_seconds),
        reset_ttl=timedelta(seconds=cfg.reset_token_ttl_seconds),
    )
    app.state.sessions = SessionManager(
        cfg.secret_key,
        max_age=timedelta(seconds=cfg.session_max_age_seconds),
        update_age=timedelta(seconds=cfg.session_update_age_seconds),
        secure_cookies=bool(cfg.secure_cookies),
    )
    app.state.rate_limiter = RateLimiter(cfg.rate_limit_storage_uri, fail_open=cfg.rate_limit_fail_open)
    app.state.rate_limit_policies = build_policies(cfg)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The store is created first because every other service holds
    a reference to it.
    """
    logger.info("evBlog auth service starting up (debug=%s)", settings.debug)
    init_services(app, CredentialStore(settings.database_url))
    app.state.oauth = oauth_client
    providers = [p["name"] for p in get_enabled_providers()]
    logger.info("Auth initialized (oauth providers: %s)", ", ".join(providers) or "none")

    yield

    app.state.user_store.close()
    logger.info("evBlog auth service shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="evBlog Auth API",
    description="Accounts, sessions and roles for the evBlog platform.",
    version=VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    # Auth-protected equivalents are registered below.
    docs_url=None,
    redoc_url=None,
)

# Attach the shared limiter to app.state so SlowAPIMiddleware can locate it.
# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# HTTP middleware
# ---------------------------------------------------------------------------

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": (
        "default-src 'self'; "
        "script-src 'self'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: https:; "
        "font-src 'self'; "
        "connect-src 'self'; "
        "frame-ancestors 'none'; "
        "base-uri 'self'; "
        "form-action 'self'"
    ),
}

_AUTH_PREFIXES = ("/api/auth", "/auth")


def _sets_session_cookie(response) -> bool:
    return any(v.startswith(f"{COOKIE_NAME}=") for v in response.headers.getlist("set-cookie"))


async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in _SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    if matches(request.url.path, _AUTH_PREFIXES) or _sets_session_cookie(response):
        response.headers["Cache-Control"] = "no-store"
    return response


async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


async def session_guard(request: Request, call_next):
    """Resolve the session, then apply the CSRF check and the access policy.

    The cookie is validated once here and the claims left on
    request.state.session for the route dependencies. A stale session is
    re-signed with the user's current role and the new cookie attached to
    whatever response goes out; an invalid or expired cookie is deleted.
    Routes that set or clear the cookie themselves (sign-in, sign-out, OAuth
    callback) win over both.

    The access policy applies to page paths only. API routes authorize
    through dependencies and answer 401/403 JSON rather than redirecting.
    """
    sessions: SessionManager = request.app.state.sessions
    path = request.url.path
    raw_token = request.cookies.get(COOKIE_NAME)

    claims, new_token = await run_in_threadpool(sessions.load, raw_token, request.app.state.user_store)
    request.state.session = claims

    denial = check_csrf(request.method, path, request.headers.get("origin"), request.headers.get("host"))
    if denial is not None:
        logger.warning("CSRF check failed for %s %s: %s", request.method, path, denial.reason)
        response = _deny_response(request, denial)
    elif matches(path, (API_PREFIX,)):
        response = await call_next(request)
    else:
        decision = decide(path, claims, request.query_params)
        if isinstance(decision, RedirectTo):
            response = RedirectResponse(decision.url, status_code=302)
        elif isinstance(decision, Deny):
            response = _deny_response(request, decision)
        else:
            response = await call_next(request)

    if not _sets_session_cookie(response):
        if new_token is not None:
            sessions.set_cookie(response, new_token)
        elif raw_token and claims is None:
            sessions.clear_cookie(response)
    return response


def _deny_response(request: Request, denial: Deny) -> JSONResponse:
    # Middleware runs outside the exception handlers, so build the response directly.
    exc = Forbidden(f"{request.method} {request.url.path}: {denial.reason}", public_message=denial.reason)
    response = _auth_error_response(request, exc)
    response.status_code = denial.status
    return response


# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() puts each new middleware OUTSIDE the ones already added,
# so registration runs innermost first: session_guard ... security_headers.
# ---------------------------------------------------------------------------

app.add_middleware(BaseHTTPMiddleware, dispatch=session_guard)
app.add_middleware(SlowAPIMiddleware)

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback, and by web/routes.py
# to remember the sanitized callbackUrl across the provider round trip.
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="evblog_oauth",
    https_only=bool(settings.secure_cookies),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)
app.add_middleware(BaseHTTPMiddleware, dispatch=log_requests)
app.add_middleware(BaseHTTPMiddleware, dispatch=security_headers)


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(users_router, prefix="/api", tags=["Users"])
app.include_router(admin_router, prefix="/api", tags=["Admin"])
# Web router is mounted by asgi.py, not here.
# api/ and web/ are independent layers -- only the top-level asgi.py imports both.


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="evBlog Auth API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="evBlog Auth API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map an internal auth failure to its public code, status and message.

    The precise internal reason goes to the log only; the client sees the
    collapsed public vocabulary from auth/errors.py.
    """
    return _auth_error_response(request, exc)


def _auth_error_response(request: Request, exc: AuthError) -> JSONResponse:
    if isinstance(exc, StoreUnavailable):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    elif isinstance(exc, RateLimited):
        logger.warning("%s %s rate limited: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code.value, exc.message)

    fields = None
    if isinstance(exc, ValidationFailed) and exc.fields:
        fields = [FieldError(**f) for f in exc.fields]
    reset_time = int(exc.reset_at * 1000) if isinstance(exc, RateLimited) else None

    response = JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(code=exc.public_code.value, message=exc.public_message, fields=fields),
            reset_time=reset_time,
        ).to_content(),
    )
    if isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(max(0, math.ceil(exc.reset_at - time.time())))
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 when a slowapi route limit is exceeded.

    Retry-After tells clients how many seconds to wait before retrying.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests. Please try again later.",
                detail=str(exc.detail),
            ),
            reset_time=int((time.time() + retry_after) * 1000),
        ).to_content(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


def _field_errors(exc: RequestValidationError) -> list[FieldError]:
    fields: list[FieldError] = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        message = err.get("msg", "Invalid value.")
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        fields.append(FieldError(field=".".join(loc) or "body", message=message))
    return fields


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {field, message} entry per failed constraint."""
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Invalid input data.",
                fields=_field_errors(exc),
            )
        ).to_content(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers and dependencies raise HTTPException with a dict detail
    ({"code", "message"}). When detail is already a structured dict, use it
    directly as the error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).to_content(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors (e.g. database outages).

    Security note: the raw exception is written to the log only, never to the
    response body. The client receives only a generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="Internal server error. Please try again later.",
            )
        ).to_content(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied -- health
# checks from load balancers and monitoring systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and per-component status."""
    try:
        db_ok = request.app.state.user_store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database ping failed")
        db_ok = False
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
