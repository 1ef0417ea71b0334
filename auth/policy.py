"""
auth/policy.py -- Route access decisions.

decide() is a pure function of (path, session claims, query params). It does
no I/O and knows nothing about FastAPI; the request middleware in api/main.py
feeds it and turns the Decision into a response.

Rules, first match wins:
  1. Signed in and on an auth-entry page (sign in / sign up / forgot
     password): redirect to the sanitized callbackUrl, else the public landing.
  2. Protected page and not signed in: redirect to sign-in with callbackUrl
     set to the requested path.
  3. Admin page and role is not ADMIN: redirect to the authenticated landing
     page. A silent downgrade, not an error.
  4. Author page and role below AUTHOR: redirect to the public landing page.
  5. Allow.

check_csrf() is independent of the session: state-changing requests to API
paths must come from the same origin as the Host they were sent to.

Prefix matching is per path segment, so "/admin" covers "/admin" and
"/admin/users" but not "/administrator".

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlencode, urlsplit

from auth.models import Role, SessionClaims

SIGNIN_PATH = "/auth/signin"
ERROR_PATH = "/auth/error"
PUBLIC_LANDING = "/"
AUTHENTICATED_LANDING = "/dashboard"

AUTH_ENTRY_PREFIXES = ("/auth/signin", "/auth/signup", "/auth/forgot-password")
PROTECTED_PREFIXES = ("/dashboard", "/admin")
ADMIN_PREFIXES = ("/admin",)
AUTHOR_PREFIXES = ("/dashboard",)
API_PREFIX = "/api"

_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class RedirectTo:
    url: str


@dataclass(frozen=True)
class Deny:
    status: int
    reason: str = "Forbidden"


Decision = Allow | RedirectTo | Deny


def matches(path: str, prefixes: tuple[str, ...]) -> bool:
    """True if `path` equals a prefix or sits underneath it."""
    return any(path == p or path.startswith(p + "/") for p in prefixes)


def sanitize_callback_url(url: str | None, default: str = PUBLIC_LANDING) -> str:
    """Accept only same-origin relative paths as post-login redirect targets. [C2]

    Rejected (replaced with `default`):
      https://attacker.com   absolute URL
      //attacker.com         protocol-relative URL
      /\\attacker.com         browsers normalize the backslash to "//"
    """
    if not url or not url.startswith("/") or url.startswith("//") or "\\" in url:
        return default
    parts = urlsplit(url)
    if parts.scheme or parts.netloc:
        return default
    return url


def signin_redirect(path: str) -> str:
    return f"{SIGNIN_PATH}?{urlencode({'callbackUrl': path}, safe='/')}"


def decide(path: str, claims: SessionClaims | None, query: Mapping[str, str] | None = None) -> Decision:
    """Decide whether a page request may proceed."""
    query = query or {}

    if claims is not None and matches(path, AUTH_ENTRY_PREFIXES):
        return RedirectTo(sanitize_callback_url(query.get("callbackUrl")))

    if not matches(path, PROTECTED_PREFIXES):
        return Allow()

    if claims is None:
        return RedirectTo(signin_redirect(path))

    if matches(path, ADMIN_PREFIXES) and claims.role is not Role.ADMIN:
        return RedirectTo(AUTHENTICATED_LANDING)

    if matches(path, AUTHOR_PREFIXES) and not claims.role.satisfies(Role.AUTHOR):
        return RedirectTo(PUBLIC_LANDING)

    return Allow()


def check_csrf(method: str, path: str, origin: str | None, host: str | None) -> Deny | None:
    """Reject cross-origin state-changing API requests with 403.

    A missing Origin header is treated as cross-origin: browsers always send
    Origin on cross-site POST, and same-site fetch() sends it too.
    """
    if method.upper() in _SAFE_METHODS or not matches(path, (API_PREFIX,)):
        return None
    if not origin or not host:
        return Deny(403, "Missing Origin header")
    origin_host = urlsplit(origin).netloc
    if origin_host.lower() != host.lower():
        return Deny(403, "Cross-origin request blocked")
    return None
