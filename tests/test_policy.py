"""
tests/test_policy.py -- Pure access decisions and the CSRF origin check.

Covers:
  - unauthenticated /admin/x -> /auth/signin?callbackUrl=/admin/x
  - READER on /admin/x -> /dashboard; ADMIN -> allow
  - READER on /dashboard -> /; AUTHOR -> allow
  - signed-in visitor on an auth-entry page -> sanitized callbackUrl
  - segment-aware prefix matching
  - callbackUrl sanitizer rejects off-site targets
  - CSRF: same-origin allowed, cross-origin and missing Origin denied
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.models import Role, SessionClaims
from auth.policy import (
    Allow,
    Deny,
    RedirectTo,
    check_csrf,
    decide,
    matches,
    sanitize_callback_url,
    signin_redirect,
)

_NOW = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _claims(role: Role) -> SessionClaims:
    return SessionClaims(user_id=1, role=role, issued_at=_NOW, expires_at=_NOW + timedelta(days=30))


class TestDecide:
    def test_unauthenticated_admin_redirects_to_signin(self) -> None:
        assert decide("/admin/x", None) == RedirectTo("/auth/signin?callbackUrl=/admin/x")

    def test_reader_on_admin_goes_to_dashboard(self) -> None:
        assert decide("/admin/x", _claims(Role.READER)) == RedirectTo("/dashboard")

    def test_author_on_admin_goes_to_dashboard(self) -> None:
        assert decide("/admin", _claims(Role.AUTHOR)) == RedirectTo("/dashboard")

    def test_admin_on_admin_allowed(self) -> None:
        assert decide("/admin/x", _claims(Role.ADMIN)) == Allow()

    def test_reader_on_dashboard_goes_home(self) -> None:
        assert decide("/dashboard", _claims(Role.READER)) == RedirectTo("/")

    @pytest.mark.parametrize("role", [Role.AUTHOR, Role.ADMIN])
    def test_author_and_above_on_dashboard_allowed(self, role: Role) -> None:
        assert decide("/dashboard/posts", _claims(role)) == Allow()

    def test_unauthenticated_dashboard_redirects_to_signin(self) -> None:
        assert decide("/dashboard", None) == RedirectTo("/auth/signin?callbackUrl=/dashboard")

    def test_public_paths_allowed(self) -> None:
        assert decide("/", None) == Allow()
        assert decide("/posts/hello", None) == Allow()
        assert decide("/auth/signin", None) == Allow()

    def test_signed_in_on_signin_page_follows_callback(self) -> None:
        decision = decide("/auth/signin", _claims(Role.READER), {"callbackUrl": "/posts/1"})
        assert decision == RedirectTo("/posts/1")

    def test_signed_in_on_signup_without_callback_goes_home(self) -> None:
        assert decide("/auth/signup", _claims(Role.READER)) == RedirectTo("/")

    def test_signed_in_ignores_offsite_callback(self) -> None:
        decision = decide("/auth/signin", _claims(Role.ADMIN), {"callbackUrl": "https://evil.example"})
        assert decision == RedirectTo("/")


class TestMatching:
    def test_prefix_is_segment_aware(self) -> None:
        assert matches("/admin", ("/admin",))
        assert matches("/admin/users", ("/admin",))
        assert not matches("/administrator", ("/admin",))
        assert decide("/administrator", None) == Allow()

    def test_signin_redirect_keeps_slashes(self) -> None:
        assert signin_redirect("/admin/users") == "/auth/signin?callbackUrl=/admin/users"


class TestSanitizeCallback:
    @pytest.mark.parametrize(
        "url",
        ["https://evil.example", "//evil.example", "/\\evil.example", "javascript:alert(1)", "", None],
    )
    def test_rejects_offsite(self, url) -> None:
        assert sanitize_callback_url(url) == "/"

    def test_accepts_relative_path_with_query(self) -> None:
        assert sanitize_callback_url("/dashboard?tab=drafts") == "/dashboard?tab=drafts"

    def test_custom_default(self) -> None:
        assert sanitize_callback_url(None, default="/dashboard") == "/dashboard"


class TestCsrf:
    def test_same_origin_post_allowed(self) -> None:
        assert check_csrf("POST", "/api/auth/signup", "http://blog.example", "blog.example") is None

    def test_host_comparison_is_case_insensitive(self) -> None:
        assert check_csrf("POST", "/api/auth/signup", "http://Blog.Example:8000", "blog.example:8000") is None

    def test_cross_origin_post_denied(self) -> None:
        denial = check_csrf("POST", "/api/auth/signup", "http://evil.example", "blog.example")
        assert isinstance(denial, Deny)
        assert denial.status == 403

    def test_missing_origin_denied(self) -> None:
        denial = check_csrf("PATCH", "/api/users/me", None, "blog.example")
        assert isinstance(denial, Deny)
        assert denial.status == 403

    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    def test_safe_methods_skip_check(self, method: str) -> None:
        assert check_csrf(method, "/api/auth/session", "http://evil.example", "blog.example") is None

    def test_non_api_paths_skip_check(self) -> None:
        assert check_csrf("POST", "/auth/signout", None, "blog.example") is None
