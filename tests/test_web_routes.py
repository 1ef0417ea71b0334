"""
tests/test_web_routes.py -- Browser OAuth flow and page stubs.

The OAuth registry on app.state is a MagicMock (see conftest), so these tests
script the provider client directly: authorize_redirect returns the consent
redirect and authorize_access_token returns a token dict. get_oauth_profile
is patched in web.routes to hand back a normalized profile.

Covers:
  - unknown or unconfigured provider -> /auth/error?error=OAuthSignin
  - sign-in redirect remembers a sanitized callbackUrl across the round trip
  - callback creates a READER, sets the session cookie, lands on callbackUrl
  - callback links to an existing user by email
  - failed token exchange and unverified email -> OAuthSignin error page
  - error page only shows whitelisted messages
  - web sign-out clears the cookie and redirects home
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from authlib.integrations.starlette_client import OAuthError
from fastapi.responses import RedirectResponse

import web.routes
from auth.models import OAuthProfile, Role
from auth.sessions import COOKIE_NAME
from conftest import make_user, sign_in

CONSENT_URL = "https://github.com/login/oauth/authorize?client_id=test"


def _profile(**overrides) -> OAuthProfile:
    values = {
        "provider_account_id": "gh-42",
        "email": "octo@example.com",
        "name": "Octo Cat",
        "avatar_url": "https://avatars.example/octo.png",
        "tokens": {"access_token": "gho_test"},
    }
    values.update(overrides)
    return OAuthProfile(**values)


@pytest.fixture
def github(client, monkeypatch):
    """Enable a scripted 'github' provider and return its mock client."""
    monkeypatch.setattr(web.routes, "get_enabled_providers", lambda: [{"name": "github", "label": "GitHub"}])
    provider = MagicMock()
    provider.authorize_redirect = AsyncMock(return_value=RedirectResponse(CONSENT_URL, status_code=302))
    provider.authorize_access_token = AsyncMock(return_value={"access_token": "gho_test"})
    client.app.state.oauth.create_client.return_value = provider
    profile = AsyncMock(return_value=_profile())
    monkeypatch.setattr(web.routes, "get_oauth_profile", profile)
    provider.profile = profile
    return provider


class TestOAuthRedirect:
    def test_unconfigured_provider_goes_to_error_page(self, client) -> None:
        resp = client.get("/auth/signin/github")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/auth/error?error=OAuthSignin"

    def test_unknown_callback_provider_goes_to_error_page(self, client) -> None:
        resp = client.get("/auth/callback/myspace")
        assert resp.headers["location"] == "/auth/error?error=OAuthSignin"

    def test_redirects_to_consent_page(self, client, github) -> None:
        resp = client.get("/auth/signin/github", params={"callbackUrl": "/dashboard"})
        assert resp.status_code == 302
        assert resp.headers["location"] == CONSENT_URL
        redirect_uri = github.authorize_redirect.await_args.args[1]
        assert redirect_uri.endswith("/auth/callback/github")


class TestOAuthCallback:
    def test_new_user_is_created_and_signed_in(self, client, app_store, github) -> None:
        client.get("/auth/signin/github", params={"callbackUrl": "/posts/1"})
        resp = client.get("/auth/callback/github", params={"code": "abc", "state": "xyz"})

        assert resp.status_code == 302
        assert resp.headers["location"] == "/posts/1"
        assert resp.headers["cache-control"] == "no-store"
        assert COOKIE_NAME in resp.cookies

        user = app_store.get_user_by_email("octo@example.com", with_accounts=True)
        assert user.role is Role.READER
        assert user.email_verified is not None
        assert user.providers == ["github"]

        body = client.get("/api/auth/session").json()
        assert body["authenticated"] is True
        assert body["user"]["email"] == "octo@example.com"

    def test_offsite_callback_url_is_dropped(self, client, github) -> None:
        client.get("/auth/signin/github", params={"callbackUrl": "https://evil.example"})
        resp = client.get("/auth/callback/github")
        assert resp.headers["location"] == "/"

    def test_links_existing_user_by_email(self, client, app_store, github) -> None:
        existing = make_user(app_store, "octo@example.com", role=Role.AUTHOR)
        resp = client.get("/auth/callback/github")
        assert resp.status_code == 302
        user = app_store.get_user_by_email("octo@example.com", with_accounts=True)
        assert user.id == existing.id
        assert user.role is Role.AUTHOR
        assert user.providers == ["github"]
        assert len(app_store.list_users()) == 1

    def test_token_exchange_failure(self, client, app_store, github) -> None:
        github.authorize_access_token.side_effect = OAuthError(error="mismatching_state")
        resp = client.get("/auth/callback/github")
        assert resp.headers["location"] == "/auth/error?error=OAuthSignin"
        assert app_store.list_users() == []

    def test_unverified_email_is_rejected(self, client, app_store, github) -> None:
        github.profile.side_effect = ValueError("github did not report a verified email")
        resp = client.get("/auth/callback/github")
        assert resp.headers["location"] == "/auth/error?error=OAuthSignin"
        assert app_store.list_users() == []


class TestPages:
    def test_error_page_uses_whitelist(self, client) -> None:
        body = client.get("/auth/error", params={"error": "<script>alert(1)</script>"}).json()
        assert body["error"] == "OAuthSignin"
        assert "<script>" not in body["message"]

    def test_error_page_known_code(self, client) -> None:
        body = client.get("/auth/error", params={"error": "Verification"}).json()
        assert body["error"] == "Verification"

    def test_signin_page_lists_providers_and_message(self, client) -> None:
        body = client.get("/auth/signin", params={"message": "verified", "callbackUrl": "/dashboard"}).json()
        assert body["page"] == "signin"
        assert body["providers"] == []
        assert body["callbackUrl"] == "/dashboard"
        assert "verified" in body["message"]

    def test_web_signout_clears_cookie(self, client, app_store) -> None:
        make_user(app_store, "ada@example.com")
        sign_in(client, "ada@example.com")
        resp = client.post("/auth/signout")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        cookies = [v for k, v in resp.headers.multi_items() if k.lower() == "set-cookie"]
        assert any(c.startswith(f"{COOKIE_NAME}=") and "max-age=0" in c.lower() for c in cookies)
