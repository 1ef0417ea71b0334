"""
tests/test_sessions.py -- SessionManager claims, lifecycle and refresh.

Covers:
  - issue/validate round-trip carries user id and role
  - tampered, foreign-key and garbage tokens validate to None
  - FRESH -> STALE after 24h -> EXPIRED after 30 days
  - refresh re-reads the role from the store only when stale
  - refresh drops sessions whose user no longer exists
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.models import Role
from auth.sessions import SessionManager, SessionState
from conftest import make_user

SECRET = "x" * 40
T0 = datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)


def _manager() -> SessionManager:
    return SessionManager(SECRET, secure_cookies=False)


class TestClaims:
    def test_round_trip(self) -> None:
        sessions = _manager()
        claims = sessions.validate(sessions.issue(7, Role.AUTHOR, now=T0), now=T0)
        assert claims.user_id == 7
        assert claims.role is Role.AUTHOR
        assert claims.issued_at == T0
        assert claims.expires_at == T0 + timedelta(days=30)

    def test_tampered_token_rejected(self) -> None:
        sessions = _manager()
        token = sessions.issue(7, Role.READER, now=T0)
        head, payload, sig = token.split(".")
        tampered = f"{head}.{payload}.{sig[:-2]}{'AA' if sig[-2:] != 'AA' else 'BB'}"
        assert sessions.validate(tampered, now=T0) is None

    def test_other_secret_rejected(self) -> None:
        token = SessionManager("y" * 40).issue(7, Role.ADMIN, now=T0)
        assert _manager().validate(token, now=T0) is None

    def test_garbage_and_empty_rejected(self) -> None:
        sessions = _manager()
        assert sessions.validate("not.a.jwt", now=T0) is None
        assert sessions.validate("", now=T0) is None
        assert sessions.validate(None, now=T0) is None


class TestLifecycle:
    def test_states_over_time(self) -> None:
        sessions = _manager()
        claims = sessions.validate(sessions.issue(1, Role.READER, now=T0), now=T0)
        assert sessions.state(claims, T0 + timedelta(hours=1)) is SessionState.FRESH
        assert sessions.state(claims, T0 + timedelta(hours=25)) is SessionState.STALE
        assert sessions.state(claims, T0 + timedelta(days=30)) is SessionState.EXPIRED
        assert sessions.state(None, T0) is SessionState.UNAUTHENTICATED

    def test_expired_token_validates_to_none(self) -> None:
        sessions = _manager()
        token = sessions.issue(1, Role.READER, now=T0)
        assert sessions.validate(token, now=T0 + timedelta(days=30, seconds=1)) is None


class TestRefresh:
    def test_fresh_session_is_not_reissued(self, store) -> None:
        user = make_user(store, "ada@example.com", role=Role.READER)
        sessions = _manager()
        claims, new_token = sessions.load(sessions.issue(user.id, Role.READER, now=T0), store, now=T0)
        assert claims.role is Role.READER
        assert new_token is None

    def test_stale_session_picks_up_role_change(self, store) -> None:
        user = make_user(store, "ada@example.com", role=Role.READER)
        sessions = _manager()
        token = sessions.issue(user.id, Role.READER, now=T0)

        with store.transaction() as tx:
            tx.update_user(user.id, role=Role.ADMIN)

        # Still within update_age: the claim keeps the old role.
        claims, new_token = sessions.load(token, store, now=T0 + timedelta(hours=23))
        assert claims.role is Role.READER
        assert new_token is None

        later = T0 + timedelta(hours=25)
        claims, new_token = sessions.load(token, store, now=later)
        assert claims.role is Role.ADMIN
        assert new_token is not None
        assert claims.expires_at == later + timedelta(days=30)

    def test_stale_session_for_deleted_user_is_dropped(self, store) -> None:
        sessions = _manager()
        token = sessions.issue(9999, Role.ADMIN, now=T0)
        assert sessions.load(token, store, now=T0 + timedelta(hours=25)) == (None, None)
