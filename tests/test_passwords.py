"""
tests/test_passwords.py -- bcrypt hashing and the opaque token issuer.

Covers:
  - hash/verify round-trip; a different plaintext does not verify
  - every hash is salted (same input, different hashes)
  - malformed or missing hashes are a mismatch, never an exception
  - issue_token_with_expiry computes expiry exactly from the given clock
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from auth.passwords import burn_dummy_verify, hash_password, verify_password
from auth.tokens import issue_token, issue_token_with_expiry


class TestPasswordHasher:
    def test_round_trip_verifies(self) -> None:
        hashed = hash_password("Correct!Horse9")
        assert verify_password("Correct!Horse9", hashed) is True

    def test_other_plaintext_does_not_verify(self) -> None:
        hashed = hash_password("Correct!Horse9")
        assert verify_password("correct!horse9", hashed) is False

    def test_hashes_are_salted(self) -> None:
        assert hash_password("same-input") != hash_password("same-input")

    def test_hash_is_not_plaintext(self) -> None:
        hashed = hash_password("Correct!Horse9")
        assert "Correct!Horse9" not in hashed
        assert hashed.startswith("$2")

    def test_missing_hash_is_mismatch(self) -> None:
        assert verify_password("anything", None) is False
        assert verify_password("anything", "") is False

    def test_malformed_hash_is_mismatch(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_dummy_verify_does_not_raise(self) -> None:
        burn_dummy_verify("whatever")


class TestTokenIssuer:
    def test_tokens_are_url_safe_and_unique(self) -> None:
        tokens = {issue_token() for _ in range(50)}
        assert len(tokens) == 50
        for t in tokens:
            assert len(t) >= 43
            assert all(c.isalnum() or c in "-_" for c in t)

    def test_expiry_is_exactly_now_plus_ttl(self) -> None:
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        _, expires = issue_token_with_expiry(timedelta(hours=24), now=now)
        assert expires == datetime(2026, 1, 2, 12, 0, tzinfo=timezone.utc)
