"""
tests/test_rate_limiter.py -- Windowed attempt counter (auth/ratelimit.py).

Covers:
  - max_attempts=3: calls 1-3 allowed, 4th denied within the window
  - after the window the count restarts at 1
  - keys are independent (action:origin)
  - 50 simultaneous attempts on one key admit exactly max_attempts
  - reset_at is the end of the window started by the first attempt
  - storage failure honours fail_open
  - build_policies() maps Settings onto the three named actions
"""

from __future__ import annotations

import time
from unittest.mock import patch

from auth.ratelimit import RateLimiter, RateLimitPolicy, build_policies
from conftest import run_concurrently
from core.config import get_settings


class TestRateLimiter:
    def test_fourth_attempt_in_window_is_denied(self) -> None:
        limiter = RateLimiter()
        results = [limiter.check("signup:1.2.3.4", 3, 60_000) for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    def test_window_expiry_restarts_count(self) -> None:
        limiter = RateLimiter()
        for _ in range(4):
            limiter.check("signup:1.2.3.4", 3, 1000)
        time.sleep(1.2)
        result = limiter.check("signup:1.2.3.4", 3, 1000)
        assert result.allowed is True
        assert result.remaining == 2  # count is back to 1

    def test_keys_are_independent(self) -> None:
        limiter = RateLimiter()
        for _ in range(3):
            limiter.check("signup:1.1.1.1", 3, 60_000)
        assert limiter.check("signup:1.1.1.1", 3, 60_000).allowed is False
        assert limiter.check("signup:2.2.2.2", 3, 60_000).allowed is True
        assert limiter.check("password-reset:1.1.1.1", 3, 60_000).allowed is True

    def test_reset_at_marks_end_of_window(self) -> None:
        limiter = RateLimiter()
        before = time.time()
        first = limiter.check("k", 3, 60_000)
        second = limiter.check("k", 3, 60_000)
        assert before + 59 <= first.reset_at <= time.time() + 61
        # Later attempts do not extend the window.
        assert abs(second.reset_at - first.reset_at) < 1

    def test_reset_clears_counters(self) -> None:
        limiter = RateLimiter()
        for _ in range(4):
            limiter.check("k", 3, 60_000)
        limiter.reset()
        assert limiter.check("k", 3, 60_000).allowed is True

    def test_simultaneous_burst_allows_at_most_max_attempts(self) -> None:
        limiter = RateLimiter()
        results = run_concurrently(50, lambda: limiter.check("signup:burst", 3, 60_000))
        assert not [r for r in results if isinstance(r, Exception)]
        assert sum(r.allowed for r in results) == 3

    def test_policy_keys_by_action_and_origin(self) -> None:
        policy = RateLimitPolicy("signup", 3, 900_000)
        assert policy.key_for("203.0.113.7") == "signup:203.0.113.7"
        limiter = RateLimiter()
        for _ in range(3):
            assert limiter.check_policy(policy, "203.0.113.7").allowed
        assert not limiter.check_policy(policy, "203.0.113.7").allowed


class TestFailurePolicy:
    def test_storage_error_fails_closed_by_default(self) -> None:
        limiter = RateLimiter()
        with patch.object(limiter._storage, "incr", side_effect=ConnectionError("down")):
            result = limiter.check("k", 3, 60_000)
        assert result.allowed is False

    def test_storage_error_fails_open_when_configured(self) -> None:
        limiter = RateLimiter(fail_open=True)
        with patch.object(limiter._storage, "incr", side_effect=ConnectionError("down")):
            result = limiter.check("k", 3, 60_000)
        assert result.allowed is True


def test_build_policies_from_settings() -> None:
    policies = build_policies(get_settings())
    assert set(policies) == {"signup", "password-reset", "reset-password"}
    assert policies["signup"].max_attempts == 3
    assert policies["signup"].window_ms == 15 * 60 * 1000
    assert policies["password-reset"].window_ms == 60 * 60 * 1000
    assert policies["reset-password"].max_attempts == 5
