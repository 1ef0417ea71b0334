"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

Cost factor defaults to 12 (Settings.bcrypt_rounds). The test suite lowers it
through BCRYPT_ROUNDS so the suite stays fast; hashes made with any cost verify
correctly because the cost is encoded in the hash itself.

check_password_strength() holds the strength rule for new passwords. The API
models run it as a field validator; IdentityResolver runs it again so callers
outside HTTP (CLI, tests) cannot store a weak password.

The _DUMMY_HASH constant enables timing equalization in the credential
sign-in path so response time does not reveal whether an email exists [C1].

Layer rule: no imports from api/ or web/. core/ is allowed.
"""

from __future__ import annotations

import re

import bcrypt

from core.config import get_settings

# Special characters accepted by the password strength rule.
PASSWORD_SPECIALS = "@$!%*?&"
PASSWORD_MIN_LENGTH = 8
# bcrypt only hashes the first 72 bytes; cap input well above that for sanity.
PASSWORD_MAX_LENGTH = 128

_PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "one lowercase letter"),
    (re.compile(r"[A-Z]"), "one uppercase letter"),
    (re.compile(r"\d"), "one number"),
    (re.compile(f"[{re.escape(PASSWORD_SPECIALS)}]"), f"one special character ({PASSWORD_SPECIALS})"),
)


def check_password_strength(value: str) -> str:
    """Raise ValueError naming every missing character class."""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    missing = [label for pattern, label in _PASSWORD_RULES if not pattern.search(value)]
    if missing:
        raise ValueError("Password must contain at least " + ", ".join(missing))
    return value


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt. The API
    layer caps password length at 128 characters.
    """
    salt = bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext matches the hash. Never raises.

    bcrypt.checkpw compares in constant time. A malformed or missing hash is a
    plain mismatch, not an error.
    """
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Computed once at module load so the first sign-in attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("evblog_timing_dummy")


def burn_dummy_verify(plain: str) -> None:
    """Spend one bcrypt verification on a throwaway hash [C1]."""
    verify_password(plain, _DUMMY_HASH)
