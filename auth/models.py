"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
the domain shape; the store, resolver and routes do the work.

Timestamps are timezone-aware UTC datetimes everywhere in the domain. The
store converts to and from ISO 8601 strings at the persistence boundary.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Capability levels, ordered READER < AUTHOR < ADMIN."""

    READER = "READER"
    AUTHOR = "AUTHOR"
    ADMIN = "ADMIN"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def satisfies(self, required: Role) -> bool:
        """Return True if this role is at least as privileged as `required`."""
        return self.rank >= required.rank


_ROLE_RANK = {Role.READER: 0, Role.AUTHOR: 1, Role.ADMIN: 2}


@dataclass
class LinkedAccount:
    """One external identity provider connection owned by a user.

    Provider tokens are opaque pass-through values. Nothing in the auth core
    reads or validates them; they are stored so later features can call the
    provider API on the user's behalf.
    """

    user_id: int
    provider: str  # "github", "google"
    provider_account_id: str  # provider's stable user ID
    type: str = "oauth"
    id: int | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    expires_at: int | None = None  # epoch seconds, as the provider sent it
    token_type: str | None = None
    scope: str | None = None


@dataclass
class User:
    """Canonical identity for a person on the blog platform.

    email is stored lower-cased and stripped -- use normalize_email() before
    every lookup.

    hashed_password is None for OAuth-only users, who must then own at least
    one LinkedAccount. email_verified is None until the user proves control of
    the address (verification link, OAuth login, or password reset).
    """

    email: str
    name: str
    role: Role = Role.READER
    id: int | None = None
    hashed_password: str | None = None  # None = OAuth-only user
    avatar_url: str | None = None
    bio: str | None = None
    email_verified: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    accounts: list[LinkedAccount] = field(default_factory=list)

    @property
    def providers(self) -> list[str]:
        return sorted({a.provider for a in self.accounts})


@dataclass(frozen=True)
class UserSummary:
    """The public face of a user returned by successful authentication.

    Never carries the password hash.
    """

    id: int
    email: str
    name: str
    role: Role
    avatar_url: str | None = None

    @classmethod
    def from_user(cls, user: User) -> UserSummary:
        return cls(id=user.id, email=user.email, name=user.name, role=user.role, avatar_url=user.avatar_url)


@dataclass
class VerificationToken:
    """Single-use proof of control of an email address.

    identifier holds the owning user ID as a string.
    """

    identifier: str
    token: str
    expires: datetime


@dataclass
class PasswordResetToken:
    """Single-use authorization to change a user's password."""

    token: str
    user_id: int
    expires: datetime
    id: int | None = None


@dataclass(frozen=True)
class OAuthProfile:
    """Provider-neutral view of the identity returned by an OAuth callback."""

    provider_account_id: str
    email: str
    name: str | None = None
    avatar_url: str | None = None
    tokens: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionClaims:
    """Decoded session claim bundle. Trusted without a store lookup until refresh."""

    user_id: int
    role: Role
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds when the current window ends


def normalize_email(email: str) -> str:
    return email.strip().lower()
