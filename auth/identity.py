"""
auth/identity.py -- Resolve credentials and external identities to a canonical User.

IdentityResolver is the only component that combines the credential store,
the password hasher and the token issuer. Each public method is one logical
operation and runs inside exactly one store transaction.

Failures are raised as auth.errors.AuthError subclasses carrying the precise
internal reason. The HTTP layer maps them to the smaller public vocabulary,
so for example NotFound and EmailNotVerified both reach the client as
"invalid credentials" while the log keeps the real reason.

Security notes:
  [C1] authenticate_with_password() always runs one bcrypt verification, even
       for unknown emails and password-less accounts, so response time does
       not reveal whether an account exists.

  Token consumption deletes the token row first and only proceeds when that
  delete removed exactly one row. Two concurrent requests presenting the same
  token cannot both succeed.

  merge_by_email: an OAuth login whose email matches an existing user is
  linked to that user. This trusts the provider's email verification; the
  oauth module refuses unverified provider emails before this point. Set
  OAUTH_MERGE_BY_EMAIL=false to refuse such logins instead (AccountNotLinked).

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountNotLinked,
    Conflict,
    EmailNotVerified,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidToken,
    NoPasswordSet,
    NotFound,
    OAuthOnlyAccount,
    ValidationFailed,
)
from auth.models import (
    LinkedAccount,
    OAuthProfile,
    PasswordResetToken,
    Role,
    User,
    UserSummary,
    VerificationToken,
    normalize_email,
)
from auth.passwords import burn_dummy_verify, check_password_strength, hash_password, verify_password
from auth.store import CredentialStore
from auth.tokens import issue_token_with_expiry

logger = logging.getLogger("evblog.auth.identity")

_PROVIDER_LABELS = {"github": "GitHub", "google": "Google"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityResolver:
    """Signup, sign-in, OAuth linking, email verification and password reset.

    Usage:
        resolver = IdentityResolver(store)
        summary, vtoken = resolver.create_account("Ada", "ada@example.com", "S3cure!pass")
        resolver.consume_verification_token(vtoken.token)
        summary = resolver.authenticate_with_password("ada@example.com", "S3cure!pass")

    `clock` returns the current UTC time; tests inject a fixed clock to check
    exact expiry arithmetic.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        merge_by_email: bool = True,
        verification_ttl: timedelta = timedelta(hours=24),
        reset_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.merge_by_email = merge_by_email
        self.verification_ttl = verification_ttl
        self.reset_ttl = reset_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    def authenticate_with_password(self, email: str, password: str) -> UserSummary:
        """Verify an email/password pair and return the user's public summary.

        Checks run in a fixed order and the first failure wins:
        NotFound, OAuthOnlyAccount, NoPasswordSet, InvalidCredentials,
        EmailNotVerified.
        """
        email = normalize_email(email)
        with self.store.transaction() as tx:
            user = tx.get_user_by_email(email, with_accounts=True)

        if user is None:
            burn_dummy_verify(password)  # [C1]
            raise NotFound(f"no user with email {email!r}")
        if user.accounts and user.hashed_password is None:
            burn_dummy_verify(password)  # [C1]
            raise OAuthOnlyAccount(f"user {user.id} signs in with {', '.join(user.providers)}")
        if user.hashed_password is None:
            burn_dummy_verify(password)  # [C1]
            raise NoPasswordSet(f"user {user.id} has no password")
        if not verify_password(password, user.hashed_password):
            raise InvalidCredentials(f"wrong password for user {user.id}")
        if user.email_verified is None:
            raise EmailNotVerified(f"user {user.id} has not verified {email!r}")

        return UserSummary.from_user(user)

    # ------------------------------------------------------------------
    # External identity (OAuth)
    # ------------------------------------------------------------------

    def resolve_oauth_identity(self, provider: str, provider_account_id: str, profile: OAuthProfile) -> User:
        """Turn a provider callback into a canonical user, creating or linking as needed.

        Resolution order:
          1. An existing LinkedAccount for (provider, provider_account_id) wins,
             even if the provider now reports a different email.
          2. Otherwise the profile email is matched against existing users
             (subject to merge_by_email) or a new READER is created.
        The user row is refreshed from the profile and the account's opaque
        tokens are stored. Everything happens in one transaction.
        """
        now = self._clock()
        email = normalize_email(profile.email)

        with self.store.transaction(write=True) as tx:
            account = tx.get_account(provider, provider_account_id)
            user = tx.get_user_by_id(account.user_id) if account is not None else None

            if user is None:
                user = tx.get_user_by_email(email)
                if user is not None and not self.merge_by_email:
                    raise AccountNotLinked(
                        f"{provider} account {provider_account_id!r} matches user {user.id} by email "
                        "and merge_by_email is disabled"
                    )

            if user is None:
                user_id = tx.create_user(
                    User(
                        email=email,
                        name=profile.name or email.split("@")[0],
                        role=Role.READER,
                        avatar_url=profile.avatar_url,
                        email_verified=now,
                    )
                )
                logger.info("Created user %d from %s login", user_id, provider)
            else:
                user_id = user.id
                updates: dict = {}
                if profile.name and profile.name != user.name:
                    updates["name"] = profile.name
                if profile.avatar_url and profile.avatar_url != user.avatar_url:
                    updates["avatar_url"] = profile.avatar_url
                if user.email_verified is None:
                    updates["email_verified"] = now
                if updates:
                    tx.update_user(user_id, **updates)

            if account is None:
                tx.create_account(
                    LinkedAccount(
                        user_id=user_id,
                        provider=provider,
                        provider_account_id=provider_account_id,
                        **_token_fields(profile.tokens),
                    )
                )
                logger.info("Linked %s account to user %d", provider, user_id)
            else:
                tx.update_account_tokens(account.id, profile.tokens)

            return tx.get_user_by_id(user_id, with_accounts=True)

    # ------------------------------------------------------------------
    # Signup and email verification
    # ------------------------------------------------------------------

    def create_account(self, name: str, email: str, password: str) -> tuple[UserSummary, VerificationToken]:
        """Create an unverified password account and its 24-hour verification token.

        Raises Conflict if the email is taken. The public message tells the
        caller whether to use a linked provider or simply sign in. A password
        that fails the strength rule raises ValidationFailed before any write.
        """
        email = normalize_email(email)
        hashed = hash_password(_require_strong(password))
        token, expires = issue_token_with_expiry(self.verification_ttl, now=self._clock())

        try:
            with self.store.transaction(write=True) as tx:
                existing = tx.get_user_by_email(email, with_accounts=True)
                if existing is not None:
                    raise _conflict_for(existing)
                user_id = tx.create_user(User(email=email, name=name.strip(), hashed_password=hashed))
                verification = VerificationToken(identifier=str(user_id), token=token, expires=expires)
                tx.create_verification_token(verification)
                user = tx.get_user_by_id(user_id)
        except IntegrityError as exc:
            # A concurrent signup for the same email committed first.
            raise Conflict(f"concurrent signup for {email!r}") from exc

        logger.info("Created user %d via signup", user_id)
        return UserSummary.from_user(user), verification

    def consume_verification_token(self, token: str) -> int:
        """Mark the owning user's email as verified and burn the token.

        Raises InvalidToken if the token is unknown, expired (the stale row is
        deleted as a side effect), or was consumed concurrently.
        """
        now = self._clock()
        with self.store.transaction(write=True) as tx:
            record = tx.get_verification_token(token)
            if record is None:
                raise InvalidToken("unknown verification token")
            if record.expires < now:
                tx.delete_verification_token(record.identifier, record.token)
                expired = True
            else:
                expired = False
                if not tx.delete_verification_token(record.identifier, record.token):
                    raise InvalidToken("verification token already consumed")
                tx.update_user(int(record.identifier), email_verified=now)

        # Raised outside the block so the stale-row delete commits.
        if expired:
            raise InvalidToken(f"verification token for user {record.identifier} expired")
        logger.info("Verified email for user %s", record.identifier)
        return int(record.identifier)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> PasswordResetToken | None:
        """Issue a 1-hour reset token for password accounts; otherwise do nothing.

        Returns None for unknown emails and OAuth-only users. Callers must
        respond identically in every case to prevent account enumeration.
        """
        email = normalize_email(email)
        token, expires = issue_token_with_expiry(self.reset_ttl, now=self._clock())
        with self.store.transaction(write=True) as tx:
            user = tx.get_user_by_email(email)
            if user is None:
                logger.info("Password reset requested for unknown email")
                return None
            if user.hashed_password is None:
                logger.info("Password reset requested for OAuth-only user %d", user.id)
                return None
            reset = PasswordResetToken(token=token, user_id=user.id, expires=expires)
            reset.id = tx.replace_reset_token(reset)

        logger.info("Issued password reset token for user %d", reset.user_id)
        return reset

    def reset_password(self, token: str, new_password: str) -> int:
        """Set a new password using a reset token and burn the token.

        Also marks the email verified if it was not: receiving the token proves
        control of the address. Raises InvalidOrExpiredToken otherwise, and
        ValidationFailed for a weak new password.
        """
        now = self._clock()
        hashed = hash_password(_require_strong(new_password))
        with self.store.transaction(write=True) as tx:
            record = tx.get_reset_token(token)
            if record is None:
                raise InvalidOrExpiredToken("unknown reset token")
            if record.expires < now:
                tx.delete_reset_token(token)
                expired = True
            else:
                expired = False
                if not tx.delete_reset_token(token):
                    raise InvalidOrExpiredToken("reset token already consumed")
                user = tx.get_user_by_id(record.user_id)
                updates: dict = {"hashed_password": hashed}
                if user is not None and user.email_verified is None:
                    updates["email_verified"] = now
                tx.update_user(record.user_id, **updates)

        if expired:
            raise InvalidOrExpiredToken(f"reset token for user {record.user_id} expired")
        logger.info("Password reset completed for user %d", record.user_id)
        return record.user_id

    # ------------------------------------------------------------------
    # Profile and role management
    # ------------------------------------------------------------------

    def change_role(self, user_id: int, role: Role) -> User:
        """Set a user's role. Takes effect in their session at the next refresh."""
        with self.store.transaction(write=True) as tx:
            if not tx.update_user(user_id, role=role):
                raise NotFound(f"no user with id {user_id}")
            user = tx.get_user_by_id(user_id)
        logger.info("Role of user %d changed to %s", user_id, user.role.value)
        return user

    def update_profile(
        self,
        user_id: int,
        *,
        name: str | None = None,
        bio: str | None = None,
        avatar_url: str | None = None,
    ) -> User:
        fields = {k: v for k, v in {"name": name, "bio": bio, "avatar_url": avatar_url}.items() if v is not None}
        with self.store.transaction(write=True) as tx:
            if fields:
                updated = tx.update_user(user_id, **fields)
            else:
                updated = tx.get_user_by_id(user_id) is not None
            if not updated:
                raise NotFound(f"no user with id {user_id}")
            return tx.get_user_by_id(user_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_strong(password: str) -> str:
    try:
        return check_password_strength(password)
    except ValueError as exc:
        raise ValidationFailed(
            "password rejected by strength rule",
            fields=[{"field": "password", "message": str(exc)}],
        ) from None


def _conflict_for(existing: User) -> Conflict:
    if existing.accounts:
        providers = ", ".join(_PROVIDER_LABELS.get(p, p) for p in existing.providers)
        return Conflict(
            f"signup for existing user {existing.id} linked to {providers}",
            public_message=(
                f"An account with this email already exists and is connected to {providers}. "
                "Please sign in with your connected account."
            ),
        )
    return Conflict(
        f"signup for existing user {existing.id}",
        public_message="An account with this email already exists. Please sign in instead.",
    )


def _token_fields(tokens: dict) -> dict:
    keys = ("access_token", "refresh_token", "id_token", "expires_at", "token_type", "scope")
    return {k: tokens[k] for k in keys if k in tokens}
