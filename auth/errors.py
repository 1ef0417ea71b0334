"""
auth/errors.py -- Two-layer error model for the auth core.

Internal layer: AuthErrorCode names exactly what went wrong. It is what the
server logs, and what tests assert on.

Public layer: PublicErrorCode is the smaller vocabulary clients see. The
mapping from internal to public is a fixed table (_PUBLIC) so several internal
states deliberately collapse into one response. NotFound, OAuthOnlyAccount,
EmailNotVerified and friends all leave the server as "invalid_credentials",
which keeps account existence from leaking through the sign-in endpoint.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

from enum import Enum


class AuthErrorCode(str, Enum):
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    OAUTH_ONLY_ACCOUNT = "oauth_only_account"
    NO_PASSWORD_SET = "no_password_set"
    INVALID_TOKEN = "invalid_token"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    ALREADY_EXISTS = "already_exists"
    ACCOUNT_NOT_LINKED = "account_not_linked"
    FORBIDDEN = "forbidden"
    STORE_UNAVAILABLE = "store_unavailable"


class PublicErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    RATE_LIMITED = "rate_limited"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    INTERNAL_ERROR = "internal_error"


# (public code, HTTP status, default user-facing message)
_PUBLIC: dict[AuthErrorCode, tuple[PublicErrorCode, int, str]] = {
    AuthErrorCode.VALIDATION: (PublicErrorCode.VALIDATION_ERROR, 400, "Invalid input data."),
    AuthErrorCode.RATE_LIMITED: (
        PublicErrorCode.RATE_LIMITED,
        429,
        "Too many attempts. Please try again later.",
    ),
    AuthErrorCode.NOT_FOUND: (PublicErrorCode.INVALID_CREDENTIALS, 401, "Invalid email or password."),
    AuthErrorCode.INVALID_CREDENTIALS: (PublicErrorCode.INVALID_CREDENTIALS, 401, "Invalid email or password."),
    AuthErrorCode.EMAIL_NOT_VERIFIED: (PublicErrorCode.INVALID_CREDENTIALS, 401, "Invalid email or password."),
    AuthErrorCode.OAUTH_ONLY_ACCOUNT: (PublicErrorCode.INVALID_CREDENTIALS, 401, "Invalid email or password."),
    AuthErrorCode.NO_PASSWORD_SET: (PublicErrorCode.INVALID_CREDENTIALS, 401, "Invalid email or password."),
    AuthErrorCode.INVALID_TOKEN: (
        PublicErrorCode.INVALID_OR_EXPIRED_TOKEN,
        400,
        "Invalid or expired verification token.",
    ),
    AuthErrorCode.INVALID_OR_EXPIRED_TOKEN: (
        PublicErrorCode.INVALID_OR_EXPIRED_TOKEN,
        400,
        "Invalid or expired reset token. Please request a new password reset.",
    ),
    AuthErrorCode.ALREADY_EXISTS: (
        PublicErrorCode.CONFLICT,
        400,
        "An account with this email already exists. Please sign in instead.",
    ),
    AuthErrorCode.ACCOUNT_NOT_LINKED: (
        PublicErrorCode.CONFLICT,
        400,
        "This email is already registered. Sign in with your original method to link this account.",
    ),
    AuthErrorCode.FORBIDDEN: (PublicErrorCode.FORBIDDEN, 403, "Forbidden."),
    AuthErrorCode.STORE_UNAVAILABLE: (
        PublicErrorCode.INTERNAL_ERROR,
        500,
        "Internal server error. Please try again later.",
    ),
}


def public_error(code: AuthErrorCode) -> tuple[PublicErrorCode, int, str]:
    """Map an internal code to (public code, HTTP status, default message)."""
    return _PUBLIC[code]


class AuthError(Exception):
    """Base class for every failure the auth core reports on purpose.

    `message` is the precise internal description and goes to the log only.
    `public_message` overrides the default client-facing text from the public
    table; pass it only when the text is safe to show (e.g. the signup conflict
    message naming the providers the caller's own email is linked to).
    """

    code: AuthErrorCode = AuthErrorCode.STORE_UNAVAILABLE

    def __init__(self, message: str = "", *, public_message: str | None = None) -> None:
        super().__init__(message or self.code.value)
        self.message = message or self.code.value
        self._public_message = public_message

    @property
    def public_code(self) -> PublicErrorCode:
        return public_error(self.code)[0]

    @property
    def status_code(self) -> int:
        return public_error(self.code)[1]

    @property
    def public_message(self) -> str:
        return self._public_message or public_error(self.code)[2]


class ValidationFailed(AuthError):
    code = AuthErrorCode.VALIDATION

    def __init__(self, message: str = "", *, fields: list[dict] | None = None) -> None:
        super().__init__(message)
        self.fields = fields or []


class RateLimited(AuthError):
    code = AuthErrorCode.RATE_LIMITED

    def __init__(self, message: str = "", *, reset_at: float, public_message: str | None = None) -> None:
        super().__init__(message, public_message=public_message)
        self.reset_at = reset_at


class NotFound(AuthError):
    code = AuthErrorCode.NOT_FOUND


class InvalidCredentials(AuthError):
    code = AuthErrorCode.INVALID_CREDENTIALS


class EmailNotVerified(AuthError):
    code = AuthErrorCode.EMAIL_NOT_VERIFIED


class OAuthOnlyAccount(AuthError):
    code = AuthErrorCode.OAUTH_ONLY_ACCOUNT


class NoPasswordSet(AuthError):
    code = AuthErrorCode.NO_PASSWORD_SET


class InvalidToken(AuthError):
    code = AuthErrorCode.INVALID_TOKEN


class InvalidOrExpiredToken(AuthError):
    code = AuthErrorCode.INVALID_OR_EXPIRED_TOKEN


class Conflict(AuthError):
    code = AuthErrorCode.ALREADY_EXISTS


class AccountNotLinked(AuthError):
    code = AuthErrorCode.ACCOUNT_NOT_LINKED


class Forbidden(AuthError):
    code = AuthErrorCode.FORBIDDEN


class StoreUnavailable(AuthError):
    code = AuthErrorCode.STORE_UNAVAILABLE
