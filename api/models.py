"""
API request and response models for the evBlog auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.models import Role, User, UserSummary
from auth.passwords import PASSWORD_MAX_LENGTH, PASSWORD_MIN_LENGTH, check_password_strength

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/auth/signup."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class SigninRequest(BaseModel):
    """Request body for POST /api/auth/signin.

    No strength rule here: a sign-in attempt must fail as "invalid
    credentials", never as a validation error that hints at the policy.
    """

    email: EmailStr
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class ForgotPasswordRequest(BaseModel):
    """Request body for POST /api/auth/forgot-password."""

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    """Request body for POST /api/auth/reset-password."""

    token: str = Field(min_length=1, max_length=256)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def strong_password(cls, value: str) -> str:
        return check_password_strength(value)


class ProfilePatch(BaseModel):
    """Request body for PATCH /api/users/me. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    bio: Optional[str] = Field(default=None, max_length=500)
    avatar_url: Optional[str] = Field(default=None, max_length=2048, pattern=r"^https?://")


class RolePatch(BaseModel):
    """Request body for PATCH /api/admin/users/{user_id}/role."""

    role: Role


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserPublic(BaseModel):
    """Minimal user fields returned by signup."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    email: str


class SignupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: UserPublic


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class SessionUser(BaseModel):
    """The user as seen through a session: identity plus role."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: Role
    avatar_url: Optional[str] = None

    @classmethod
    def from_summary(cls, summary: UserSummary) -> "SessionUser":
        return cls(
            id=summary.id,
            email=summary.email,
            name=summary.name,
            role=summary.role,
            avatar_url=summary.avatar_url,
        )


class SigninResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    user: SessionUser


class SessionResponse(BaseModel):
    """Response for GET /api/auth/session.

    role is the role carried by the session claim, which may lag the stored
    role until the session refreshes.
    """

    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user: Optional[SessionUser] = None
    expires: Optional[str] = None


class UserResponse(BaseModel):
    """Full profile returned by /api/users/me and the admin user list."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: Role
    avatar_url: Optional[str] = None
    bio: Optional[str] = None
    email_verified: bool
    created_at: Optional[str] = None
    providers: list[str] = Field(default_factory=list)

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        """Build a UserResponse from a domain User. Never exposes the password hash."""
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            avatar_url=user.avatar_url,
            bio=user.bio,
            email_verified=user.email_verified is not None,
            created_at=user.created_at.isoformat() if user.created_at else None,
            providers=user.providers,
        )


class StatsResponse(BaseModel):
    """Response for GET /api/admin/stats."""

    model_config = ConfigDict(frozen=True)

    total_users: int
    verified_users: int
    by_role: dict[str, int]


class OAuthProviderInfo(BaseModel):
    """One enabled OAuth provider for the sign-in page."""

    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class FieldError(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[list[FieldError]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses.

    resetTime (epoch milliseconds) is present only on rate-limit responses.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    error: ErrorDetail
    reset_time: Optional[int] = Field(default=None, alias="resetTime")

    def to_content(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
