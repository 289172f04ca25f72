"""
API request and response models for the Notez credential endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field-level validation here is shape only (lengths, enums). Domain rules such
as the password policy live in auth/ and surface as ValidationError, so the
CLI and the HTTP layer enforce the same rules.
"""

from datetime import timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import ApiToken, AuthResult, UserSummary

USERNAME_PATTERN = r"^[a-zA-Z0-9_-]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ScopeEnum(str, Enum):
    read = "read"
    write = "write"


class ExpiresInEnum(str, Enum):
    days_30 = "30d"
    days_90 = "90d"
    year_1 = "1y"

    def to_timedelta(self) -> timedelta:
        return {"30d": timedelta(days=30), "90d": timedelta(days=90), "1y": timedelta(days=365)}[self.value]


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"  # "healthy" | "degraded"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Body for POST /api/v1/auth/login. Username is exact; email is case-insensitive."""

    username_or_email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class SetupRequest(BaseModel):
    """Body for POST /api/v1/auth/setup -- creates the first admin account."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Optional body for refresh/logout. Browsers send the httpOnly cookie instead."""

    refresh_token: Optional[str] = Field(default=None, max_length=2000)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class UserSummaryResponse(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    role: str
    must_change_password: bool

    @classmethod
    def from_summary(cls, user: UserSummary) -> "UserSummaryResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            must_change_password=user.must_change_password,
        )


class LoginResponse(BaseModel):
    """Returned by login, refresh and setup. The refresh token travels only in the httpOnly cookie."""

    message: str
    user: UserSummaryResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int

    @classmethod
    def from_result(cls, message: str, result: AuthResult, expires_in: int) -> "LoginResponse":
        return cls(
            message=message,
            user=UserSummaryResponse.from_summary(result.user),
            access_token=result.tokens.access_token,
            expires_in=expires_in,
        )


class MeResponse(BaseModel):
    user_id: int
    username: str
    role: str
    scopes: Optional[list[str]] = None  # None = interactive session


class SetupNeededResponse(BaseModel):
    setup_needed: bool


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


class ValidateResetTokenResponse(BaseModel):
    valid: bool


# ---------------------------------------------------------------------------
# API tokens
# ---------------------------------------------------------------------------


class ApiTokenCreate(BaseModel):
    """Body for POST /api/v1/tokens."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    scopes: list[ScopeEnum] = Field(min_length=1, max_length=2)
    expires_in: Optional[ExpiresInEnum] = None

    @field_validator("scopes")
    @classmethod
    def dedupe_scopes(cls, values: list[ScopeEnum]) -> list[ScopeEnum]:
        """Drop duplicate scopes while preserving order."""
        seen: list[ScopeEnum] = []
        for v in values:
            if v not in seen:
                seen.append(v)
        return seen


class ApiTokenResponse(BaseModel):
    """Token metadata. Never carries the hash or the raw value."""

    id: int
    name: str
    prefix: str
    scopes: list[str]
    created_at: str
    last_used_at: Optional[str] = None
    expires_at: Optional[str] = None
    revoked_at: Optional[str] = None

    @classmethod
    def from_token(cls, token: ApiToken) -> "ApiTokenResponse":
        return cls(
            id=token.id,
            name=token.name,
            prefix=token.prefix,
            scopes=token.scopes,
            created_at=token.created_at or "",
            last_used_at=token.last_used_at,
            expires_at=token.expires_at,
            revoked_at=token.revoked_at,
        )


class ApiTokenCreatedResponse(ApiTokenResponse):
    """Returned once at creation. `token` is the only copy of the raw value."""

    token: str
    message: str = "Store this token securely. It cannot be retrieved again."


class ApiTokenRevokedResponse(BaseModel):
    id: int
    name: str
    revoked_at: str
