"""
auth/models.py -- Domain dataclasses for credential entities.

Pattern: Data class (pure data container, zero logic). Stores map rows onto
these; services and routes do the work.

Timestamps are UTC ISO-8601 strings as written by auth.store.to_iso().

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """An account as seen by the credential core.

    Owned by the user-management subsystem; this package only reads users and
    rewrites the password-related fields (password_hash, must_change_password).

    password_hash is None for service accounts -- they authenticate with API
    tokens only and never by password.
    """

    username: str
    role: str = "user"  # "admin" or "user"
    id: int | None = None
    email: str | None = None
    password_hash: str | None = None
    is_active: bool = True
    is_service_account: bool = False
    must_change_password: bool = False
    created_at: str | None = None


@dataclass
class Session:
    """One live device/tab. Only the HMAC of the refresh token is stored."""

    user_id: int
    refresh_token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None


@dataclass
class PasswordResetToken:
    """A single-use reset credential. used_at goes None -> set exactly once."""

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    used_at: str | None = None
    created_at: str | None = None


@dataclass
class ApiToken:
    """A long-lived scoped credential for non-interactive callers.

    - token_hash is HMAC-SHA256(SECRET_KEY, raw_token); the raw value is never
      persisted and is shown once at creation.
    - prefix (first 9 chars of the raw token) is for human recognition only.
    - revoked_at is monotonic: once set it is never cleared.
    - expires_at None means the token never expires.
    """

    user_id: int
    name: str
    token_hash: str
    prefix: str
    scopes: list[str] = field(default_factory=list)
    id: int | None = None
    expires_at: str | None = None
    revoked_at: str | None = None
    last_used_at: str | None = None
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenClaims:
    """Identity claims embedded in access and refresh tokens."""

    user_id: int
    username: str
    role: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class UserSummary:
    id: int
    username: str
    email: str | None
    role: str
    must_change_password: bool

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            must_change_password=user.must_change_password,
        )


@dataclass(frozen=True)
class AuthResult:
    """What login, refresh and first-user setup hand back to the transport layer."""

    user: UserSummary
    tokens: TokenPair


@dataclass(frozen=True)
class ApiTokenCreated:
    """Stored metadata plus the raw token. The only place the raw value appears."""

    token: ApiToken
    raw_token: str


@dataclass(frozen=True)
class ApiTokenIdentity:
    """Authority resolved from a valid API token."""

    user_id: int
    username: str
    role: str
    scopes: list[str]


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of an HTTP request.

    scopes is None for interactive sessions (access token): a logged-in user
    holds every scope. API token callers carry exactly the token's scopes.
    """

    user_id: int
    username: str
    role: str
    scopes: tuple[str, ...] | None = None

    def has_scope(self, scope: str) -> bool:
        return self.scopes is None or scope in self.scopes
