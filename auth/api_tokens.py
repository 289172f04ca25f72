"""
auth/api_tokens.py -- Long-lived scoped API tokens for non-interactive callers.

Token format: "ntez_" + base64url(32 random bytes). The prefix makes tokens
recognizable (secret scanners, log redaction) and lets validate() reject
garbage without a DB round-trip. 32 bytes = 256 bits; brute force is not a
concern, which is why the stored hash is a fast keyed HMAC and not bcrypt.

API tokens carry no claims. Every bit of authority (user, role, scopes) is
resolved by hash lookup on each request, so revocation takes effect on the
very next call.

Revocation is a single conditional UPDATE (id AND owner AND revoked_at IS NULL).
When it touches nothing, a follow-up read classifies the miss as not-found or
already-revoked. The read only classifies; it never writes, so it cannot
reopen the race.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    ApiTokenNotFound,
    Conflict,
    ConflictReason,
    InvalidApiToken,
    InvalidTokenFormat,
    TokenExpired,
    TokenRevoked,
    TokenUserInactive,
    UserNotFound,
    ValidationError,
)
from auth.models import ApiToken, ApiTokenCreated, ApiTokenIdentity
from auth.store import AuthStore, now_iso, to_iso, utcnow
from auth.tokens import hash_token

logger = logging.getLogger("notez.auth.api_tokens")

TOKEN_PREFIX = "ntez_"
VALID_SCOPES = ("read", "write")

_TOKEN_BYTES = 32
_DISPLAY_PREFIX_LEN = 9  # "ntez_" + 4 chars
_MAX_TOKEN_LENGTH = 200
_MAX_NAME_LENGTH = 100


def generate() -> str:
    """Return a new raw API token. Show it once; store only its hash."""
    return TOKEN_PREFIX + secrets.token_urlsafe(_TOKEN_BYTES)


def _normalize_scopes(scopes: list[str]) -> list[str]:
    unique: list[str] = []
    for scope in scopes:
        if scope not in VALID_SCOPES:
            raise ValidationError(f"Unknown scope: {scope!r}")
        if scope not in unique:
            unique.append(scope)
    if not unique:
        raise ValidationError("At least one scope is required")
    return unique


class ApiTokenManager:
    """Create, validate, list and revoke API tokens.

    Args:
        store:          Transactional repository.
        token_hash_key: HMAC key for stored token hashes.
        max_active:     Cap on non-revoked tokens per user.
    """

    def __init__(self, store: AuthStore, token_hash_key: str, max_active: int = 20) -> None:
        self._store = store
        self._key = token_hash_key
        self.max_active = max_active

    def create(
        self,
        user_id: int,
        name: str,
        scopes: list[str],
        expires_in: timedelta | None = None,
    ) -> ApiTokenCreated:
        """Create a token. The raw value in the result is never retrievable again.

        The owner row is locked before the cap is counted, so concurrent
        creates for one user run one after another and the count cannot go
        stale before the insert. A rejected create writes nothing.
        """
        name = name.strip()
        if not name or len(name) > _MAX_NAME_LENGTH:
            raise ValidationError(f"Token name must be 1-{_MAX_NAME_LENGTH} characters")
        scopes = _normalize_scopes(scopes)

        raw = generate()
        expires_at = to_iso(utcnow() + expires_in) if expires_in is not None else None
        with self._store.transaction() as conn:
            if not self._store.lock_user(user_id, conn):
                raise UserNotFound(f"API token create for missing user_id={user_id}")
            active = self._store.count_active_api_tokens(user_id, conn=conn)
            if active >= self.max_active:
                raise Conflict(
                    ConflictReason.CAP_REACHED,
                    f"user_id={user_id} has {active} active tokens (cap {self.max_active})",
                )
            token = self._store.create_api_token(
                ApiToken(
                    user_id=user_id,
                    name=name,
                    token_hash=hash_token(raw, self._key),
                    prefix=raw[:_DISPLAY_PREFIX_LEN],
                    scopes=scopes,
                    expires_at=expires_at,
                ),
                conn=conn,
            )
        logger.info("API token %d created for user_id=%d", token.id, user_id)
        return ApiTokenCreated(token=token, raw_token=raw)

    def validate(
        self,
        raw_token: str,
        defer: Callable[..., None] | None = None,
    ) -> ApiTokenIdentity:
        """Resolve a raw token to the identity and scopes it grants.

        last_used_at is stamped through `defer` when given (the HTTP layer
        passes BackgroundTasks.add_task so the stamp runs after the response),
        otherwise inline. Either way a failed stamp is logged, never raised.
        """
        if not raw_token.startswith(TOKEN_PREFIX) or len(raw_token) > _MAX_TOKEN_LENGTH:
            raise InvalidTokenFormat("API token has wrong prefix or length")

        token = self._store.get_api_token_by_hash(hash_token(raw_token, self._key))
        if token is None:
            raise InvalidApiToken("no API token with this hash")
        if token.revoked_at is not None:
            raise TokenRevoked(f"API token {token.id} revoked at {token.revoked_at}")
        if token.expires_at is not None and token.expires_at < now_iso():
            raise TokenExpired(f"API token {token.id} expired at {token.expires_at}")
        user = self._store.get_user_by_id(token.user_id)
        if user is None or not user.is_active:
            raise TokenUserInactive(f"API token {token.id} belongs to an inactive account")

        if defer is not None:
            defer(self._touch, token.id)
        else:
            self._touch(token.id)
        return ApiTokenIdentity(user_id=user.id, username=user.username, role=user.role, scopes=list(token.scopes))

    def _touch(self, token_id: int) -> None:
        try:
            self._store.touch_api_token(token_id, now_iso())
        except SQLAlchemyError as e:
            logger.warning("Could not stamp last_used_at on API token %d: %s", token_id, e)

    def list(self, user_id: int) -> list[ApiToken]:
        """All tokens of the user, newest first. Callers must not expose token_hash."""
        return self._store.list_api_tokens(user_id)

    def revoke(self, token_id: int, user_id: int) -> ApiToken:
        """Revoke a token owned by user_id and return its updated metadata."""
        if not self._store.revoke_api_token(token_id, user_id, now_iso()):
            existing = self._store.get_api_token(token_id, user_id)
            if existing is None:
                raise ApiTokenNotFound(f"API token {token_id} not found for user_id={user_id}")
            raise Conflict(ConflictReason.ALREADY_REVOKED, f"API token {token_id} revoked at {existing.revoked_at}")
        logger.info("API token %d revoked by user_id=%d", token_id, user_id)
        return self._store.get_api_token(token_id, user_id)

    def purge_stale_tokens(self, older_than: timedelta = timedelta(days=90)) -> int:
        """Hard-delete tokens revoked or expired more than `older_than` ago."""
        removed = self._store.purge_api_tokens(to_iso(utcnow() - older_than))
        logger.info("API token purge removed %d row(s)", removed)
        return removed
