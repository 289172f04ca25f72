"""
auth/tokens.py -- JWT access/refresh token codec and keyed token hashing.

Security design decisions:
  JWT: python-jose with HS256, pinned on both encode and decode. decode() is
       always called with algorithms=[HS256] so a token that names another
       algorithm (including "none") is rejected -- no negotiation, no
       downgrade.

  Two secrets: access and refresh tokens are signed with independent keys.
       A leaked access token cannot be replayed at /auth/refresh and vice
       versa. The `type` claim is checked as a second guard.

  One outcome: bad signature, expired, wrong type and malformed claims all
       raise InvalidOrExpiredToken. The real cause only reaches the log.

  jti: every token carries a random jti so two pairs issued for the same user
       within the same second are still distinct values. Session rows are
       keyed on the refresh token hash, so this keeps the UNIQUE index honest.

  Stored token values: hash_token() is HMAC-SHA256(SECRET_KEY, raw). Reset,
       API and refresh tokens are long random strings, so a fast keyed hash
       is enough -- bcrypt's slowness buys nothing for 256-bit inputs. The key
       means a stolen DB alone does not let an attacker test guesses. The
       hash is deterministic, enabling O(1) lookup via a UNIQUE index.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import InvalidOrExpiredToken
from auth.models import TokenClaims, TokenPair

logger = logging.getLogger("notez.auth.tokens")

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"


def hash_token(raw: str, key: str) -> str:
    """Return HMAC-SHA256(key, raw) as a hex string."""
    return hmac.new(key.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_secret_token() -> str:
    """256 bits from the OS CSPRNG as 64 hex chars."""
    return secrets.token_hex(32)


class TokenCodec:
    """Signs and verifies self-contained access and refresh tokens.

    Secrets and lifetimes are injected at construction and never change for
    the lifetime of the codec. Tests build a codec with fresh secrets each
    run instead of touching process-wide configuration.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._ttls = {ACCESS: access_ttl, REFRESH: refresh_ttl}

    @classmethod
    def from_settings(cls, settings) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_expire_seconds),
        )

    @property
    def access_ttl(self) -> timedelta:
        return self._ttls[ACCESS]

    @property
    def refresh_ttl(self) -> timedelta:
        return self._ttls[REFRESH]

    # ------------------------------------------------------------------
    # Encode
    # ------------------------------------------------------------------

    def _encode(self, kind: str, claims: TokenClaims) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": claims.username,
            "user_id": claims.user_id,
            "role": claims.role,
            "type": kind,
            "jti": secrets.token_hex(16),
            "iat": now,
            "exp": now + self._ttls[kind],
        }
        return jwt.encode(payload, self._secrets[kind], algorithm=_ALGORITHM)

    def issue_pair(self, claims: TokenClaims) -> TokenPair:
        """Return a fresh access + refresh token pair for the given identity."""
        return TokenPair(
            access_token=self._encode(ACCESS, claims),
            refresh_token=self._encode(REFRESH, claims),
        )

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    def _decode(self, kind: str, token: str) -> TokenClaims:
        try:
            payload = jwt.decode(token, self._secrets[kind], algorithms=[_ALGORITHM])
        except JWTError as exc:
            raise InvalidOrExpiredToken(
                f"{kind} token rejected: {exc}",
                public_message=f"Invalid or expired {kind} token.",
            ) from exc
        if payload.get("type") != kind or not isinstance(payload.get("user_id"), int) or "role" not in payload:
            raise InvalidOrExpiredToken(
                f"{kind} token has unexpected claims",
                public_message=f"Invalid or expired {kind} token.",
            )
        return TokenClaims(user_id=payload["user_id"], username=payload["sub"], role=payload["role"])

    def verify_access(self, token: str) -> TokenClaims:
        """Return the claims of a valid access token or raise InvalidOrExpiredToken."""
        return self._decode(ACCESS, token)

    def verify_refresh(self, token: str) -> TokenClaims:
        """Return the claims of a valid refresh token or raise InvalidOrExpiredToken.

        This is only the self-contained half of the check. SessionManager still
        has to find a live session row before the token is honoured.
        """
        return self._decode(REFRESH, token)
