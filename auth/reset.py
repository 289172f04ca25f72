"""
auth/reset.py -- Out-of-band password reset: request, validate, consume.

Enumeration resistance:
  request() does the same work up front on every path (token generation and
  hashing) and reports nothing to the client about whether an account was
  found. The HTTP route runs it as a background task and answers with one
  fixed message before the lookup even happens, so neither content nor
  timing depends on the email.

Single use:
  Only the HMAC of the raw token is stored. Issuing a new token marks every
  earlier unconsumed token of that user as used, so at most one is live.
  consume() flips used_at with a conditional UPDATE inside the same
  transaction that writes the new password and deletes all sessions; a second
  concurrent consume sees zero rows and fails like any other bad token.

Every rejection cause -- unknown, used, expired, owner inactive -- raises the
same InvalidResetToken. The cause is kept in the exception detail for the log.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.errors import InvalidResetToken
from auth.models import PasswordResetToken
from auth.notify import PASSWORD_CHANGED, PASSWORD_RESET, MessageDispatcher, deliver
from auth.passwords import PasswordHasher, check_password_policy
from auth.store import AuthStore, now_iso, to_iso, utcnow
from auth.tokens import generate_secret_token, hash_token

logger = logging.getLogger("notez.auth.reset")


class PasswordResetFlow:
    """Issue, check and redeem password reset tokens."""

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        dispatcher: MessageDispatcher,
        token_hash_key: str,
        token_ttl: timedelta = timedelta(hours=1),
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._dispatcher = dispatcher
        self._key = token_hash_key
        self._ttl = token_ttl

    def request(self, email: str) -> str | None:
        """Issue a reset token for the account with this email, if there is one.

        Returns the raw token when one was issued, None otherwise. The return
        value is for in-process callers (CLI, tests); the HTTP layer discards
        it and always reports success.
        """
        raw = generate_secret_token()
        token_hash = hash_token(raw, self._key)

        user = self._store.get_user_by_email(email)
        if user is None or not user.is_active or user.is_service_account:
            logger.info("Password reset requested for a missing, inactive or service account")
            return None

        with self._store.transaction() as conn:
            if not self._store.lock_user(user.id, conn):
                return None
            locked = self._store.get_user_by_id(user.id, conn=conn)
            if locked is None or not locked.is_active:
                return None
            now = now_iso()
            superseded = self._store.invalidate_reset_tokens(user.id, now, conn=conn)
            self._store.create_reset_token(
                PasswordResetToken(
                    user_id=user.id,
                    token_hash=token_hash,
                    expires_at=to_iso(utcnow() + self._ttl),
                ),
                conn=conn,
            )
        logger.info("Reset token issued for user_id=%d (%d earlier token(s) invalidated)", user.id, superseded)

        deliver(
            self._dispatcher,
            user,
            {
                "kind": PASSWORD_RESET,
                "token": raw,
                "expires_in_minutes": int(self._ttl.total_seconds() // 60),
            },
        )
        return raw

    def validate(self, raw_token: str) -> bool:
        """True iff the token exists, is unused and has not expired."""
        token = self._store.get_reset_token_by_hash(hash_token(raw_token, self._key))
        return token is not None and token.used_at is None and token.expires_at > now_iso()

    def consume(self, raw_token: str, new_password: str) -> None:
        """Set a new password with a reset token and sign out every device.

        Raises ValidationError if the new password fails the policy and
        InvalidResetToken for every token problem.
        """
        check_password_policy(new_password)
        token_hash = hash_token(raw_token, self._key)
        password_hash = self._hasher.hash(new_password)

        with self._store.transaction() as conn:
            now = now_iso()
            token = self._store.get_reset_token_by_hash(token_hash, conn=conn)
            user = self._store.get_user_by_id(token.user_id, conn=conn) if token is not None else None
            if token is None:
                raise InvalidResetToken("unknown reset token")
            if token.used_at is not None:
                raise InvalidResetToken(f"reset token {token.id} already used at {token.used_at}")
            if token.expires_at <= now:
                raise InvalidResetToken(f"reset token {token.id} expired at {token.expires_at}")
            if user is None or not user.is_active:
                raise InvalidResetToken(f"reset token {token.id} belongs to an inactive account")
            if not self._store.mark_reset_token_used(token.id, now, conn=conn):
                raise InvalidResetToken(f"reset token {token.id} consumed by a concurrent request")
            self._store.update_password(user.id, password_hash, conn=conn)
            removed = self._store.delete_sessions_for_user(user.id, conn=conn)

        logger.info("Password reset completed for user_id=%d; %d session(s) revoked", user.id, removed)
        deliver(self._dispatcher, user, {"kind": PASSWORD_CHANGED})

    def cleanup_expired_reset_tokens(self) -> int:
        """Delete expired or used tokens. Idempotent."""
        removed = self._store.delete_stale_reset_tokens(now_iso())
        logger.info("Reset token cleanup removed %d row(s)", removed)
        return removed
