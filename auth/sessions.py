"""
auth/sessions.py -- Login, refresh-token rotation, logout and password change.

Session state machine (one row per device/tab):

    Active --refresh--> Rotated (row deleted, superseded by a new row)
    Active --expiry---> Expired (row deleted on refresh attempt or by cleanup)
    Active --logout / change_password / reset--> Revoked (all rows of the user deleted)

Refresh is a dual-layer check. The JWT signature and exp are verified first
with no store access; only then is the session row looked up to prove the
token is still live and has not been replayed.

Rotation is the one designed race. Two tabs refreshing with the same token at
the same moment both pass the lookup; AuthStore.rotate_session() deletes the
old row conditionally inside the transaction that inserts the new one, so
exactly one caller sees a deleted row and the other gets InvalidRefreshToken.

Only HMAC hashes of refresh tokens are stored. A DB dump does not yield
usable refresh tokens.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.engine import Connection

from auth.errors import (
    AccountDeactivated,
    Conflict,
    ConflictReason,
    IncorrectPassword,
    InvalidCredentials,
    InvalidRefreshToken,
    RefreshTokenExpired,
    ServiceAccountsCannotChangePassword,
    UserNotFound,
)
from auth.models import AuthResult, Session, TokenClaims, TokenPair, User, UserSummary
from auth.notify import PASSWORD_CHANGED, MessageDispatcher, deliver
from auth.passwords import PasswordHasher, check_password_policy
from auth.store import AuthStore, now_iso, to_iso, utcnow
from auth.tokens import TokenCodec, hash_token

logger = logging.getLogger("notez.auth.sessions")


class SessionManager:
    """Orchestrates session lifecycles over TokenCodec and AuthStore.

    Args:
        store:          Transactional repository.
        codec:          Signs/verifies access and refresh JWTs.
        hasher:         bcrypt password hasher.
        token_hash_key: HMAC key for stored refresh token hashes.
        session_ttl:    Lifetime of a session row, fixed at creation.
        dispatcher:     Sends the password-changed notice; None skips it.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        hasher: PasswordHasher,
        token_hash_key: str,
        session_ttl: timedelta = timedelta(days=7),
        dispatcher: MessageDispatcher | None = None,
    ) -> None:
        self._store = store
        self._codec = codec
        self._hasher = hasher
        self._key = token_hash_key
        self._session_ttl = session_ttl
        self._dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _hash(self, refresh_token: str) -> str:
        return hash_token(refresh_token, self._key)

    def _new_session(self, user: User) -> tuple[TokenPair, Session]:
        tokens = self._codec.issue_pair(TokenClaims(user_id=user.id, username=user.username, role=user.role))
        session = Session(
            user_id=user.id,
            refresh_token_hash=self._hash(tokens.refresh_token),
            expires_at=to_iso(utcnow() + self._session_ttl),
        )
        return tokens, session

    def _open_session(self, user: User, conn: Connection | None = None) -> TokenPair:
        tokens, session = self._new_session(user)
        self._store.create_session(session, conn=conn)
        return tokens

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str) -> AuthResult:
        """Authenticate by username (exact) or email (case-insensitive).

        Unknown identifier, service account and wrong password all raise the
        same InvalidCredentials, and all three run exactly one bcrypt
        verification so they also cost the same time. The active check runs
        after the password check: only someone holding the password learns
        that the account is deactivated.
        """
        user = self._store.find_login_user(identifier)
        if user is None:
            self._hasher.burn(password)
            raise InvalidCredentials("login for unknown identifier")
        if user.is_service_account or user.password_hash is None:
            self._hasher.burn(password)
            raise InvalidCredentials(f"password login attempted for service account user_id={user.id}")
        if not self._hasher.verify(password, user.password_hash):
            raise InvalidCredentials(f"password mismatch for user_id={user.id}")
        if not user.is_active:
            raise AccountDeactivated(f"login for deactivated user_id={user.id}")

        tokens = self._open_session(user)
        logger.info("Login succeeded for user_id=%d", user.id)
        return AuthResult(user=UserSummary.from_user(user), tokens=tokens)

    def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new pair, consuming the old session row."""
        self._codec.verify_refresh(refresh_token)

        session = self._store.get_session_by_hash(self._hash(refresh_token))
        if session is None:
            raise InvalidRefreshToken("no live session for presented refresh token")
        if session.expires_at < now_iso():
            self._store.delete_session(session.id)
            raise RefreshTokenExpired(f"session {session.id} expired at {session.expires_at}")

        user = self._store.get_user_by_id(session.user_id)
        if user is None:
            raise InvalidRefreshToken(f"session {session.id} belongs to a missing user")
        if not user.is_active:
            raise AccountDeactivated(f"refresh for deactivated user_id={user.id}")

        tokens, replacement = self._new_session(user)
        with self._store.transaction() as conn:
            if not self._store.rotate_session(session, replacement, conn=conn):
                raise InvalidRefreshToken(f"session {session.id} already rotated by a concurrent request")
        return AuthResult(user=UserSummary.from_user(user), tokens=tokens)

    def logout(self, refresh_token: str) -> int:
        """End every session of the token's owner. Unknown tokens are a no-op.

        Logout is a security boundary, not a per-device action: all devices
        are signed out. Returns the number of sessions removed.
        """
        session = self._store.get_session_by_hash(self._hash(refresh_token))
        if session is None:
            return 0
        removed = self._store.delete_sessions_for_user(session.user_id)
        logger.info("Logout removed %d session(s) for user_id=%d", removed, session.user_id)
        return removed

    def change_password(self, user_id: int, current_password: str, new_password: str) -> None:
        """Replace the password and sign out every device in one transaction.

        The password-changed notice goes out after commit and never fails the call.
        """
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise UserNotFound(f"change_password for missing user_id={user_id}")
        if user.is_service_account:
            raise ServiceAccountsCannotChangePassword(f"change_password for service account user_id={user_id}")
        if user.password_hash is None or not self._hasher.verify(current_password, user.password_hash):
            raise IncorrectPassword(f"current password mismatch for user_id={user_id}")
        check_password_policy(new_password)

        new_hash = self._hasher.hash(new_password)
        with self._store.transaction() as conn:
            self._store.update_password(user_id, new_hash, conn=conn)
            removed = self._store.delete_sessions_for_user(user_id, conn=conn)
        logger.info("Password changed for user_id=%d; %d session(s) revoked", user_id, removed)
        if self._dispatcher is not None:
            deliver(self._dispatcher, user, {"kind": PASSWORD_CHANGED})

    def authenticate(self, access_token: str) -> TokenClaims:
        """Verify an access token. No store round-trip."""
        return self._codec.verify_access(access_token)

    def cleanup_expired_sessions(self) -> int:
        """Delete expired sessions. Idempotent; safe alongside live traffic."""
        removed = self._store.delete_expired_sessions(now_iso())
        logger.info("Session cleanup removed %d expired session(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # First-run setup
    # ------------------------------------------------------------------

    def setup_needed(self) -> bool:
        return self._store.count_users() == 0

    def setup_first_user(self, username: str, email: str, password: str) -> AuthResult:
        """Create the first admin account and log it in.

        Only allowed while the users table is empty. The count is re-checked
        inside the write transaction; a concurrent setup with the same
        username or email fails on the UNIQUE index instead.
        """
        check_password_policy(password)
        if not self.setup_needed():
            raise Conflict(ConflictReason.SETUP_COMPLETED)
        password_hash = self._hasher.hash(password)
        with self._store.transaction() as conn:
            if self._store.count_users(conn=conn) > 0:
                raise Conflict(ConflictReason.SETUP_COMPLETED, "users appeared during setup")
            user_id = self._store.create_user(
                User(username=username, email=email, password_hash=password_hash, role="admin"),
                conn=conn,
            )
            user = self._store.get_user_by_id(user_id, conn=conn)
            tokens = self._open_session(user, conn=conn)
        logger.info("First admin user created (user_id=%d)", user_id)
        return AuthResult(user=UserSummary.from_user(user), tokens=tokens)
