"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Services never touch SQL directly.

Transactions:
  Every method accepts an optional `conn`. Without one, the method runs in its
  own engine.begin() block and commits on exit. With one, it joins the
  caller's transaction:

      with store.transaction() as conn:
          store.update_password(user_id, new_hash, conn=conn)
          store.delete_sessions_for_user(user_id, conn=conn)

  Raising inside the block rolls back every statement in it.

Concurrency:
  Races are settled by the database, never by in-process locks (several
  server processes share one DB). The mutating methods that decide a race
  are conditional statements whose rowcount is returned to the caller:
    rotate_session()         -- DELETE ... WHERE id AND hash
    mark_reset_token_used()  -- UPDATE ... WHERE id AND used_at IS NULL
    revoke_api_token()       -- UPDATE ... WHERE id AND user_id AND revoked_at IS NULL
  Exactly one concurrent caller sees rowcount 1.

  Check-then-insert sequences (the API-token cap, reset token issue) start
  with lock_user(), which makes later writers for the same user wait.

Timestamps:
  Stored as fixed-width UTC ISO-8601 strings (microsecond precision, +00:00).
  Fixed width makes lexicographic comparison in SQL equal chronological order,
  so expiry filters can run in the WHERE clause.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import ApiToken, PasswordResetToken, Session, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),  # case-sensitive
    Column("email", String(255), unique=True),  # NULL allowed; matched case-insensitively
    Column("password_hash", Text),  # NULL for service accounts
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("is_service_account", Boolean, nullable=False, server_default="0"),
    Column("must_change_password", Boolean, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("refresh_token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_api_tokens = Table(
    "api_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("prefix", String(10), nullable=False),  # display only
    Column("scopes", String(50), nullable=False),  # comma-separated subset of read,write
    Column("last_used_at", String(32)),
    Column("expires_at", String(32)),  # NULL = never expires
    Column("revoked_at", String(32)),  # NULL = active; never cleared once set
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# SQLite connection PRAGMAs
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. WAL lets readers proceed while a writer holds
    the lock; foreign_keys is off by default in SQLite.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Render a datetime in the storage timestamp format."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(utcnow())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, sessions, password reset tokens and API tokens.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        uid = store.create_user(User(username="alice", email="alice@test.com", password_hash=...))
        user = store.get_user_by_id(uid)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open one transaction; commit on clean exit, roll back on exception."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _scope(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as own:
                yield own

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def count_users(self, conn: Connection | None = None) -> int:
        with self._scope(conn) as c:
            return c.execute(select(func.count()).select_from(_users)).scalar() or 0

    def create_user(self, user: User, conn: Connection | None = None) -> int:
        """Insert a user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Emails are stored lower-cased.
        """
        with self._scope(conn) as c:
            result = c.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email.lower() if user.email else None,
                    password_hash=user.password_hash,
                    role=user.role,
                    is_active=user.is_active,
                    is_service_account=user.is_service_account,
                    must_change_password=user.must_change_password,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_user_by_id(self, user_id: int, conn: Connection | None = None) -> User | None:
        with self._scope(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, username: str, conn: Connection | None = None) -> User | None:
        """Exact (case-sensitive) username match."""
        with self._scope(conn) as c:
            row = c.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, email: str, conn: Connection | None = None) -> User | None:
        """Case-insensitive email match."""
        with self._scope(conn) as c:
            row = c.execute(_users.select().where(func.lower(_users.c.email) == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_login_user(self, identifier: str, conn: Connection | None = None) -> User | None:
        """Resolve a login identifier: exact username, else case-insensitive email.

        When one user's username equals another user's email, the username
        match wins -- usernames are the stricter key.
        """
        with self._scope(conn) as c:
            rows = c.execute(
                _users.select().where(
                    or_(
                        _users.c.username == identifier,
                        func.lower(_users.c.email) == identifier.strip().lower(),
                    )
                )
            ).fetchall()
        if not rows:
            return None
        for row in rows:
            if row.username == identifier:
                return _row_to_user(row)
        return _row_to_user(rows[0])

    def update_user(self, user_id: int, conn: Connection | None = None, **fields) -> bool:
        """Update mutable user fields. Returns True if a row was updated."""
        with self._scope(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_password(self, user_id: int, password_hash: str, conn: Connection | None = None) -> bool:
        """Store a new password hash and clear the forced-change flag."""
        return self.update_user(user_id, conn=conn, password_hash=password_hash, must_change_password=False)

    def lock_user(self, user_id: int, conn: Connection) -> bool:
        """Take the write lock on a user row for the rest of conn's transaction.

        A no-op UPDATE locks the row on Postgres and the whole database on
        SQLite, so a second writer for the same user blocks here until the
        first commits. Must be the first statement of the transaction: on
        SQLite a transaction that has already read cannot wait for the lock.
        Returns False if the user does not exist.
        """
        result = conn.execute(_users.update().where(_users.c.id == user_id).values(id=_users.c.id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session, conn: Connection | None = None) -> int:
        with self._scope(conn) as c:
            result = c.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    refresh_token_hash=session.refresh_token_hash,
                    expires_at=session.expires_at,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_session_by_hash(self, refresh_token_hash: str, conn: Connection | None = None) -> Session | None:
        with self._scope(conn) as c:
            row = c.execute(_sessions.select().where(_sessions.c.refresh_token_hash == refresh_token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_sessions(self, user_id: int, conn: Connection | None = None) -> list[Session]:
        with self._scope(conn) as c:
            rows = c.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.id)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def delete_session(self, session_id: int, conn: Connection | None = None) -> int:
        """Delete by id. Returns the rowcount (0 if another request got there first)."""
        with self._scope(conn) as c:
            return c.execute(_sessions.delete().where(_sessions.c.id == session_id)).rowcount

    def rotate_session(self, old: Session, new: Session, conn: Connection | None = None) -> bool:
        """Atomically replace `old` with `new`.

        The DELETE is conditional on both id and hash. If it removes nothing,
        a concurrent rotation (or logout) already consumed the row and the
        insert is skipped. Returns True only for the caller that won.

        Callers must pass their own transaction (or none) -- the delete and the
        insert commit together or not at all.
        """
        with self._scope(conn) as c:
            deleted = c.execute(
                _sessions.delete().where(
                    and_(_sessions.c.id == old.id, _sessions.c.refresh_token_hash == old.refresh_token_hash)
                )
            ).rowcount
            if deleted != 1:
                return False
            self.create_session(new, conn=c)
        return True

    def delete_sessions_for_user(self, user_id: int, conn: Connection | None = None) -> int:
        with self._scope(conn) as c:
            return c.execute(_sessions.delete().where(_sessions.c.user_id == user_id)).rowcount

    def delete_expired_sessions(self, now: str, conn: Connection | None = None) -> int:
        with self._scope(conn) as c:
            return c.execute(_sessions.delete().where(_sessions.c.expires_at < now)).rowcount

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def invalidate_reset_tokens(self, user_id: int, now: str, conn: Connection | None = None) -> int:
        """Mark every unconsumed token of a user as used. Returns the count."""
        with self._scope(conn) as c:
            return c.execute(
                _reset_tokens.update()
                .where(and_(_reset_tokens.c.user_id == user_id, _reset_tokens.c.used_at.is_(None)))
                .values(used_at=now)
            ).rowcount

    def create_reset_token(self, token: PasswordResetToken, conn: Connection | None = None) -> int:
        with self._scope(conn) as c:
            result = c.execute(
                _reset_tokens.insert().values(
                    user_id=token.user_id,
                    token_hash=token.token_hash,
                    expires_at=token.expires_at,
                    created_at=now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_reset_token_by_hash(self, token_hash: str, conn: Connection | None = None) -> PasswordResetToken | None:
        with self._scope(conn) as c:
            row = c.execute(_reset_tokens.select().where(_reset_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def list_reset_tokens(self, user_id: int, conn: Connection | None = None) -> list[PasswordResetToken]:
        with self._scope(conn) as c:
            rows = c.execute(
                _reset_tokens.select().where(_reset_tokens.c.user_id == user_id).order_by(_reset_tokens.c.id)
            ).fetchall()
        return [_row_to_reset_token(r) for r in rows]

    def mark_reset_token_used(self, token_id: int, now: str, conn: Connection | None = None) -> bool:
        """One-way transition used_at NULL -> now. False if it was already set."""
        with self._scope(conn) as c:
            result = c.execute(
                _reset_tokens.update()
                .where(and_(_reset_tokens.c.id == token_id, _reset_tokens.c.used_at.is_(None)))
                .values(used_at=now)
            )
        return result.rowcount == 1

    def delete_stale_reset_tokens(self, now: str, conn: Connection | None = None) -> int:
        """Delete tokens that are expired or already used."""
        with self._scope(conn) as c:
            return c.execute(
                _reset_tokens.delete().where(
                    or_(_reset_tokens.c.expires_at < now, _reset_tokens.c.used_at.is_not(None))
                )
            ).rowcount

    # ------------------------------------------------------------------
    # API tokens
    # ------------------------------------------------------------------

    def count_active_api_tokens(self, user_id: int, conn: Connection | None = None) -> int:
        """Count non-revoked tokens. Expired-but-unrevoked tokens still count toward the cap."""
        with self._scope(conn) as c:
            return (
                c.execute(
                    select(func.count())
                    .select_from(_api_tokens)
                    .where(and_(_api_tokens.c.user_id == user_id, _api_tokens.c.revoked_at.is_(None)))
                ).scalar()
                or 0
            )

    def create_api_token(self, token: ApiToken, conn: Connection | None = None) -> ApiToken:
        """Insert a token and return it re-read from the DB (id and created_at filled in)."""
        with self._scope(conn) as c:
            result = c.execute(
                _api_tokens.insert().values(
                    user_id=token.user_id,
                    name=token.name,
                    token_hash=token.token_hash,
                    prefix=token.prefix,
                    scopes=",".join(token.scopes),
                    expires_at=token.expires_at,
                    created_at=now_iso(),
                )
            )
            token_id = result.inserted_primary_key[0]
            row = c.execute(_api_tokens.select().where(_api_tokens.c.id == token_id)).fetchone()
        return _row_to_api_token(row)

    def get_api_token_by_hash(self, token_hash: str, conn: Connection | None = None) -> ApiToken | None:
        """O(1) lookup via the UNIQUE index. Returns revoked and expired rows too."""
        with self._scope(conn) as c:
            row = c.execute(_api_tokens.select().where(_api_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_api_token(row) if row is not None else None

    def get_api_token(self, token_id: int, user_id: int, conn: Connection | None = None) -> ApiToken | None:
        """Owner-scoped lookup: another user's token id reads as missing."""
        with self._scope(conn) as c:
            row = c.execute(
                _api_tokens.select().where(and_(_api_tokens.c.id == token_id, _api_tokens.c.user_id == user_id))
            ).fetchone()
        return _row_to_api_token(row) if row is not None else None

    def list_api_tokens(self, user_id: int, conn: Connection | None = None) -> list[ApiToken]:
        """All tokens of a user, newest first, revoked ones included."""
        with self._scope(conn) as c:
            rows = c.execute(
                _api_tokens.select()
                .where(_api_tokens.c.user_id == user_id)
                .order_by(_api_tokens.c.created_at.desc(), _api_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_api_token(r) for r in rows]

    def touch_api_token(self, token_id: int, now: str, conn: Connection | None = None) -> None:
        with self._scope(conn) as c:
            c.execute(_api_tokens.update().where(_api_tokens.c.id == token_id).values(last_used_at=now))

    def revoke_api_token(self, token_id: int, user_id: int, now: str, conn: Connection | None = None) -> bool:
        """Set revoked_at only where id and owner match and it is still NULL.

        The owner condition is the IDOR guard: knowing another user's token id
        is not enough. Returns True if this call revoked the token.
        """
        with self._scope(conn) as c:
            result = c.execute(
                _api_tokens.update()
                .where(
                    and_(
                        _api_tokens.c.id == token_id,
                        _api_tokens.c.user_id == user_id,
                        _api_tokens.c.revoked_at.is_(None),
                    )
                )
                .values(revoked_at=now)
            )
        return result.rowcount == 1

    def purge_api_tokens(self, before: str, conn: Connection | None = None) -> int:
        """Delete tokens revoked or expired before the given timestamp."""
        with self._scope(conn) as c:
            return c.execute(
                _api_tokens.delete().where(
                    or_(_api_tokens.c.revoked_at < before, _api_tokens.c.expires_at < before)
                )
            ).rowcount

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as c:
                c.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        is_service_account=bool(row.is_service_account),
        must_change_password=bool(row.must_change_password),
        created_at=row.created_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        refresh_token_hash=row.refresh_token_hash,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used_at=row.used_at,
        created_at=row.created_at,
    )


def _row_to_api_token(row) -> ApiToken:
    return ApiToken(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        token_hash=row.token_hash,
        prefix=row.prefix,
        scopes=[s for s in row.scopes.split(",") if s],
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
        last_used_at=row.last_used_at,
        created_at=row.created_at,
    )
