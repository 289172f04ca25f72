#!/usr/bin/env python3
"""
Notez auth -- maintenance CLI for the credential store.

Usage:
  python main.py cleanup
  python main.py cleanup --purge-days 30
  python main.py create-user alice alice@example.com
  python main.py create-user admin admin@example.com --role admin
  python main.py create-user ci-bot ci-bot@example.com --service-account
  python main.py create-token ci-bot "CI pipeline" --scope read --scope write --expires-days 90

Configuration comes from the same environment / .env file as the API
(DATABASE_URL, SECRET_KEY, ...). See core/config.py.
"""

import argparse
import getpass
import logging
import sys
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.api_tokens import VALID_SCOPES, ApiTokenManager
from auth.errors import AuthError
from auth.models import User
from auth.notify import LogDispatcher
from auth.passwords import PasswordHasher, check_password_policy
from auth.reset import PasswordResetFlow
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import TokenCodec
from core.config import Settings, get_settings

logger = logging.getLogger("notez.cli")


def _read_password() -> str:
    """Prompt twice for a password without echoing it."""
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat password: ")
    if first != second:
        raise AuthError("passwords differ", public_message="Passwords do not match.")
    return first


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_cleanup(store: AuthStore, settings: Settings, purge_days: int) -> None:
    """Run every idempotent cleanup job once."""
    hasher = PasswordHasher(rounds=settings.bcrypt_rounds)
    sessions = SessionManager(store, TokenCodec.from_settings(settings), hasher, settings.secret_key)
    resets = PasswordResetFlow(store, hasher, LogDispatcher(), settings.secret_key)
    api_tokens = ApiTokenManager(store, settings.secret_key)

    removed_sessions = sessions.cleanup_expired_sessions()
    removed_resets = resets.cleanup_expired_reset_tokens()
    removed_tokens = api_tokens.purge_stale_tokens(older_than=timedelta(days=purge_days))
    print(f"  Expired sessions removed:     {removed_sessions}")
    print(f"  Stale reset tokens removed:   {removed_resets}")
    print(f"  Dead API tokens purged:       {removed_tokens}")


def cmd_create_user(
    store: AuthStore,
    settings: Settings,
    username: str,
    email: str,
    role: str,
    service_account: bool,
    must_change_password: bool,
) -> Optional[int]:
    """Create an account. Service accounts get no password and never log in."""
    password_hash = None
    if not service_account:
        password = _read_password()
        check_password_policy(password)
        password_hash = PasswordHasher(rounds=settings.bcrypt_rounds).hash(password)
    try:
        user_id = store.create_user(
            User(
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                is_service_account=service_account,
                must_change_password=must_change_password and not service_account,
            )
        )
    except IntegrityError:
        print(f"  [!] Username '{username}' or that email is already taken.")
        return None
    kind = "service account" if service_account else "user"
    print(f"  Created {kind} '{username}' (id={user_id}, role={role}).")
    return user_id


def cmd_create_token(
    store: AuthStore,
    settings: Settings,
    username: str,
    name: str,
    scopes: list[str],
    expires_days: Optional[int],
) -> Optional[str]:
    """Issue an API token for an existing account and print it once."""
    user = store.get_user_by_username(username)
    if user is None:
        print(f"  [!] No user named '{username}'.")
        return None
    manager = ApiTokenManager(store, settings.secret_key, max_active=settings.api_token_max_active)
    expires_in = timedelta(days=expires_days) if expires_days is not None else None
    created = manager.create(user.id, name, scopes, expires_in=expires_in)
    print(f"  Token '{created.token.name}' (id={created.token.id}) for '{username}':\n")
    print(f"    {created.raw_token}\n")
    print("  Store this token securely. It cannot be retrieved again.")
    return created.raw_token


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notez-auth",
        description="Maintenance commands for the Notez credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py cleanup
  python main.py create-user alice alice@example.com
  python main.py create-user ci-bot ci-bot@example.com --service-account
  python main.py create-token ci-bot "CI pipeline" --scope read
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    cleanup = sub.add_parser("cleanup", help="Delete expired sessions, stale reset tokens and dead API tokens")
    cleanup.add_argument(
        "--purge-days",
        type=int,
        default=90,
        metavar="DAYS",
        help="Purge API tokens revoked or expired more than DAYS ago (default: 90)",
    )

    create_user = sub.add_parser("create-user", help="Create a user or service account")
    create_user.add_argument("username")
    create_user.add_argument("email")
    create_user.add_argument("--role", choices=["admin", "user"], default="user")
    create_user.add_argument(
        "--service-account",
        action="store_true",
        help="Non-interactive account: no password, API tokens only",
    )
    create_user.add_argument(
        "--must-change-password",
        action="store_true",
        help="Flag the account so the client forces a password change after first login",
    )

    create_token = sub.add_parser("create-token", help="Issue an API token for an existing account")
    create_token.add_argument("username")
    create_token.add_argument("name", help="Label shown in token listings")
    create_token.add_argument(
        "--scope",
        dest="scopes",
        action="append",
        choices=list(VALID_SCOPES),
        required=True,
        help="Scope to grant; repeat for several",
    )
    create_token.add_argument("--expires-days", type=int, default=None, metavar="DAYS")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    settings = get_settings()
    store = AuthStore(settings.database_url)
    try:
        if args.command == "cleanup":
            cmd_cleanup(store, settings, args.purge_days)
            return 0
        if args.command == "create-user":
            created = cmd_create_user(
                store,
                settings,
                args.username,
                args.email,
                args.role,
                args.service_account,
                args.must_change_password,
            )
            return 0 if created is not None else 1
        raw = cmd_create_token(store, settings, args.username, args.name, args.scopes, args.expires_days)
        return 0 if raw is not None else 1
    except AuthError as e:
        logger.info("CLI command %s failed: %s", args.command, e.detail)
        print(f"  [!] {e.public_message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
