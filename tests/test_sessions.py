"""
tests/test_sessions.py -- Unit tests for SessionManager.

Coverage:
  - login: username exact, email case-insensitive, wrong password, unknown,
    service account, deactivated, one session row per login
  - refresh: rotation consumes the old token, replay fails, expired session
    row is deleted, deactivated owner, two concurrent refreshes -> one winner
  - logout: every session of the user removed, unknown token is a no-op
  - change_password: old refresh tokens die, wrong current password,
    policy failure, service account refused, owner notified after commit
  - cleanup_expired_sessions, first-user setup
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from auth.errors import (
    AccountDeactivated,
    Conflict,
    ConflictReason,
    IncorrectPassword,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidRefreshToken,
    RefreshTokenExpired,
    ServiceAccountsCannotChangePassword,
    ValidationError,
)
from auth.models import User
from auth.notify import PASSWORD_CHANGED
from auth.sessions import SessionManager
from auth.store import AuthStore
from conftest import NEW_PASSWORD, PASSWORD, RecordingDispatcher


class TestLogin:
    def test_login_by_username(self, sessions: SessionManager, make_user) -> None:
        user = make_user("alice")
        result = sessions.login("alice", PASSWORD)
        assert result.user.id == user.id
        assert result.user.username == "alice"
        assert result.tokens.access_token and result.tokens.refresh_token

    def test_login_by_email_is_case_insensitive(self, sessions: SessionManager, make_user) -> None:
        make_user("alice", email="Alice@Example.com")
        result = sessions.login("ALICE@example.COM", PASSWORD)
        assert result.user.username == "alice"

    def test_login_by_username_is_case_sensitive(self, sessions: SessionManager, make_user) -> None:
        make_user("alice")
        with pytest.raises(InvalidCredentials):
            sessions.login("Alice", PASSWORD)

    def test_wrong_password(self, sessions: SessionManager, make_user) -> None:
        make_user("alice")
        with pytest.raises(InvalidCredentials):
            sessions.login("alice", "Wr0ng!Password")

    def test_unknown_user_gets_same_error(self, sessions: SessionManager, make_user) -> None:
        make_user("alice")
        with pytest.raises(InvalidCredentials) as unknown:
            sessions.login("nobody", PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            sessions.login("alice", "Wr0ng!Password")
        assert unknown.value.public_message == wrong.value.public_message

    def test_service_account_cannot_log_in(self, sessions: SessionManager, make_user) -> None:
        make_user("ci-bot", password=None, is_service_account=True)
        with pytest.raises(InvalidCredentials):
            sessions.login("ci-bot", PASSWORD)

    def test_service_account_with_password_hash_still_refused(self, sessions: SessionManager, make_user) -> None:
        make_user("ci-bot", is_service_account=True)
        with pytest.raises(InvalidCredentials):
            sessions.login("ci-bot", PASSWORD)

    def test_deactivated_account_with_correct_password(self, sessions: SessionManager, make_user) -> None:
        make_user("alice", is_active=False)
        with pytest.raises(AccountDeactivated):
            sessions.login("alice", PASSWORD)

    def test_deactivated_account_with_wrong_password_looks_like_bad_credentials(
        self, sessions: SessionManager, make_user
    ) -> None:
        make_user("alice", is_active=False)
        with pytest.raises(InvalidCredentials):
            sessions.login("alice", "Wr0ng!Password")

    def test_username_match_wins_over_email_match(self, sessions: SessionManager, make_user) -> None:
        """One user's username equal to another's email resolves to the username owner."""
        owner = make_user("carol@example.com", email="carol-real@example.com")
        make_user("carol", email="carol@example.com", password="0ther!Passw0rd")
        result = sessions.login("carol@example.com", PASSWORD)
        assert result.user.id == owner.id

    def test_each_login_creates_one_session(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        user = make_user("alice")
        sessions.login("alice", PASSWORD)
        sessions.login("alice", PASSWORD)
        assert len(store.list_sessions(user.id)) == 2

    def test_stored_hash_is_not_the_token(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        user = make_user("alice")
        result = sessions.login("alice", PASSWORD)
        [session] = store.list_sessions(user.id)
        assert session.refresh_token_hash != result.tokens.refresh_token


class TestRefresh:
    def test_refresh_issues_new_pair(self, sessions: SessionManager, make_user) -> None:
        make_user("alice")
        first = sessions.login("alice", PASSWORD)
        second = sessions.refresh(first.tokens.refresh_token)
        assert second.tokens.refresh_token != first.tokens.refresh_token
        assert sessions.authenticate(second.tokens.access_token).username == "alice"

    def test_old_refresh_token_never_works_again(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        user = make_user("alice")
        first = sessions.login("alice", PASSWORD)
        second = sessions.refresh(first.tokens.refresh_token)
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(first.tokens.refresh_token)
        # The rotated session is still the only live one and still works
        assert len(store.list_sessions(user.id)) == 1
        sessions.refresh(second.tokens.refresh_token)

    def test_access_token_cannot_refresh(self, sessions: SessionManager, make_user) -> None:
        make_user("alice")
        result = sessions.login("alice", PASSWORD)
        with pytest.raises(InvalidOrExpiredToken):
            sessions.refresh(result.tokens.access_token)

    def test_expired_session_row_is_deleted(self, store: AuthStore, codec, hasher, hash_key, make_user) -> None:
        manager = SessionManager(store, codec, hasher, token_hash_key=hash_key, session_ttl=timedelta(seconds=-1))
        user = make_user("alice")
        result = manager.login("alice", PASSWORD)
        with pytest.raises(RefreshTokenExpired) as exc_info:
            manager.refresh(result.tokens.refresh_token)
        assert exc_info.value.public_message == "Invalid or expired refresh token."
        assert store.list_sessions(user.id) == []

    def test_deactivated_owner_cannot_refresh(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        user = make_user("alice")
        result = sessions.login("alice", PASSWORD)
        store.update_user(user.id, is_active=False)
        with pytest.raises(AccountDeactivated):
            sessions.refresh(result.tokens.refresh_token)

    def test_concurrent_refresh_has_exactly_one_winner(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        """Two tabs refresh with the same token at the same moment."""
        user = make_user("alice")
        token = sessions.login("alice", PASSWORD).tokens.refresh_token
        barrier = threading.Barrier(2)
        outcomes: list[object] = []
        lock = threading.Lock()

        def worker() -> None:
            barrier.wait()
            try:
                result = sessions.refresh(token)
            except Exception as e:
                outcome: object = e
            else:
                outcome = result
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(outcomes) == 2
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidRefreshToken)
        assert len(store.list_sessions(user.id)) == 1


class TestLogout:
    def test_logout_removes_every_session(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        user = make_user("alice")
        laptop = sessions.login("alice", PASSWORD)
        phone = sessions.login("alice", PASSWORD)
        assert sessions.logout(laptop.tokens.refresh_token) == 2
        assert store.list_sessions(user.id) == []
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(phone.tokens.refresh_token)

    def test_logout_leaves_other_users_alone(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        make_user("alice")
        bob = make_user("bob")
        alice_result = sessions.login("alice", PASSWORD)
        sessions.login("bob", PASSWORD)
        sessions.logout(alice_result.tokens.refresh_token)
        assert len(store.list_sessions(bob.id)) == 1

    def test_unknown_token_is_a_no_op(self, sessions: SessionManager) -> None:
        assert sessions.logout("never-issued") == 0


class TestChangePassword:
    def test_change_password_invalidates_refresh_tokens(self, sessions: SessionManager, make_user) -> None:
        user = make_user("alice")
        before = sessions.login("alice", PASSWORD)
        sessions.change_password(user.id, PASSWORD, NEW_PASSWORD)
        with pytest.raises(InvalidRefreshToken):
            sessions.refresh(before.tokens.refresh_token)
        sessions.login("alice", NEW_PASSWORD)
        with pytest.raises(InvalidCredentials):
            sessions.login("alice", PASSWORD)

    def test_change_password_clears_forced_change_flag(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        user = make_user("alice", must_change_password=True)
        sessions.change_password(user.id, PASSWORD, NEW_PASSWORD)
        assert store.get_user_by_id(user.id).must_change_password is False

    def test_wrong_current_password(self, sessions: SessionManager, store: AuthStore, make_user) -> None:
        user = make_user("alice")
        before = store.get_user_by_id(user.id).password_hash
        with pytest.raises(IncorrectPassword):
            sessions.change_password(user.id, "Wr0ng!Password", NEW_PASSWORD)
        assert store.get_user_by_id(user.id).password_hash == before

    def test_weak_new_password(self, sessions: SessionManager, make_user) -> None:
        user = make_user("alice")
        with pytest.raises(ValidationError):
            sessions.change_password(user.id, PASSWORD, "weak")

    def test_service_account_refused(self, sessions: SessionManager, make_user) -> None:
        bot = make_user("ci-bot", password=None, is_service_account=True)
        with pytest.raises(ServiceAccountsCannotChangePassword):
            sessions.change_password(bot.id, PASSWORD, NEW_PASSWORD)

    def test_owner_is_notified(self, sessions: SessionManager, dispatcher: RecordingDispatcher, make_user) -> None:
        user = make_user("alice")
        sessions.change_password(user.id, PASSWORD, NEW_PASSWORD)
        assert dispatcher.sent == [("alice@example.com", "alice", {"kind": PASSWORD_CHANGED})]

    def test_failed_notice_does_not_undo_change(
        self, store: AuthStore, codec, hasher, hash_key, make_user
    ) -> None:
        failing = RecordingDispatcher(error=RuntimeError("smtp down"))
        manager = SessionManager(store, codec, hasher, token_hash_key=hash_key, dispatcher=failing)
        user = make_user("alice")
        manager.change_password(user.id, PASSWORD, NEW_PASSWORD)
        assert len(failing.sent) == 1
        manager.login("alice", NEW_PASSWORD)

    def test_no_notice_without_email(
        self, store: AuthStore, sessions: SessionManager, dispatcher: RecordingDispatcher, hasher
    ) -> None:
        uid = store.create_user(User(username="noemail", password_hash=hasher.hash(PASSWORD)))
        sessions.change_password(uid, PASSWORD, NEW_PASSWORD)
        assert dispatcher.sent == []


class TestCleanup:
    def test_cleanup_removes_only_expired(self, store: AuthStore, codec, hasher, hash_key, make_user) -> None:
        user = make_user("alice")
        expired = SessionManager(store, codec, hasher, token_hash_key=hash_key, session_ttl=timedelta(seconds=-1))
        live = SessionManager(store, codec, hasher, token_hash_key=hash_key)
        expired.login("alice", PASSWORD)
        live.login("alice", PASSWORD)
        assert live.cleanup_expired_sessions() == 1
        assert live.cleanup_expired_sessions() == 0
        assert len(store.list_sessions(user.id)) == 1


class TestSetup:
    def test_setup_needed_until_first_user(self, sessions: SessionManager) -> None:
        assert sessions.setup_needed() is True
        result = sessions.setup_first_user("admin", "admin@example.com", PASSWORD)
        assert result.user.role == "admin"
        assert sessions.setup_needed() is False
        assert sessions.authenticate(result.tokens.access_token).role == "admin"

    def test_second_setup_conflicts(self, sessions: SessionManager) -> None:
        sessions.setup_first_user("admin", "admin@example.com", PASSWORD)
        with pytest.raises(Conflict) as exc_info:
            sessions.setup_first_user("other", "other@example.com", PASSWORD)
        assert exc_info.value.reason is ConflictReason.SETUP_COMPLETED
        assert exc_info.value.status_code == 409

    def test_setup_enforces_password_policy(self, sessions: SessionManager) -> None:
        with pytest.raises(ValidationError):
            sessions.setup_first_user("admin", "admin@example.com", "weak")
        assert sessions.setup_needed() is True
