"""Tests for AuthService - core auth orchestration."""

import logging
from datetime import timedelta
from unittest.mock import Mock
from uuid import uuid4

import psycopg2
import pytest
import redis

from auth.exceptions import (
    AccountInactiveError,
    AccountLockedError,
    InvalidCredentialsError,
    InvalidMagicLinkError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    SessionNotFoundError,
    SessionStorageUnavailableError,
    StorageUnavailableError,
    TokenAlreadyUsedError,
    UserAlreadyExistsError,
    WeakPasswordError,
)
from auth.memory import InMemoryAuthStore
from auth.passwords import PasswordHasher
from auth.security_logger import SecurityLogger
from auth.service import AuthService
from auth.session import InMemorySessionStore
from auth.types import MagicLinkPurpose
from clients.email_client import EmailGatewayClient, EmailGatewayError
from utils.timezone import now_utc

TEST_EMAIL = "demo@example.com"
TEST_PASSWORD = "password123"


class _LogoutAfterRead(InMemorySessionStore):
    """Session store where a logout lands right after every read."""

    def get(self, session_id):
        record = super().get(session_id)
        self.delete(session_id)
        return record


@pytest.fixture
def mock_email_client():
    """Mock email client - no actual emails sent in tests."""
    mock = Mock(spec=EmailGatewayClient)
    mock.send_magic_link.return_value = None
    return mock


@pytest.fixture
def mailing_service(config, store, hasher, tokens, magic_links, sessions, mock_email_client):
    """AuthService wired to a mocked email gateway."""
    return AuthService(
        config=config,
        store=store,
        hasher=hasher,
        tokens=tokens,
        magic_links=magic_links,
        sessions=sessions,
        security_logger=SecurityLogger(),
        email_client=mock_email_client,
    )


def _unlock(store, user_id):
    """Move a live lock into the past."""
    store._update_user(user_id, locked_until=now_utc() - timedelta(seconds=1))


class TestLogin:
    """Password login and the response it returns."""

    def test_success(self, auth_service, demo_user):
        response = auth_service.login(TEST_EMAIL, TEST_PASSWORD, "pytest", "127.0.0.1")

        assert response.token_type == "Bearer"
        assert response.expires_in == 900
        assert len(response.refresh_token) == 80
        assert response.user.id == demo_user.id
        assert response.user.last_login is not None

    def test_response_never_exposes_hash(self, auth_service, demo_user):
        response = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        assert "password_hash" not in response.model_dump()["user"]

    def test_unknown_email_reads_like_wrong_password(self, auth_service, demo_user):
        with pytest.raises(InvalidCredentialsError) as unknown:
            auth_service.login("nobody@example.com", TEST_PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            auth_service.login(TEST_EMAIL, "wrongpassword")

        assert str(unknown.value) == str(wrong.value) == "Invalid credentials"

    def test_inactive_account(self, auth_service, store, demo_user):
        store._update_user(demo_user.id, is_active=False)

        with pytest.raises(AccountInactiveError):
            auth_service.login(TEST_EMAIL, TEST_PASSWORD)

    def test_success_resets_failures(self, auth_service, store, demo_user):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login(TEST_EMAIL, "wrongpassword")

        auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        assert store.get_user_by_id(demo_user.id).failed_login_attempts == 0

    def test_rehash_on_work_factor_change(self, auth_service, store):
        """Hashes from another work factor are upgraded on a good login."""
        user = store.create_user("old@example.com", PasswordHasher(rounds=5).hash(TEST_PASSWORD))

        auth_service.login("old@example.com", TEST_PASSWORD)

        assert store.get_user_by_id(user.id).password_hash.startswith("$2b$04$")
        auth_service.login("old@example.com", TEST_PASSWORD)

    def test_failed_login_logged(self, auth_service, demo_user, caplog):
        with caplog.at_level(logging.WARNING, logger="auth.security"):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login(TEST_EMAIL, "wrongpassword", ip_address="10.0.0.1")

        assert any("login_failed" in r.message and "ip=10.0.0.1" in r.message for r in caplog.records)


class TestLockout:
    """Five consecutive failures lock the account for fifteen minutes."""

    def test_fifth_failure_locks(self, auth_service, demo_user):
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                auth_service.login(TEST_EMAIL, "wrongpassword")

        with pytest.raises(AccountLockedError) as exc_info:
            auth_service.login(TEST_EMAIL, "wrongpassword")

        assert str(exc_info.value) == "Too many failed attempts. Account locked temporarily"
        assert exc_info.value.remaining_minutes == 15

    def test_lock_duration_keeps_seconds(self, config, store, hasher, tokens, magic_links, sessions, demo_user):
        """A 90 second lock lasts 90 seconds and reports 2 minutes remaining."""
        service = AuthService(
            config=config.model_copy(update={"lockout_duration_seconds": 90}),
            store=store,
            hasher=hasher,
            tokens=tokens,
            magic_links=magic_links,
            sessions=sessions,
            security_logger=SecurityLogger(),
        )
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                service.login(TEST_EMAIL, "wrongpassword")

        with pytest.raises(AccountLockedError) as exc_info:
            service.login(TEST_EMAIL, "wrongpassword")

        remaining = store.get_user_by_id(demo_user.id).locked_until - now_utc()
        assert timedelta(seconds=85) < remaining <= timedelta(seconds=90)
        assert exc_info.value.remaining_minutes == 2

    def test_correct_password_refused_while_locked(self, auth_service, store, demo_user):
        for _ in range(5):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                auth_service.login(TEST_EMAIL, "wrongpassword")

        with pytest.raises(AccountLockedError):
            auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        # A refused attempt while locked doesn't count as another failure
        assert store.get_user_by_id(demo_user.id).failed_login_attempts == 5

    def test_login_after_lock_expires(self, auth_service, store, demo_user):
        for _ in range(5):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                auth_service.login(TEST_EMAIL, "wrongpassword")

        _unlock(store, demo_user.id)

        response = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        assert response.user.id == demo_user.id
        user = store.get_user_by_id(demo_user.id)
        assert user.failed_login_attempts == 0
        assert user.locked_until is None

    def test_failure_after_expired_lock_restarts_count(self, auth_service, store, demo_user):
        for _ in range(5):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                auth_service.login(TEST_EMAIL, "wrongpassword")
        _unlock(store, demo_user.id)

        with pytest.raises(InvalidCredentialsError):
            auth_service.login(TEST_EMAIL, "wrongpassword")
        assert store.get_user_by_id(demo_user.id).failed_login_attempts == 1


class TestMagicLinkFlow:
    def test_request_for_new_email_provisions(self, auth_service, store):
        grant = auth_service.request_magic_link("new@example.com")

        assert store.get_user_by_email("new@example.com").id == grant.user_id
        assert grant.purpose is MagicLinkPurpose.LOGIN

    def test_link_logged_without_gateway(self, auth_service, caplog):
        with caplog.at_level(logging.INFO, logger="auth.service"):
            grant = auth_service.request_magic_link("new@example.com")

        assert any(grant.magic_link in r.message for r in caplog.records)

    def test_login_with_link(self, auth_service):
        grant = auth_service.request_magic_link("new@example.com")

        response = auth_service.login_with_magic_link(grant.token, "pytest", "127.0.0.1")

        assert response.user.email == "new@example.com"
        assert auth_service.validate_token(response.access_token).user_id == grant.user_id

    def test_link_single_use(self, auth_service):
        grant = auth_service.request_magic_link("new@example.com")
        auth_service.login_with_magic_link(grant.token)

        with pytest.raises(TokenAlreadyUsedError):
            auth_service.login_with_magic_link(grant.token)

    def test_review_session_link_logs_in(self, auth_service):
        grant = auth_service.request_magic_link(
            "new@example.com", MagicLinkPurpose.REVIEW_SESSION, session_id=str(uuid4())
        )
        assert auth_service.login_with_magic_link(grant.token).user.id == grant.user_id

    def test_reset_link_cannot_log_in(self, auth_service, magic_links, store, demo_user):
        grant = magic_links.create_for_user(demo_user.id, MagicLinkPurpose.PASSWORD_RESET)

        with pytest.raises(InvalidMagicLinkError):
            auth_service.login_with_magic_link(grant.token)
        assert store.get_magic_link_token(grant.token).used is False

    def test_gateway_called(self, mailing_service, mock_email_client):
        grant = mailing_service.request_magic_link("new@example.com")

        mock_email_client.send_magic_link.assert_called_once_with(
            email="new@example.com",
            magic_link=grant.magic_link,
            purpose="login",
            expires_in_minutes=15,
        )

    def test_gateway_failure_propagates(self, mailing_service, mock_email_client):
        mock_email_client.send_magic_link.side_effect = EmailGatewayError("boom")

        with pytest.raises(EmailGatewayError):
            mailing_service.request_magic_link("new@example.com")


class TestRefresh:
    def test_new_access_token_same_refresh(self, auth_service, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)

        first = auth_service.refresh_access_token(login.refresh_token)
        second = auth_service.refresh_access_token(login.refresh_token)

        assert first.expires_in == 900
        assert auth_service.validate_token(first.access_token).user_id == demo_user.id
        assert auth_service.validate_token(second.access_token).user_id == demo_user.id

    def test_unknown(self, auth_service):
        with pytest.raises(InvalidRefreshTokenError):
            auth_service.refresh_access_token("0" * 80)

    def test_access_token_is_not_a_refresh_token(self, auth_service, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)

        with pytest.raises(InvalidRefreshTokenError):
            auth_service.refresh_access_token(login.access_token)

    def test_revoked(self, auth_service, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        auth_service.logout(refresh_token=login.refresh_token)

        with pytest.raises(RefreshTokenRevokedError):
            auth_service.refresh_access_token(login.refresh_token)

    def test_expired(self, auth_service, store, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        stored = store.get_refresh_token(login.refresh_token)
        store.store_refresh_token(
            stored.model_copy(update={"expires_at": now_utc() - timedelta(seconds=1)})
        )

        with pytest.raises(RefreshTokenExpiredError):
            auth_service.refresh_access_token(login.refresh_token)

    def test_inactive_owner(self, auth_service, store, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        store._update_user(demo_user.id, is_active=False)

        with pytest.raises(AccountInactiveError):
            auth_service.refresh_access_token(login.refresh_token)

    def test_touches_last_used(self, auth_service, store, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        auth_service.refresh_access_token(login.refresh_token)
        assert store.get_refresh_token(login.refresh_token).last_used_at is not None


class TestValidateToken:
    def test_valid(self, auth_service, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)

        result = auth_service.validate_token(login.access_token)

        assert result.valid is True
        assert result.email == TEST_EMAIL
        assert result.user_id == demo_user.id

    def test_after_logout(self, auth_service, demo_user):
        """A well-signed token is useless once its session is gone."""
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        session_id = auth_service.session_id_from_token(login.access_token)
        auth_service.logout(session_id=session_id, refresh_token=login.refresh_token)

        with pytest.raises(SessionNotFoundError):
            auth_service.validate_token(login.access_token)

    def test_garbage(self, auth_service):
        with pytest.raises(InvalidTokenError):
            auth_service.validate_token("garbage")

    def test_touches_session(self, auth_service, sessions, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        session_id = auth_service.session_id_from_token(login.access_token)
        before = sessions.get(session_id).last_activity

        auth_service.validate_token(login.access_token)
        assert sessions.get(session_id).last_activity >= before

    def test_session_id_from_missing_token(self, auth_service):
        assert auth_service.session_id_from_token(None) is None

    def test_logout_racing_validation_is_not_undone(self, config, store, hasher, tokens, magic_links, demo_user):
        """A session deleted between the read and the activity touch stays deleted."""
        sessions = _LogoutAfterRead(ttl_seconds=config.session_ttl_seconds)
        service = AuthService(
            config=config,
            store=store,
            hasher=hasher,
            tokens=tokens,
            magic_links=magic_links,
            sessions=sessions,
            security_logger=SecurityLogger(),
        )
        login = service.login(TEST_EMAIL, TEST_PASSWORD)
        assert len(sessions) == 1

        with pytest.raises(SessionNotFoundError):
            service.validate_token(login.access_token)

        assert len(sessions) == 0


class TestLogout:
    def test_idempotent(self, auth_service, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        session_id = auth_service.session_id_from_token(login.access_token)

        auth_service.logout(session_id=session_id, refresh_token=login.refresh_token)
        auth_service.logout(session_id=session_id, refresh_token=login.refresh_token)
        auth_service.logout()

    def test_logout_all(self, auth_service, store, demo_user):
        first = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        second = auth_service.login(TEST_EMAIL, TEST_PASSWORD)

        counts = auth_service.logout_all_sessions(demo_user.id)

        assert counts == {"sessions_deleted": 2, "refresh_tokens_revoked": 2}
        for login in (first, second):
            with pytest.raises(SessionNotFoundError):
                auth_service.validate_token(login.access_token)
            with pytest.raises(RefreshTokenRevokedError):
                auth_service.refresh_access_token(login.refresh_token)


class TestRegister:
    def test_creates_account(self, auth_service, store):
        user = auth_service.register("new@example.com", "correct-horse")

        assert user.email == "new@example.com"
        assert auth_service.login("new@example.com", "correct-horse").user.id == user.id

    def test_duplicate(self, auth_service, demo_user):
        with pytest.raises(UserAlreadyExistsError):
            auth_service.register(TEST_EMAIL, "another-password")

    def test_weak_password(self, auth_service, store):
        with pytest.raises(WeakPasswordError):
            auth_service.register("new@example.com", "short")
        assert store.get_user_by_email("new@example.com") is None


class TestPasswordReset:
    def _request(self, service, mock_email_client):
        service.request_password_reset(TEST_EMAIL)
        link = mock_email_client.send_magic_link.call_args.kwargs["magic_link"]
        return link.rsplit("token=", 1)[1]

    def test_full_flow(self, mailing_service, mock_email_client, demo_user):
        login = mailing_service.login(TEST_EMAIL, TEST_PASSWORD)
        token = self._request(mailing_service, mock_email_client)
        assert mock_email_client.send_magic_link.call_args.kwargs["purpose"] == "password_reset"

        mailing_service.complete_password_reset(token, "brand-new-password")

        with pytest.raises(InvalidCredentialsError):
            mailing_service.login(TEST_EMAIL, TEST_PASSWORD)
        assert mailing_service.login(TEST_EMAIL, "brand-new-password").user.id == demo_user.id
        # Existing sessions and refresh tokens are gone
        with pytest.raises(SessionNotFoundError):
            mailing_service.validate_token(login.access_token)
        with pytest.raises(RefreshTokenRevokedError):
            mailing_service.refresh_access_token(login.refresh_token)

    def test_works_while_locked(self, mailing_service, mock_email_client, store, demo_user):
        for _ in range(5):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                mailing_service.login(TEST_EMAIL, "wrongpassword")

        token = self._request(mailing_service, mock_email_client)
        mailing_service.complete_password_reset(token, "brand-new-password")

        assert mailing_service.login(TEST_EMAIL, "brand-new-password").user.id == demo_user.id

    def test_unknown_email_silent(self, mailing_service, mock_email_client, store):
        mailing_service.request_password_reset("nobody@example.com")

        mock_email_client.send_magic_link.assert_not_called()
        assert store.get_user_by_email("nobody@example.com") is None

    def test_gateway_failure_swallowed(self, mailing_service, mock_email_client, demo_user):
        mock_email_client.send_magic_link.side_effect = EmailGatewayError("boom")
        mailing_service.request_password_reset(TEST_EMAIL)

    def test_weak_password_keeps_token(self, mailing_service, mock_email_client, store, demo_user):
        token = self._request(mailing_service, mock_email_client)

        with pytest.raises(WeakPasswordError):
            mailing_service.complete_password_reset(token, "short")
        assert store.get_magic_link_token(token).used is False

    def test_login_link_rejected(self, auth_service, demo_user):
        grant = auth_service.request_magic_link(TEST_EMAIL)
        with pytest.raises(InvalidMagicLinkError):
            auth_service.complete_password_reset(grant.token, "brand-new-password")


class TestCleanup:
    def test_counts(self, auth_service, demo_user):
        login = auth_service.login(TEST_EMAIL, TEST_PASSWORD)
        auth_service.logout(refresh_token=login.refresh_token)
        grant = auth_service.request_magic_link("new@example.com")
        auth_service.login_with_magic_link(grant.token)

        result = auth_service.cleanup()

        assert result == {"magic_link_tokens": 1, "refresh_tokens": 1, "sessions": 0}

    def test_archives_security_events_when_configured(
        self, config, store, hasher, tokens, magic_links, sessions, tmp_path
    ):
        archive = tmp_path / "security-events.jsonl"
        security_logger = Mock(spec=SecurityLogger)
        security_logger.rotate_logs.return_value = 4
        service = AuthService(
            config=config.model_copy(
                update={"security_log_archive_path": str(archive), "security_log_retention_days": 30}
            ),
            store=store,
            hasher=hasher,
            tokens=tokens,
            magic_links=magic_links,
            sessions=sessions,
            security_logger=security_logger,
        )

        result = service.cleanup()

        assert result["security_events"] == 4
        security_logger.rotate_logs.assert_called_once_with(30, archive)


class TestStorageFailures:
    """Driver errors surface as the service's own error types."""

    def _service(self, config, store, sessions, hasher, tokens, magic_links):
        return AuthService(
            config=config,
            store=store,
            hasher=hasher,
            tokens=tokens,
            magic_links=magic_links,
            sessions=sessions,
            security_logger=SecurityLogger(),
        )

    def test_postgres_error(self, config, hasher, tokens, magic_links, sessions):
        store = Mock(spec=InMemoryAuthStore)
        store.get_user_by_email.side_effect = psycopg2.OperationalError("connection refused")
        service = self._service(config, store, sessions, hasher, tokens, magic_links)

        with pytest.raises(StorageUnavailableError) as exc_info:
            service.login(TEST_EMAIL, TEST_PASSWORD)
        assert "connection refused" not in str(exc_info.value)

    def test_valkey_error(self, config, store, hasher, tokens, magic_links, demo_user):
        sessions = Mock(spec=InMemorySessionStore)
        sessions.get.side_effect = redis.ConnectionError("refused")
        service = self._service(config, store, sessions, hasher, tokens, magic_links)
        token = tokens.create_access_token(demo_user.id, TEST_EMAIL, str(uuid4()))

        with pytest.raises(SessionStorageUnavailableError):
            service.validate_token(token)
