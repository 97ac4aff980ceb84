"""Authentication service - orchestrates password, magic link and token flows."""

import logging
import math
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from uuid import UUID, uuid4

import psycopg2
import redis

from auth.config import AuthConfig
from auth.exceptions import (
    AccountInactiveError,
    AccountLockedError,
    AuthError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    SessionNotFoundError,
    SessionStorageUnavailableError,
    StorageUnavailableError,
    TokenAlreadyUsedError,
    TokenExpiredError,
)
from auth.magic_link import MagicLinkIssuer
from auth.passwords import PasswordHasher
from auth.security_logger import SecurityEvent, SecurityLogger
from auth.session import SessionStore
from auth.store import AuthStore
from auth.tokens import TokenIssuer
from auth.types import (
    AuthResponse,
    MagicLinkGrant,
    MagicLinkPurpose,
    PublicUser,
    RefreshToken,
    SessionRecord,
    TokenResponse,
    TokenValidation,
    UserCredential,
)
from clients.email_client import EmailGatewayClient, EmailGatewayError
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

_MAGIC_LOGIN_PURPOSES = (MagicLinkPurpose.LOGIN, MagicLinkPurpose.REVIEW_SESSION)


@contextmanager
def _storage_errors():
    """Translate driver exceptions into the service's own error types."""
    try:
        yield
    except psycopg2.Error as e:
        logger.error(f"Credential store error: {e}")
        raise StorageUnavailableError() from e
    except redis.RedisError as e:
        logger.error(f"Session store error: {e}")
        raise SessionStorageUnavailableError() from e


class AuthService:
    """Orchestrates authentication.

    Handles:
    - Password login with failed-attempt lockout
    - Magic link requests and redemption
    - Access token refresh and validation against live sessions
    - Logout (single session or everything)
    - Password reset via single-use magic link
    """

    def __init__(
        self,
        config: AuthConfig,
        store: AuthStore,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        magic_links: MagicLinkIssuer,
        sessions: SessionStore,
        security_logger: SecurityLogger,
        email_client: EmailGatewayClient | None = None,
    ):
        self._config = config
        self._store = store
        self._hasher = hasher
        self._tokens = tokens
        self._magic_links = magic_links
        self._sessions = sessions
        self._security_logger = security_logger
        self._email_client = email_client

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> AuthResponse:
        """Authenticate with email and password.

        Flow:
        1. Look up user (unknown email reads exactly like a wrong password)
        2. Refuse while a lock is live
        3. Refuse inactive accounts
        4. Verify password; on mismatch count the failure atomically
        5. On match reset the counter and issue tokens

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
            AccountLockedError: Lock is live, or this failure triggered it
            AccountInactiveError: Account deactivated
        """
        with _storage_errors():
            user = self._store.get_user_by_email(email)
            if user is None:
                self._security_logger.log(
                    SecurityEvent.LOGIN_FAILED,
                    email=email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details={"reason": "user_not_found"},
                )
                raise InvalidCredentialsError()

            now = now_utc()
            if user.is_locked(now):
                raise AccountLockedError(remaining_minutes=_minutes_until(user.locked_until, now))

            if not user.is_active:
                raise AccountInactiveError()

            if not self._hasher.verify(password, user.password_hash):
                self._register_failure(user, ip_address, user_agent)

            user = self._store.record_successful_login(user.id, now) or user

            if self._hasher.needs_rehash(user.password_hash):
                self._store.set_password(user.id, self._hasher.hash(password), now)
                logger.info(f"Rehashed password for {user.id} at {self._hasher.rounds} rounds")

            self._security_logger.log(
                SecurityEvent.LOGIN_SUCCEEDED,
                email=user.email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return self._issue_auth_response(user, user_agent, ip_address)

    def _register_failure(
        self,
        user: UserCredential,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        """Count a wrong password and raise the matching error. Never returns."""
        now = now_utc()
        lock_until = now + timedelta(seconds=self._config.lockout_duration_seconds)
        attempts, locked_until = self._store.register_failed_login(
            user.id,
            threshold=self._config.lockout_threshold,
            lock_until=lock_until,
            now=now,
        )

        if locked_until is not None and locked_until > now:
            self._security_logger.log(
                SecurityEvent.ACCOUNT_LOCKED,
                email=user.email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"attempts": attempts, "locked_until": locked_until.isoformat()},
            )
            raise AccountLockedError(
                remaining_minutes=_minutes_until(locked_until, now),
                message="Too many failed attempts. Account locked temporarily",
            )

        self._security_logger.log(
            SecurityEvent.LOGIN_FAILED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"reason": "bad_password", "attempts": attempts},
        )
        raise InvalidCredentialsError()

    # ------------------------------------------------------------------
    # Magic links
    # ------------------------------------------------------------------

    def request_magic_link(
        self,
        email: str,
        purpose: MagicLinkPurpose = MagicLinkPurpose.LOGIN,
        session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> MagicLinkGrant:
        """Issue a magic link and hand it to the email gateway.

        Unknown emails get an account provisioned on the spot, so the
        response never depends on whether the email was registered.

        Raises:
            EmailGatewayError: If the gateway rejects the message
        """
        with _storage_errors():
            grant, created = self._magic_links.create_for_email(email, purpose, session_id)

        if created:
            self._security_logger.log(
                SecurityEvent.USER_CREATED,
                email=email,
                user_id=grant.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"via": "magic_link"},
            )

        self._security_logger.log(
            SecurityEvent.MAGIC_LINK_REQUESTED,
            email=email,
            user_id=grant.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"purpose": purpose.value},
        )

        self._deliver(email, grant)
        return grant

    def _deliver(self, email: str, grant: MagicLinkGrant) -> None:
        """Send the link, or log it when no gateway is configured (development)."""
        if self._email_client is None:
            if self._config.environment == "production":
                logger.warning(f"No email gateway configured; link {grant.token[:8]}... for {email} not delivered")
            else:
                logger.info(f"Magic link for {email} ({grant.purpose.value}): {grant.magic_link}")
            return

        self._email_client.send_magic_link(
            email=email,
            magic_link=grant.magic_link,
            purpose=grant.purpose.value,
            expires_in_minutes=self._magic_links.expiry_minutes,
        )
        self._security_logger.log(
            SecurityEvent.MAGIC_LINK_SENT,
            email=email,
            user_id=grant.user_id,
            details={"purpose": grant.purpose.value},
        )

    def login_with_magic_link(
        self,
        token: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> AuthResponse:
        """Redeem a login or review_session magic link.

        Raises:
            InvalidMagicLinkError: Unknown token or password_reset token
            TokenExpiredError: Token past expiry
            TokenAlreadyUsedError: Token already redeemed
            AccountInactiveError: Owner deactivated
            AccountLockedError: Owner locked out
        """
        with _storage_errors():
            try:
                user, _ = self._magic_links.validate_and_consume(
                    token, allowed_purposes=_MAGIC_LOGIN_PURPOSES
                )
            except AuthError as e:
                self._log_magic_link_failure(e, ip_address, user_agent)
                raise

            now = now_utc()
            user = self._store.record_successful_login(user.id, now) or user

            self._security_logger.log(
                SecurityEvent.MAGIC_LINK_VERIFIED,
                email=user.email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return self._issue_auth_response(user, user_agent, ip_address)

    def _log_magic_link_failure(
        self,
        error: AuthError,
        ip_address: str | None,
        user_agent: str | None,
    ) -> None:
        if isinstance(error, TokenExpiredError):
            event = SecurityEvent.MAGIC_LINK_EXPIRED
        elif isinstance(error, TokenAlreadyUsedError):
            event = SecurityEvent.MAGIC_LINK_ALREADY_USED
        else:
            event = SecurityEvent.MAGIC_LINK_FAILED

        self._security_logger.log(
            event,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"reason": type(error).__name__},
        )

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    def _new_session(
        self,
        user_id: UUID,
        email: str,
        user_agent: str | None,
        ip_address: str | None,
    ) -> SessionRecord:
        now = now_utc()
        record = SessionRecord(
            session_id=str(uuid4()),
            user_id=user_id,
            email=email,
            created_at=now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._sessions.create(record, ttl_seconds=self._config.session_ttl_seconds)
        return record

    def _issue_auth_response(
        self,
        user: UserCredential,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> AuthResponse:
        """Create a session, an access token bound to it and a refresh token."""
        now = now_utc()
        refresh = RefreshToken(
            id=uuid4(),
            user_id=user.id,
            token=self._tokens.generate_refresh_token(),
            expires_at=self._tokens.refresh_token_expires_at(now),
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
        )
        self._store.store_refresh_token(refresh)

        session = self._new_session(user.id, user.email, user_agent, ip_address)
        access_token = self._tokens.create_access_token(user.id, user.email, session.session_id, now)

        self._security_logger.log(
            SecurityEvent.SESSION_CREATED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        return AuthResponse(
            access_token=access_token,
            refresh_token=refresh.token,
            expires_in=self._tokens.access_token_ttl_seconds,
            user=PublicUser.from_credential(user),
        )

    def refresh_access_token(
        self,
        refresh_token: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> TokenResponse:
        """Exchange a refresh token for a new access token and session.

        The refresh token itself stays valid until expiry or revocation.

        Raises:
            InvalidRefreshTokenError: Unknown token or owner gone
            RefreshTokenRevokedError: Token revoked
            RefreshTokenExpiredError: Token past expiry
            AccountInactiveError: Owner deactivated
        """
        with _storage_errors():
            stored = self._store.get_refresh_token(refresh_token)
            now = now_utc()

            try:
                if stored is None:
                    raise InvalidRefreshTokenError()
                if stored.revoked:
                    raise RefreshTokenRevokedError()
                if stored.is_expired(now):
                    raise RefreshTokenExpiredError()

                user = self._store.get_user_by_id(stored.user_id)
                if user is None:
                    raise InvalidRefreshTokenError()
                if not user.is_active:
                    raise AccountInactiveError("User account is inactive")
            except AuthError as e:
                self._security_logger.log(
                    SecurityEvent.REFRESH_FAILED,
                    user_id=stored.user_id if stored else None,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details={"reason": type(e).__name__},
                )
                raise

            self._store.touch_refresh_token(stored.id, now)
            session = self._new_session(user.id, user.email, user_agent, ip_address)
            access_token = self._tokens.create_access_token(user.id, user.email, session.session_id, now)

            self._security_logger.log(
                SecurityEvent.TOKEN_REFRESHED,
                email=user.email,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )

            return TokenResponse(
                access_token=access_token,
                expires_in=self._tokens.access_token_ttl_seconds,
            )

    def validate_token(self, access_token: str) -> TokenValidation:
        """Verify an access token and confirm its session is still live.

        Touches the session's last_activity, which re-arms its TTL.

        Raises:
            InvalidTokenError: Signature, expiry, issuer, audience or type check failed
            SessionNotFoundError: Session logged out or expired
        """
        claims = self._tokens.verify_access_token(access_token)

        with _storage_errors():
            session = self._sessions.get(claims.session_id)
            if session is None or session.user_id != claims.user_id:
                raise SessionNotFoundError()

            # A logout between get and update must not resurrect the session
            if not self._sessions.update(
                session.model_copy(update={"last_activity": now_utc()}),
                ttl_seconds=self._config.session_ttl_seconds,
            ):
                raise SessionNotFoundError()

        return TokenValidation(
            user_id=claims.user_id,
            email=claims.email,
            session_id=claims.session_id,
            expires_at=claims.expires_at,
        )

    def session_id_from_token(self, access_token: str | None) -> str | None:
        """Session id of a verifiable token, else None."""
        if not access_token:
            return None
        return self._tokens.peek_session_id(access_token)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, session_id: str | None = None, refresh_token: str | None = None) -> None:
        """Delete the session and revoke the refresh token. Safe to repeat."""
        with _storage_errors():
            if session_id:
                self._sessions.delete(session_id)

            user_id = None
            if refresh_token:
                stored = self._store.get_refresh_token(refresh_token)
                if stored is not None:
                    self._store.revoke_refresh_token(stored.id)
                    user_id = stored.user_id

        if session_id or user_id:
            self._security_logger.log(
                SecurityEvent.SESSION_REVOKED,
                user_id=user_id,
                details={"session_id": session_id} if session_id else None,
            )

    def logout_all_sessions(self, user_id: UUID) -> dict:
        """Delete every session and revoke every refresh token of a user."""
        with _storage_errors():
            sessions_deleted = self._sessions.delete_user_sessions(user_id)
            tokens_revoked = self._store.revoke_user_refresh_tokens(user_id)

        self._security_logger.log(
            SecurityEvent.ALL_SESSIONS_REVOKED,
            user_id=user_id,
            details={"sessions": sessions_deleted, "refresh_tokens": tokens_revoked},
        )
        return {"sessions_deleted": sessions_deleted, "refresh_tokens_revoked": tokens_revoked}

    # ------------------------------------------------------------------
    # Registration and password reset
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> PublicUser:
        """Create a password account.

        Raises:
            WeakPasswordError: Password length out of bounds
            UserAlreadyExistsError: Email already registered
        """
        password_hash = self._hasher.hash(password)

        with _storage_errors():
            user = self._store.create_user(email, password_hash)

        self._security_logger.log(
            SecurityEvent.USER_CREATED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"via": "register"},
        )
        return PublicUser.from_credential(user)

    def request_password_reset(
        self,
        email: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Send a password reset link if the account exists.

        Returns the same way whether or not the email is known, and never
        provisions an account. Delivery failures are logged, not raised,
        since an error here would only ever happen for real accounts.
        """
        with _storage_errors():
            user = self._store.get_user_by_email(email)
            if user is None or not user.is_active:
                self._security_logger.log(
                    SecurityEvent.PASSWORD_RESET_REQUESTED,
                    email=email,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    details={"issued": False},
                )
                return

            grant = self._magic_links.create_for_user(user.id, MagicLinkPurpose.PASSWORD_RESET)

        self._security_logger.log(
            SecurityEvent.PASSWORD_RESET_REQUESTED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"issued": True},
        )

        try:
            self._deliver(user.email, grant)
        except EmailGatewayError as e:
            logger.error(f"Password reset email to {user.id} failed: {e}")

    def complete_password_reset(
        self,
        token: str,
        new_password: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        """Set a new password using a password_reset magic link.

        Clears the failure counter and lock, then revokes every refresh
        token and session so all other devices must sign in again.

        Raises:
            WeakPasswordError: Checked before the token is spent
            InvalidMagicLinkError, TokenExpiredError, TokenAlreadyUsedError,
            AccountInactiveError: From redemption
        """
        self._hasher.validate_strength(new_password)

        with _storage_errors():
            try:
                user, _ = self._magic_links.validate_and_consume(
                    token,
                    allowed_purposes=(MagicLinkPurpose.PASSWORD_RESET,),
                    enforce_lock=False,
                )
            except AuthError as e:
                self._log_magic_link_failure(e, ip_address, user_agent)
                raise

            now = now_utc()
            self._store.set_password(user.id, self._hasher.hash(new_password), now)
            tokens_revoked = self._store.revoke_user_refresh_tokens(user.id)
            sessions_deleted = self._sessions.delete_user_sessions(user.id)

        self._security_logger.log(
            SecurityEvent.PASSWORD_RESET_COMPLETED,
            email=user.email,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"sessions": sessions_deleted, "refresh_tokens": tokens_revoked},
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> dict:
        """Delete spent magic links and refresh tokens; sweep in-memory sessions.

        When an archive path is configured, security events older than the
        retention window are moved out of the database into that file.
        """
        now = now_utc()
        with _storage_errors():
            result = {
                "magic_link_tokens": self._store.cleanup_expired_magic_link_tokens(now),
                "refresh_tokens": self._store.cleanup_expired_refresh_tokens(now),
                "sessions": self._sessions.sweep(),
            }
            if self._config.security_log_archive_path:
                result["security_events"] = self._security_logger.rotate_logs(
                    self._config.security_log_retention_days,
                    Path(self._config.security_log_archive_path),
                )
        logger.info(f"Cleanup removed {result}")
        return result


def _minutes_until(moment, now) -> int:
    """Whole minutes left, rounded up so a live lock never reports 0."""
    return max(1, math.ceil((moment - now).total_seconds() / 60))
