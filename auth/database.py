"""PostgreSQL credential store.

Tables: user_credentials, magic_link_tokens, refresh_tokens (see
sql/auth_schema.sql). Every counter or single-use transition is one
UPDATE ... RETURNING statement so PostgreSQL's row lock makes it atomic.
"""

from datetime import datetime
from uuid import UUID, uuid4

from psycopg2 import errors as pg_errors

from auth.exceptions import UserAlreadyExistsError
from auth.types import MagicLinkToken, RefreshToken, UserCredential
from clients.postgres_client import PostgresClient
from utils.timezone import now_utc

_USER_COLUMNS = """id, email, password_hash, is_active, failed_login_attempts,
                   locked_until, last_login, created_at, updated_at"""

_MAGIC_LINK_COLUMNS = """id, user_id, token, purpose, session_id, created_at,
                         expires_at, used, used_at"""

_REFRESH_COLUMNS = """id, user_id, token, expires_at, revoked, user_agent,
                      ip_address, created_at, last_used_at"""


class AuthDatabase:
    """Database operations for authentication."""

    def __init__(self, postgres: PostgresClient):
        self._db = postgres

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user_by_email(self, email: str) -> UserCredential | None:
        """Find user by email (exact match, as stored)."""
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM user_credentials WHERE email = %s",
            (email,),
        )
        return UserCredential.model_validate(row) if row else None

    def get_user_by_id(self, user_id: UUID) -> UserCredential | None:
        """Find user by ID."""
        row = self._db.execute_single(
            f"SELECT {_USER_COLUMNS} FROM user_credentials WHERE id = %s",
            (user_id,),
        )
        return UserCredential.model_validate(row) if row else None

    def create_user(self, email: str, password_hash: str) -> UserCredential:
        """Insert a new credential.

        Raises:
            UserAlreadyExistsError: If the email is taken
        """
        now = now_utc()
        try:
            rows = self._db.execute_returning(
                f"""INSERT INTO user_credentials
                       (id, email, password_hash, is_active, failed_login_attempts, created_at, updated_at)
                    VALUES (%s, %s, %s, true, 0, %s, %s)
                    RETURNING {_USER_COLUMNS}""",
                (uuid4(), email, password_hash, now, now),
            )
        except pg_errors.UniqueViolation as e:
            raise UserAlreadyExistsError() from e
        return UserCredential.model_validate(rows[0])

    def register_failed_login(
        self,
        user_id: UUID,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> tuple[int, datetime | None]:
        """Increment the failure counter and apply the lock in one statement.

        SET expressions read the pre-update row. A lock that has already run
        out restarts the count at 1; a live lock is left untouched.
        """
        rows = self._db.execute_returning(
            """UPDATE user_credentials SET
                    failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN locked_until IS NOT NULL AND locked_until > %(now)s THEN locked_until
                        WHEN (CASE
                                WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                                ELSE failed_login_attempts + 1
                              END) >= %(threshold)s THEN %(lock_until)s
                        ELSE NULL
                    END,
                    updated_at = %(now)s
                WHERE id = %(user_id)s
                RETURNING failed_login_attempts, locked_until""",
            {
                "now": now,
                "threshold": threshold,
                "lock_until": lock_until,
                "user_id": user_id,
            },
        )
        if not rows:
            return 0, None
        return rows[0]["failed_login_attempts"], rows[0]["locked_until"]

    def record_successful_login(self, user_id: UUID, now: datetime) -> UserCredential | None:
        """Reset counter, clear lock and stamp last_login."""
        rows = self._db.execute_returning(
            f"""UPDATE user_credentials
                SET failed_login_attempts = 0, locked_until = NULL,
                    last_login = %s, updated_at = %s
                WHERE id = %s
                RETURNING {_USER_COLUMNS}""",
            (now, now, user_id),
        )
        return UserCredential.model_validate(rows[0]) if rows else None

    def set_password(self, user_id: UUID, password_hash: str, now: datetime) -> bool:
        """Replace the password hash. Also clears any lockout."""
        rows = self._db.execute_returning(
            """UPDATE user_credentials
               SET password_hash = %s, failed_login_attempts = 0,
                   locked_until = NULL, updated_at = %s
               WHERE id = %s
               RETURNING id""",
            (password_hash, now, user_id),
        )
        return len(rows) > 0

    # ------------------------------------------------------------------
    # Magic link tokens
    # ------------------------------------------------------------------

    def store_magic_link_token(self, token: MagicLinkToken) -> None:
        """Store magic link token for redemption."""
        self._db.execute_returning(
            """INSERT INTO magic_link_tokens
                   (id, user_id, token, purpose, session_id, created_at, expires_at, used)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                token.id,
                token.user_id,
                token.token,
                token.purpose.value,
                token.session_id,
                token.created_at,
                token.expires_at,
                token.used,
            ),
        )

    def get_magic_link_token(self, token: str) -> MagicLinkToken | None:
        """Retrieve magic link token by token string."""
        row = self._db.execute_single(
            f"SELECT {_MAGIC_LINK_COLUMNS} FROM magic_link_tokens WHERE token = %s",
            (token,),
        )
        return MagicLinkToken.model_validate(row) if row else None

    def consume_magic_link_token(self, token_id: UUID, now: datetime) -> bool:
        """Flip used false->true. Only one concurrent caller gets a row back."""
        rows = self._db.execute_returning(
            """UPDATE magic_link_tokens
               SET used = true, used_at = %s
               WHERE id = %s AND used = false
               RETURNING id""",
            (now, token_id),
        )
        return len(rows) == 1

    def cleanup_expired_magic_link_tokens(self, now: datetime) -> int:
        """Delete expired or used tokens. Returns count deleted."""
        rows = self._db.execute_returning(
            """DELETE FROM magic_link_tokens
               WHERE expires_at < %s OR used = true
               RETURNING id""",
            (now,),
        )
        return len(rows)

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def store_refresh_token(self, token: RefreshToken) -> None:
        self._db.execute_returning(
            """INSERT INTO refresh_tokens
                   (id, user_id, token, expires_at, revoked, user_agent, ip_address, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
               RETURNING id""",
            (
                token.id,
                token.user_id,
                token.token,
                token.expires_at,
                token.revoked,
                token.user_agent,
                token.ip_address,
                token.created_at,
            ),
        )

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        row = self._db.execute_single(
            f"SELECT {_REFRESH_COLUMNS} FROM refresh_tokens WHERE token = %s",
            (token,),
        )
        return RefreshToken.model_validate(row) if row else None

    def touch_refresh_token(self, token_id: UUID, now: datetime) -> None:
        self._db.execute_returning(
            "UPDATE refresh_tokens SET last_used_at = %s WHERE id = %s RETURNING id",
            (now, token_id),
        )

    def revoke_refresh_token(self, token_id: UUID) -> bool:
        """Mark revoked. Returns False if the token was already revoked or missing."""
        rows = self._db.execute_returning(
            "UPDATE refresh_tokens SET revoked = true WHERE id = %s AND revoked = false RETURNING id",
            (token_id,),
        )
        return len(rows) > 0

    def revoke_user_refresh_tokens(self, user_id: UUID) -> int:
        rows = self._db.execute_returning(
            "UPDATE refresh_tokens SET revoked = true WHERE user_id = %s AND revoked = false RETURNING id",
            (user_id,),
        )
        return len(rows)

    def cleanup_expired_refresh_tokens(self, now: datetime) -> int:
        """Delete expired or revoked refresh tokens. Returns count deleted."""
        rows = self._db.execute_returning(
            """DELETE FROM refresh_tokens
               WHERE expires_at < %s OR revoked = true
               RETURNING id""",
            (now,),
        )
        return len(rows)

    def ping(self) -> bool:
        return self._db.ping()
