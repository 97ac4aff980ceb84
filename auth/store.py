"""Credential store interface shared by the PostgreSQL and in-memory backends."""

from datetime import datetime
from typing import Protocol
from uuid import UUID

from auth.types import MagicLinkToken, RefreshToken, UserCredential


class AuthStore(Protocol):
    """Persistence for credentials, magic link tokens and refresh tokens.

    Methods that change counters or single-use flags must be atomic per row:
    concurrent callers never observe or produce a lost update.
    """

    # Users

    def get_user_by_email(self, email: str) -> UserCredential | None: ...

    def get_user_by_id(self, user_id: UUID) -> UserCredential | None: ...

    def create_user(self, email: str, password_hash: str) -> UserCredential: ...

    def register_failed_login(
        self,
        user_id: UUID,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> tuple[int, datetime | None]:
        """Count one failed login; lock when the count reaches `threshold`.

        A lock that has already expired restarts the count at 1. A live lock
        is never overwritten, so the lock is applied once per streak.

        Returns:
            (failed_login_attempts, locked_until) after the update
        """
        ...

    def record_successful_login(self, user_id: UUID, now: datetime) -> UserCredential | None: ...

    def set_password(self, user_id: UUID, password_hash: str, now: datetime) -> bool: ...

    # Magic links

    def store_magic_link_token(self, token: MagicLinkToken) -> None: ...

    def get_magic_link_token(self, token: str) -> MagicLinkToken | None: ...

    def consume_magic_link_token(self, token_id: UUID, now: datetime) -> bool:
        """Mark used if still unused. False means it was already used."""
        ...

    def cleanup_expired_magic_link_tokens(self, now: datetime) -> int: ...

    # Refresh tokens

    def store_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token(self, token: str) -> RefreshToken | None: ...

    def touch_refresh_token(self, token_id: UUID, now: datetime) -> None: ...

    def revoke_refresh_token(self, token_id: UUID) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: UUID) -> int: ...

    def cleanup_expired_refresh_tokens(self, now: datetime) -> int: ...

    def ping(self) -> bool: ...
