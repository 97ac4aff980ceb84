"""In-process credential store for development mode and tests.

Mirrors AuthDatabase semantics exactly, including atomic failure counting
and single-use magic link consumption. All state lives behind one RLock.
"""

import threading
from datetime import datetime
from uuid import UUID, uuid4

from auth.exceptions import UserAlreadyExistsError
from auth.types import MagicLinkToken, RefreshToken, UserCredential
from utils.timezone import now_utc


class InMemoryAuthStore:
    """Dict-backed AuthStore. Nothing survives a restart."""

    def __init__(self):
        self._users: dict[UUID, UserCredential] = {}
        self._users_by_email: dict[str, UUID] = {}
        self._magic_links: dict[str, MagicLinkToken] = {}
        self._refresh_tokens: dict[str, RefreshToken] = {}
        self._lock = threading.RLock()

    # Users

    def get_user_by_email(self, email: str) -> UserCredential | None:
        with self._lock:
            user_id = self._users_by_email.get(email)
            return self._users[user_id].model_copy() if user_id else None

    def get_user_by_id(self, user_id: UUID) -> UserCredential | None:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy() if user else None

    def create_user(self, email: str, password_hash: str) -> UserCredential:
        now = now_utc()
        with self._lock:
            if email in self._users_by_email:
                raise UserAlreadyExistsError()
            user = UserCredential(
                id=uuid4(),
                email=email,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
            self._users[user.id] = user
            self._users_by_email[email] = user.id
            return user.model_copy()

    def _update_user(self, user_id: UUID, **changes) -> UserCredential | None:
        user = self._users.get(user_id)
        if user is None:
            return None
        updated = user.model_copy(update=changes)
        self._users[user_id] = updated
        return updated.model_copy()

    def register_failed_login(
        self,
        user_id: UUID,
        threshold: int,
        lock_until: datetime,
        now: datetime,
    ) -> tuple[int, datetime | None]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return 0, None

            lock_expired = user.locked_until is not None and user.locked_until <= now
            attempts = 1 if lock_expired else user.failed_login_attempts + 1

            if user.locked_until is not None and not lock_expired:
                locked_until = user.locked_until
            elif attempts >= threshold:
                locked_until = lock_until
            else:
                locked_until = None

            self._update_user(
                user_id,
                failed_login_attempts=attempts,
                locked_until=locked_until,
                updated_at=now,
            )
            return attempts, locked_until

    def record_successful_login(self, user_id: UUID, now: datetime) -> UserCredential | None:
        with self._lock:
            return self._update_user(
                user_id,
                failed_login_attempts=0,
                locked_until=None,
                last_login=now,
                updated_at=now,
            )

    def set_password(self, user_id: UUID, password_hash: str, now: datetime) -> bool:
        with self._lock:
            return self._update_user(
                user_id,
                password_hash=password_hash,
                failed_login_attempts=0,
                locked_until=None,
                updated_at=now,
            ) is not None

    # Magic links

    def store_magic_link_token(self, token: MagicLinkToken) -> None:
        with self._lock:
            self._magic_links[token.token] = token.model_copy()

    def get_magic_link_token(self, token: str) -> MagicLinkToken | None:
        with self._lock:
            stored = self._magic_links.get(token)
            return stored.model_copy() if stored else None

    def consume_magic_link_token(self, token_id: UUID, now: datetime) -> bool:
        with self._lock:
            for key, stored in self._magic_links.items():
                if stored.id == token_id:
                    if stored.used:
                        return False
                    self._magic_links[key] = stored.model_copy(update={"used": True, "used_at": now})
                    return True
            return False

    def cleanup_expired_magic_link_tokens(self, now: datetime) -> int:
        with self._lock:
            stale = [k for k, t in self._magic_links.items() if t.used or t.expires_at < now]
            for key in stale:
                del self._magic_links[key]
            return len(stale)

    # Refresh tokens

    def store_refresh_token(self, token: RefreshToken) -> None:
        with self._lock:
            self._refresh_tokens[token.token] = token.model_copy()

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        with self._lock:
            stored = self._refresh_tokens.get(token)
            return stored.model_copy() if stored else None

    def _find_refresh(self, token_id: UUID) -> str | None:
        for key, stored in self._refresh_tokens.items():
            if stored.id == token_id:
                return key
        return None

    def touch_refresh_token(self, token_id: UUID, now: datetime) -> None:
        with self._lock:
            key = self._find_refresh(token_id)
            if key is not None:
                self._refresh_tokens[key] = self._refresh_tokens[key].model_copy(
                    update={"last_used_at": now}
                )

    def revoke_refresh_token(self, token_id: UUID) -> bool:
        with self._lock:
            key = self._find_refresh(token_id)
            if key is None or self._refresh_tokens[key].revoked:
                return False
            self._refresh_tokens[key] = self._refresh_tokens[key].model_copy(update={"revoked": True})
            return True

    def revoke_user_refresh_tokens(self, user_id: UUID) -> int:
        with self._lock:
            count = 0
            for key, stored in self._refresh_tokens.items():
                if stored.user_id == user_id and not stored.revoked:
                    self._refresh_tokens[key] = stored.model_copy(update={"revoked": True})
                    count += 1
            return count

    def cleanup_expired_refresh_tokens(self, now: datetime) -> int:
        with self._lock:
            stale = [k for k, t in self._refresh_tokens.items() if t.revoked or t.expires_at < now]
            for key in stale:
                del self._refresh_tokens[key]
            return len(stale)

    def ping(self) -> bool:
        return True
