"""Magic link issuance and single-use redemption."""

import logging
import math
import secrets
from collections.abc import Iterable
from datetime import timedelta
from uuid import UUID, uuid4

from auth.exceptions import (
    AccountInactiveError,
    AccountLockedError,
    InvalidMagicLinkError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    UserNotFoundError,
)
from auth.passwords import PasswordHasher
from auth.store import AuthStore
from auth.types import MagicLinkGrant, MagicLinkPurpose, MagicLinkToken, UserCredential
from utils.timezone import now_utc

logger = logging.getLogger(__name__)


class MagicLinkIssuer:
    """Creates time-boxed magic link tokens and redeems them at most once.

    Redemption order matters: every check runs against the stored row, then
    a conditional update flips `used`. If two requests race past the checks,
    the store lets exactly one of them win.
    """

    TOKEN_BYTES = 32

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        app_base_url: str,
        expiry_minutes: int = 15,
    ):
        self._store = store
        self._hasher = hasher
        self._app_base_url = app_base_url.rstrip("/")
        self._expiry = timedelta(minutes=expiry_minutes)

    @property
    def expiry_minutes(self) -> int:
        return int(self._expiry.total_seconds() // 60)

    def build_link(self, token: str) -> str:
        return f"{self._app_base_url}/magic-link?token={token}"

    def create_for_email(
        self,
        email: str,
        purpose: MagicLinkPurpose = MagicLinkPurpose.LOGIN,
        session_id: str | None = None,
    ) -> tuple[MagicLinkGrant, bool]:
        """Issue a link for an email, provisioning the account if it's new.

        New accounts get a random password hash nobody knows, so the only way
        in is a magic link (or a later password reset).

        Returns:
            (grant, was_created)
        """
        user = self._store.get_user_by_email(email)
        created = False
        if user is None:
            user = self._store.create_user(email, self._hasher.random_hash())
            created = True
            logger.info(f"Provisioned account {user.id} on first magic link request")

        return self._issue(user, purpose, session_id), created

    def create_for_user(
        self,
        user_id: UUID,
        purpose: MagicLinkPurpose = MagicLinkPurpose.LOGIN,
        session_id: str | None = None,
    ) -> MagicLinkGrant:
        """Issue a link for an existing user.

        Raises:
            UserNotFoundError: If no user has this id
        """
        user = self._store.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")
        return self._issue(user, purpose, session_id)

    def _issue(
        self,
        user: UserCredential,
        purpose: MagicLinkPurpose,
        session_id: str | None,
    ) -> MagicLinkGrant:
        now = now_utc()
        token = MagicLinkToken(
            id=uuid4(),
            user_id=user.id,
            token=secrets.token_hex(self.TOKEN_BYTES),
            purpose=purpose,
            session_id=session_id,
            created_at=now,
            expires_at=now + self._expiry,
            used=False,
        )
        self._store.store_magic_link_token(token)

        return MagicLinkGrant(
            token=token.token,
            user_id=user.id,
            purpose=purpose,
            expires_at=token.expires_at,
            magic_link=self.build_link(token.token),
        )

    def validate_and_consume(
        self,
        token: str,
        allowed_purposes: Iterable[MagicLinkPurpose] | None = None,
        enforce_lock: bool = True,
    ) -> tuple[UserCredential, MagicLinkToken]:
        """Check a token and mark it used.

        Password reset passes enforce_lock=False: resetting is how a locked
        user gets back in.

        Raises:
            InvalidMagicLinkError: Unknown token, missing owner or wrong purpose
            TokenAlreadyUsedError: Token already redeemed (including lost races)
            TokenExpiredError: Token past expires_at
            AccountInactiveError: Owner deactivated
            AccountLockedError: Owner currently locked out
        """
        record = self._store.get_magic_link_token(token)
        if record is None:
            raise InvalidMagicLinkError()

        if record.used:
            raise TokenAlreadyUsedError()

        now = now_utc()
        if record.is_expired(now):
            raise TokenExpiredError()

        if allowed_purposes is not None and record.purpose not in set(allowed_purposes):
            raise InvalidMagicLinkError("Magic link is not valid for this action")

        user = self._store.get_user_by_id(record.user_id)
        if user is None:
            raise InvalidMagicLinkError()

        if not user.is_active:
            raise AccountInactiveError("User account is inactive")

        if enforce_lock and user.is_locked(now):
            remaining = (user.locked_until - now).total_seconds()
            raise AccountLockedError(
                remaining_minutes=max(1, math.ceil(remaining / 60)),
                message="User account is locked",
            )

        if not self._store.consume_magic_link_token(record.id, now):
            raise TokenAlreadyUsedError()

        return user, record.model_copy(update={"used": True, "used_at": now})
