"""Access token signing/verification and opaque refresh token generation.

Access tokens are short-lived HS256 JWTs bound to a server-side session id.
Refresh tokens are NOT JWTs: they are random hex strings stored in the
credential store, so revoking one is a single row update and no signing key
ever protects refresh material.
"""

import re
import secrets
from datetime import datetime, timedelta
from uuid import UUID

import jwt

from auth.exceptions import InvalidTokenError
from auth.types import AccessTokenClaims
from utils.timezone import from_epoch, now_utc

_DURATION_RE = re.compile(r"^\s*(\d+)")

_UNIT_MS = {
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
}


def parse_token_expiry(value: str) -> int:
    """Convert `<int><unit>` to milliseconds.

    `m` minutes, `h` hours, `d` days; anything else (including a bare
    integer) is read as seconds from the leading integer.

    >>> parse_token_expiry("15m")
    900000
    >>> parse_token_expiry("7d")
    604800000

    Raises:
        ValueError: If the string has no leading integer
    """
    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError(f"Invalid duration: {value!r}")

    amount = int(match.group(1))
    unit = value.strip()[-1]
    return amount * _UNIT_MS.get(unit, 1000)


class TokenIssuer:
    """Creates and verifies access tokens; mints opaque refresh tokens."""

    ALGORITHM = "HS256"
    TOKEN_TYPE = "access"
    REFRESH_TOKEN_BYTES = 40

    def __init__(
        self,
        secret: str,
        access_ttl: str = "15m",
        refresh_ttl: str = "7d",
        issuer: str = "peerit-auth",
        audience: str = "peerit-services",
    ):
        if not secret:
            raise ValueError("JWT secret cannot be empty")

        self._secret = secret
        self._access_ttl = timedelta(milliseconds=parse_token_expiry(access_ttl))
        self._refresh_ttl = timedelta(milliseconds=parse_token_expiry(refresh_ttl))
        self._issuer = issuer
        self._audience = audience

    @property
    def access_token_ttl_seconds(self) -> int:
        return int(self._access_ttl.total_seconds())

    def refresh_token_expires_at(self, now: datetime | None = None) -> datetime:
        return (now or now_utc()) + self._refresh_ttl

    def create_access_token(
        self,
        user_id: UUID,
        email: str,
        session_id: str,
        now: datetime | None = None,
    ) -> str:
        """Sign an access token bound to `session_id`."""
        issued = now or now_utc()
        payload = {
            "sub": str(user_id),
            "userId": str(user_id),
            "email": email,
            "sessionId": session_id,
            "type": self.TOKEN_TYPE,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": int(issued.timestamp()),
            "exp": int((issued + self._access_ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self.ALGORITHM)

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        """Verify signature, expiry, issuer, audience and token type.

        Raises:
            InvalidTokenError: On any verification failure
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.ALGORITHM],
                issuer=self._issuer,
                audience=self._audience,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidTokenError("Token has expired") from e
        except jwt.InvalidTokenError as e:
            raise InvalidTokenError("Invalid or expired token") from e

        if payload.get("type") != self.TOKEN_TYPE:
            raise InvalidTokenError("Invalid token type")

        try:
            return AccessTokenClaims(
                user_id=UUID(payload["userId"]),
                email=payload["email"],
                session_id=payload["sessionId"],
                issued_at=from_epoch(payload["iat"]),
                expires_at=from_epoch(payload["exp"]),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidTokenError("Malformed token payload") from e

    def peek_session_id(self, token: str) -> str | None:
        """Session id of a token that verifies, else None. Never raises."""
        try:
            return self.verify_access_token(token).session_id
        except InvalidTokenError:
            return None

    def generate_refresh_token(self) -> str:
        """80 hex characters of CSPRNG output."""
        return secrets.token_hex(self.REFRESH_TOKEN_BYTES)
