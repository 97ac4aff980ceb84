"""Pydantic models for the auth domain."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from utils.timezone import isoformat_z, now_utc, parse_iso


class MagicLinkPurpose(str, Enum):
    """What a magic link may be redeemed for."""

    LOGIN = "login"
    REVIEW_SESSION = "review_session"
    PASSWORD_RESET = "password_reset"


class UserCredential(BaseModel):
    """Stored credentials and lockout state for one user."""

    id: UUID
    email: str
    password_hash: str = Field(..., repr=False)
    is_active: bool = True
    failed_login_attempts: int = Field(default=0, ge=0)
    locked_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    def is_locked(self, now: datetime | None = None) -> bool:
        """A lock only counts while it's in the future."""
        return self.locked_until is not None and (now or now_utc()) < self.locked_until


class PublicUser(BaseModel):
    """User fields safe to return to clients. Never includes the password hash."""

    id: UUID
    email: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    last_login: datetime | None = None

    @classmethod
    def from_credential(cls, user: UserCredential) -> "PublicUser":
        return cls(
            id=user.id,
            email=user.email,
            is_active=user.is_active,
            created_at=user.created_at,
            updated_at=user.updated_at,
            last_login=user.last_login,
        )


class MagicLinkToken(BaseModel):
    """A magic link token awaiting redemption."""

    id: UUID
    user_id: UUID
    token: str = Field(..., description="Hex token, 64 characters")
    purpose: MagicLinkPurpose = MagicLinkPurpose.LOGIN
    session_id: str | None = None
    created_at: datetime
    expires_at: datetime
    used: bool  # Required - fail closed, no default
    used_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or now_utc()) > self.expires_at


class MagicLinkGrant(BaseModel):
    """Result of issuing a magic link. The link is delivered out of band."""

    token: str
    user_id: UUID
    purpose: MagicLinkPurpose
    expires_at: datetime
    magic_link: str

    def expires_in_seconds(self, now: datetime | None = None) -> int:
        return max(0, int((self.expires_at - (now or now_utc())).total_seconds()))


class RefreshToken(BaseModel):
    """Opaque, server-side refresh token record."""

    id: UUID
    user_id: UUID
    token: str = Field(..., repr=False)
    expires_at: datetime
    revoked: bool = False
    user_agent: str | None = None
    ip_address: str | None = None
    created_at: datetime
    last_used_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or now_utc()) > self.expires_at


class SessionRecord(BaseModel):
    """Server-side session. Its existence is what keeps an access token valid."""

    session_id: str
    user_id: UUID
    email: str
    created_at: datetime
    last_activity: datetime
    ip_address: str | None = None
    user_agent: str | None = None

    def to_json_dict(self) -> dict:
        """Serialize for the cache (ISO-8601 timestamps)."""
        return {
            "session_id": self.session_id,
            "user_id": str(self.user_id),
            "email": self.email,
            "created_at": isoformat_z(self.created_at),
            "last_activity": isoformat_z(self.last_activity),
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
        }

    @classmethod
    def from_json_dict(cls, data: dict) -> "SessionRecord":
        return cls(
            session_id=data["session_id"],
            user_id=UUID(data["user_id"]),
            email=data["email"],
            created_at=parse_iso(data["created_at"]),
            last_activity=parse_iso(data["last_activity"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )


class AccessTokenClaims(BaseModel):
    """Verified contents of an access token."""

    user_id: UUID
    email: str
    session_id: str
    issued_at: datetime
    expires_at: datetime


class AuthResponse(BaseModel):
    """Returned by password and magic-link login."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    user: PublicUser


class TokenResponse(BaseModel):
    """Returned by refresh. The refresh token itself is not rotated."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int


class TokenValidation(BaseModel):
    """Result of validating an access token against its session."""

    valid: bool = True
    user_id: UUID
    email: str
    session_id: str
    expires_at: datetime


# Request bodies


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)


class MagicLinkRequest(BaseModel):
    """Request payload for magic link. Password reset links use their own route."""

    email: EmailStr
    purpose: MagicLinkPurpose = MagicLinkPurpose.LOGIN
    session_id: UUID | None = None

    @field_validator("purpose")
    @classmethod
    def _not_password_reset(cls, value: MagicLinkPurpose) -> MagicLinkPurpose:
        if value is MagicLinkPurpose.PASSWORD_RESET:
            raise ValueError("purpose must be login or review_session")
        return value


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: str | None = None


class PasswordResetRequest(BaseModel):
    email: EmailStr


class PasswordResetComplete(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)
