"""Error response format shared by every route."""

from typing import Any

from pydantic import BaseModel, Field

from utils.timezone import isoformat_z, now_utc


class APIError(BaseModel):
    """
    Error body returned by every failing endpoint.

    Clients branch on `error`; `message` is for humans.
    """

    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    timestamp: str = Field(..., description="ISO-8601 UTC time of the failure")
    details: list[dict[str, Any]] | None = Field(
        default=None,
        description="Per-field problems for validation errors",
    )


def error_response(code: str, message: str, details: list[dict[str, Any]] | None = None) -> dict:
    """Build a JSON-ready error body."""
    return APIError(
        error=code,
        message=message,
        timestamp=isoformat_z(now_utc()),
        details=details,
    ).model_dump(mode="json", exclude_none=True)


class ErrorCodes:
    """Standard error codes for consistent error handling."""

    # Credentials
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    USER_ALREADY_EXISTS = "USER_ALREADY_EXISTS"
    WEAK_PASSWORD = "WEAK_PASSWORD"

    # Tokens
    MISSING_TOKEN = "MISSING_TOKEN"
    INVALID_TOKEN = "INVALID_TOKEN"
    INVALID_MAGIC_LINK = "INVALID_MAGIC_LINK"
    MAGIC_LINK_EXPIRED = "MAGIC_LINK_EXPIRED"
    MAGIC_LINK_ALREADY_USED = "MAGIC_LINK_ALREADY_USED"
    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"
    REFRESH_TOKEN_EXPIRED = "REFRESH_TOKEN_EXPIRED"
    REFRESH_TOKEN_REVOKED = "REFRESH_TOKEN_REVOKED"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"

    # Request
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # Infrastructure
    SESSION_STORAGE_UNAVAILABLE = "SESSION_STORAGE_UNAVAILABLE"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    EMAIL_DELIVERY_FAILED = "EMAIL_DELIVERY_FAILED"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
