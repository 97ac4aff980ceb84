"""Global exception handlers for FastAPI.

Status codes come from the exception type alone. Every AuthError subclass
has an entry in AUTH_ERROR_STATUS; an unmapped subclass is a bug and
surfaces as a 500.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from api.base import ErrorCodes, error_response
from auth.exceptions import (
    AccountInactiveError,
    AccountLockedError,
    AuthError,
    InvalidCredentialsError,
    InvalidMagicLinkError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    RateLimitedError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    SessionNotFoundError,
    SessionStorageUnavailableError,
    StorageUnavailableError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    UserAlreadyExistsError,
    UserNotFoundError,
    WeakPasswordError,
)
from clients.email_client import EmailGatewayError

logger = logging.getLogger(__name__)

AUTH_ERROR_STATUS: dict[type[AuthError], tuple[int, str]] = {
    InvalidCredentialsError: (401, ErrorCodes.AUTHENTICATION_FAILED),
    AccountLockedError: (423, ErrorCodes.ACCOUNT_LOCKED),
    AccountInactiveError: (403, ErrorCodes.ACCOUNT_INACTIVE),
    InvalidTokenError: (401, ErrorCodes.INVALID_TOKEN),
    InvalidMagicLinkError: (400, ErrorCodes.INVALID_MAGIC_LINK),
    TokenExpiredError: (400, ErrorCodes.MAGIC_LINK_EXPIRED),
    TokenAlreadyUsedError: (410, ErrorCodes.MAGIC_LINK_ALREADY_USED),
    InvalidRefreshTokenError: (401, ErrorCodes.INVALID_REFRESH_TOKEN),
    RefreshTokenExpiredError: (401, ErrorCodes.REFRESH_TOKEN_EXPIRED),
    RefreshTokenRevokedError: (401, ErrorCodes.REFRESH_TOKEN_REVOKED),
    SessionNotFoundError: (401, ErrorCodes.SESSION_NOT_FOUND),
    SessionStorageUnavailableError: (503, ErrorCodes.SESSION_STORAGE_UNAVAILABLE),
    StorageUnavailableError: (503, ErrorCodes.STORAGE_UNAVAILABLE),
    UserNotFoundError: (404, ErrorCodes.USER_NOT_FOUND),
    UserAlreadyExistsError: (409, ErrorCodes.USER_ALREADY_EXISTS),
    WeakPasswordError: (400, ErrorCodes.WEAK_PASSWORD),
    RateLimitedError: (429, ErrorCodes.RATE_LIMITED),
}


def auth_error_json(exc: AuthError) -> JSONResponse:
    """Render an AuthError using the status table."""
    try:
        status, code = AUTH_ERROR_STATUS[type(exc)]
    except KeyError:
        logger.error(f"No HTTP mapping for {type(exc).__name__}")
        return JSONResponse(
            status_code=500,
            content=error_response(ErrorCodes.INTERNAL_SERVER_ERROR, "An internal error occurred"),
        )

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}

    return JSONResponse(
        status_code=status,
        headers=headers,
        content=error_response(code, str(exc)),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        return auth_error_json(exc)

    @app.exception_handler(EmailGatewayError)
    async def email_error_handler(request: Request, exc: EmailGatewayError):
        return JSONResponse(
            status_code=502,
            content=error_response(ErrorCodes.EMAIL_DELIVERY_FAILED, "Failed to send email"),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"][1:]) or str(error["loc"][0]),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=error_response(ErrorCodes.VALIDATION_ERROR, "Request validation failed", details),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return JSONResponse(
                status_code=404,
                content=error_response(ErrorCodes.NOT_FOUND, f"Route {request.method} {request.url.path} not found"),
            )
        return JSONResponse(
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
            content=error_response(f"HTTP_{exc.status_code}", str(exc.detail)),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content=error_response(
                ErrorCodes.INTERNAL_SERVER_ERROR,
                "An internal error occurred",
            ),
        )
