"""HTTP routes for authentication."""

import ipaddress
import logging
import platform
import re

import redis
from fastapi import APIRouter, Path, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.base import ErrorCodes, error_response
from auth.config import AuthConfig
from auth.health import SERVICE_VERSION, HealthChecker
from auth.rate_limiter import RateLimiter
from auth.service import AuthService
from auth.types import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    MagicLinkRequest,
    PasswordResetComplete,
    PasswordResetRequest,
    PublicUser,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    TokenValidation,
)

logger = logging.getLogger(__name__)


def _get_client_ip(request: Request) -> str | None:
    """Extract valid IP address from request, or None if invalid."""
    if not request.client:
        return None
    host = request.client.host
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        return None


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):].strip() or None


def _missing_token() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content=error_response(
            ErrorCodes.MISSING_TOKEN,
            "Authorization header with Bearer token required",
        ),
    )


def _sanitize_url(url: str | None) -> str:
    """Mask credentials embedded in a connection URL."""
    if not url:
        return "not configured"
    return re.sub(r"://[^@/]+@", "://***:***@", url)


def create_auth_router(
    auth_service: AuthService,
    config: AuthConfig,
    rate_limiter: RateLimiter | None = None,
    health: HealthChecker | None = None,
) -> APIRouter:
    """Create auth router with injected service.

    Service calls are synchronous (bcrypt, psycopg2, redis) and run on the
    threadpool so they never block the event loop.
    """
    router = APIRouter(tags=["auth"])

    async def throttle(scope: str, ip_address: str | None, email: str) -> None:
        """Count an attempt. Raises RateLimitedError when over budget."""
        if rate_limiter is None:
            return
        try:
            await run_in_threadpool(rate_limiter.check_rate_limit, scope, ip_address, email)
        except redis.RedisError as e:
            logger.warning(f"Rate limiter unavailable, allowing {scope} request: {e}")

    @router.post("/login", response_model=AuthResponse)
    async def login(request: Request, body: LoginRequest):
        """Password login. Returns tokens and the public user record."""
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")

        await throttle("login", ip_address, body.email)

        result = await run_in_threadpool(
            auth_service.login,
            body.email,
            body.password,
            user_agent,
            ip_address,
        )

        if rate_limiter is not None:
            try:
                await run_in_threadpool(rate_limiter.reset_rate_limit, "login", ip_address, body.email)
            except redis.RedisError as e:
                logger.warning(f"Could not reset login rate limit: {e}")

        return result

    @router.post("/register", response_model=PublicUser, status_code=201)
    async def register(request: Request, body: RegisterRequest):
        """Create a password account."""
        return await run_in_threadpool(
            auth_service.register,
            body.email,
            body.password,
            _get_client_ip(request),
            request.headers.get("User-Agent"),
        )

    @router.post("/magic-link")
    async def request_magic_link(request: Request, body: MagicLinkRequest):
        """Request magic link email.

        The response is identical for new and existing addresses.
        """
        ip_address = _get_client_ip(request)
        user_agent = request.headers.get("User-Agent")

        await throttle("magic", ip_address, body.email)

        grant = await run_in_threadpool(
            auth_service.request_magic_link,
            body.email,
            body.purpose,
            str(body.session_id) if body.session_id else None,
            ip_address,
            user_agent,
        )

        return {
            "message": "Magic link sent to your email",
            "expires_in": grant.expires_in_seconds(),
        }

    @router.get("/magic/{token}", response_model=AuthResponse)
    async def login_with_magic_link(
        request: Request,
        token: str = Path(..., pattern=r"^[A-Za-z0-9]{32,128}$"),
    ):
        """Redeem a magic link."""
        return await run_in_threadpool(
            auth_service.login_with_magic_link,
            token,
            request.headers.get("User-Agent"),
            _get_client_ip(request),
        )

    @router.post("/refresh", response_model=TokenResponse)
    async def refresh(request: Request, body: RefreshRequest):
        """Exchange a refresh token for a new access token."""
        return await run_in_threadpool(
            auth_service.refresh_access_token,
            body.refresh_token,
            request.headers.get("User-Agent"),
            _get_client_ip(request),
        )

    @router.post("/logout")
    async def logout(request: Request, body: LogoutRequest | None = None):
        """Logout - delete session and revoke refresh token.

        An invalid bearer token doesn't fail the request; the refresh token
        in the body is still revoked.
        """
        session_id = auth_service.session_id_from_token(_bearer_token(request))
        refresh_token = body.refresh_token if body else None

        await run_in_threadpool(auth_service.logout, session_id, refresh_token)

        return {"message": "Successfully logged out"}

    @router.post("/logout-all")
    async def logout_all(request: Request):
        """Revoke every session and refresh token of the caller."""
        token = _bearer_token(request)
        if token is None:
            return _missing_token()

        validation = await run_in_threadpool(auth_service.validate_token, token)
        counts = await run_in_threadpool(auth_service.logout_all_sessions, validation.user_id)

        return {"message": "All sessions logged out", **counts}

    @router.get("/validate", response_model=TokenValidation)
    async def validate(request: Request):
        """Validate an access token (internal service use)."""
        token = _bearer_token(request)
        if token is None:
            return _missing_token()

        return await run_in_threadpool(auth_service.validate_token, token)

    @router.post("/reset-password")
    async def request_password_reset(request: Request, body: PasswordResetRequest):
        """Send a reset link if the account exists. Same response either way."""
        ip_address = _get_client_ip(request)

        await throttle("reset", ip_address, body.email)

        await run_in_threadpool(
            auth_service.request_password_reset,
            body.email,
            ip_address,
            request.headers.get("User-Agent"),
        )

        return {"message": "If an account exists for this email, a reset link has been sent"}

    @router.put("/reset-password")
    async def complete_password_reset(request: Request, body: PasswordResetComplete):
        """Set a new password with a reset link token."""
        await run_in_threadpool(
            auth_service.complete_password_reset,
            body.token,
            body.new_password,
            _get_client_ip(request),
            request.headers.get("User-Agent"),
        )

        return {"message": "Password has been reset"}

    @router.get("/health")
    async def health_check():
        """Health of the service and its stores. 503 when the credential store is down."""
        if health is None:
            return {"status": "UP", "version": SERVICE_VERSION}

        result = await run_in_threadpool(health.check)
        return JSONResponse(status_code=200 if result["status"] == "UP" else 503, content=result)

    @router.get("/info")
    async def service_info():
        """Service information. Connection URLs have credentials masked."""
        database = {"status": "UNKNOWN"}
        sessions = {"status": "UNKNOWN"}
        if health is not None:
            database = await run_in_threadpool(health.check_database)
            sessions = await run_in_threadpool(health.check_sessions)

        return {
            "service": {
                "name": "auth-service",
                "version": SERVICE_VERSION,
                "description": "Authentication and authorization service for Peerit platform",
            },
            "environment": {
                "python_version": platform.python_version(),
                "environment": config.environment,
            },
            "database": {
                "type": config.storage_mode,
                "url": _sanitize_url(config.database_url),
                "connected": database["status"] == "UP",
            },
            "sessions": {
                "provider": "valkey" if config.valkey_url else "memory",
                "url": _sanitize_url(config.valkey_url),
                "connected": sessions.get("status") in ("UP", "DEGRADED"),
                "mode": sessions.get("mode", "unknown"),
            },
            "features": {
                "magic_links": True,
                "jwt_refresh": True,
                "password_reset": True,
                "rate_limiting": rate_limiter is not None,
            },
        }

    return router
