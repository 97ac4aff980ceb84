"""Authentication and authorization modules."""

from auth.exceptions import (
    AuthError,
    InvalidCredentialsError,
    AccountLockedError,
    AccountInactiveError,
    InvalidTokenError,
    InvalidMagicLinkError,
    TokenExpiredError,
    TokenAlreadyUsedError,
    InvalidRefreshTokenError,
    RefreshTokenExpiredError,
    RefreshTokenRevokedError,
    SessionNotFoundError,
    SessionStorageUnavailableError,
    StorageUnavailableError,
    UserNotFoundError,
    UserAlreadyExistsError,
    WeakPasswordError,
    RateLimitedError,
)
from auth.types import (
    MagicLinkPurpose,
    UserCredential,
    PublicUser,
    MagicLinkToken,
    MagicLinkGrant,
    RefreshToken,
    SessionRecord,
    AuthResponse,
    TokenResponse,
    TokenValidation,
)
from auth.config import AuthConfig
from auth.passwords import PasswordHasher
from auth.tokens import TokenIssuer, parse_token_expiry
from auth.store import AuthStore
from auth.database import AuthDatabase
from auth.memory import InMemoryAuthStore
from auth.magic_link import MagicLinkIssuer
from auth.session import SessionStore, InMemorySessionStore, ValkeySessionStore
from auth.rate_limiter import RateLimiter, RateLimit
from auth.security_logger import SecurityLogger, SecurityEvent
from auth.service import AuthService
from auth.health import HealthChecker
from auth.api import create_auth_router
