"""Authentication configuration."""

import os
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from auth.tokens import parse_token_expiry


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    Token lifetimes use the `<int><unit>` duration strings the service has
    always accepted from its environment (`15m`, `7d`). Everything else is in
    its natural unit.
    """

    # Signing
    jwt_secret: str = Field(
        ...,
        description="HS256 secret for access tokens",
        min_length=16,
    )
    access_token_expires_in: str = Field(
        default="15m",
        description="Access token lifetime",
    )
    refresh_token_expires_in: str = Field(
        default="7d",
        description="Refresh token lifetime",
    )
    token_issuer: str = Field(default="peerit-auth")
    token_audience: str = Field(default="peerit-services")

    # Passwords and lockout
    bcrypt_rounds: int = Field(
        default=12,
        description="bcrypt work factor",
        ge=4,
        le=16,
    )
    lockout_threshold: int = Field(
        default=5,
        description="Consecutive failed logins that lock the account",
        ge=1,
        le=100,
    )
    lockout_duration_seconds: int = Field(
        default=15 * 60,
        description="How long a locked account stays locked",
        ge=1,
        le=24 * 60 * 60,
    )

    # Magic link settings
    magic_link_expiry_minutes: int = Field(
        default=15,
        description="How long magic links remain valid",
        ge=1,
        le=60,
    )

    # Session settings
    session_ttl_seconds: int = Field(
        default=8 * 60 * 60,
        description="Session lifetime, re-armed on every validation",
        ge=60,
    )
    session_fallback_enabled: bool = Field(
        default=False,
        description="Serve sessions from process memory when Valkey is unreachable",
    )
    session_fallback_max_entries: int = Field(default=10_000, ge=1)

    # Storage
    storage_mode: Literal["postgres", "memory"] = Field(
        default="postgres",
        description="Credential store backend",
    )
    database_url: str | None = None
    valkey_url: str | None = None

    # Rate limiting
    rate_limit_enabled: bool = True

    # Maintenance
    cleanup_interval_seconds: int = Field(
        default=60 * 60,
        description="Period of the background cleanup task; 0 disables it",
        ge=0,
    )
    security_log_archive_path: str | None = Field(
        default=None,
        description="JSON lines file that old security events are moved to during cleanup",
    )
    security_log_retention_days: int = Field(default=90, ge=1)

    # Application
    app_base_url: str = Field(
        default="http://localhost:3000",
        description="Frontend base URL for magic link generation",
    )
    environment: Literal["development", "test", "production"] = "development"

    @field_validator("access_token_expires_in", "refresh_token_expires_in")
    @classmethod
    def _valid_duration(cls, value: str) -> str:
        if parse_token_expiry(value) <= 0:
            raise ValueError(f"Duration must be positive: {value!r}")
        return value

    @property
    def access_token_ttl_seconds(self) -> int:
        return parse_token_expiry(self.access_token_expires_in) // 1000

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return parse_token_expiry(self.refresh_token_expires_in) // 1000

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "AuthConfig":
        """
        Build config from environment variables.

        When VAULT_ADDR is set the signing secret and connection URLs are read
        from Vault instead of the environment.
        """
        env = os.environ if environ is None else environ
        values: dict = {}

        secret = env.get("JWT_SECRET") or env.get("JWT_SECRET_KEY")
        database_url = env.get("DATABASE_URL")
        valkey_url = env.get("REDIS_URL")

        if env.get("VAULT_ADDR"):
            from clients.vault_client import get_database_url, get_jwt_secret, get_valkey_url

            secret = get_jwt_secret()
            database_url = get_database_url()
            valkey_url = get_valkey_url()

        values["jwt_secret"] = secret or ""
        values["database_url"] = database_url
        values["valkey_url"] = valkey_url

        access = env.get("JWT_EXPIRES_IN") or env.get("JWT_ACCESS_EXPIRES_IN")
        if access:
            values["access_token_expires_in"] = access
        if env.get("JWT_REFRESH_EXPIRES_IN"):
            values["refresh_token_expires_in"] = env["JWT_REFRESH_EXPIRES_IN"]
        if env.get("BCRYPT_COST"):
            values["bcrypt_rounds"] = int(env["BCRYPT_COST"])
        if env.get("MAGIC_LINK_EXPIRES_IN"):
            values["magic_link_expiry_minutes"] = int(env["MAGIC_LINK_EXPIRES_IN"].rstrip("m"))
        if env.get("ACCOUNT_LOCKOUT_ATTEMPTS"):
            values["lockout_threshold"] = int(env["ACCOUNT_LOCKOUT_ATTEMPTS"])
        if env.get("ACCOUNT_LOCKOUT_DURATION_MS"):
            values["lockout_duration_seconds"] = max(
                1, int(env["ACCOUNT_LOCKOUT_DURATION_MS"]) // 1000
            )
        if env.get("SESSION_TTL_SECONDS"):
            values["session_ttl_seconds"] = int(env["SESSION_TTL_SECONDS"])
        if env.get("SESSION_FALLBACK"):
            values["session_fallback_enabled"] = env["SESSION_FALLBACK"].lower() in ("1", "true", "yes")
        if env.get("AUTH_STORAGE"):
            values["storage_mode"] = env["AUTH_STORAGE"]
        if env.get("RATE_LIMIT_ENABLED"):
            values["rate_limit_enabled"] = env["RATE_LIMIT_ENABLED"].lower() not in ("0", "false", "no")
        if env.get("CLEANUP_INTERVAL_SECONDS"):
            values["cleanup_interval_seconds"] = int(env["CLEANUP_INTERVAL_SECONDS"])
        if env.get("SECURITY_LOG_ARCHIVE_PATH"):
            values["security_log_archive_path"] = env["SECURITY_LOG_ARCHIVE_PATH"]
        if env.get("SECURITY_LOG_RETENTION_DAYS"):
            values["security_log_retention_days"] = int(env["SECURITY_LOG_RETENTION_DAYS"])
        if env.get("FRONTEND_URL"):
            values["app_base_url"] = env["FRONTEND_URL"]
        if env.get("AUTH_ENV"):
            values["environment"] = env["AUTH_ENV"]

        return cls(**values)
