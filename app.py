"""Application entry point: builds the dependency graph and serves the auth API."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from pathlib import Path

import redis
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.concurrency import run_in_threadpool

from api.errors import register_error_handlers
from auth.api import create_auth_router
from auth.config import AuthConfig
from auth.database import AuthDatabase
from auth.exceptions import AuthError
from auth.health import HealthChecker
from auth.magic_link import MagicLinkIssuer
from auth.memory import InMemoryAuthStore
from auth.passwords import PasswordHasher
from auth.rate_limiter import RateLimiter
from auth.security_logger import SecurityLogger
from auth.service import AuthService
from auth.session import InMemorySessionStore, SessionStore, ValkeySessionStore
from auth.store import AuthStore
from auth.tokens import TokenIssuer
from clients.email_client import EmailGatewayClient
from clients.postgres_client import PostgresClient
from clients.valkey_client import ValkeyClient
from clients.vault_client import get_email_config, vault_enabled

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Everything the routes need, plus the clients to close on shutdown."""

    service: AuthService
    health: HealthChecker
    rate_limiter: RateLimiter | None = None
    postgres: PostgresClient | None = None
    valkey: ValkeyClient | None = None

    def close(self) -> None:
        self.health.close()
        if self.valkey is not None:
            self.valkey.close()
        if self.postgres is not None:
            self.postgres.close()


def _build_store(config: AuthConfig) -> tuple[AuthStore, PostgresClient | None]:
    if config.storage_mode == "memory":
        logger.warning("Using in-memory credential store; nothing survives a restart")
        return InMemoryAuthStore(), None

    if not config.database_url:
        raise ValueError("DATABASE_URL is required when AUTH_STORAGE=postgres")
    postgres = PostgresClient(config.database_url)
    return AuthDatabase(postgres), postgres


def _build_sessions(config: AuthConfig) -> tuple[SessionStore, ValkeyClient | None]:
    fallback = None
    if config.session_fallback_enabled:
        fallback = InMemorySessionStore(
            ttl_seconds=config.session_ttl_seconds,
            max_entries=config.session_fallback_max_entries,
        )

    if not config.valkey_url:
        if fallback is None:
            raise ValueError("REDIS_URL is required unless SESSION_FALLBACK is enabled")
        logger.warning("No Valkey configured; sessions are held in process memory")
        return fallback, None

    try:
        valkey = ValkeyClient(config.valkey_url)
    except redis.RedisError as e:
        if fallback is None:
            raise
        logger.warning(f"Valkey unreachable at startup, sessions held in process memory: {e}")
        return fallback, None

    return ValkeySessionStore(valkey, config.session_ttl_seconds, fallback), valkey


def _build_email_client(environ: dict[str, str]) -> EmailGatewayClient | None:
    if vault_enabled():
        settings = get_email_config()
        return EmailGatewayClient(
            settings["gateway_url"],
            settings["api_key"],
            settings["hmac_secret"],
        )

    gateway_url = environ.get("EMAIL_GATEWAY_URL")
    if not gateway_url:
        return None
    return EmailGatewayClient(
        gateway_url,
        environ.get("EMAIL_GATEWAY_API_KEY", ""),
        environ.get("EMAIL_GATEWAY_HMAC_SECRET", ""),
    )


def build_components(
    config: AuthConfig,
    email_client: EmailGatewayClient | None = None,
) -> Components:
    """Wire stores, issuers and the service from configuration."""
    store, postgres = _build_store(config)
    sessions, valkey = _build_sessions(config)

    hasher = PasswordHasher(rounds=config.bcrypt_rounds)
    tokens = TokenIssuer(
        config.jwt_secret,
        access_ttl=config.access_token_expires_in,
        refresh_ttl=config.refresh_token_expires_in,
        issuer=config.token_issuer,
        audience=config.token_audience,
    )
    magic_links = MagicLinkIssuer(
        store,
        hasher,
        config.app_base_url,
        expiry_minutes=config.magic_link_expiry_minutes,
    )

    service = AuthService(
        config=config,
        store=store,
        hasher=hasher,
        tokens=tokens,
        magic_links=magic_links,
        sessions=sessions,
        security_logger=SecurityLogger(postgres),
        email_client=email_client,
    )

    rate_limiter = None
    if config.rate_limit_enabled and valkey is not None:
        rate_limiter = RateLimiter(valkey)

    return Components(
        service=service,
        health=HealthChecker(store, sessions),
        rate_limiter=rate_limiter,
        postgres=postgres,
        valkey=valkey,
    )


async def run_periodic_cleanup(service: AuthService, interval_seconds: float) -> None:
    """Call service.cleanup() every interval until cancelled.

    A failed pass is logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(service.cleanup)
        except (AuthError, OSError) as e:
            logger.error(f"Scheduled cleanup failed: {e}")


def create_app(config: AuthConfig, components: Components | None = None) -> FastAPI:
    """Build the FastAPI app.

    Components are created once here; the lifespan runs periodic cleanup
    and closes them on shutdown.
    Tests pass prebuilt components to run without PostgreSQL or Valkey.
    """
    if components is None:
        components = build_components(config, _build_email_client(dict(os.environ)))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Auth service starting (storage={config.storage_mode}, "
            f"rate_limiting={'on' if components.rate_limiter else 'off'})"
        )
        cleanup_task = None
        if config.cleanup_interval_seconds > 0:
            cleanup_task = asyncio.create_task(
                run_periodic_cleanup(components.service, config.cleanup_interval_seconds)
            )

        yield

        if cleanup_task is not None:
            cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await cleanup_task
        components.close()
        logger.info("Auth service stopped")

    app = FastAPI(title="Peerit Auth Service", version="1.0.0", lifespan=lifespan)
    app.state.components = components

    register_error_handlers(app)
    app.include_router(
        create_auth_router(
            components.service,
            config,
            rate_limiter=components.rate_limiter,
            health=components.health,
        ),
        prefix="/auth",
    )
    return app


def main() -> None:
    load_dotenv(Path(__file__).parent / ".env")
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = AuthConfig.from_env()
    uvicorn.run(
        create_app(config),
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "3020")),
    )


if __name__ == "__main__":
    main()
