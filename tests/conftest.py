"""Shared test fixtures for the auth service test suite.

Suites run without PostgreSQL or Valkey: credential storage uses
InMemoryAuthStore and Valkey is replaced by FakeValkey below.
"""

import json
from pathlib import Path
from typing import Set

import pytest
import redis
from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
load_dotenv(Path(__file__).parent.parent / ".env")

# Reset vault client singleton so tests never see a cached secret
import clients.vault_client as vault_module
vault_module._vault_client_instance = None
vault_module._secret_cache.clear()

from auth.config import AuthConfig
from auth.magic_link import MagicLinkIssuer
from auth.memory import InMemoryAuthStore
from auth.passwords import PasswordHasher
from auth.security_logger import SecurityLogger
from auth.service import AuthService
from auth.session import InMemorySessionStore
from auth.tokens import TokenIssuer


# =============================================================================
# TEST CONSTANTS
# =============================================================================

TEST_JWT_SECRET = "test-secret-key-for-jwt-signing-0123456789"
TEST_PASSWORD = "password123"
TEST_EMAIL = "demo@example.com"


# =============================================================================
# VALKEY TEST DOUBLE
# =============================================================================


class FakeValkey:
    """Dict-backed stand-in for clients.valkey_client.ValkeyClient.

    Expiry is recorded but time never passes; tests call expire_now() to
    simulate a key timing out. Setting `down = True` makes every call raise
    redis.ConnectionError like an unreachable server.
    """

    def __init__(self):
        self.data: dict[str, object] = {}
        self.ttls: dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise redis.ConnectionError("Connection refused")

    def expire_now(self, key: str) -> None:
        self.data.pop(key, None)
        self.ttls.pop(key, None)

    def ping(self) -> bool:
        self._check()
        return True

    def get(self, key: str) -> str | None:
        self._check()
        value = self.data.get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str, expire_seconds: int | None = None) -> None:
        self._check()
        self.data[key] = value
        if expire_seconds:
            self.ttls[key] = expire_seconds
        else:
            self.ttls.pop(key, None)

    def delete(self, key: str) -> bool:
        self._check()
        self.ttls.pop(key, None)
        return self.data.pop(key, None) is not None

    def ttl(self, key: str) -> int:
        self._check()
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        return True

    def incr(self, key: str) -> int:
        self._check()
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = value
        return value

    def sadd(self, key: str, member: str) -> None:
        self._check()
        self.data.setdefault(key, set()).add(member)

    def srem(self, key: str, member: str) -> None:
        self._check()
        self.data.get(key, set()).discard(member)

    def smembers(self, key: str) -> Set[str]:
        self._check()
        return set(self.data.get(key, set()))

    def set_json(self, key: str, value: dict | list, expire_seconds: int | None = None) -> None:
        self.set(key, json.dumps(value), expire_seconds=expire_seconds)

    def replace_json(self, key: str, value: dict | list, expire_seconds: int) -> bool:
        self._check()
        if key not in self.data:
            return False
        self.set(key, json.dumps(value), expire_seconds=expire_seconds)
        return True

    def get_json(self, key: str) -> dict | list | None:
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in key '{key}'") from e

    def close(self) -> None:
        pass


# =============================================================================
# CONFIG AND COMPONENT FIXTURES
# =============================================================================


@pytest.fixture
def config() -> AuthConfig:
    """Config with cheap bcrypt and in-memory storage."""
    return AuthConfig(
        jwt_secret=TEST_JWT_SECRET,
        bcrypt_rounds=4,
        storage_mode="memory",
        session_fallback_enabled=True,
        app_base_url="https://app.example.com",
        environment="test",
    )


@pytest.fixture
def fake_valkey() -> FakeValkey:
    return FakeValkey()


@pytest.fixture
def store() -> InMemoryAuthStore:
    return InMemoryAuthStore()


@pytest.fixture
def hasher(config) -> PasswordHasher:
    return PasswordHasher(rounds=config.bcrypt_rounds)


@pytest.fixture
def tokens(config) -> TokenIssuer:
    return TokenIssuer(
        config.jwt_secret,
        access_ttl=config.access_token_expires_in,
        refresh_ttl=config.refresh_token_expires_in,
    )


@pytest.fixture
def magic_links(store, hasher, config) -> MagicLinkIssuer:
    return MagicLinkIssuer(store, hasher, config.app_base_url, config.magic_link_expiry_minutes)


@pytest.fixture
def sessions(config) -> InMemorySessionStore:
    return InMemorySessionStore(ttl_seconds=config.session_ttl_seconds)


@pytest.fixture
def auth_service(config, store, hasher, tokens, magic_links, sessions) -> AuthService:
    """AuthService over in-memory stores, no email gateway."""
    return AuthService(
        config=config,
        store=store,
        hasher=hasher,
        tokens=tokens,
        magic_links=magic_links,
        sessions=sessions,
        security_logger=SecurityLogger(),
    )


@pytest.fixture
def demo_user(store, hasher):
    """Active user demo@example.com with password 'password123'."""
    return store.create_user(TEST_EMAIL, hasher.hash(TEST_PASSWORD))
