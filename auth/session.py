"""Session storage.

Sessions are stored in Valkey under `session:<id>` with a TTL that is
re-armed to the full window on every write. A bounded in-process map can
stand in when Valkey is unreachable, but only if the deployment opts in:
without a fallback, storage failures raise SessionStorageUnavailableError
instead of silently dropping sessions.
"""

import logging
import threading
import time
from typing import Protocol
from uuid import UUID

import redis

from auth.exceptions import SessionStorageUnavailableError
from auth.types import SessionRecord
from clients.valkey_client import ValkeyClient

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 8 * 60 * 60


class SessionStore(Protocol):
    """Key-value store for session records."""

    def create(self, record: SessionRecord, ttl_seconds: int | None = None) -> None: ...

    def get(self, session_id: str) -> SessionRecord | None: ...

    def update(self, record: SessionRecord, ttl_seconds: int | None = None) -> bool: ...

    def delete(self, session_id: str) -> None: ...

    def delete_user_sessions(self, user_id: UUID) -> int: ...

    def sweep(self) -> int: ...

    def health(self) -> dict: ...


class InMemorySessionStore:
    """Bounded session map with lazy expiry.

    Every entry carries its own deadline, checked on each read. sweep()
    removes dead entries for memory hygiene; correctness never depends on it.
    When full, the entry closest to expiry is evicted.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS, max_entries: int = 10_000):
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._entries: dict[str, tuple[SessionRecord, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _put(self, record: SessionRecord, ttl_seconds: int | None) -> None:
        deadline = time.monotonic() + (ttl_seconds or self._ttl_seconds)
        with self._lock:
            if record.session_id not in self._entries and len(self._entries) >= self._max_entries:
                self._sweep_locked()
                if len(self._entries) >= self._max_entries:
                    oldest = min(self._entries, key=lambda key: self._entries[key][1])
                    del self._entries[oldest]
            self._entries[record.session_id] = (record.model_copy(), deadline)

    def create(self, record: SessionRecord, ttl_seconds: int | None = None) -> None:
        self._put(record, ttl_seconds)

    def update(self, record: SessionRecord, ttl_seconds: int | None = None) -> bool:
        """Rewrite a live session and re-arm its deadline. Never recreates one."""
        deadline = time.monotonic() + (ttl_seconds or self._ttl_seconds)
        with self._lock:
            entry = self._entries.get(record.session_id)
            if entry is None or entry[1] <= time.monotonic():
                self._entries.pop(record.session_id, None)
                return False
            self._entries[record.session_id] = (record.model_copy(), deadline)
            return True

    def get(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            record, deadline = entry
            if deadline <= time.monotonic():
                del self._entries[session_id]
                return None
            return record.model_copy()

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def delete_user_sessions(self, user_id: UUID) -> int:
        with self._lock:
            doomed = [sid for sid, (record, _) in self._entries.items() if record.user_id == user_id]
            for session_id in doomed:
                del self._entries[session_id]
            return len(doomed)

    def _sweep_locked(self) -> int:
        now = time.monotonic()
        dead = [sid for sid, (_, deadline) in self._entries.items() if deadline <= now]
        for session_id in dead:
            del self._entries[session_id]
        return len(dead)

    def sweep(self) -> int:
        """Drop expired entries. Returns count removed."""
        with self._lock:
            return self._sweep_locked()

    def health(self) -> dict:
        return {"status": "UP", "mode": "memory", "entries": len(self)}


class ValkeySessionStore:
    """Valkey-backed sessions with an optional in-memory fallback."""

    KEY_PREFIX = "session:"
    USER_INDEX_PREFIX = "user_sessions:"

    def __init__(
        self,
        valkey: ValkeyClient,
        ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        fallback: InMemorySessionStore | None = None,
    ):
        self._valkey = valkey
        self._ttl_seconds = ttl_seconds
        self._fallback = fallback

    def _key(self, session_id: str) -> str:
        """Generate Valkey key for session id."""
        return f"{self.KEY_PREFIX}{session_id}"

    def _index_key(self, user_id: UUID) -> str:
        return f"{self.USER_INDEX_PREFIX}{user_id}"

    def _fallback_or_raise(self, error: redis.RedisError) -> InMemorySessionStore:
        if self._fallback is None:
            logger.error(f"Session storage unavailable: {error}")
            raise SessionStorageUnavailableError() from error
        logger.warning(f"Valkey unreachable, serving session from memory: {error}")
        return self._fallback

    def _write(self, record: SessionRecord, ttl_seconds: int | None) -> None:
        ttl = ttl_seconds or self._ttl_seconds
        self._valkey.set_json(self._key(record.session_id), record.to_json_dict(), expire_seconds=ttl)
        index = self._index_key(record.user_id)
        self._valkey.sadd(index, record.session_id)
        self._valkey.expire(index, ttl)

    def create(self, record: SessionRecord, ttl_seconds: int | None = None) -> None:
        try:
            self._write(record, ttl_seconds)
        except (redis.ConnectionError, redis.TimeoutError) as e:
            self._fallback_or_raise(e).create(record, ttl_seconds)

    def update(self, record: SessionRecord, ttl_seconds: int | None = None) -> bool:
        """Rewrite an existing session only; a deleted session stays deleted."""
        ttl = ttl_seconds or self._ttl_seconds
        try:
            if not self._valkey.replace_json(self._key(record.session_id), record.to_json_dict(), ttl):
                return False
            self._valkey.expire(self._index_key(record.user_id), ttl)
            return True
        except (redis.ConnectionError, redis.TimeoutError) as e:
            return self._fallback_or_raise(e).update(record, ttl_seconds)

    def get(self, session_id: str) -> SessionRecord | None:
        try:
            data = self._valkey.get_json(self._key(session_id))
        except (redis.ConnectionError, redis.TimeoutError) as e:
            return self._fallback_or_raise(e).get(session_id)
        except ValueError:
            logger.warning(f"Discarding unreadable session {session_id[:8]}")
            self._valkey.delete(self._key(session_id))
            return None

        if data is None:
            return None
        return SessionRecord.from_json_dict(data)

    def delete(self, session_id: str) -> None:
        """Delete session. Safe to call with nonexistent id."""
        try:
            data = self._valkey.get_json(self._key(session_id))
            self._valkey.delete(self._key(session_id))
            if isinstance(data, dict) and data.get("user_id"):
                self._valkey.srem(self._index_key(data["user_id"]), session_id)
        except (redis.ConnectionError, redis.TimeoutError) as e:
            self._fallback_or_raise(e).delete(session_id)
        except ValueError:
            self._valkey.delete(self._key(session_id))

    def delete_user_sessions(self, user_id: UUID) -> int:
        try:
            index = self._index_key(user_id)
            deleted = 0
            for session_id in self._valkey.smembers(index):
                if self._valkey.delete(self._key(session_id)):
                    deleted += 1
            self._valkey.delete(index)
        except (redis.ConnectionError, redis.TimeoutError) as e:
            return self._fallback_or_raise(e).delete_user_sessions(user_id)

        if self._fallback is not None:
            deleted += self._fallback.delete_user_sessions(user_id)
        return deleted

    def sweep(self) -> int:
        """Valkey expires keys itself; only the fallback needs sweeping."""
        return self._fallback.sweep() if self._fallback is not None else 0

    def health(self) -> dict:
        try:
            self._valkey.ping()
            return {"status": "UP", "mode": "valkey"}
        except redis.RedisError as e:
            if self._fallback is not None:
                return {"status": "DEGRADED", "mode": "memory-fallback", "error": str(e)}
            return {"status": "DOWN", "mode": "valkey", "error": str(e)}
