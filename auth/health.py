"""Dependency health checks with bounded waits."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable

from auth.session import SessionStore
from auth.store import AuthStore
from utils.timezone import isoformat_z, now_utc

logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"


class HealthChecker:
    """Pings the credential store and session store without hanging.

    Each ping runs on a worker thread and is abandoned after its timeout.
    A stuck driver call keeps its worker busy, so the pool is sized for a
    couple of concurrent health requests.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionStore,
        db_timeout: float = 3.0,
        cache_timeout: float = 2.0,
    ):
        self._store = store
        self._sessions = sessions
        self._db_timeout = db_timeout
        self._cache_timeout = cache_timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="health")
        self._started = time.monotonic()

    def _run(self, name: str, probe: Callable[[], Any], timeout: float) -> tuple[Any, str | None]:
        """Run probe with a deadline. Returns (result, error)."""
        future = self._executor.submit(probe)
        try:
            return future.result(timeout=timeout), None
        except FutureTimeout:
            logger.warning(f"{name} health check timed out after {timeout}s")
            return None, f"{name} timeout"
        except Exception as e:
            logger.warning(f"{name} health check failed: {e}")
            return None, str(e)

    def check_database(self) -> dict:
        result, error = self._run("database", self._store.ping, self._db_timeout)
        if error is None and result:
            return {"status": "UP"}
        return {"status": "DOWN", "error": error or "ping failed"}

    def check_sessions(self) -> dict:
        result, error = self._run("sessions", self._sessions.health, self._cache_timeout)
        if error is not None:
            return {"status": "DOWN", "error": error}
        return result

    def check(self) -> dict:
        """Overall health. UP only when the credential store answers."""
        database = self.check_database()
        sessions = self.check_sessions()
        return {
            "status": "UP" if database["status"] == "UP" else "DOWN",
            "timestamp": isoformat_z(now_utc()),
            "version": SERVICE_VERSION,
            "uptime": round(time.monotonic() - self._started, 3),
            "database": database,
            "sessions": sessions,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
