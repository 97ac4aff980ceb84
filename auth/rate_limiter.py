"""Rate limiting for login, magic link and password reset requests.

Fixed windows in Valkey: the first hit in a window creates the counter and
sets its expiry; later hits only increment. Keys combine client IP and the
email being targeted so one noisy client can't lock out everyone.
"""

from dataclasses import dataclass

from clients.valkey_client import ValkeyClient
from auth.exceptions import RateLimitedError


@dataclass(frozen=True)
class RateLimit:
    """Allow `max_attempts` per `window_seconds`."""

    max_attempts: int
    window_seconds: int


DEFAULT_LIMITS = {
    "login": RateLimit(max_attempts=5, window_seconds=60),
    "magic": RateLimit(max_attempts=3, window_seconds=60),
    "reset": RateLimit(max_attempts=3, window_seconds=300),
}


class RateLimiter:
    """Per-scope request throttling using Valkey counters."""

    KEY_PREFIX = "ratelimit:"

    def __init__(self, valkey: ValkeyClient, limits: dict[str, RateLimit] | None = None):
        self._valkey = valkey
        self._limits = dict(DEFAULT_LIMITS if limits is None else limits)

    def _key(self, scope: str, ip_address: str | None, email: str) -> str:
        """Generate rate limit key (email normalized to lowercase)."""
        return f"{self.KEY_PREFIX}{scope}:{ip_address or 'unknown'}:{email.lower()}"

    def check_rate_limit(self, scope: str, ip_address: str | None, email: str) -> None:
        """Count one attempt in `scope`.

        Raises:
            RateLimitedError: If the window's budget is exhausted
            KeyError: If scope is not configured
        """
        limit = self._limits[scope]
        key = self._key(scope, ip_address, email)

        count = self._valkey.incr(key)
        if count == 1:
            # First attempt opens the window
            self._valkey.expire(key, limit.window_seconds)

        if count > limit.max_attempts:
            ttl = self._valkey.ttl(key)
            if ttl < 0:
                # Counter lost its expiry (crash between INCR and EXPIRE)
                self._valkey.expire(key, limit.window_seconds)
                ttl = limit.window_seconds
            raise RateLimitedError(retry_after_seconds=max(ttl, 1))

    def reset_rate_limit(self, scope: str, ip_address: str | None, email: str) -> None:
        """Clear the counter after a successful login."""
        self._valkey.delete(self._key(scope, ip_address, email))
