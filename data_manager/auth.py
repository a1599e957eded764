# data_manager/auth.py
"""
Shared-secret API key auth and pluggable rate-limiter.

Env vars:
- API_KEY — the single shared secret every /api request must present
- RATE_LIMIT_MAX (default: 100) — requests allowed per client per window
- RATE_LIMIT_WINDOW_SECONDS (default: 900)
- REDIS_URL — optional, enables Redis-based distributed limiter
"""

import os
import hmac
import time
import threading
from typing import Optional, Tuple, Dict

import redis

from data_manager import monitoring

# Configuration
API_KEY = os.getenv("API_KEY", "")
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "100"))
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", str(15 * 60)))
REDIS_URL = os.getenv("REDIS_URL", "")


class InMemoryFixedWindowLimiter:
    """Thread-safe in-memory fixed-window rate limiter (per-process)."""

    def __init__(self, limit: int = 100, window_seconds: int = 900):
        self.limit = limit
        self.window_seconds = window_seconds
        self._store: Dict[str, Tuple[int, int]] = {}  # client -> (window, count)
        self._window: Optional[int] = None
        self._lock = threading.Lock()

    def allow_request(self, client: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // self.window_seconds
        with self._lock:
            if window != self._window:
                self._prune(window)
            if client not in self._store:
                self._store[client] = (window, 1)
                return True, self.limit - 1
            wstart, count = self._store[client]
            if wstart == window:
                if count >= self.limit:
                    return False, 0
                self._store[client] = (wstart, count + 1)
                return True, self.limit - (count + 1)
            else:
                self._store[client] = (window, 1)
                return True, self.limit - 1

    def _prune(self, window: int):
        """Drop counters from past windows; called with the lock held."""
        self._store = {k: v for k, v in self._store.items() if v[0] == window}
        self._window = window

    def reset(self):
        """Reset all state (useful for tests)."""
        with self._lock:
            self._store.clear()


class RedisFixedWindowLimiter:
    """Redis fixed-window counter using INCR + EXPIRE."""

    def __init__(self, redis_url: str, limit: int = 100, window_seconds: int = 900):
        self.limit = limit
        self.window_seconds = window_seconds
        self._client = redis.from_url(redis_url, decode_responses=True)

    def allow_request(self, client: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // self.window_seconds
        key = f"rate:{client}:{window}"
        try:
            count = int(self._client.incr(key))
            if count == 1:
                self._client.expire(key, self.window_seconds * 2)
            if count > self.limit:
                return False, 0
            return True, self.limit - count
        except redis.RedisError:
            monitoring.logger.warning("Redis rate limiter unavailable, allowing request")
            return True, None


def _make_limiter():
    if REDIS_URL:
        return RedisFixedWindowLimiter(REDIS_URL, RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_SECONDS)
    return InMemoryFixedWindowLimiter(RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_SECONDS)


_rate_limiter = _make_limiter()


def is_key_allowed(api_key: Optional[str]) -> bool:
    """Byte-for-byte comparison against the configured key. No key configured rejects all."""
    if not api_key or not API_KEY:
        return False
    return hmac.compare_digest(api_key.encode("utf-8"), API_KEY.encode("utf-8"))


def check_rate_limit(client: str) -> Tuple[bool, Optional[int]]:
    """Check and consume quota. Returns (allowed, remaining)."""
    return _rate_limiter.allow_request(client or "unknown")


def get_limiter():
    """Return the current limiter instance (for testing)."""
    return _rate_limiter
