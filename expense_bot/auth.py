# expense_bot/auth.py
"""
API key auth and rate limiting for the admin lookup API (/api/*).

Env vars:
- MOCK_AUTH (default: false): bypass auth in local development
- ADMIN_API_KEYS: comma-separated allowed keys
- ADMIN_API_KEYS_FILE: optional path to file with one key per line
- ADMIN_RATE_LIMIT_PER_MINUTE (default: 60)
"""

import os
import time
import threading
from typing import Dict, Optional, Set, Tuple

MOCK_AUTH = os.getenv("MOCK_AUTH", "false").lower() in ("1", "true", "yes")
RATE_LIMIT_PER_MINUTE = int(os.getenv("ADMIN_RATE_LIMIT_PER_MINUTE", "60"))
API_KEYS_ENV = os.getenv("ADMIN_API_KEYS", "")
API_KEYS_FILE = os.getenv("ADMIN_API_KEYS_FILE", "")


def _load_api_keys(raw: str = API_KEYS_ENV, path: str = API_KEYS_FILE) -> Set[str]:
    keys: Set[str] = {k.strip() for k in raw.split(",") if k.strip()}
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            keys.update(line.strip() for line in f if line.strip())
    return keys


API_KEYS = _load_api_keys()


class InMemoryFixedWindowLimiter:
    """Thread-safe per-process fixed-window counter keyed by API key."""

    def __init__(self, limit_per_minute: int = 60):
        self.limit = limit_per_minute
        self._store: Dict[str, Tuple[int, int]] = {}  # key -> (window_minute, count)
        self._lock = threading.Lock()

    def allow_request(self, api_key: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        with self._lock:
            wstart, count = self._store.get(api_key, (window, 0))
            if wstart != window:
                count = 0
            if count >= self.limit:
                return False, 0
            self._store[api_key] = (window, count + 1)
            return True, self.limit - (count + 1)

    def reset(self):
        with self._lock:
            self._store.clear()


_rate_limiter = InMemoryFixedWindowLimiter(RATE_LIMIT_PER_MINUTE)


def is_key_allowed(api_key: Optional[str]) -> bool:
    """If MOCK_AUTH is on every key (even none) is accepted."""
    if MOCK_AUTH:
        return True
    if not api_key or not API_KEYS:
        return False
    return api_key in API_KEYS


def check_rate_limit(api_key: str) -> Tuple[bool, Optional[int]]:
    """Check and consume quota. Returns (allowed, remaining)."""
    if MOCK_AUTH:
        return True, None
    if not api_key:
        return False, 0
    return _rate_limiter.allow_request(api_key)
