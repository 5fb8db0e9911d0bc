# expense_bot/cache.py
"""
Read-through / write-through cache of Request Records keyed by thread id.

The cache is never the system of record: a miss always falls through to the ledger, and
every successful ledger mutation refreshes the entry. Eviction is pluggable:
- "none": unbounded for the process lifetime (entries are small)
- "lru":  at most `max_entries`, least recently used dropped first
- "ttl":  entries expire `ttl_seconds` after they were written
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from expense_bot import monitoring
from expense_bot.schemas import RequestRecord

POLICIES = ("none", "lru", "ttl")

Loader = Callable[[str], Optional[RequestRecord]]


class RequestCache:
    def __init__(self, loader: Loader, policy: str = "none", max_entries: int = 1024,
                 ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        if policy not in POLICIES:
            raise ValueError(f"Unknown cache policy {policy!r}; expected one of {POLICIES}")
        self._loader = loader
        self.policy = policy
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[RequestRecord, float]]" = OrderedDict()
        self._lock = threading.Lock()

    def _expired(self, written_at: float) -> bool:
        return self.policy == "ttl" and self._clock() - written_at > self.ttl_seconds

    def peek(self, thread_id: str) -> Optional[RequestRecord]:
        """Cached value only; never touches the ledger."""
        with self._lock:
            entry = self._entries.get(thread_id)
            if entry is None:
                return None
            record, written_at = entry
            if self._expired(written_at):
                del self._entries[thread_id]
                monitoring.set_cache_size(len(self._entries))
                return None
            if self.policy == "lru":
                self._entries.move_to_end(thread_id)
            return record

    def get(self, thread_id: str) -> Optional[RequestRecord]:
        cached = self.peek(thread_id)
        # a record whose row could not be located is not usable for updates
        if cached is not None and cached.row_number is not None:
            monitoring.inc_cache_lookup("hit")
            return cached
        monitoring.inc_cache_lookup("miss")
        record = self._loader(thread_id)
        if record is not None:
            self.put(thread_id, record)
        return record

    def put(self, thread_id: str, record: RequestRecord) -> None:
        with self._lock:
            self._entries[thread_id] = (record, self._clock())
            self._entries.move_to_end(thread_id)
            if self.policy == "lru":
                while len(self._entries) > self.max_entries:
                    self._entries.popitem(last=False)
            monitoring.set_cache_size(len(self._entries))

    def invalidate(self, thread_id: str) -> None:
        with self._lock:
            self._entries.pop(thread_id, None)
            monitoring.set_cache_size(len(self._entries))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
