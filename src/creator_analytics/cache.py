from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Hashable, Optional, Tuple

from .configuration import CacheConfig

logger = logging.getLogger(__name__)

CacheKey = Tuple[Hashable, ...]


def as_of_bucket(as_of: datetime) -> str:
    """Hour-level bucket so near-identical "now" queries share an entry."""

    return as_of.replace(minute=0, second=0, microsecond=0).isoformat()


def make_key(metric: str, anchor: str, period: str, filters: Tuple[Hashable, ...], as_of: datetime) -> CacheKey:
    return (metric, anchor, period, filters, as_of_bucket(as_of))


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float]


class QueryCache:
    """
    Advisory in-process cache for query results.

    Results covering only fully elapsed periods never expire. Results that
    still include the open period live for ``open_period_ttl_seconds`` and are
    not stored at all when that TTL is zero.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config or CacheConfig(enable=True)
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, _Entry]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Tuple[bool, Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                return False, None
            self._entries.move_to_end(key)
            return True, entry.value

    def put(self, key: CacheKey, value: Any, open_period: bool) -> None:
        if open_period:
            ttl = self.config.open_period_ttl_seconds
            if ttl <= 0:
                return
            expires_at: Optional[float] = self._clock() + ttl
        else:
            expires_at = None
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > max(1, self.config.max_entries):
                self._entries.popitem(last=False)

    def get_or_compute(self, key: CacheKey, open_period: bool, compute: Callable[[], Any]) -> Any:
        hit, value = self.get(key)
        if hit:
            logger.debug("Cache hit for %s", key)
            return value
        value = compute()
        self.put(key, value, open_period)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
