"""
Year-scoped query cache.

Entries are keyed by tuples whose first element is the cache type (the bucket) and whose
remaining elements are the scope, e.g. ("fee-records", year_id) or
("student-fees", student_id, year_id). Invalidation drops every key that starts with a
given prefix, so a mutation in one academic year never evicts another year's entries.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Hashable, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[Hashable, ...]

DEFAULT_YEAR_CACHE_TYPES = (
    "fee-records",
    "pyd-summary",
    "pyd-list",
    "pyd-details",
    "student-enrollments",
    "fee-stats",
)
STUDENT_YEAR_CACHE_TYPES = ("student-fees", "student-pyd", "payment-history")
PROMOTION_TARGET_CACHE_TYPES = ("fee-records", "pyd-summary", "pyd-list", "student-enrollments")
PAYMENT_YEAR_CACHE_TYPES = ("pyd-summary", "fee-stats")


def _norm(part: Hashable) -> Hashable:
    # UUIDs and their string form must hit the same entry
    return str(part) if part is not None else None


class YearScopedCache:
    """In-process TTL cache with prefix invalidation."""

    def __init__(self, ttl_seconds: float = 30, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(cache_type: str, *scope: Hashable) -> CacheKey:
        return (cache_type,) + tuple(_norm(p) for p in scope)

    def get(self, key: CacheKey) -> Optional[Any]:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            expires_at, value = hit
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: CacheKey, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    async def get_or_load(self, key: CacheKey, loader: Callable[[], Any], ttl_seconds: Optional[float] = None) -> Any:
        """Return the cached value for key, awaiting loader() on a miss."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        self.set(key, value, ttl_seconds)
        return value

    def invalidate(self, *prefix: Hashable) -> int:
        """Drop every entry whose key starts with prefix. Returns the number dropped."""
        norm = (prefix[0],) + tuple(_norm(p) for p in prefix[1:]) if prefix else ()
        size = len(norm)
        with self._lock:
            doomed = [k for k in self._entries if k[:size] == norm]
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    # --- Domain helpers ---
    def invalidate_year(self, year_id: Hashable, cache_types: Optional[Iterable[str]] = None) -> int:
        types = tuple(cache_types) if cache_types is not None else DEFAULT_YEAR_CACHE_TYPES
        dropped = sum(self.invalidate(cache_type, year_id) for cache_type in types)
        logger.info("invalidated %d cache entries for year %s %s", dropped, year_id, list(types))
        return dropped

    def invalidate_student_year(self, student_id: Hashable, year_id: Hashable) -> int:
        dropped = sum(self.invalidate(cache_type, student_id, year_id) for cache_type in STUDENT_YEAR_CACHE_TYPES)
        # Unscoped-year student lookups (e.g. payment history across years)
        dropped += sum(self.invalidate(cache_type, student_id, None) for cache_type in STUDENT_YEAR_CACHE_TYPES)
        logger.info("invalidated %d cache entries for student %s in year %s", dropped, student_id, year_id)
        return dropped

    def invalidate_after_payment(self, student_id: Hashable, year_id: Hashable) -> int:
        return (
            self.invalidate_student_year(student_id, year_id)
            + self.invalidate_year(year_id, ("fee-records",) + PAYMENT_YEAR_CACHE_TYPES)
        )

    def invalidate_after_promotion(self, source_year_id: Hashable, target_year_id: Hashable) -> int:
        # Source year data is immutable after promotion; only the target year changes
        dropped = self.invalidate_year(target_year_id, PROMOTION_TARGET_CACHE_TYPES)
        dropped += self.invalidate("promotion-history")
        logger.info("promotion %s -> %s invalidated %d cache entries", source_year_id, target_year_id, dropped)
        return dropped


year_cache = YearScopedCache()


def configure_year_cache(ttl_seconds: float) -> None:
    year_cache.ttl_seconds = ttl_seconds
