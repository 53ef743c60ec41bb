"""Process-wide TTL cache for recurrence expansion results.

Entries are keyed by the template identity (id plus updatedAt, or startsAt
when the template was never updated), the rule string and the generation
window. Editing a template changes ``updated_at`` and therefore the key, so
stale entries simply stop being read and age out through FIFO eviction.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any, Optional

from ..core.timezone_utils import serialize_iso
from ..models import CalendarEvent
from .expander import ExpansionWindow, RecurrenceExpander

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_CAPACITY = 500


def _copies(occurrences: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    """Callers get private copies; cached entries are never shared."""
    return [o.model_copy(deep=True) for o in occurrences]


class ExpansionCache:
    """TTL cache in front of :class:`RecurrenceExpander`.

    The clock is injectable so tests can drive expiry without sleeping.

    Example:
        cache = ExpansionCache(ttl_seconds=300, capacity=500)
        occurrences = cache.get_or_expand(template, window)
    """

    def __init__(
        self,
        expander: Optional[RecurrenceExpander] = None,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize expansion cache.

        Args:
            expander: Expander used on cache misses
            ttl_seconds: Lifetime of an entry
            capacity: Maximum number of entries (FIFO eviction when exceeded)
            clock: Monotonic seconds source
        """
        self.expander = expander or RecurrenceExpander()
        self.ttl_seconds = ttl_seconds
        self.capacity = capacity
        self.clock = clock
        self._entries: dict[str, tuple[tuple[CalendarEvent, ...], float]] = {}  # key -> (occurrences, expires_at)
        self._lock = threading.Lock()
        self.stats = {
            "hits": 0,
            "misses": 0,
            "expirations": 0,
            "evictions": 0,
        }

    def generate_key(self, event: CalendarEvent, window: ExpansionWindow) -> str:
        """Generate cache key for a template and window.

        Args:
            event: Template event
            window: Generation window

        Returns:
            md5 hex digest of the JSON-encoded key fields
        """
        recurrence = event.recurrence
        params = {
            "templateId": event.id,
            "version": serialize_iso(event.updated_at or event.starts_at),
            "rule": recurrence.rule if recurrence else None,
            "until": serialize_iso(recurrence.until) if recurrence else None,
            "count": recurrence.count if recurrence else None,
            "startsAt": serialize_iso(event.starts_at),
            "endsAt": serialize_iso(event.ends_at),
            "windowStart": serialize_iso(window.start),
            "windowEnd": serialize_iso(window.end),
            "limit": window.limit,
        }
        # MD5 for speed; keys only need collision resistance
        return hashlib.md5(json.dumps(params, sort_keys=True).encode()).hexdigest()

    def get(self, key: str) -> Optional[list[CalendarEvent]]:
        """Return cached occurrences, or None when absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats["misses"] += 1
                return None

            occurrences, expires_at = entry
            if self.clock() >= expires_at:
                del self._entries[key]
                self.stats["expirations"] += 1
                self.stats["misses"] += 1
                logger.debug("Expansion cache entry expired: %s", key)
                return None

            self.stats["hits"] += 1
            return _copies(occurrences)

    def put(self, key: str, occurrences: list[CalendarEvent]) -> None:
        """Store occurrences with ``expires_at = now + ttl``."""
        with self._lock:
            # Re-inserting moves the key to the back of the FIFO order
            self._entries.pop(key, None)
            self._entries[key] = (tuple(_copies(occurrences)), self.clock() + self.ttl_seconds)

            while len(self._entries) > self.capacity:
                oldest_key = next(iter(self._entries))
                del self._entries[oldest_key]
                self.stats["evictions"] += 1
                logger.debug(
                    "Evicted oldest expansion entry: %s (size %d/%d)",
                    oldest_key,
                    len(self._entries),
                    self.capacity,
                )

    def evict(self, key: str) -> bool:
        """Remove one entry; returns True when it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
        logger.debug("Cleared %d expansion cache entries", cleared)

    def get_or_expand(self, event: CalendarEvent, window: ExpansionWindow) -> list[CalendarEvent]:
        """Return cached occurrences for (event, window), expanding on a miss."""
        key = self.generate_key(event, window)
        cached = self.get(key)
        if cached is not None:
            return cached

        # Expansion is pure, so it runs outside the lock; a concurrent miss on
        # the same key computes an identical value.
        occurrences = self.expander.expand(event, window)
        self.put(key, occurrences)
        return occurrences

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dict with hits, misses, hit_rate (0-100), expirations, evictions,
            current_size, capacity and ttl_seconds
        """
        with self._lock:
            total_requests = self.stats["hits"] + self.stats["misses"]
            hit_rate = (self.stats["hits"] / total_requests * 100) if total_requests > 0 else 0.0
            return {
                "hits": self.stats["hits"],
                "misses": self.stats["misses"],
                "hit_rate": round(hit_rate, 2),
                "expirations": self.stats["expirations"],
                "evictions": self.stats["evictions"],
                "current_size": len(self._entries),
                "capacity": self.capacity,
                "ttl_seconds": self.ttl_seconds,
            }


_expansion_cache: Optional[ExpansionCache] = None
_expansion_cache_lock = threading.Lock()


def get_expansion_cache(config: Any = None) -> ExpansionCache:
    """Get the process-wide expansion cache, creating it on first use.

    Args:
        config: Optional EngineConfig used only when the cache is created
    """
    global _expansion_cache
    with _expansion_cache_lock:
        if _expansion_cache is None:
            if config is not None:
                _expansion_cache = ExpansionCache(
                    expander=RecurrenceExpander.from_config(config),
                    ttl_seconds=config.cache_ttl_seconds,
                    capacity=config.cache_capacity,
                )
            else:
                _expansion_cache = ExpansionCache()
        return _expansion_cache


def reset_expansion_cache() -> None:
    """Drop the process-wide cache (used by tests and on reconfiguration)."""
    global _expansion_cache
    with _expansion_cache_lock:
        _expansion_cache = None
