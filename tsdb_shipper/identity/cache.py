"""
Identity cache: interns MetricIdentity instances by content hash.

Structurally equal (name, tags) always resolve to the same instance. The cache
is unbounded by default and can be bounded by size (LRU) and/or idle TTL.
"""

import logging
import re
import threading
import time
from collections import OrderedDict
from typing import Callable, List, Mapping, Optional

from tsdb_shipper.exceptions import IdentityCollisionError
from tsdb_shipper.identity.metric import (
    MetricIdentity,
    compose_name,
    content_hash,
    normalize_tags,
)
from tsdb_shipper.schemas import CacheStats

logger = logging.getLogger(__name__)


class IdentityCache:
    """Process-wide interning of metric identities."""

    def __init__(
        self,
        max_size: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        global_tags: Optional[Mapping[str, str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the cache.

        Args:
            max_size: Maximum identities kept, least recently used evicted first
            ttl_seconds: Evict identities not accessed for this long
            global_tags: Tags added to every identity unless already present
            clock: Monotonic time source (seconds)
        """
        if max_size is not None and max_size < 1:
            raise ValueError(f"Invalid cache max size [{max_size}]")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.global_tags = normalize_tags(global_tags)
        self._clock = clock
        self._entries: "OrderedDict[int, MetricIdentity]" = OrderedDict()
        self._access: dict[int, float] = {}
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @property
    def bounded(self) -> bool:
        return self.max_size is not None or self.ttl_seconds is not None

    def intern(
        self,
        name,
        tags: Optional[Mapping] = None,
        prefix=None,
        extension=None,
    ) -> MetricIdentity:
        """
        Get or create the shared identity for (name, tags).

        Args:
            name: Metric name
            tags: Tag mapping, cleaned before use
            prefix: Optional name prefix
            extension: Optional name extension

        Returns:
            The interned identity

        Raises:
            InvalidMetricError: The name is empty
            IdentityCollisionError: A different identity already owns the hash
        """
        full_name = compose_name(name, prefix, extension)
        merged = dict(self.global_tags)
        merged.update(normalize_tags(tags))
        key = content_hash(full_name, merged)

        existing = self._lookup(key)
        if existing is not None:
            self._check_collision(existing, full_name, merged)
            return existing

        with self._lock:
            existing = self._entries.get(key)
            if existing is None:
                existing = MetricIdentity(full_name, merged)
                self._entries[key] = existing
                self._access[key] = self._clock()
                self._misses += 1
                self._evict_locked()
                logger.debug(f"Interned metric identity {existing!r}")
                return existing
            self._touch_locked(key)
            self._count_hit()
        self._check_collision(existing, full_name, merged)
        return existing

    def _lookup(self, key: int) -> Optional[MetricIdentity]:
        if not self.bounded:
            # Unbounded: a plain dict read is safe without the entry lock
            identity = self._entries.get(key)
            if identity is not None:
                self._count_hit()
            return identity
        with self._lock:
            identity = self._entries.get(key)
            if identity is None:
                return None
            if self._expired_locked(key):
                self._remove_locked(key)
                return None
            self._touch_locked(key)
            self._count_hit()
            return identity

    def _count_hit(self) -> None:
        with self._stats_lock:
            self._hits += 1

    @staticmethod
    def _check_collision(identity: MetricIdentity, name: str, tags: Mapping[str, str]) -> None:
        if not identity.same_identity(name, tags):
            incoming = name + ":" + ",".join(f"{k}={v}" for k, v in tags.items())
            raise IdentityCollisionError(identity.content_hash, str(identity), incoming)

    def _touch_locked(self, key: int) -> None:
        self._access[key] = self._clock()
        if self.max_size is not None:
            self._entries.move_to_end(key)

    def _expired_locked(self, key: int) -> bool:
        if self.ttl_seconds is None:
            return False
        return self._clock() - self._access.get(key, 0.0) >= self.ttl_seconds

    def _remove_locked(self, key: int) -> None:
        identity = self._entries.pop(key, None)
        self._access.pop(key, None)
        if identity is not None:
            identity.release()
            self._evictions += 1
            logger.debug(f"Metric identity {identity} removed from cache")

    def _evict_locked(self) -> None:
        if self.ttl_seconds is not None:
            for key in [k for k in self._entries if self._expired_locked(k)]:
                self._remove_locked(key)
        if self.max_size is not None:
            while len(self._entries) > self.max_size:
                oldest = next(iter(self._entries))
                self._remove_locked(oldest)

    def get(self, key: int) -> Optional[MetricIdentity]:
        """Look up an identity by its content hash."""
        with self._lock:
            identity = self._entries.get(key)
            if identity is not None and self._expired_locked(key):
                self._remove_locked(key)
                return None
            return identity

    def find(self, pattern: str, case_insensitive: bool = False) -> List[MetricIdentity]:
        """
        Find cached identities whose rendered name matches a regex.

        Args:
            pattern: Regular expression matched against `name:k=v,...`
            case_insensitive: Compile the pattern with IGNORECASE

        Returns:
            Matching identities, empty for an empty pattern
        """
        if not pattern or not pattern.strip():
            return []
        regex = re.compile(pattern.strip(), re.IGNORECASE if case_insensitive else 0)
        with self._lock:
            candidates = list(self._entries.values())
        return [i for i in candidates if regex.fullmatch(str(i)) or regex.fullmatch(i.name)]

    def invalidate_all(self) -> None:
        """Drop and release every cached identity."""
        with self._lock:
            for key in list(self._entries):
                self._remove_locked(key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: int) -> bool:
        return key in self._entries

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._entries),
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            max_size=self.max_size,
            ttl_seconds=self.ttl_seconds,
        )
