"""
Unit tests for the identity cache.
"""

import threading
from unittest.mock import patch

import pytest

from tsdb_shipper.exceptions import IdentityCollisionError
from tsdb_shipper.identity import IdentityCache


class TestIdentityCache:
    """Test lookups, stats and global tags."""

    def test_hits_and_misses(self):
        cache = IdentityCache()

        cache.intern("a")
        cache.intern("a")
        cache.intern("b")

        stats = cache.stats()
        assert stats.size == 2
        assert stats.misses == 2
        assert stats.hits == 1
        assert stats.hit_rate == pytest.approx(1 / 3)

    def test_hits_counted_across_threads(self):
        cache = IdentityCache()
        cache.intern("shared", {"host": "h1"})
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            for _ in range(1000):
                cache.intern("shared", {"host": "h1"})

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = cache.stats()
        assert stats.misses == 1
        assert stats.hits == 16000

    def test_get_by_content_hash(self):
        cache = IdentityCache()
        identity = cache.intern("cpu.load", {"host": "h1"})

        assert cache.get(identity.content_hash) is identity
        assert identity.content_hash in cache
        assert cache.get(12345) is None

    def test_global_tags_merged(self):
        cache = IdentityCache(global_tags={"app": "svc", "host": "h0"})

        identity = cache.intern("m", {"host": "h1"})

        assert dict(identity.tags) == {"app": "svc", "host": "h1"}

    def test_prefix_and_extension(self):
        cache = IdentityCache()
        identity = cache.intern("load", prefix="cpu", extension="p99")
        assert identity.name == "cpu.load.p99"

    def test_find(self):
        cache = IdentityCache()
        cpu = cache.intern("cpu.load", {"host": "h1"})
        cache.intern("mem.used", {"host": "h1"})

        assert cache.find(r"cpu\..*") == [cpu]
        assert cache.find(r"CPU\..*", case_insensitive=True) == [cpu]
        assert cache.find(r".*host=h1") and len(cache.find(r".*host=h1")) == 2
        assert cache.find("") == []

    def test_invalidate_all_releases(self):
        cache = IdentityCache()
        a = cache.intern("a")
        b = cache.intern("b")

        cache.invalidate_all()

        assert len(cache) == 0
        assert a.released and b.released
        assert cache.intern("a") is not a

    def test_collision_detected(self):
        cache = IdentityCache()
        cache.intern("first")

        with patch("tsdb_shipper.identity.cache.content_hash", return_value=cache.intern("first").content_hash):
            with pytest.raises(IdentityCollisionError) as exc_info:
                cache.intern("second")

        assert "first" in str(exc_info.value)
        assert "second" in str(exc_info.value)

    def test_invalid_max_size(self):
        with pytest.raises(ValueError):
            IdentityCache(max_size=0)


class TestEviction:
    """Test LRU and TTL bounds."""

    def test_lru_evicts_least_recently_used(self, clock):
        cache = IdentityCache(max_size=2, clock=clock)
        a = cache.intern("a")
        b = cache.intern("b")
        cache.intern("a")

        c = cache.intern("c")

        assert len(cache) == 2
        assert a.content_hash in cache
        assert c.content_hash in cache
        assert b.content_hash not in cache
        assert b.released
        assert not a.released
        assert cache.stats().evictions == 1

    def test_ttl_expires_idle_identities(self, clock):
        cache = IdentityCache(ttl_seconds=10, clock=clock)
        a = cache.intern("a")

        clock.advance(5)
        assert cache.intern("a") is a

        clock.advance(11)
        fresh = cache.intern("a")

        assert fresh is not a
        assert fresh == a
        assert a.released
        assert cache.stats().evictions == 1

    def test_ttl_get_returns_none_when_expired(self, clock):
        cache = IdentityCache(ttl_seconds=1, clock=clock)
        a = cache.intern("a")

        clock.advance(2)

        assert cache.get(a.content_hash) is None
        assert len(cache) == 0
