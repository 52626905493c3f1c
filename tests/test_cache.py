# tests/test_cache.py
"""Tests for the remote key cache."""

import pytest

from feedfed.cache import CacheEntry, CacheStats, KeyCache

BOB = "https://remote.example/users/bob"
CAROL = "https://remote.example/users/carol"
PEM = "-----BEGIN PUBLIC KEY-----\nMIIB\n-----END PUBLIC KEY-----\n"


@pytest.fixture
def cache(clock):
    """Create in-memory cache instance."""
    return KeyCache(ttl=60, clock=clock)


class TestKeyCache:
    """Test KeyCache class."""

    def test_cache_creation(self, temp_dir):
        """Test cache directory is created."""
        cache = KeyCache(temp_dir / "new_cache")
        assert cache.cache_dir.exists()

    def test_put_and_get(self, cache):
        cache.put(BOB, PEM, key_id=f"{BOB}#main-key", inbox=f"{BOB}/inbox")

        entry = cache.get(BOB)
        assert entry.public_key_pem == PEM
        assert entry.key_id == f"{BOB}#main-key"
        assert entry.inbox == f"{BOB}/inbox"
        assert BOB in cache

    def test_cache_miss(self, cache):
        assert cache.get("https://nowhere.example/users/x") is None

    def test_stats_hit_miss(self, cache):
        cache.put(BOB, PEM)

        cache.get(CAROL)
        assert cache.stats.misses == 1

        cache.get(BOB)
        assert cache.stats.hits == 1

        assert cache.stats.hit_rate == 0.5

    def test_entry_expires_after_ttl(self, cache, clock):
        cache.put(BOB, PEM)

        clock.advance(59)
        assert cache.get(BOB) is not None

        clock.advance(1)
        assert cache.get(BOB) is None
        assert BOB not in cache
        assert cache.stats.evictions == 1

    def test_put_refreshes_expiry(self, cache, clock):
        cache.put(BOB, PEM)
        clock.advance(50)
        cache.put(BOB, PEM)
        clock.advance(50)
        assert cache.get(BOB) is not None

    def test_invalidate(self, cache):
        cache.put(BOB, PEM)
        assert cache.invalidate(BOB) is True
        assert cache.get(BOB) is None
        assert cache.invalidate(BOB) is False

    def test_peek_ignores_expiry(self, cache, clock):
        cache.put(BOB, PEM)
        clock.advance(120)
        assert cache.peek(BOB) is not None
        assert cache.stats.hits == 0
        assert cache.stats.misses == 0

    def test_prune(self, cache, clock):
        cache.put(BOB, PEM)
        clock.advance(30)
        cache.put(CAROL, PEM)
        clock.advance(31)

        assert cache.prune() == 1
        assert BOB not in cache
        assert CAROL in cache

    def test_clear(self, cache):
        cache.put(BOB, PEM)
        cache.put(CAROL, PEM)
        assert cache.stats.total_entries == 2

        cache.clear()

        assert cache.stats.total_entries == 0
        assert len(cache) == 0

    def test_list_entries(self, cache):
        cache.put(BOB, PEM)
        cache.put(CAROL, PEM)
        uris = {e.actor_uri for e in cache.list_entries()}
        assert uris == {BOB, CAROL}

    def test_persistence(self, temp_dir, clock):
        """Test cache persists across instances."""
        cache1 = KeyCache(temp_dir, clock=clock)
        cache1.put(BOB, PEM, inbox=f"{BOB}/inbox")

        cache2 = KeyCache(temp_dir, clock=clock)
        entry = cache2.get(BOB)
        assert entry.public_key_pem == PEM
        assert entry.inbox == f"{BOB}/inbox"

    def test_failed_write_keeps_previous_index(self, temp_dir, clock, monkeypatch):
        cache = KeyCache(temp_dir, clock=clock)
        cache.put(BOB, PEM)

        def fail(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("feedfed.fs.os.replace", fail)
        with pytest.raises(OSError):
            cache.put(CAROL, PEM)
        monkeypatch.undo()

        reloaded = KeyCache(temp_dir, clock=clock)
        assert reloaded.peek(BOB) is not None
        assert CAROL not in reloaded
        assert [p.name for p in temp_dir.iterdir()] == ["index.json"]

    def test_corrupt_index_starts_empty(self, temp_dir):
        (temp_dir / "index.json").write_text("{not json")
        cache = KeyCache(temp_dir)
        assert len(cache) == 0


class TestCacheEntry:
    """Test CacheEntry serialization."""

    def test_round_trip(self):
        entry = CacheEntry(BOB, PEM, fetched_at=100.0, ttl=60, key_id="k", inbox="i")
        assert CacheEntry.from_dict(entry.to_dict()) == entry

    def test_expired(self):
        entry = CacheEntry(BOB, PEM, fetched_at=100.0, ttl=60)
        assert not entry.expired(159.0)
        assert entry.expired(160.0)


class TestCacheStats:
    """Test CacheStats class."""

    def test_hit_rate_calculation(self):
        """Test hit rate calculation."""
        stats = CacheStats()

        stats.record_hit()
        stats.record_hit()
        stats.record_miss()

        assert stats.hits == 2
        assert stats.misses == 1
        assert abs(stats.hit_rate - 0.666) < 0.01

    def test_initial_hit_rate(self):
        """Test hit rate with no requests."""
        stats = CacheStats()
        assert stats.hit_rate == 0.0
