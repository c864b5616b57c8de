"""
Tests for the TTL cache
"""

import pytest

from bmsex.utils.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestTTLCache:

    def setup_method(self):
        self.clock = FakeClock()
        self.cache = TTLCache(ttl_seconds=60, max_entries=3, clock=self.clock)

    def test_get_and_set(self):
        self.cache.set('vin', {'make': 'Honda'})

        assert self.cache.get('vin') == {'make': 'Honda'}
        assert self.cache.get('other') is None
        assert self.cache.stats.to_dict() == {'hits': 1, 'misses': 1, 'evictions': 0}

    def test_entries_expire(self):
        self.cache.set('vin', 'decoded')

        self.clock.now += 59
        assert 'vin' in self.cache

        self.clock.now += 1
        assert self.cache.get('vin') is None
        assert len(self.cache) == 0

    def test_per_entry_ttl(self):
        self.cache.set('short', 1, ttl_seconds=5)
        self.cache.set('long', 2)

        self.clock.now += 10

        assert self.cache.get('short') is None
        assert self.cache.get('long') == 2

    def test_oldest_entry_is_evicted(self):
        for key in ('a', 'b', 'c', 'd'):
            self.cache.set(key, key)

        assert len(self.cache) == 3
        assert self.cache.get('a') is None
        assert self.cache.get('d') == 'd'
        assert self.cache.stats.evictions == 1

    def test_rewrite_refreshes_position(self):
        self.cache.set('a', 1)
        self.cache.set('b', 2)
        self.cache.set('c', 3)
        self.cache.set('a', 10)
        self.cache.set('d', 4)

        assert self.cache.get('a') == 10
        assert self.cache.get('b') is None

    def test_purge_expired(self):
        self.cache.set('a', 1, ttl_seconds=5)
        self.cache.set('b', 2, ttl_seconds=5)
        self.cache.set('c', 3)

        self.clock.now += 6

        assert self.cache.purge_expired() == 2
        assert len(self.cache) == 1

    def test_delete_and_clear(self):
        self.cache.set('a', 1)
        self.cache.set('b', 2)

        self.cache.delete('a')
        self.cache.delete('missing')
        assert len(self.cache) == 1

        self.cache.clear()
        assert len(self.cache) == 0

    def test_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            TTLCache(ttl_seconds=0)
