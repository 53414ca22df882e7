"""
Tests for the FIFO + TTL response cache.
"""

import pytest

from src.dialer.cache import (
    ResponseCache,
    get_response_cache,
    make_key,
    normalize_text,
    reset_response_cache,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestKeys:

    def test_normalize_text(self):
        assert normalize_text("  Hello   THERE\n") == "hello there"

    def test_trivial_text_differences_share_a_key(self):
        assert make_key("synthesis", "Hi there", {"rate": "0%"}) == make_key("synthesis", " hi  there ", {"rate": "0%"})

    def test_options_are_part_of_the_key(self):
        assert make_key("synthesis", "hi", {"rate": "0%"}) != make_key("synthesis", "hi", {"rate": "10%"})

    def test_option_order_does_not_matter(self):
        assert make_key("completion", "x", {"a": 1, "b": 2}) == make_key("completion", "x", {"b": 2, "a": 1})

    def test_kind_separates_keys(self):
        assert make_key("completion", "x") != make_key("synthesis", "x")

    def test_keys_are_hashable_with_nested_options(self):
        key = make_key("synthesis", "x", {"nested": {"b": [1, 2]}})
        assert hash(key) is not None


class TestResponseCache:

    def test_get_missing_returns_none(self):
        cache = ResponseCache()
        assert cache.get(make_key("completion", "nope")) is None
        assert cache.misses == 1

    def test_put_then_get(self):
        cache = ResponseCache()
        key = make_key("completion", "hello")
        cache.put(key, "Hi!")

        assert cache.get(key) == "Hi!"
        assert cache.hits == 1
        assert key in cache

    def test_capacity_plus_one_evicts_first_inserted(self):
        cache = ResponseCache(max_entries=3)
        keys = [make_key("completion", f"q{i}") for i in range(4)]
        for i, key in enumerate(keys):
            cache.put(key, i)

        assert len(cache) == 3
        assert cache.get(keys[0]) is None
        assert [cache.get(k) for k in keys[1:]] == [1, 2, 3]
        assert cache.evictions == 1

    def test_reads_do_not_refresh_eviction_order(self):
        cache = ResponseCache(max_entries=2)
        a, b, c = (make_key("completion", t) for t in "abc")
        cache.put(a, 1)
        cache.put(b, 2)
        cache.get(a)
        cache.put(c, 3)

        assert cache.get(a) is None
        assert cache.get(b) == 2

    def test_replacing_a_key_counts_as_fresh_insertion(self):
        cache = ResponseCache(max_entries=2)
        a, b, c = (make_key("completion", t) for t in "abc")
        cache.put(a, 1)
        cache.put(b, 2)
        cache.put(a, 10)
        cache.put(c, 3)

        assert cache.get(b) is None
        assert cache.get(a) == 10
        assert len(cache) == 2

    def test_expired_entry_is_absent_but_resident(self):
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=300, clock=clock)
        key = make_key("synthesis", "hello")
        cache.put(key, b"audio")

        clock.now += 300
        assert cache.get(key) == b"audio"

        clock.now += 0.5
        assert cache.get(key) is None
        assert key not in cache
        assert len(cache) == 1
        assert cache.entries()[0].key == key

    def test_expired_entries_are_evicted_first_under_pressure(self):
        clock = FakeClock()
        cache = ResponseCache(ttl_seconds=10, max_entries=1, clock=clock)
        old = make_key("completion", "old")
        cache.put(old, "stale")
        clock.now += 60
        cache.put(make_key("completion", "new"), "fresh")

        assert len(cache) == 1
        assert cache.entries()[0].value == "fresh"

    def test_clear(self):
        cache = ResponseCache()
        cache.put(make_key("completion", "x"), 1)
        cache.clear()
        assert len(cache) == 0

    def test_stats(self):
        cache = ResponseCache()
        key = make_key("completion", "x")
        cache.put(key, 1)
        cache.get(key)
        cache.get(make_key("completion", "y"))

        assert cache.stats == {"entries": 1, "hits": 1, "misses": 1, "evictions": 0}

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            ResponseCache(max_entries=0)


class TestSharedCache:

    def test_shared_cache_uses_config(self, monkeypatch):
        from src.dialer.config import get_config

        monkeypatch.setenv("CACHE_MAX_ENTRIES", "7")
        monkeypatch.setenv("CACHE_TTL_SECONDS", "42")
        get_config.cache_clear()
        reset_response_cache()

        cache = get_response_cache()

        assert cache.max_entries == 7
        assert cache.ttl_seconds == 42.0
        assert get_response_cache() is cache
