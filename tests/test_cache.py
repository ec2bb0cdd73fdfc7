import time

from ecotrace_api.app.core.cache import MemoryCache


def test_get_returns_stored_value_and_counts_hits():
    cache = MemoryCache(max_size=10, default_ttl=60)
    cache.set("dashboard:u1:carbon:weekly", {"carbon_kg": 1.5})

    assert cache.get("dashboard:u1:carbon:weekly") == {"carbon_kg": 1.5}
    assert cache.get("missing") is None
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5


def test_expired_entries_are_dropped():
    cache = MemoryCache(max_size=10, default_ttl=60)
    cache.set("short", 1, ttl=0.01)
    time.sleep(0.02)

    assert not cache.has("short")
    assert cache.get("short") is None


def test_least_recently_used_entry_is_evicted():
    cache = MemoryCache(max_size=2, default_ttl=60)
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.set("c", 3)

    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert cache.get("c") == 3
    assert cache.stats()["evictions"] == 1


def test_delete_prefix_only_removes_matching_keys():
    cache = MemoryCache()
    cache.set("dashboard:u1:carbon:weekly", 1)
    cache.set("dashboard:u1:stats:weekly", 2)
    cache.set("dashboard:u2:carbon:weekly", 3)

    assert cache.delete_prefix("dashboard:u1:") == 2
    assert cache.get("dashboard:u2:carbon:weekly") == 3


def test_cleanup_reports_removed_entries():
    cache = MemoryCache()
    cache.set("old", 1, ttl=0)
    cache.set("fresh", 2, ttl=60)

    assert cache.cleanup() == 1
    assert cache.stats()["size"] == 1
