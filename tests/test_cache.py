from arete_core.cache import TTLCache


def test_sweep_evicts_entries_idle_past_ttl():
    cache: TTLCache[str, int] = TTLCache(ttl_seconds=10.0)
    cache.set("a", 1, now=100.0)
    cache.set("b", 2, now=105.0)

    assert cache.sweep(now=112.0) == ["a"]
    assert "a" not in cache
    assert cache.get("b") == 2


def test_touch_keeps_entry_alive():
    cache: TTLCache[str, int] = TTLCache(ttl_seconds=10.0)
    cache.set("a", 1, now=100.0)
    cache.touch("a", now=108.0)

    assert not cache.is_stale("a", now=115.0)
    assert cache.sweep(now=115.0) == []
    assert cache.is_stale("a", now=118.5)


def test_size_bound_evicts_least_recently_updated():
    cache: TTLCache[str, int] = TTLCache(ttl_seconds=60.0, max_entries=2)
    cache.set("a", 1, now=1.0)
    cache.set("b", 2, now=2.0)
    cache.touch("a", now=3.0)
    cache.set("c", 3, now=4.0)

    assert len(cache) == 2
    assert "b" not in cache
    assert cache.get("a") == 1 and cache.get("c") == 3


def test_get_or_create_only_builds_missing_entries():
    cache: TTLCache[str, list] = TTLCache(ttl_seconds=60.0)
    first = cache.get_or_create("k", list, now=1.0)
    first.append("x")
    second = cache.get_or_create("k", list, now=2.0)

    assert second is first
    assert cache.last_updated("k") == 1.0
