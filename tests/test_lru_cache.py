import time

from splitflag.odp.lru_cache import LRUCache


def test_save_and_lookup():
    cache = LRUCache(10, 600)
    cache.save("a", ["s1"])
    assert cache.lookup("a") == ["s1"]
    assert cache.lookup("b") is None


def test_evicts_least_recently_used():
    cache = LRUCache(2, 600)
    cache.save("a", 1)
    cache.save("b", 2)
    assert cache.lookup("a") == 1  # a is now the most recent
    cache.save("c", 3)
    assert cache.keys() == ["c", "a"]
    assert cache.lookup("b") is None
    assert len(cache) == 2


def test_save_existing_key_refreshes_value_and_order():
    cache = LRUCache(2, 600)
    cache.save("a", 1)
    cache.save("b", 2)
    cache.save("a", 10)
    assert cache.keys() == ["a", "b"]
    assert cache.peek("a") == 10


def test_entries_expire():
    cache = LRUCache(10, 0.05)
    cache.save("a", 1)
    time.sleep(0.1)
    assert cache.peek("a") == 1
    assert cache.lookup("a") is None
    assert len(cache) == 0


def test_zero_timeout_never_expires():
    cache = LRUCache(10, 0)
    cache.save("a", 1)
    time.sleep(0.01)
    assert cache.lookup("a") == 1


def test_zero_size_disables_cache():
    cache = LRUCache(0, 600)
    cache.save("a", 1)
    assert cache.lookup("a") is None
    assert len(cache) == 0


def test_remove_and_reset():
    cache = LRUCache(10, 600)
    cache.save("a", 1)
    cache.save("b", 2)
    cache.remove("a")
    cache.remove("missing")
    assert cache.keys() == ["b"]
    cache.reset()
    assert len(cache) == 0
