from eventpass.services.cache import MemoryCache, RedisCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_memory_cache_expires_entries():
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    cache.set("k", {"a": 1}, ttl_seconds=60)
    assert cache.get("k") == {"a": 1}
    clock.now += 59
    assert cache.get("k") == {"a": 1}
    clock.now += 1
    assert cache.get("k") is None


def test_memory_cache_returns_copies():
    cache = MemoryCache()
    cache.set("k", {"items": [1]}, 60)
    got = cache.get("k")
    got["items"].append(2)
    assert cache.get("k") == {"items": [1]}


def test_delete_many_skips_empty_keys():
    cache = MemoryCache()
    cache.set("a", 1, 60)
    cache.set("b", 2, 60)
    cache.set("c", 3, 60)
    cache.delete_many("a", "", "b")
    assert cache.get("a") is None
    assert cache.get("b") is None
    assert cache.get("c") == 3


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex

    def delete(self, key):
        self.store.pop(key, None)


def test_redis_cache_prefixes_and_sets_ttl():
    r = FakeRedis()
    cache = RedisCache(r, prefix="t:")
    cache.set("sub:user:1", {"hasSubscription": True}, 300)
    assert r.ttls["t:sub:user:1"] == 300
    assert cache.get("sub:user:1") == {"hasSubscription": True}
    cache.delete("sub:user:1")
    assert cache.get("sub:user:1") is None


def test_redis_cache_drops_undecodable_values():
    r = FakeRedis()
    r.store["t:bad"] = "{not json"
    cache = RedisCache(r, prefix="t:")
    assert cache.get("bad") is None
    assert "t:bad" not in r.store
