import threading
import time

import pytest

from servicekit.cache import (
    Cache,
    CacheNotFoundError,
    Config,
    MemoryCache,
    RedisCache,
    UnknownBackendError,
    get_or_load,
    new,
    register,
    registered_names,
    unregister,
)


class FakeRedisClient:
    def __init__(self):
        self.data = {}
        self.calls = []

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, px=None):
        self.calls.append(("set", key, px))
        self.data[key] = value
        return True

    def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    def exists(self, key):
        return 1 if key in self.data else 0


class BrokenCache(Cache):
    def __init__(self, get_error=None, set_error=None):
        self.get_error = get_error
        self.set_error = set_error

    def get(self, key):
        raise self.get_error or CacheNotFoundError()

    def set(self, key, value, ttl=0.0):
        if self.set_error:
            raise self.set_error

    def delete(self, key):
        pass

    def exists(self, key):
        return False


# Memory


def test_memory_set_get():
    c = MemoryCache()
    c.set("k1", b"hello", 60)
    assert c.get("k1") == b"hello"


def test_memory_get_miss():
    with pytest.raises(CacheNotFoundError):
        MemoryCache().get("missing")


def test_memory_get_expired():
    c = MemoryCache()
    c.set("k1", b"data", 0.001)
    time.sleep(0.01)
    with pytest.raises(CacheNotFoundError):
        c.get("k1")


def test_memory_get_no_ttl():
    c = MemoryCache()
    c.set("k1", b"forever", 0)
    assert c.get("k1") == b"forever"


def test_memory_stores_copy():
    c = MemoryCache()
    buf = bytearray(b"original")
    c.set("k1", buf, 60)
    buf[0] = ord("X")
    assert c.get("k1") == b"original"


def test_memory_delete():
    c = MemoryCache()
    c.set("k1", b"data", 60)
    c.delete("k1")
    with pytest.raises(CacheNotFoundError):
        c.get("k1")


def test_memory_exists():
    c = MemoryCache()
    assert c.exists("missing") is False
    c.set("k1", b"data", 60)
    assert c.exists("k1") is True


def test_memory_exists_expired():
    c = MemoryCache()
    c.set("k1", b"data", 0.001)
    time.sleep(0.01)
    assert c.exists("k1") is False


# get_or_load


def test_get_or_load_cache_hit():
    c = MemoryCache()
    c.set("k1", b"cached", 60)
    called = []

    def loader():
        called.append(1)
        return b"loaded"

    assert get_or_load(c, "k1", 60, loader) == b"cached"
    assert called == []


def test_get_or_load_miss_loads_and_caches():
    c = MemoryCache()
    assert get_or_load(c, "k1", 60, lambda: b"loaded") == b"loaded"
    assert c.get("k1") == b"loaded"


def test_get_or_load_loader_error():
    loader_err = RuntimeError("db down")

    def loader():
        raise loader_err

    with pytest.raises(RuntimeError) as excinfo:
        get_or_load(MemoryCache(), "k-err", 60, loader)
    assert excinfo.value is loader_err


def test_get_or_load_propagates_get_error():
    c = BrokenCache(get_error=ConnectionError("down"))
    called = []
    with pytest.raises(ConnectionError):
        get_or_load(c, "k1", 60, lambda: called.append(1) or b"x")
    assert called == []


def test_get_or_load_ignores_set_failure():
    c = BrokenCache(set_error=ConnectionError("down"))
    assert get_or_load(c, "k-set", 60, lambda: b"data") == b"data"


def test_get_or_load_singleflight_deduplicates_calls():
    c = MemoryCache()
    count = 0
    count_lock = threading.Lock()

    def loader():
        nonlocal count
        with count_lock:
            count += 1
        time.sleep(0.05)
        return b"result"

    results = []
    results_lock = threading.Lock()

    def worker():
        value = get_or_load(c, "sf-key", 60, loader)
        with results_lock:
            results.append(value)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert count <= 2
    assert len(results) == 10
    assert set(results) == {b"result"}
    assert c.get("sf-key") == b"result"


# factory


def test_new_default_backend():
    c = new(Config())
    assert isinstance(c, MemoryCache)
    c.set("a", b"1")
    assert c.get("a") == b"1"


def test_new_memory_backend():
    c = new(Config(backend="memory"))
    assert isinstance(c, MemoryCache)
    assert c.exists("a") is False


def test_new_unknown_backend():
    with pytest.raises(UnknownBackendError) as excinfo:
        new(Config(backend="nope"))
    assert "nope" in str(excinfo.value)
    assert "registered" in str(excinfo.value)


def test_register_adds_backend():
    name = "test-fake-cache"
    marker = MemoryCache()
    register(name, lambda _cfg: marker)
    try:
        assert name in registered_names()
        assert new(Config(backend=name)) is marker
    finally:
        unregister(name)
    assert name not in registered_names()


def test_new_redis_backend():
    c = new(Config(backend="redis", addr="localhost:6379"))
    assert isinstance(c, RedisCache)
    kwargs = c.client.connection_pool.connection_kwargs
    assert kwargs["host"] == "localhost"
    assert kwargs["port"] == 6379


# Redis with a stand-in client


def test_redis_get_miss():
    with pytest.raises(CacheNotFoundError):
        RedisCache(FakeRedisClient()).get("missing")


def test_redis_set_get_with_ttl():
    client = FakeRedisClient()
    c = RedisCache(client)
    c.set("k1", b"v", 1.5)
    c.set("k2", b"w", 0)
    assert c.get("k1") == b"v"
    assert client.calls == [("set", "k1", 1500), ("set", "k2", None)]


def test_redis_exists_and_delete():
    c = RedisCache(FakeRedisClient())
    c.set("k1", b"v")
    assert c.exists("k1") is True
    c.delete("k1")
    assert c.exists("k1") is False