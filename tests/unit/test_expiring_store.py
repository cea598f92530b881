"""Unit tests for the in-memory expiring store"""

import threading

from fxpay_gateway.infrastructure.cache.expiring import ExpiringStore


def test_get_returns_value_until_expiry(clock):
    store = ExpiringStore(clock)
    store.set("a", 1, ttl_seconds=10)

    clock.advance(9.9)
    assert store.get("a") == 1

    clock.advance(0.1)
    assert store.get("a") is None


def test_purge_removes_only_expired(clock):
    store = ExpiringStore(clock)
    store.set("short", 1, ttl_seconds=5)
    store.set("long", 2, ttl_seconds=60)

    clock.advance(10)

    assert store.purge_expired() == 1
    assert len(store) == 1
    assert store.get("long") == 2


def test_mutate_sees_none_for_expired_entry(clock):
    """An expired value is treated as missing by mutate()"""
    store = ExpiringStore(clock)
    store.set("k", 41, ttl_seconds=1)
    clock.advance(2)

    seen = store.mutate("k", lambda current: (1, 10, current))

    assert seen is None
    assert store.get("k") == 1


def test_mutate_is_atomic_across_threads():
    """Concurrent increments never lose an update"""
    store = ExpiringStore()

    def increment():
        for _ in range(500):
            store.mutate("counter", lambda current: ((current or 0) + 1, 60, None))

    threads = [threading.Thread(target=increment) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.get("counter") == 4000


def test_delete_and_clear(clock):
    store = ExpiringStore(clock)
    store.set("a", 1, 10)
    store.set("b", 2, 10)

    store.delete("a")
    store.delete("missing")
    assert store.get("a") is None

    store.clear()
    assert len(store) == 0
