# tests/test_cache_locks.py
import json
from unittest.mock import MagicMock

import pytest
import redis

from sluice_core.cache import MemoryCache, RedisCache, create_cache
from sluice_core.errors import ConnectionError
from sluice_core.locks import LockManager, LockOutcome, lock_key


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_memory_cache_set_nx_and_expiry(clock):
    cache = MemoryCache(clock=clock)

    assert cache.set_nx("k", "v1", ttl=10)
    assert not cache.set_nx("k", "v2", ttl=10)
    assert cache.get("k") == "v1"
    assert cache.ttl("k") == 10

    clock.now += 11
    assert cache.get("k") is None
    assert cache.set_nx("k", "v2", ttl=10)


def test_memory_cache_delete_if_equals():
    cache = MemoryCache()
    cache.set("k", "mine")
    assert not cache.delete_if_equals("k", "theirs")
    assert cache.delete_if_equals("k", "mine")
    assert cache.get("k") is None


def test_memory_cache_keys_pattern():
    cache = MemoryCache()
    cache.set("etl:lock:1", "a")
    cache.set("etl:lock:2", "b")
    cache.set("etl:cancel:9", "true")
    assert cache.keys("etl:lock:*") == ["etl:lock:1", "etl:lock:2"]


def test_lock_is_exclusive():
    locks = LockManager(MemoryCache())

    first = locks.acquire(7, "worker-a")
    second = locks.acquire(7, "worker-b")

    assert first.granted
    assert second.outcome == LockOutcome.ALREADY_HELD
    assert second.lock.holder == "worker-a"


def test_release_only_by_holder():
    locks = LockManager(MemoryCache())
    locks.acquire(7, "worker-a")

    assert not locks.release(7, "worker-b")
    assert locks.get(7) is not None
    assert locks.release(7, "worker-a")
    assert locks.get(7) is None
    assert not locks.release(7, "worker-a")


def test_lock_expires_after_ttl(clock):
    locks = LockManager(MemoryCache(clock=clock), default_ttl=60)
    locks.acquire(7, "crashed-worker")

    clock.now += 61

    assert locks.acquire(7, "worker-b").granted


def test_list_and_force_clear():
    cache = MemoryCache()
    locks = LockManager(cache, default_ttl=300)
    locks.acquire(1, "w")
    locks.acquire(2, "w")

    listed = locks.list()
    assert [lock.dataset_id for lock in listed] == [1, 2]
    assert listed[0].remaining_ttl == 300
    assert listed[0].ttl == 300

    assert locks.force_clear(1)
    assert not locks.force_clear(1)
    assert locks.force_clear_all() == 1
    assert locks.list() == []


def test_unrecognized_lock_payload_is_listed():
    cache = MemoryCache()
    cache.set(lock_key(3), "legacy-holder")
    lock = LockManager(cache).get(3)
    assert lock.holder == "legacy-holder"


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.register_script.return_value = MagicMock(return_value=1)
    return client


def test_redis_cache_set_nx(redis_client):
    redis_client.set.return_value = True
    cache = RedisCache("redis://localhost:6379/0", client=redis_client)

    assert cache.set_nx("etl:lock:1", "payload", 7200)
    redis_client.set.assert_called_once_with("etl:lock:1", "payload", nx=True, ex=7200)


def test_redis_cache_set_nx_taken(redis_client):
    redis_client.set.return_value = None
    cache = RedisCache("redis://localhost:6379/0", client=redis_client)
    assert not cache.set_nx("etl:lock:1", "payload", 7200)


def test_redis_cache_compare_and_delete(redis_client):
    cache = RedisCache("redis://localhost:6379/0", client=redis_client)

    assert cache.delete_if_equals("etl:lock:1", "payload")

    script = redis_client.register_script.return_value
    script.assert_called_once_with(keys=["etl:lock:1"], args=["payload"])


def test_redis_cache_ttl_semantics(redis_client):
    cache = RedisCache("redis://localhost:6379/0", client=redis_client)
    redis_client.ttl.return_value = -2
    assert cache.ttl("missing") is None
    redis_client.ttl.return_value = 42
    assert cache.ttl("present") == 42


def test_redis_unavailable_maps_to_connection_error(redis_client):
    redis_client.get.side_effect = redis.ConnectionError("Connection refused")
    cache = RedisCache("redis://localhost:6379/0", client=redis_client)

    with pytest.raises(ConnectionError, match="Redis unavailable"):
        cache.get("etl:lock:1")


def test_lock_manager_over_redis(redis_client):
    redis_client.set.return_value = True
    locks = LockManager(RedisCache("redis://localhost:6379/0", client=redis_client))

    result = locks.acquire(5, "worker-a", ttl=120)

    assert result.granted
    key, payload = redis_client.set.call_args.args
    assert key == "etl:lock:5"
    assert json.loads(payload)["holder"] == "worker-a"
    assert redis_client.set.call_args.kwargs == {"nx": True, "ex": 120}


def test_create_cache_without_url_is_memory():
    assert isinstance(create_cache(None), MemoryCache)
