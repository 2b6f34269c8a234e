"""Contract tests for the KV store primitives.

The Redis variant only runs when TEST_REDIS_URL points at a disposable
database.
"""

import os
import uuid

import pytest

from lumenauth.storage.kv import MemoryKV
from lumenauth.storage.redis_cache import SyncRedisKV

TEST_REDIS_URL = os.getenv("TEST_REDIS_URL")
requires_redis = pytest.mark.skipif(not TEST_REDIS_URL, reason="TEST_REDIS_URL not set")


def _memory():
    return MemoryKV()


def _redis():
    return SyncRedisKV(TEST_REDIS_URL)


@pytest.fixture(params=[_memory, pytest.param(_redis, marks=requires_redis)])
def kv(request):
    return request.param()


@pytest.fixture
def key():
    return f"test:{uuid.uuid4().hex}"


class TestPrimitives:
    async def test_put_get_delete(self, kv, key):
        await kv.put(key, "v", 60)
        assert await kv.get(key) == "v"
        await kv.delete(key)
        assert await kv.get(key) is None

    async def test_replace_only_existing(self, kv, key):
        assert await kv.replace(key, "v") is False
        assert await kv.get(key) is None
        await kv.put(key, "a", 60)
        assert await kv.replace(key, "b") is True
        assert await kv.get(key) == "b"

    async def test_pop_returns_once(self, kv, key):
        await kv.put(key, "v", 60)
        assert await kv.pop(key) == "v"
        assert await kv.pop(key) is None

    async def test_pop_if_equals(self, kv, key):
        await kv.put(key, "123456", 60)
        assert await kv.pop_if_equals(key, "000000") is False
        assert await kv.pop_if_equals(key, "123456") is True
        assert await kv.get(key) is None

    async def test_incr_below(self, kv, key):
        assert await kv.incr_below(key, 2, 60) == 1
        assert await kv.incr_below(key, 2, 60) == 2
        assert await kv.incr_below(key, 2, 60) is None
        assert await kv.get(key) == "2"
        await kv.delete(key)


class TestMemoryExpiry:
    async def test_expired_key_is_missing_for_every_primitive(self, key):
        kv = MemoryKV()
        await kv.put(key, "v", 60)
        kv.expire_now(key)
        assert await kv.get(key) is None
        assert await kv.replace(key, "w") is False
        assert await kv.pop(key) is None

    async def test_replace_keeps_ttl(self, key):
        kv = MemoryKV()
        await kv.put(key, "v", 60)
        expires_at = kv._data[key][1]
        await kv.replace(key, "w")
        assert kv._data[key][1] == expires_at
