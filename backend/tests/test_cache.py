import asyncio

import fakeredis

from conftest import redis_cache


def test_add_only_when_absent(redis_server):
    async def scenario():
        cache = redis_cache(redis_server, ttl_seconds=5)
        first = await cache.add("k")
        second = await cache.add("k")
        ttl = await cache.client.pttl("test:k")
        return first, second, ttl

    first, second, ttl = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert 0 < ttl <= 5000


def test_key_is_shared_between_instances(redis_server):
    async def scenario():
        worker_a = redis_cache(redis_server, ttl_seconds=60)
        worker_b = redis_cache(redis_server, ttl_seconds=60)
        return await worker_a.add("1:maintenance"), await worker_b.add("1:maintenance")

    assert asyncio.run(scenario()) == (True, False)


def test_separate_stores_do_not_collide():
    async def scenario():
        a = redis_cache(fakeredis.FakeServer(), ttl_seconds=60)
        b = redis_cache(fakeredis.FakeServer(), ttl_seconds=60)
        return await a.add("k"), await b.add("k")

    assert asyncio.run(scenario()) == (True, True)


def test_delete_releases_key(redis_server):
    async def scenario():
        cache = redis_cache(redis_server, ttl_seconds=60)
        await cache.add("k")
        removed = await cache.delete("k")
        return removed, await cache.exists("k"), await cache.add("k"), await cache.delete("missing")

    assert asyncio.run(scenario()) == (True, False, True, False)


def test_zero_ttl_never_blocks(redis_server):
    async def scenario():
        cache = redis_cache(redis_server, ttl_seconds=0)
        return await cache.add("k"), await cache.add("k"), await cache.exists("k")

    assert asyncio.run(scenario()) == (True, True, False)
