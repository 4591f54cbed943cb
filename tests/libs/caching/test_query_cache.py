import pytest

from libs.caching.query_cache import QueryResultCache


@pytest.mark.asyncio
class TestQueryResultCache:
    async def test_round_trip_and_key_order_independence(self, redis_client):
        cache = QueryResultCache(redis_client, ttl_seconds=300)

        await cache.set({"criteria": {"state": "Active", "type": "Bug"}}, {"items": [1, 2]})
        hit = await cache.get({"criteria": {"type": "Bug", "state": "Active"}})

        assert hit == {"items": [1, 2]}

    async def test_entries_expire_with_ttl(self, redis_client):
        cache = QueryResultCache(redis_client, ttl_seconds=120)
        request = {"criteria": {"state": "Active"}}

        await cache.set(request, {"items": []})

        assert 0 < await redis_client.ttl(cache._key(request)) <= 120

    async def test_miss_and_disabled_cache(self, redis_client):
        assert await QueryResultCache(redis_client).get({"criteria": {}}) is None
        assert await QueryResultCache(None).get({"criteria": {}}) is None

    async def test_clear_only_touches_namespace(self, redis_client):
        cache = QueryResultCache(redis_client)
        await cache.set({"a": 1}, {"items": []})
        await cache.set({"a": 2}, {"items": []})
        await redis_client.set("conversation:keep", "1")

        deleted = await cache.clear()

        assert deleted == 2
        assert await redis_client.get("conversation:keep") == "1"
