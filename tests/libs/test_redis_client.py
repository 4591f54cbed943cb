"""
Tests for the Redis client factory.

Tests verify:
- fakeredis is used in the test environment
- a missing REDIS_URL disables Redis instead of failing
- an unreachable server disables Redis instead of failing
- health checks and close tolerate a missing client
"""

import pytest

from libs.caching.redis_client import close_redis_client, create_redis_client, health_check
from libs.common.settings import Settings


@pytest.mark.asyncio
class TestRedisClient:
    async def test_fake_client_in_test_environment(self):
        client = await create_redis_client(Settings(app_env="test"))

        assert client is not None
        assert await client.ping() is True
        assert await client.set("adoq:test", "value", ex=60) is True
        assert await client.get("adoq:test") == "value"
        assert 0 < await client.ttl("adoq:test") <= 60

        await close_redis_client(client)

    async def test_missing_url_disables_redis(self):
        client = await create_redis_client(Settings(app_env="development"), use_fake=False)

        assert client is None

    async def test_unreachable_server_disables_redis(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")

        client = await create_redis_client(Settings(app_env="development"), use_fake=False)

        assert client is None

    async def test_health_check(self, redis_client):
        assert await health_check(redis_client) is True
        assert await health_check(None) is False

    async def test_close_none_is_noop(self):
        await close_redis_client(None)
