"""
Pytest configuration and shared fixtures.

Provides:
- a fresh fakeredis client per test
- test-mode environment with cached settings cleared
- an application wired to fakeredis, with authentication overridden
- small builders for work items and provider responses
"""

from typing import Any, Dict, Optional

import httpx
import pytest

from api.auth import User, get_current_user
from api.dependencies import ServiceContainer
from api.main import create_app
from api.schemas.query import WorkItem
from libs.common.settings import Settings, get_settings

TEST_USER = User(uid="user-ana", email="ana@example.com")


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Run every test in test mode with no real credentials picked up from the shell."""
    monkeypatch.setenv("ADOQ_APP_ENV", "test")
    for name in ("ADO_ORGANIZATION", "ADO_PROJECT", "ADO_PAT", "OPENAI_API_KEY", "OPENROUTER_API_KEY", "REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f"ADOQ_{name}", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def redis_client():
    """
    Provide fakeredis client for testing.

    This avoids requiring actual Redis server during tests.
    """
    from fakeredis import aioredis as fakeredis

    client = fakeredis.FakeRedis(decode_responses=True)

    yield client

    await client.flushdb()
    await client.aclose()


@pytest.fixture
async def container(redis_client):
    """Real service container on fakeredis; ADO and LLM credentials are absent."""
    container = await ServiceContainer.create(Settings(), redis_client=redis_client)
    yield container
    await container.provider_client.aclose()


@pytest.fixture
def app(container):
    application = create_app()
    application.state.container = container
    application.dependency_overrides[get_current_user] = lambda: TEST_USER
    return application


@pytest.fixture
async def api_client(app):
    """HTTP client bound to the app on the test event loop. The lifespan is not run."""
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


def make_work_item(work_item_id: int, **overrides: Any) -> WorkItem:
    defaults: Dict[str, Any] = {
        "id": work_item_id,
        "title": f"Work item {work_item_id}",
        "type": "Bug",
        "state": "Active",
        "assigned_to": "Ana Silva",
    }
    defaults.update(overrides)
    return WorkItem(**defaults)


def completion_body(content: str, usage: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    """Chat completion response payload as returned by OpenAI-compatible APIs."""
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1760000000,
        "model": "gpt-4o-mini",
        "choices": [{"index": 0, "finish_reason": "stop", "message": {"role": "assistant", "content": content}}],
        "usage": usage or {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }
