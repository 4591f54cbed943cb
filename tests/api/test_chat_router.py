"""
Tests for the /api/chat endpoints.

The orchestrator's ``process`` is replaced with an AsyncMock; everything
else (conversation store, rate limiter, error handlers) is real and runs on
fakeredis.
"""

from unittest.mock import AsyncMock

import pytest
import redis

from api.middleware.rate_limiter import RateLimiter
from api.orchestrators.query_orchestrator import ERROR_SUMMARY
from api.schemas.query import OrchestratorResult, ResultMetadata
from libs.caching.rate_limit import RateLimitCounter
from libs.models.conversation import MessageRole


def ok_result(conversation_id="conv-1"):
    return OrchestratorResult(
        success=True,
        summary="You have 2 active bugs.",
        raw_data=[{"id": 1, "title": "Login fails"}],
        metadata=ResultMetadata(data_sources=["rest"], confidence=1.0, processing_time=120),
        conversation_id=conversation_id,
    )


@pytest.mark.asyncio
class TestPostChat:
    async def test_successful_query(self, api_client, container):
        container.orchestrator.process = AsyncMock(return_value=ok_result())

        response = await api_client.post(
            "/api/chat",
            json={"query": "  show my active bugs ", "userId": "Ana@Example.com", "options": {"skipCache": True}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["conversationId"] == "conv-1"
        assert body["metadata"]["dataSources"] == ["rest"]
        args, kwargs = container.orchestrator.process.await_args
        assert args == ("show my active bugs", "ana@example.com")
        assert kwargs["options"].skip_cache is True

    @pytest.mark.parametrize("payload", [{"userId": "ana@example.com"}, {"query": "bugs"}, {"query": " ", "userId": "ana@example.com"}])
    async def test_missing_fields_are_bad_request(self, api_client, container, payload):
        container.orchestrator.process = AsyncMock(return_value=ok_result())

        response = await api_client.post("/api/chat", json=payload)

        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "INVALID_REQUEST"
        container.orchestrator.process.assert_not_awaited()

    async def test_user_id_must_match_session(self, api_client, container):
        container.orchestrator.process = AsyncMock(return_value=ok_result())

        response = await api_client.post("/api/chat", json={"query": "bugs", "userId": "ben@example.com"})

        assert response.status_code == 403
        assert response.json()["error_code"] == "UNAUTHORIZED"

    async def test_foreign_conversation_forbidden(self, api_client, container):
        container.orchestrator.process = AsyncMock(return_value=ok_result())
        conversation = await container.store.create_conversation("ben@example.com")

        response = await api_client.post(
            "/api/chat",
            json={"query": "bugs", "userId": "ana@example.com", "conversationId": conversation.id},
        )

        assert response.status_code == 403
        container.orchestrator.process.assert_not_awaited()

    async def test_rate_limit(self, api_client, container, redis_client):
        container.orchestrator.process = AsyncMock(return_value=ok_result())
        container.chat_limiter = RateLimiter(RateLimitCounter(redis_client, max_requests=1, window_seconds=120))

        first = await api_client.post("/api/chat", json={"query": "bugs", "userId": "ana@example.com"})
        second = await api_client.post("/api/chat", json={"query": "bugs", "userId": "ana@example.com"})

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["detail"]["error_code"] == "RATE_LIMIT_EXCEEDED"
        assert "minute" in second.json()["detail"]["message"]
        assert int(second.headers["Retry-After"]) >= 1

    async def test_unexpected_failure_returns_fallback_payload(self, api_client, container):
        container.orchestrator.process = AsyncMock(side_effect=RuntimeError("graph exploded"))

        response = await api_client.post("/api/chat", json={"query": "bugs", "userId": "ana@example.com"})

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["summary"] == ERROR_SUMMARY
        assert body["metadata"]["errors"] == ["RuntimeError"]

    async def test_redis_outage_during_prechecks_returns_fallback_payload(self, api_client, container):
        container.orchestrator.process = AsyncMock(return_value=ok_result())
        container.chat_limiter.check_rate_limit = AsyncMock(side_effect=redis.ConnectionError("down"))

        response = await api_client.post("/api/chat", json={"query": "bugs", "userId": "ana@example.com"})

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["summary"] == ERROR_SUMMARY
        assert body["metadata"]["errors"] == ["ConnectionError"]
        container.orchestrator.process.assert_not_awaited()

    async def test_redis_outage_reading_conversation_returns_fallback_payload(self, api_client, container):
        container.orchestrator.process = AsyncMock(return_value=ok_result())
        container.store.get_conversation = AsyncMock(side_effect=redis.ConnectionError("down"))

        response = await api_client.post(
            "/api/chat", json={"query": "bugs", "userId": "ana@example.com", "conversationId": "c1"}
        )

        assert response.status_code == 500
        assert response.json()["summary"] == ERROR_SUMMARY

    async def test_not_configured_query_still_answers(self, api_client):
        # No ADO or LLM credentials: heuristics run and retrieval fails cleanly
        response = await api_client.post("/api/chat", json={"query": "show my active bugs", "userId": "ana@example.com"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["metadata"]["stages"]["intent_analysis"] == "fellback"
        assert body["metadata"]["stages"]["retrieval"] == "failed"
        assert body["conversationId"]


@pytest.mark.asyncio
class TestChatContext:
    async def test_stats(self, api_client, container):
        conversation = await container.store.create_conversation("ana@example.com")
        await container.store.add_message(conversation.id, MessageRole.USER, "show bugs")

        response = await api_client.get("/api/chat", params={"conversationId": conversation.id})

        assert response.status_code == 200
        assert response.json()["messageCount"] == 1
        assert response.json()["userMessages"] == 1

    async def test_stats_for_unknown_conversation(self, api_client):
        response = await api_client.get("/api/chat", params={"conversationId": "missing"})

        assert response.status_code == 404
        assert response.json()["error_code"] == "CONVERSATION_NOT_FOUND"

    async def test_clear(self, api_client, container):
        conversation = await container.store.create_conversation("ana@example.com")

        response = await api_client.delete("/api/chat", params={"conversationId": conversation.id})

        assert response.status_code == 200
        assert response.json() == {"success": True, "conversationId": conversation.id}
        assert await container.store.get_conversation(conversation.id) is None

    async def test_clear_foreign_conversation(self, api_client, container):
        conversation = await container.store.create_conversation("ben@example.com")

        response = await api_client.delete("/api/chat", params={"conversationId": conversation.id})

        assert response.status_code == 403
        assert await container.store.get_conversation(conversation.id) is not None
