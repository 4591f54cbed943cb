"""
Tests for the query orchestrator graph.

Tests verify:
- work item path: detection, intent, retrieval, synthesis and recording
- collection path skips intent analysis and answers from reference data
- retrieval failure aborts with an unsuccessful result that is still recorded
- timeout returns a partial result built from the last completed stage
- invalid input, ownership and confidence scoring
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from api.composer.synthesis import Synthesis
from api.orchestrators.intent_analyzer import IntentAnalyzer
from api.orchestrators.query_orchestrator import ERROR_SUMMARY, INVALID_INPUT_SUMMARY, QueryOrchestrator
from api.schemas.query import EntityKind, FetchResult, QueryAnalysis, SearchCriteria, StageOutcome
from conftest import make_work_item
from libs.caching.metadata_cache import MetadataCache
from libs.common.errors import AuthorizationError, TransientUpstreamError
from libs.memory.conversation_store import ConversationContextStore
from libs.models.conversation import MessageRole

BUG_ANALYSIS = QueryAnalysis(
    needs_backend_data=True,
    intent="list_work_items",
    search_criteria=SearchCriteria(type="Bug", status="Active"),
)


class FakeSelector:
    def __init__(self, result=None, error=None):
        self.result = result or FetchResult(items=[make_work_item(1), make_work_item(2)], source="rest", queries_executed=2)
        self.error = error
        self.calls = []

    async def fetch(self, criteria, prefer_enhanced=True, filters=None, skip_cache=False, deadline=None):
        self.calls.append(criteria)
        if self.error:
            raise self.error
        return self.result


class ProjectSource:
    async def fetch_reference_data(self, category):
        if category == "projects":
            return [{"id": "p1", "name": "Fabrikam"}, {"id": "p2", "name": "Tailspin"}]
        return []


def make_analyzer(analysis=BUG_ANALYSIS, outcome=StageOutcome.SUCCEEDED):
    analyzer = MagicMock()
    analyzer.analyze = AsyncMock(return_value=(analysis, outcome))
    return analyzer


def make_synthesizer(summary="You have 2 active bugs.", outcome=StageOutcome.SUCCEEDED):
    synthesizer = MagicMock()
    synthesizer.synthesize = AsyncMock(
        return_value=(Synthesis(summary=summary, insights=["Both unassigned"], suggestions=["Show P1 only"]), outcome)
    )
    return synthesizer


@pytest.fixture
def store(redis_client):
    return ConversationContextStore(redis_client)


def make_orchestrator(store=None, analyzer=None, synthesizer=None, selector=None, metadata=None, **kwargs):
    selector = selector or FakeSelector()
    return QueryOrchestrator(
        analyzer or make_analyzer(),
        synthesizer or make_synthesizer(),
        store,
        metadata,
        backend_factory=lambda: selector,
        **kwargs,
    )


@pytest.mark.asyncio
class TestWorkItemPath:
    async def test_full_pipeline(self, store):
        selector = FakeSelector()
        orchestrator = make_orchestrator(store, selector=selector)

        result = await orchestrator.process("show active bugs", user_id="ana@example.com")

        assert result.success is True
        assert result.summary == "You have 2 active bugs."
        assert [row["id"] for row in result.raw_data] == [1, 2]
        assert "assignedTo" in result.raw_data[0]
        assert result.metadata.data_sources == ["rest"]
        assert result.metadata.queries_executed == 2
        assert result.metadata.confidence == 1.0
        assert result.metadata.stages == {
            "collection_detection": StageOutcome.SUCCEEDED,
            "intent_analysis": StageOutcome.SUCCEEDED,
            "retrieval": StageOutcome.SUCCEEDED,
            "synthesis": StageOutcome.SUCCEEDED,
        }
        assert selector.calls[0].type == "Bug"

    async def test_exchange_recorded_once_each(self, store):
        orchestrator = make_orchestrator(store)

        result = await orchestrator.process("show active bugs", user_id="ana@example.com")

        messages = await store.get_messages(result.conversation_id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert messages[0].content == "show active bugs"
        assert messages[1].metadata == {
            "success": True,
            "itemCount": 2,
            "dataSources": ["rest"],
            "confidence": 1.0,
        }
        conversation = await store.get_conversation(result.conversation_id)
        assert conversation.user_id == "ana@example.com"
        assert conversation.title.startswith("show active bugs (")

    async def test_history_passed_to_intent_analysis(self, store):
        analyzer = make_analyzer()
        orchestrator = make_orchestrator(store, analyzer=analyzer)

        first = await orchestrator.process("show active bugs", user_id="ana@example.com")
        second = await orchestrator.process(
            "only P1", user_id="ana@example.com", conversation_id=first.conversation_id
        )

        assert second.conversation_id == first.conversation_id
        history = analyzer.analyze.await_args_list[1].args[1]
        assert [m.content for m in history] == ["show active bugs", "You have 2 active bugs."]

    async def test_slash_command_goes_straight_to_retrieval(self, store):
        client = MagicMock()
        client.complete = AsyncMock()
        selector = FakeSelector()
        orchestrator = make_orchestrator(store, analyzer=IntentAnalyzer(client), selector=selector)

        result = await orchestrator.process("/sprint current", user_id="ana@example.com")

        assert result.success is True
        assert result.metadata.stages["intent_analysis"] is StageOutcome.SUCCEEDED
        assert selector.calls[0].sprint == "current"
        client.complete.assert_not_awaited()

    async def test_conversation_without_data_skips_retrieval(self, store):
        selector = FakeSelector()
        analyzer = make_analyzer(QueryAnalysis(needs_backend_data=False, intent="greeting"))
        orchestrator = make_orchestrator(store, analyzer=analyzer, selector=selector)

        result = await orchestrator.process("hello", user_id="ana@example.com")

        assert result.success is True
        assert selector.calls == []
        assert "retrieval" not in result.metadata.stages
        assert result.raw_data == []

    async def test_fallbacks_lower_confidence(self, store):
        orchestrator = make_orchestrator(
            store,
            analyzer=make_analyzer(outcome=StageOutcome.FELLBACK),
            synthesizer=make_synthesizer(outcome=StageOutcome.FELLBACK),
        )

        result = await orchestrator.process("show active bugs", user_id="ana@example.com")

        assert result.metadata.confidence == 0.75

    async def test_works_without_conversation_store(self):
        result = await make_orchestrator(None).process("show active bugs", user_id="ana@example.com")

        assert result.success is True
        assert result.conversation_id


@pytest.mark.asyncio
class TestCollectionPath:
    async def test_collection_answered_from_metadata(self, store):
        analyzer = make_analyzer()
        synthesizer = make_synthesizer(summary="There are 2 projects.")
        metadata = MetadataCache(ProjectSource())
        orchestrator = make_orchestrator(store, analyzer=analyzer, synthesizer=synthesizer, metadata=metadata)

        result = await orchestrator.process("list all projects", user_id="ana@example.com")

        assert result.success is True
        assert [row["name"] for row in result.raw_data] == ["Fabrikam", "Tailspin"]
        assert result.metadata.data_sources == ["metadata"]
        assert "intent_analysis" not in result.metadata.stages
        analyzer.analyze.assert_not_awaited()
        collection = synthesizer.synthesize.await_args.kwargs["collection"]
        assert collection[0] is EntityKind.PROJECTS
        assert len(collection[1]) == 2

    async def test_second_collection_query_is_cached(self, store):
        metadata = MetadataCache(ProjectSource())
        orchestrator = make_orchestrator(store, metadata=metadata)

        await orchestrator.process("list all projects", user_id="ana@example.com")
        result = await orchestrator.process("list all projects", user_id="ana@example.com")

        assert result.metadata.cache_hit is True
        assert result.metadata.stages["retrieval"] is StageOutcome.CACHED
        assert result.metadata.queries_executed == 0


@pytest.mark.asyncio
class TestFailures:
    async def test_retrieval_failure_is_unsuccessful_and_recorded(self, store):
        synthesizer = make_synthesizer()
        selector = FakeSelector(error=TransientUpstreamError(provider="azure-devops"))
        orchestrator = make_orchestrator(store, synthesizer=synthesizer, selector=selector)

        result = await orchestrator.process("show active bugs", user_id="ana@example.com")

        assert result.success is False
        assert result.summary == ERROR_SUMMARY
        assert result.metadata.stages["retrieval"] is StageOutcome.FAILED
        assert result.metadata.errors
        synthesizer.synthesize.assert_not_awaited()
        messages = await store.get_messages(result.conversation_id)
        assert messages[-1].metadata["success"] is False

    async def test_timeout_returns_partial_result(self, store):
        async def slow_synthesis(*args, **kwargs):
            await asyncio.sleep(5)

        synthesizer = MagicMock()
        synthesizer.synthesize = AsyncMock(side_effect=slow_synthesis)
        orchestrator = make_orchestrator(store, synthesizer=synthesizer, request_timeout=0.3)

        result = await orchestrator.process("show active bugs", user_id="ana@example.com")

        assert result.metadata.timed_out is True
        assert result.success is True
        assert result.summary == "Found 2 work items matching your query."
        assert len(result.raw_data) == 2
        assert "synthesis" not in result.metadata.stages

    async def test_unexpected_error_becomes_error_result(self, store):
        analyzer = MagicMock()
        analyzer.analyze = AsyncMock(side_effect=RuntimeError("boom"))
        orchestrator = make_orchestrator(store, analyzer=analyzer)

        result = await orchestrator.process("show active bugs", user_id="ana@example.com")

        assert result.success is False
        assert result.summary == ERROR_SUMMARY
        assert result.metadata.errors == ["RuntimeError"]
        assert len(await store.get_messages(result.conversation_id)) == 2

    @pytest.mark.parametrize("query,user_id", [("", "ana@example.com"), ("   ", "ana@example.com"), ("bugs", None)])
    async def test_invalid_input_makes_no_calls(self, store, query, user_id):
        analyzer = make_analyzer()
        orchestrator = make_orchestrator(store, analyzer=analyzer)

        result = await orchestrator.process(query, user_id=user_id)

        assert result.success is False
        assert result.summary == INVALID_INPUT_SUMMARY
        assert result.metadata.errors == ["invalid_input"]
        analyzer.analyze.assert_not_awaited()
        assert await store.list_user_conversations("ana@example.com") == []

    async def test_foreign_conversation_rejected(self, store):
        conversation = await store.create_conversation("ben@example.com")
        orchestrator = make_orchestrator(store)

        with pytest.raises(AuthorizationError):
            await orchestrator.process("show bugs", user_id="ana@example.com", conversation_id=conversation.id)

        assert await store.get_messages(conversation.id) == []

    async def test_unknown_conversation_id_starts_new_conversation(self, store):
        result = await make_orchestrator(store).process(
            "show bugs", user_id="ana@example.com", conversation_id="does-not-exist"
        )

        assert result.conversation_id != "does-not-exist"
        assert await store.get_conversation(result.conversation_id) is not None


@pytest.mark.asyncio
class TestContext:
    async def test_stats_and_clear(self, store):
        orchestrator = make_orchestrator(store)
        result = await orchestrator.process("show active bugs", user_id="ana@example.com")

        stats = await orchestrator.get_context_stats(result.conversation_id)
        assert stats.message_count == 2
        assert stats.user_messages == 1

        assert await orchestrator.clear_context(result.conversation_id) is True
        assert await orchestrator.get_context_stats(result.conversation_id) is None


class TestConfidence:
    def test_mean_of_scored_stages(self):
        stages = {
            "collection_detection": StageOutcome.SUCCEEDED,
            "retrieval": StageOutcome.CACHED,
            "intent_analysis": StageOutcome.FAILED,
            "synthesis": StageOutcome.SKIPPED,
        }

        assert QueryOrchestrator.confidence(stages) == 0.67

    def test_no_stages(self):
        assert QueryOrchestrator.confidence({}) == 0.0
