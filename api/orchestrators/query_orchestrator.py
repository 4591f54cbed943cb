"""Query orchestrator: the work item question pipeline as a LangGraph state machine.

Flow:
    01_collection_detector ─┬─ high confidence ─→ 02b_collection_fetch ─→ 04_synthesis
                            └─ otherwise ───────→ 02_intent_analysis ─┬─→ 03_retrieval ─→ 04_synthesis
                                                                      └─ no data needed ─→ 04_synthesis

Stages never raise; each records an outcome (succeeded, cached, fellback,
failed) that feeds the confidence score. The whole run is bounded by a
wall-clock deadline, and on timeout the last completed state is turned into
a partial result.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
import structlog
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from api.composer.synthesis import DEFAULT_SUGGESTIONS, ResponseSynthesizer, fallback_summary
from api.orchestrators.intent_analyzer import IntentAnalyzer
from api.schemas.pipeline_state import PipelineState
from api.schemas.query import (
    Confidence,
    EntityKind,
    GlobalFilters,
    OrchestratorResult,
    QueryOptions,
    ResultMetadata,
    SearchCriteria,
    StageOutcome,
)
from api.tools.backend_selector import BackendSelector
from api.tools.collection_detector import detect, snapshot_category
from libs.caching.metadata_cache import MetadataCache
from libs.common.backoff import Deadline
from libs.common.errors import AdoqError, AuthorizationError
from libs.memory.conversation_store import ConversationContextStore
from libs.models.conversation import ConversationStats, Message, MessageRole

logger = structlog.get_logger(__name__)

ERROR_SUMMARY = (
    "An error occurred while processing your query. Please try again or rephrase your question."
)
TIMEOUT_SUMMARY = "Your query took too long to process. Please try again or narrow the question."
INVALID_INPUT_SUMMARY = "A question and a user id are required."


class QueryOrchestrator:
    """
    Coordinates detection, intent analysis, retrieval, synthesis and recording.

    Usage:
        orchestrator = QueryOrchestrator(analyzer, synthesizer, store, metadata, backend_factory)
        result = await orchestrator.process("show my active bugs", user_id="ana@example.com")
    """

    def __init__(
        self,
        analyzer: IntentAnalyzer,
        synthesizer: ResponseSynthesizer,
        store: Optional[ConversationContextStore],
        metadata: Optional[MetadataCache],
        backend_factory: Callable[[], BackendSelector],
        request_timeout: float = 30.0,
        context_window: int = 10,
        prefetch_metadata: bool = True,
    ):
        self.analyzer = analyzer
        self.synthesizer = synthesizer
        self.store = store
        self.metadata = metadata
        self.backend_factory = backend_factory
        self.request_timeout = request_timeout
        self.context_window = context_window
        self.prefetch_metadata = prefetch_metadata
        self.graph = self._build_graph()

    def _build_graph(self):
        """Build and compile the LangGraph state machine."""
        graph = StateGraph(PipelineState)

        graph.add_node("01_collection_detector", self._detect_collection_node)
        graph.add_node("02_intent_analysis", self._intent_analysis_node)
        graph.add_node("02b_collection_fetch", self._collection_fetch_node)
        graph.add_node("03_retrieval", self._retrieval_node)
        graph.add_node("04_synthesis", self._synthesis_node)

        graph.set_entry_point("01_collection_detector")

        graph.add_conditional_edges(
            "01_collection_detector",
            self._route_after_detection,
            {"collection": "02b_collection_fetch", "intent": "02_intent_analysis"},
        )
        graph.add_conditional_edges(
            "02_intent_analysis",
            self._route_after_intent,
            {"retrieve": "03_retrieval", "synthesize": "04_synthesis"},
        )
        graph.add_conditional_edges(
            "03_retrieval",
            self._route_after_retrieval,
            {"synthesize": "04_synthesis", "abort": END},
        )
        graph.add_edge("02b_collection_fetch", "04_synthesis")
        graph.add_edge("04_synthesis", END)

        compiled_graph = graph.compile()
        logger.info("Query pipeline graph compiled successfully")
        return compiled_graph

    # Routing

    def _route_after_detection(self, state: PipelineState) -> str:
        if state.collection is not None and state.collection.confidence is Confidence.HIGH:
            return "collection"
        return "intent"

    def _route_after_intent(self, state: PipelineState) -> str:
        if state.analysis is not None and state.analysis.needs_backend_data:
            return "retrieve"
        return "synthesize"

    def _route_after_retrieval(self, state: PipelineState) -> str:
        if state.stages.get("retrieval") is StageOutcome.FAILED:
            return "abort"
        return "synthesize"

    # Nodes

    async def _detect_collection_node(self, state: PipelineState) -> Dict[str, Any]:
        """01_collection_detector: rule-based check for "list the X" queries."""
        match = detect(state.query)
        logger.info(
            "Collection detection completed",
            request_id=state.request_id,
            collection_type=match.type.value,
            confidence=match.confidence.value,
        )
        return {"collection": match, "stages": state.with_stage("collection_detection", StageOutcome.SUCCEEDED)}

    async def _prefetch_metadata(self) -> None:
        if self.metadata is None or not self.prefetch_metadata:
            return
        try:
            await self.metadata.preload_all()
        except Exception as e:
            logger.warning("Metadata prefetch failed", error=str(e), error_type=type(e).__name__)

    async def _intent_analysis_node(self, state: PipelineState, config: RunnableConfig) -> Dict[str, Any]:
        """02_intent_analysis: model call with heuristic fallback, metadata prefetched alongside."""
        start_time = time.time()
        deadline = config["configurable"]["deadline"]

        (analysis, outcome), _ = await asyncio.gather(
            self.analyzer.analyze(state.query, state.history, deadline=deadline),
            self._prefetch_metadata(),
        )

        logger.info(
            "Intent analysis node completed",
            request_id=state.request_id,
            intent=analysis.intent,
            outcome=outcome.value,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return {"analysis": analysis, "stages": state.with_stage("intent_analysis", outcome)}

    async def _collection_fetch_node(self, state: PipelineState) -> Dict[str, Any]:
        """02b_collection_fetch: answer a collection listing from the metadata snapshot."""
        start_time = time.time()
        kind = state.collection.type
        if self.metadata is None:
            return {
                "stages": state.with_stage("retrieval", StageOutcome.FAILED),
                "errors": [*state.errors, "Reference data cache is not available."],
            }

        cached = self.metadata.is_fresh(self.metadata.snapshot)
        try:
            snapshot = await self.metadata.preload_all()
        except AdoqError as e:
            logger.warning("Collection fetch failed", request_id=state.request_id, error_code=e.code)
            return {
                "stages": state.with_stage("retrieval", StageOutcome.FAILED),
                "errors": [*state.errors, e.user_message],
            }

        entries = [dict(entry) for entry in getattr(snapshot, snapshot_category(kind))]
        logger.info(
            "Collection fetch completed",
            request_id=state.request_id,
            collection_type=kind.value,
            count=len(entries),
            cached=cached,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return {
            "collection_entries": entries,
            "data_sources": ["metadata"],
            "queries_executed": 0 if cached else len(snapshot.counts()),
            "cache_hit": cached,
            "stages": state.with_stage("retrieval", StageOutcome.CACHED if cached else StageOutcome.SUCCEEDED),
        }

    async def _retrieval_node(self, state: PipelineState, config: RunnableConfig) -> Dict[str, Any]:
        """03_retrieval: fetch work items through the backend selector."""
        start_time = time.time()
        selector: BackendSelector = config["configurable"]["selector"]
        deadline: Deadline = config["configurable"]["deadline"]
        criteria = (state.analysis.search_criteria if state.analysis else None) or SearchCriteria()

        try:
            result = await selector.fetch(
                criteria,
                prefer_enhanced=True,
                filters=state.filters,
                skip_cache=state.options.skip_cache,
                deadline=deadline,
            )
        except AdoqError as e:
            logger.error(
                "Retrieval failed",
                request_id=state.request_id,
                error_code=e.code,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return {
                "stages": state.with_stage("retrieval", StageOutcome.FAILED),
                "errors": [*state.errors, e.user_message],
            }

        logger.info(
            "Retrieval node completed",
            request_id=state.request_id,
            source=result.source,
            count=len(result.items),
            cache_hit=result.cache_hit,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return {
            "items": result.items,
            "data_sources": [result.source],
            "queries_executed": result.queries_executed,
            "cache_hit": result.cache_hit,
            "stages": state.with_stage("retrieval", StageOutcome.CACHED if result.cache_hit else StageOutcome.SUCCEEDED),
        }

    async def _synthesis_node(self, state: PipelineState, config: RunnableConfig) -> Dict[str, Any]:
        """04_synthesis: summary, insights and suggestions over the retrieved data."""
        deadline = config["configurable"]["deadline"]
        collection = None
        if state.collection is not None and state.collection.confidence is Confidence.HIGH:
            collection = (state.collection.type, state.collection_entries)

        synthesis, outcome = await self.synthesizer.synthesize(
            state.query,
            state.analysis,
            items=state.items,
            collection=collection,
            deadline=deadline,
        )
        return {
            "summary": synthesis.summary,
            "insights": synthesis.insights,
            "suggestions": synthesis.suggestions,
            "visualizations": synthesis.visualizations,
            "stages": state.with_stage("synthesis", outcome),
        }

    # Request handling

    async def _resolve_conversation(self, conversation_id: Optional[str], user_id: str) -> Tuple[str, List[Message]]:
        """Load the caller's conversation and recent history, creating a conversation when needed."""
        if self.store is None:
            return conversation_id or uuid.uuid4().hex, []

        try:
            if conversation_id:
                conversation = await self.store.get_conversation(conversation_id)
                if conversation is not None:
                    if conversation.user_id != user_id:
                        raise AuthorizationError()
                    history = await self.store.get_recent_context(conversation_id, limit=self.context_window)
                    return conversation_id, history

            conversation = await self.store.create_conversation(user_id)
            return conversation.id, []
        except redis.RedisError as e:
            logger.warning("Conversation store unavailable, continuing without history", error=str(e))
            return conversation_id or uuid.uuid4().hex, []

    async def _record_exchange(self, conversation_id: str, query: str, result: OrchestratorResult) -> None:
        """Append the user query and the assistant summary, one message each."""
        if self.store is None:
            return
        try:
            await self.store.add_message(conversation_id, MessageRole.USER, query)
            await self.store.add_message(
                conversation_id,
                MessageRole.ASSISTANT,
                result.summary,
                metadata={
                    "success": result.success,
                    "itemCount": len(result.raw_data),
                    "dataSources": result.metadata.data_sources,
                    "confidence": result.metadata.confidence,
                },
            )
        except (AdoqError, redis.RedisError) as e:
            logger.error("Failed to record exchange", conversation_id=conversation_id, error=str(e))

    async def _run_graph(self, state: PipelineState, config: RunnableConfig, latest: Dict[str, Any]) -> None:
        async for values in self.graph.astream(state, config=config, stream_mode="values"):
            latest["state"] = values

    @staticmethod
    def _as_state(initial: PipelineState, values: Any) -> PipelineState:
        if isinstance(values, PipelineState):
            return values
        if isinstance(values, dict):
            return initial.model_copy(update=values)
        return initial

    @staticmethod
    def confidence(stages: Dict[str, StageOutcome]) -> float:
        """Mean stage score, ignoring skipped stages."""
        scores = [outcome.score for outcome in stages.values() if outcome.score is not None]
        if not scores:
            return 0.0
        return round(sum(scores) / len(scores), 2)

    def _build_result(self, state: PipelineState, processing_ms: int, timed_out: bool) -> OrchestratorResult:
        is_collection = state.collection is not None and state.collection.confidence is Confidence.HIGH
        raw_data = (
            state.collection_entries if is_collection else [item.model_dump(mode="json", by_alias=True) for item in state.items]
        )

        success = True
        summary = state.summary
        if summary is None:
            if state.stages.get("retrieval") is StageOutcome.FAILED:
                success = False
                summary = ERROR_SUMMARY
            elif raw_data:
                kind = state.collection.type if is_collection else EntityKind.WORK_ITEMS
                summary = fallback_summary(len(raw_data), kind)
            else:
                success = False
                summary = TIMEOUT_SUMMARY if timed_out else ERROR_SUMMARY

        errors = list(state.errors)
        if timed_out:
            errors.append("Request deadline exceeded before all stages completed.")

        return OrchestratorResult(
            success=success,
            summary=summary,
            analysis=state.analysis,
            raw_data=raw_data,
            insights=state.insights,
            suggestions=state.suggestions or list(DEFAULT_SUGGESTIONS),
            visualizations=state.visualizations,
            metadata=ResultMetadata(
                queries_executed=state.queries_executed,
                data_sources=state.data_sources,
                confidence=self.confidence(state.stages),
                processing_time=processing_ms,
                cache_hit=state.cache_hit,
                stages=state.stages,
                errors=errors,
                timed_out=timed_out,
            ),
            conversation_id=state.conversation_id,
        )

    def error_result(self, conversation_id: Optional[str], summary: str, processing_ms: int, error: str) -> OrchestratorResult:
        return OrchestratorResult(
            success=False,
            summary=summary,
            suggestions=list(DEFAULT_SUGGESTIONS),
            metadata=ResultMetadata(processing_time=processing_ms, errors=[error]),
            conversation_id=conversation_id,
        )

    async def process(
        self,
        query: Optional[str],
        user_id: Optional[str],
        conversation_id: Optional[str] = None,
        filters: Optional[GlobalFilters] = None,
        options: Optional[QueryOptions] = None,
    ) -> OrchestratorResult:
        """
        Answer ``query`` for ``user_id`` and record the exchange.

        Never raises for pipeline failures; they become an unsuccessful result.

        Raises:
            AuthorizationError: when ``conversation_id`` belongs to another user
        """
        start_time = time.time()
        deadline = Deadline(self.request_timeout)

        def elapsed_ms() -> int:
            return int((time.time() - start_time) * 1000)

        if not query or not query.strip() or not user_id:
            return self.error_result(conversation_id, INVALID_INPUT_SUMMARY, elapsed_ms(), "invalid_input")

        query = query.strip()
        conversation_id, history = await self._resolve_conversation(conversation_id, user_id)

        try:
            state = PipelineState(
                query=query,
                user_id=user_id,
                conversation_id=conversation_id,
                history=history,
                filters=filters,
                options=options or QueryOptions(),
            )
            config = RunnableConfig(configurable={"selector": self.backend_factory(), "deadline": deadline})
            latest: Dict[str, Any] = {"state": state}

            timed_out = False
            try:
                await asyncio.wait_for(self._run_graph(state, config, latest), timeout=deadline.remaining())
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning("Query pipeline timed out", request_id=state.request_id, budget_seconds=self.request_timeout)

            final_state = self._as_state(state, latest["state"])
            result = self._build_result(final_state, elapsed_ms(), timed_out)

        except Exception as e:
            logger.error("Query pipeline failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            result = self.error_result(conversation_id, ERROR_SUMMARY, elapsed_ms(), type(e).__name__)

        await self._record_exchange(conversation_id, query, result)

        logger.info(
            "Query processed",
            conversation_id=conversation_id,
            success=result.success,
            confidence=result.metadata.confidence,
            data_sources=result.metadata.data_sources,
            processing_time_ms=result.metadata.processing_time,
        )
        return result

    async def get_context_stats(self, conversation_id: str) -> Optional[ConversationStats]:
        """Stats for a conversation, or None when it does not exist."""
        if self.store is None:
            return None
        return await self.store.get_stats(conversation_id)

    async def clear_context(self, conversation_id: str) -> bool:
        if self.store is None:
            return False
        return await self.store.delete_conversation(conversation_id)
