"""
Composition root.

``ServiceContainer.create`` wires every long-lived collaborator once per
process inside the FastAPI lifespan; routes receive them through ``Depends``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
import structlog
from fastapi import Request

from api.composer.synthesis import ResponseSynthesizer
from api.llm.provider_client import ResilientProviderClient, build_llm_providers
from api.middleware.rate_limiter import RateLimiter
from api.orchestrators.intent_analyzer import IntentAnalyzer
from api.orchestrators.query_orchestrator import QueryOrchestrator
from api.tools.ado_client import AdoRestClient
from api.tools.backend_selector import BackendSelector
from api.tools.enhanced_search import EnhancedSearchClient
from libs.caching.metadata_cache import MetadataCache
from libs.caching.query_cache import QueryResultCache
from libs.caching.rate_limit import RateLimitCounter
from libs.caching.redis_client import close_redis_client, create_redis_client
from libs.common.backoff import BackoffPolicy
from libs.common.settings import Settings
from libs.memory.conversation_store import ConversationContextStore

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    redis: Optional[redis.Redis]
    provider_client: ResilientProviderClient
    ado: AdoRestClient
    enhanced: EnhancedSearchClient
    metadata: MetadataCache
    query_cache: Optional[QueryResultCache]
    store: Optional[ConversationContextStore]
    chat_limiter: RateLimiter
    orchestrator: QueryOrchestrator

    @classmethod
    async def create(cls, settings: Settings, redis_client: Optional[redis.Redis] = None) -> "ServiceContainer":
        if redis_client is None:
            redis_client = await create_redis_client(settings)

        provider_client = ResilientProviderClient(
            BackoffPolicy.from_settings(settings),
            providers=build_llm_providers(settings),
            timeout=settings.http_timeout_seconds,
        )
        ado = AdoRestClient(
            provider_client,
            organization=settings.ado_organization,
            project=settings.ado_project,
            pat=settings.ado_pat,
            api_version=settings.ado_api_version,
            base_url=settings.ado_base_url,
        )
        enhanced = EnhancedSearchClient(
            ado,
            search_base_url=settings.ado_search_base_url,
            enabled=settings.enhanced_mode_enabled,
        )
        metadata = MetadataCache(ado, redis_client=redis_client, ttl_seconds=settings.metadata_ttl_seconds)
        query_cache = (
            QueryResultCache(redis_client, ttl_seconds=settings.query_cache_ttl_seconds) if redis_client else None
        )
        store = (
            ConversationContextStore(
                redis_client,
                ttl_days=settings.conversation_ttl_days,
                display_timezone=settings.display_timezone,
            )
            if redis_client
            else None
        )
        counter = (
            RateLimitCounter(
                redis_client,
                max_requests=settings.chat_rate_limit_max,
                window_seconds=settings.chat_rate_limit_window_seconds,
            )
            if redis_client
            else None
        )

        def backend_factory() -> BackendSelector:
            # Availability flags are per request, so each request gets a fresh selector
            return BackendSelector(ado, enhanced=enhanced, metadata=metadata, query_cache=query_cache)

        orchestrator = QueryOrchestrator(
            analyzer=IntentAnalyzer(provider_client),
            synthesizer=ResponseSynthesizer(provider_client),
            store=store,
            metadata=metadata,
            backend_factory=backend_factory,
            request_timeout=settings.request_timeout_seconds,
            context_window=settings.context_window_messages,
            prefetch_metadata=settings.prefetch_metadata,
        )

        logger.info(
            "Service container created",
            redis_enabled=redis_client is not None,
            ado_configured=ado.configured,
            enhanced_enabled=enhanced.configured,
            llm_providers=[provider.name for provider in provider_client.providers],
        )
        return cls(
            settings=settings,
            redis=redis_client,
            provider_client=provider_client,
            ado=ado,
            enhanced=enhanced,
            metadata=metadata,
            query_cache=query_cache,
            store=store,
            chat_limiter=RateLimiter(counter, operation="chat", enabled=settings.rate_limit_enabled),
            orchestrator=orchestrator,
        )

    async def aclose(self) -> None:
        await self.provider_client.aclose()
        await close_redis_client(self.redis)


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_orchestrator(request: Request) -> QueryOrchestrator:
    return get_container(request).orchestrator


def get_conversation_store(request: Request) -> Optional[ConversationContextStore]:
    return get_container(request).store


def get_metadata_cache(request: Request) -> MetadataCache:
    return get_container(request).metadata


def get_ado_client(request: Request) -> AdoRestClient:
    return get_container(request).ado


def get_chat_limiter(request: Request) -> RateLimiter:
    return get_container(request).chat_limiter
