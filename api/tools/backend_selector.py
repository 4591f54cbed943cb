"""
Chooses between enhanced and REST backend access for one request.

Enhanced mode is tried first when it is configured and has not already
failed during this request; any error sends the same logical request to
REST mode. Callers only see the ``source`` tag on the result.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog

from api.schemas.query import FetchResult, GlobalFilters, SearchCriteria
from api.tools.ado_client import AdoRestClient
from api.tools.enhanced_search import EnhancedSearchClient, relative_sprint_timeframe
from libs.caching.metadata_cache import MetadataCache
from libs.caching.query_cache import QueryResultCache
from libs.common.backoff import Deadline
from libs.common.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class BackendSelector:
    """
    Per-request backend access with silent enhanced-to-REST fallback.

    Availability flags are checked lazily and live as long as the selector,
    which the orchestrator creates once per request.
    """

    def __init__(
        self,
        rest: AdoRestClient,
        enhanced: Optional[EnhancedSearchClient] = None,
        metadata: Optional[MetadataCache] = None,
        query_cache: Optional[QueryResultCache] = None,
    ):
        self.rest = rest
        self.enhanced = enhanced
        self.metadata = metadata
        self.query_cache = query_cache
        self.enhanced_available: Optional[bool] = None
        self.rest_available: Optional[bool] = None

    def _enhanced_ready(self) -> bool:
        if self.enhanced_available is None:
            self.enhanced_available = self.enhanced is not None and self.enhanced.configured
        return self.enhanced_available

    def _rest_ready(self) -> bool:
        if self.rest_available is None:
            self.rest_available = self.rest.configured
        return self.rest_available

    def _sprint_path_from_metadata(self, sprint: Optional[str]) -> Optional[str]:
        """REST mode resolves sprints only through cached reference data."""
        if not sprint or self.metadata is None:
            return None
        timeframe = relative_sprint_timeframe(sprint)
        if timeframe == "current":
            current = self.metadata.current_sprint()
            return current.get("path") if current else None
        if timeframe is not None:
            return None
        matches = self.metadata.find_sprints(sprint)
        return matches[0].get("path") if matches else None

    @staticmethod
    def _cache_request(criteria: SearchCriteria, filters: Optional[GlobalFilters]) -> Dict[str, Any]:
        return {
            "criteria": criteria.model_dump(mode="json"),
            "filters": filters.model_dump(mode="json") if filters else None,
        }

    async def fetch(
        self,
        criteria: SearchCriteria,
        prefer_enhanced: bool = True,
        filters: Optional[GlobalFilters] = None,
        skip_cache: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> FetchResult:
        """
        Fetch work items for ``criteria``.

        Raises:
            ConfigurationError: when REST credentials are missing and enhanced mode did not serve the request
            UpstreamError: when REST mode itself fails
        """
        cache_request = self._cache_request(criteria, filters)
        if self.query_cache is not None and not skip_cache:
            cached = await self.query_cache.get(cache_request)
            if cached is not None:
                result = FetchResult.model_validate(cached)
                return result.model_copy(update={"cache_hit": True, "queries_executed": 0})

        result: Optional[FetchResult] = None
        if prefer_enhanced and self._enhanced_ready():
            try:
                items, queries = await self.enhanced.fetch(criteria, filters, deadline=deadline)
                result = FetchResult(items=items, source="enhanced", queries_executed=queries)
            except Exception as e:
                self.enhanced_available = False
                logger.warning("Enhanced mode failed, falling back to REST", error_type=type(e).__name__)

        if result is None:
            if not self._rest_ready():
                raise ConfigurationError(setting="ADO_ORGANIZATION and ADO_PAT")
            sprint_path = self._sprint_path_from_metadata(criteria.sprint)
            items, queries = await self.rest.query_work_items(criteria, filters, sprint_path=sprint_path, deadline=deadline)
            result = FetchResult(items=items, source="rest", queries_executed=queries)

        logger.info(
            "Work items fetched",
            source=result.source,
            count=len(result.items),
            queries_executed=result.queries_executed,
        )

        if self.query_cache is not None:
            await self.query_cache.set(cache_request, result.model_dump(mode="json"))
        return result
