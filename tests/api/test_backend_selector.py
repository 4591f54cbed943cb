"""
Tests for BackendSelector.

Tests verify:
- enhanced mode serves the request when available
- any enhanced failure falls back to REST with a warning and the source tag
- enhanced is not retried after it failed within the same selector
- REST sprint resolution through cached reference data only
- query result caching
"""

from typing import Optional

import pytest
from structlog.testing import capture_logs

from api.schemas.query import SearchCriteria
from api.tools.backend_selector import BackendSelector
from conftest import make_work_item
from libs.caching.metadata_cache import MetadataCache
from libs.caching.query_cache import QueryResultCache
from libs.common.errors import ConfigurationError, ParseError, TransientUpstreamError


class FakeRest:
    def __init__(self, configured=True, error: Optional[Exception] = None):
        self.configured = configured
        self.error = error
        self.calls = []

    async def query_work_items(self, criteria, filters=None, sprint_path=None, deadline=None):
        self.calls.append({"criteria": criteria, "sprint_path": sprint_path})
        if self.error:
            raise self.error
        return [make_work_item(1), make_work_item(2)], 2


class FakeEnhanced:
    def __init__(self, configured=True, error: Optional[Exception] = None):
        self.configured = configured
        self.error = error
        self.calls = 0

    async def fetch(self, criteria, filters=None, deadline=None):
        self.calls += 1
        if self.error:
            raise self.error
        return [make_work_item(7, relevance=0.9)], 1


class SprintSource:
    async def fetch_reference_data(self, category):
        if category == "sprints":
            return [
                {"name": "Sprint 41", "path": "Fabrikam\\Sprint 41", "timeFrame": "past"},
                {"name": "Sprint 42", "path": "Fabrikam\\Sprint 42", "timeFrame": "current"},
            ]
        return []


@pytest.mark.asyncio
class TestBackendSelector:
    async def test_enhanced_serves_request(self):
        rest, enhanced = FakeRest(), FakeEnhanced()
        selector = BackendSelector(rest, enhanced)

        result = await selector.fetch(SearchCriteria(free_text="login"))

        assert result.source == "enhanced"
        assert [item.id for item in result.items] == [7]
        assert rest.calls == []

    async def test_enhanced_failure_falls_back_to_rest(self):
        rest, enhanced = FakeRest(), FakeEnhanced(error=ParseError("bad search payload"))
        selector = BackendSelector(rest, enhanced)

        with capture_logs() as logs:
            result = await selector.fetch(SearchCriteria(free_text="login"))

        assert result.source == "rest"
        assert [item.id for item in result.items] == [1, 2]
        assert selector.enhanced_available is False
        warning = next(log for log in logs if log["event"] == "Enhanced mode failed, falling back to REST")
        assert warning["log_level"] == "warning"
        assert warning["error_type"] == "ParseError"

    async def test_enhanced_not_retried_after_failure(self):
        rest, enhanced = FakeRest(), FakeEnhanced(error=TransientUpstreamError(provider="azure-devops"))
        selector = BackendSelector(rest, enhanced)

        await selector.fetch(SearchCriteria(status="Active"))
        await selector.fetch(SearchCriteria(status="New"))

        assert enhanced.calls == 1
        assert len(rest.calls) == 2

    async def test_rest_only_when_enhanced_not_preferred(self):
        rest, enhanced = FakeRest(), FakeEnhanced()

        result = await BackendSelector(rest, enhanced).fetch(SearchCriteria(), prefer_enhanced=False)

        assert result.source == "rest"
        assert enhanced.calls == 0

    async def test_unconfigured_rest_raises_configuration_error(self):
        selector = BackendSelector(FakeRest(configured=False), FakeEnhanced(configured=False))

        with pytest.raises(ConfigurationError):
            await selector.fetch(SearchCriteria())

    async def test_rest_errors_propagate(self):
        selector = BackendSelector(FakeRest(error=TransientUpstreamError(provider="azure-devops")))

        with pytest.raises(TransientUpstreamError):
            await selector.fetch(SearchCriteria())

    async def test_rest_resolves_current_sprint_from_metadata(self):
        metadata = MetadataCache(SprintSource())
        await metadata.preload_all()
        rest = FakeRest()

        await BackendSelector(rest, metadata=metadata).fetch(SearchCriteria(sprint="current"))
        await BackendSelector(rest, metadata=metadata).fetch(SearchCriteria(sprint="41"))
        await BackendSelector(rest, metadata=metadata).fetch(SearchCriteria(sprint="previous"))

        assert [call["sprint_path"] for call in rest.calls] == [
            "Fabrikam\\Sprint 42",
            "Fabrikam\\Sprint 41",
            None,
        ]

    async def test_results_cached_between_requests(self, redis_client):
        rest = FakeRest()
        cache = QueryResultCache(redis_client)

        first = await BackendSelector(rest, query_cache=cache).fetch(SearchCriteria(status="Active"))
        second = await BackendSelector(rest, query_cache=cache).fetch(SearchCriteria(status="Active"))
        skipped = await BackendSelector(rest, query_cache=cache).fetch(SearchCriteria(status="Active"), skip_cache=True)

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert second.queries_executed == 0
        assert [item.id for item in second.items] == [1, 2]
        assert skipped.cache_hit is False
        assert len(rest.calls) == 2
