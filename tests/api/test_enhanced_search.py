import json

import httpx
import pytest

from api.llm.provider_client import ResilientProviderClient
from api.schemas.query import GlobalFilters, SearchCriteria
from api.tools.ado_client import AdoRestClient
from api.tools.enhanced_search import EnhancedSearchClient, map_search_result, relative_sprint_timeframe
from libs.common.backoff import BackoffPolicy
from libs.common.errors import ParseError

FAST_POLICY = BackoffPolicy(max_attempts=2, base_delay=0.0, max_delay=0.0, jitter=0.0)

ITERATIONS = {
    "past": [
        {"id": "40", "name": "Sprint 40", "path": "Fabrikam\\Sprint 40", "attributes": {"timeFrame": "past"}},
        {"id": "41", "name": "Sprint 41", "path": "Fabrikam\\Sprint 41", "attributes": {"timeFrame": "past"}},
    ],
    "current": [
        {"id": "42", "name": "Sprint 42", "path": "Fabrikam\\Sprint 42", "attributes": {"timeFrame": "current"}},
    ],
}


def search_hit(work_item_id, iteration="Fabrikam\\Sprint 42", state="Active"):
    return {
        "project": {"name": "Fabrikam"},
        "fields": {
            "system.id": str(work_item_id),
            "system.title": f"Login fails {work_item_id}",
            "system.workitemtype": "Bug",
            "system.state": state,
            "system.assignedto": "Ana Silva <ana@example.com>",
            "system.iterationpath": iteration,
        },
    }


def make_enhanced(handler):
    http = ResilientProviderClient(FAST_POLICY, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    rest = AdoRestClient(http, organization="contoso", project="Fabrikam", pat="secret")
    return EnhancedSearchClient(rest)


def iterations_handler(search_results=None, requests=None):
    def handler(request):
        if requests is not None:
            requests.append(request)
        if request.url.host == "almsearch.dev.azure.com":
            return httpx.Response(200, json=search_results)
        if request.url.path.endswith("/wit/wiql"):
            return httpx.Response(200, json={"workItems": []})
        timeframe = request.url.params.get("$timeframe")
        if timeframe:
            return httpx.Response(200, json={"value": ITERATIONS.get(timeframe, [])})
        return httpx.Response(200, json={"value": ITERATIONS["past"] + ITERATIONS["current"]})

    return handler


class TestRelativeSprint:
    @pytest.mark.parametrize(
        "sprint,expected",
        [
            ("current", "current"),
            ("this sprint", "current"),
            ("previous", "past"),
            ("last sprint", "past"),
            ("next", "future"),
            ("Sprint 42", None),
        ],
    )
    def test_timeframe(self, sprint, expected):
        assert relative_sprint_timeframe(sprint) == expected

    def test_search_hit_mapping(self):
        item = map_search_result(search_hit(9), rank=1, total=4)

        assert item.id == 9
        assert item.assigned_to == "Ana Silva"
        assert item.project == "Fabrikam"
        assert item.relevance == 0.75

    def test_hit_without_id_is_parse_error(self):
        with pytest.raises(ParseError):
            map_search_result({"fields": {"system.title": "no id"}}, rank=0, total=1)


@pytest.mark.asyncio
class TestEnhancedSearchClient:
    async def test_previous_sprint_is_most_recent_past_iteration(self):
        enhanced = make_enhanced(iterations_handler())

        assert await enhanced.resolve_sprint("previous") == "Fabrikam\\Sprint 41"
        assert await enhanced.resolve_sprint("current") == "Fabrikam\\Sprint 42"

    async def test_named_sprint_matches_by_name(self):
        enhanced = make_enhanced(iterations_handler())

        assert await enhanced.resolve_sprint("sprint 40") == "Fabrikam\\Sprint 40"
        assert await enhanced.resolve_sprint("Sprint 99") is None

    async def test_unknown_future_sprint_resolves_to_none(self):
        enhanced = make_enhanced(iterations_handler())

        assert await enhanced.resolve_sprint("next") is None

    async def test_search_filters_by_sprint_and_global_filters(self):
        results = {
            "count": 3,
            "results": [
                search_hit(1),
                search_hit(2, iteration="Fabrikam\\Sprint 41"),
                search_hit(3, state="Closed"),
            ],
        }
        requests = []
        enhanced = make_enhanced(iterations_handler(results, requests))

        items, queries = await enhanced.fetch(
            SearchCriteria(free_text="login", sprint="current"),
            GlobalFilters(ignore_closed=True),
        )

        assert [item.id for item in items] == [1]
        assert queries == 2
        search_request = next(r for r in requests if r.url.host == "almsearch.dev.azure.com")
        body = json.loads(search_request.content)
        assert body["searchText"] == "login"
        assert body["filters"]["System.TeamProject"] == ["Fabrikam"]

    async def test_malformed_search_response_is_parse_error(self):
        enhanced = make_enhanced(iterations_handler({"unexpected": "shape"}))

        with pytest.raises(ParseError):
            await enhanced.search(SearchCriteria(free_text="login"))

    async def test_structured_criteria_use_wiql_with_resolved_sprint(self):
        requests = []
        enhanced = make_enhanced(iterations_handler(requests=requests))

        items, queries = await enhanced.fetch(SearchCriteria(status="Active", sprint="previous"))

        wiql = json.loads(next(r for r in requests if r.url.path.endswith("/wit/wiql")).content)["query"]
        assert "UNDER 'Fabrikam\\Sprint 41'" in wiql
        assert items == []
        assert queries == 2



class TestConfiguration:
    def test_configured_requires_project(self):
        rest = AdoRestClient(ResilientProviderClient(FAST_POLICY), organization="contoso", project=None, pat="secret")

        assert EnhancedSearchClient(rest).configured is False

    def test_disabled_is_not_configured(self):
        rest = AdoRestClient(ResilientProviderClient(FAST_POLICY), organization="contoso", project="Fabrikam", pat="secret")

        assert EnhancedSearchClient(rest).configured is True
        assert EnhancedSearchClient(rest, enabled=False).configured is False
