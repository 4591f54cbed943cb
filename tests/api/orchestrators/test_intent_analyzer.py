"""
Tests for IntentAnalyzer.

The provider client is an AsyncMock so no network calls are made.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from api.llm.provider_client import Completion
from api.orchestrators.intent_analyzer import IntentAnalyzer, heuristic_analysis
from api.schemas.query import StageOutcome
from libs.common.errors import ConfigurationError, TransientUpstreamError
from libs.models.conversation import Message, MessageRole


def make_client(content=None, error=None):
    client = MagicMock()
    if error is not None:
        client.complete = AsyncMock(side_effect=error)
    else:
        client.complete = AsyncMock(return_value=Completion(content=content, provider="openai", model="gpt-4o-mini"))
    return client


class TestHeuristicAnalysis:
    def test_my_active_bugs(self):
        analysis = heuristic_analysis("Show my active bugs")

        assert analysis.needs_backend_data is True
        assert analysis.intent == "list_work_items"
        criteria = analysis.search_criteria
        assert (criteria.status, criteria.type, criteria.assignee) == ("Active", "Bug", "me")

    def test_priority_assignee_and_sprint_number(self):
        criteria = heuristic_analysis("P1 bugs assigned to Ana Silva in sprint 42").search_criteria

        assert criteria.priority == 1
        assert criteria.assignee == "ana silva"
        assert criteria.sprint == "Sprint 42"

    def test_relative_sprint_and_blocked_tag(self):
        criteria = heuristic_analysis("blocked tasks from last sprint").search_criteria

        assert criteria.type == "Task"
        assert criteria.tags == ["Blocked"]
        assert criteria.sprint == "previous"
        assert heuristic_analysis("stories in this sprint").search_criteria.sprint == "current"

    def test_summary_intent(self):
        analysis = heuristic_analysis("Summarize closed bugs")

        assert analysis.intent == "summarize"
        assert analysis.requires_summary is True
        assert analysis.search_criteria.status == "Closed"

    def test_greeting_and_concept_need_no_data(self):
        assert heuristic_analysis("hello there").needs_backend_data is False
        concept = heuristic_analysis("What is a retrospective?")
        assert concept.needs_backend_data is False
        assert concept.intent == "explain_concept"

    def test_slash_command(self):
        analysis = heuristic_analysis("/type Bug")

        assert analysis.intent == "slash_command"
        assert analysis.search_criteria.type == "bug"


@pytest.mark.asyncio
class TestIntentAnalyzer:
    async def test_model_analysis_used(self):
        client = make_client(
            '{"needsBackendData": true, "intent": "list_work_items", '
            '"searchCriteria": {"status": "New", "type": "Task"}}'
        )

        analysis, outcome = await IntentAnalyzer(client).analyze("new tasks")

        assert outcome is StageOutcome.SUCCEEDED
        assert analysis.search_criteria.status == "New"
        assert client.complete.await_args.kwargs["purpose"] == "intent"
        assert client.complete.await_args.kwargs["json_mode"] is True

    async def test_missing_criteria_filled_from_heuristics(self):
        client = make_client('{"needsBackendData": true, "intent": "list_work_items"}')

        analysis, outcome = await IntentAnalyzer(client).analyze("show my active bugs")

        assert outcome is StageOutcome.SUCCEEDED
        assert analysis.search_criteria.type == "Bug"

    @pytest.mark.parametrize(
        "error",
        [TransientUpstreamError(provider="openai"), ConfigurationError(setting="OPENAI_API_KEY")],
    )
    async def test_provider_failure_falls_back(self, error):
        analysis, outcome = await IntentAnalyzer(make_client(error=error)).analyze("show my active bugs")

        assert outcome is StageOutcome.FELLBACK
        assert analysis.search_criteria.status == "Active"

    async def test_unparseable_output_falls_back(self):
        analysis, outcome = await IntentAnalyzer(make_client("Sorry, I cannot help.")).analyze("hello")

        assert outcome is StageOutcome.FELLBACK
        assert analysis.intent == "greeting"

    async def test_history_included_in_prompt(self):
        client = make_client('{"needsBackendData": false, "intent": "greeting"}')
        history = [Message(id="m1", role=MessageRole.USER, content="show sprint 42 bugs")]

        await IntentAnalyzer(client).analyze("only P1", history=history)

        messages = client.complete.await_args.args[0]
        assert "User: show sprint 42 bugs" in messages[-1]["content"]

    @pytest.mark.parametrize("query,field,value", [("/sprint current", "sprint", "current"), ("/state Active", "status", "active")])
    async def test_slash_command_skips_model(self, query, field, value):
        client = make_client('{"needsBackendData": false, "intent": "greeting"}')

        analysis, outcome = await IntentAnalyzer(client).analyze(query)

        assert outcome is StageOutcome.SUCCEEDED
        assert analysis.intent == "slash_command"
        assert getattr(analysis.search_criteria, field) == value
        client.complete.assert_not_awaited()

    async def test_unknown_slash_command_goes_to_model(self):
        client = make_client('{"needsBackendData": false, "intent": "greeting"}')

        await IntentAnalyzer(client).analyze("/weather today")

        client.complete.assert_awaited_once()
