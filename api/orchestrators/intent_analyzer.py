"""
Intent analysis: free text to QueryAnalysis.

The model call is the primary path. When the provider is unavailable, not
configured, or returns output that cannot be parsed, ``heuristic_analysis``
derives an equivalent structure from keywords so the request can continue.
Slash commands such as ``/sprint current`` are parsed directly and never
reach the model.
"""

from __future__ import annotations

import re
import time
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from api.composer.parsing import parse_model_output
from api.composer.prompts import build_intent_messages
from api.llm.provider_client import ResilientProviderClient
from api.schemas.query import QueryAnalysis, SearchCriteria, StageOutcome
from libs.common.backoff import Deadline
from libs.common.errors import ConfigurationError, ParseError, UpstreamError
from libs.models.conversation import Message

logger = structlog.get_logger(__name__)

STATUS_WORDS: Dict[str, str] = {
    "active": "Active",
    "new": "New",
    "open": "Active",
    "in progress": "Active",
    "closed": "Closed",
    "resolved": "Resolved",
    "done": "Done",
    "removed": "Removed",
}
TYPE_PATTERNS: Tuple[Tuple[str, str], ...] = (
    (r"\bbugs?\b", "Bug"),
    (r"\btasks?\b", "Task"),
    (r"\buser stor(?:y|ies)\b|\bstor(?:y|ies)\b", "User Story"),
    (r"\bfeatures?\b", "Feature"),
    (r"\bepics?\b", "Epic"),
)
SLASH_COMMANDS = {
    "/state": "status",
    "/type": "type",
    "/tag": "tags",
    "/assigned_to": "assignee",
    "/sprint": "sprint",
    "/project": "project",
}

_GREETING = re.compile(r"^(?:hi|hello|hey|thanks|thank you|good (?:morning|afternoon|evening))\b")
_CONCEPTUAL = re.compile(r"^(?:what is an?|what's an?|what are|how do(?:es)? (?:i|you|a)|explain|help\b|can you)")
_DATA_HINTS = re.compile(
    r"\b(?:my|me|mine|assigned|bugs?|tasks?|stor(?:y|ies)|features?|epics?|items?|tickets?|sprint|"
    r"active|closed|blocked|open|priority|p[1-4])\b"
)
_PRIORITY = re.compile(r"\b(?:p|priority\s*)([1-4])\b")
_ASSIGNEE = re.compile(r"\bassigned to ([a-z][\w.'\- ]*?)(?=\s+(?:in|with|that|from|for|and)\b|[?.!,]|$)")
_TAG = re.compile(r"\btagged (?:with |as )?['\"]?([\w\-]+)")
_SPRINT_RELATIVE = re.compile(r"\b(current|this|last|previous|next) sprint\b")
_SPRINT_NUMBER = re.compile(r"\bsprint\s+(\d+)\b")
_PROJECT = re.compile(r"\b(?:in|for) (?:the )?project ['\"]?([\w\-]+)")


def _parse_slash_command(query: str) -> Optional[SearchCriteria]:
    parts = query.strip().split(maxsplit=1)
    field = SLASH_COMMANDS.get(parts[0].lower()) if parts else None
    if field is None:
        return None
    value = parts[1].strip() if len(parts) > 1 else None
    if not value:
        return SearchCriteria()
    return SearchCriteria.model_validate({field: value})


def is_slash_command(query: str) -> bool:
    parts = query.strip().split(maxsplit=1)
    return bool(parts) and parts[0].lower() in SLASH_COMMANDS


def heuristic_analysis(query: str) -> QueryAnalysis:
    """Keyword-based QueryAnalysis used when the model path is unavailable."""
    text = " ".join(query.lower().split())

    slash = _parse_slash_command(text)
    if slash is not None:
        return QueryAnalysis(needs_backend_data=True, search_criteria=slash, intent="slash_command")

    if _GREETING.search(text) and not _DATA_HINTS.search(text):
        return QueryAnalysis(needs_backend_data=False, intent="greeting")
    if _CONCEPTUAL.search(text) and not _DATA_HINTS.search(text):
        return QueryAnalysis(needs_backend_data=False, intent="explain_concept")

    criteria: Dict[str, object] = {}
    for word, state in STATUS_WORDS.items():
        if re.search(rf"\b{word}\b", text):
            criteria["status"] = state
            break
    for pattern, work_item_type in TYPE_PATTERNS:
        if re.search(pattern, text):
            criteria["type"] = work_item_type
            break

    tags: List[str] = _TAG.findall(text)
    if re.search(r"\bblocked\b|\bblocking\b", text):
        tags.append("Blocked")
    if tags:
        criteria["tags"] = tags

    if match := _PRIORITY.search(text):
        criteria["priority"] = int(match.group(1))
    if match := _ASSIGNEE.search(text):
        criteria["assignee"] = match.group(1).strip()
    elif re.search(r"\b(?:my|mine|assigned to me)\b", text):
        criteria["assignee"] = "me"
    if match := _SPRINT_RELATIVE.search(text):
        criteria["sprint"] = "previous" if match.group(1) == "last" else match.group(1).replace("this", "current")
    elif match := _SPRINT_NUMBER.search(text):
        criteria["sprint"] = f"Sprint {match.group(1)}"
    if match := _PROJECT.search(query.lower()):
        criteria["project"] = match.group(1)

    if re.search(r"\bsummar|\boverview\b|\breport\b", text):
        intent = "summarize"
    elif re.search(r"\bwhy\b|\banaly[sz]|\bcompare\b|\btrend", text):
        intent = "analyze"
    else:
        intent = "list_work_items"

    return QueryAnalysis(
        needs_backend_data=True,
        search_criteria=SearchCriteria.model_validate(criteria),
        intent=intent,
        requires_summary=intent in ("summarize", "analyze"),
    )


class IntentAnalyzer:
    """Turns a query into a QueryAnalysis, preferring the language model."""

    def __init__(self, client: ResilientProviderClient):
        self.client = client

    async def analyze(
        self,
        query: str,
        history: Sequence[Message] = (),
        deadline: Optional[Deadline] = None,
    ) -> Tuple[QueryAnalysis, StageOutcome]:
        """
        Analyze ``query`` in the context of recent ``history``.

        Returns:
            (analysis, SUCCEEDED) from the model or a slash command, or (heuristic analysis, FELLBACK)
        """
        if is_slash_command(query):
            analysis = heuristic_analysis(query)
            logger.info("Slash command parsed without model call", command=query.split()[0].lower())
            return analysis, StageOutcome.SUCCEEDED

        start_time = time.time()
        try:
            completion = await self.client.complete(
                build_intent_messages(query, history),
                purpose="intent",
                json_mode=True,
                temperature=0.0,
                max_tokens=500,
                deadline=deadline,
            )
            analysis = parse_model_output(completion.content, QueryAnalysis)
        except (UpstreamError, ConfigurationError, ParseError) as e:
            logger.warning(
                "Intent analysis fell back to heuristics",
                error_code=e.code,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return heuristic_analysis(query), StageOutcome.FELLBACK

        if analysis.needs_backend_data and analysis.search_criteria is None:
            analysis = analysis.model_copy(update={"search_criteria": heuristic_analysis(query).search_criteria})

        logger.info(
            "Intent analysis completed",
            intent=analysis.intent,
            needs_backend_data=analysis.needs_backend_data,
            provider=completion.provider,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return analysis, StageOutcome.SUCCEEDED
