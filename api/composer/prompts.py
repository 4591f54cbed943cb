"""
Prompt templates for intent analysis and response synthesis.

Templates are langchain_core ChatPromptTemplates; ``to_provider_messages``
turns the formatted messages into the chat-completions wire shape.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.messages import BaseMessage
from langchain_core.prompts import ChatPromptTemplate

from api.schemas.query import QueryAnalysis, WorkItem
from libs.models.conversation import Message

MAX_ITEMS_IN_PROMPT = 50
HISTORY_MESSAGES = 4
HISTORY_CHARS = 200


INTENT_SYSTEM_PROMPT = """You analyze questions about Azure DevOps work items and turn them into a structured search.

Respond with a single JSON object and nothing else:
{{
  "needsBackendData": true | false,
  "intent": "<short snake_case label, e.g. list_work_items, status_summary, explain_concept, greeting>",
  "requiresSummary": true | false,
  "searchCriteria": {{
    "entityKind": "work_items",
    "status": "<work item state or null>",
    "type": "<Bug | Task | User Story | Feature | Epic | null>",
    "tags": ["<tag>", ...],
    "assignee": "<display name, 'me' for the asking user, or null>",
    "freeText": "<keywords to match in title or description, or null>",
    "priority": <1-4 or null>,
    "project": "<project name or null>",
    "sprint": "<sprint name, 'current', 'previous', 'next', or null>"
  }}
}}

Rules:
- needsBackendData is false for greetings, thanks, and questions about Azure DevOps concepts.
- Omit searchCriteria when needsBackendData is false.
- Only fill fields the user actually asked about; use null otherwise.
- requiresSummary is true when the user asks for an overview, summary, analysis or comparison."""

INTENT_TEMPLATE = ChatPromptTemplate.from_messages(
    [
        ("system", INTENT_SYSTEM_PROMPT),
        ("human", "{history}Question: {query}"),
    ]
)


SYNTHESIS_SYSTEM_PROMPT = """You are an Azure DevOps assistant. You answer using only the data provided.

Respond with a single JSON object and nothing else:
{{
  "summary": "<conversational answer in markdown, referencing concrete items by id and title>",
  "insights": ["<short observation about patterns, risks or workload>", ...],
  "suggestions": ["<follow-up question the user could ask next, max 10 words>", ...]
}}

Rules:
- Never invent work items, people or numbers that are not in the data.
- If the data is empty, say so plainly and suggest how to broaden the search.
- Give 3 or 4 suggestions that build on the current results."""

SYNTHESIS_TEMPLATE = ChatPromptTemplate.from_messages(
    [
        ("system", SYNTHESIS_SYSTEM_PROMPT),
        ("human", "Question: {query}\nIntent: {intent}\n\n{data}"),
    ]
)


_ROLE_BY_TYPE = {"system": "system", "human": "user", "ai": "assistant"}


def to_provider_messages(messages: Sequence[BaseMessage]) -> List[Dict[str, str]]:
    return [{"role": _ROLE_BY_TYPE.get(m.type, "user"), "content": str(m.content)} for m in messages]


def format_history(history: Sequence[Message]) -> str:
    """Last few messages as a compact transcript prefix."""
    recent = list(history)[-HISTORY_MESSAGES:]
    if not recent:
        return ""
    lines = ["Previous conversation:"]
    for message in recent:
        speaker = "User" if message.role.value == "user" else "Assistant"
        lines.append(f"{speaker}: {message.content[:HISTORY_CHARS]}")
    return "\n".join(lines) + "\n\n"


def build_intent_messages(query: str, history: Sequence[Message] = ()) -> List[Dict[str, str]]:
    return to_provider_messages(INTENT_TEMPLATE.format_messages(query=query, history=format_history(history)))


def _compact_item(item: WorkItem) -> Dict[str, Any]:
    return item.model_dump(
        by_alias=True,
        exclude_none=True,
        include={"id", "title", "type", "state", "assigned_to", "priority", "tags", "changed_date", "parent_id"},
    )


def format_work_items(items: Sequence[WorkItem], groups: Optional[Dict[int, List[int]]] = None) -> str:
    """JSON block of at most MAX_ITEMS_IN_PROMPT items, with parent groupings when known."""
    shown = list(items)[:MAX_ITEMS_IN_PROMPT]
    payload: Dict[str, Any] = {
        "totalCount": len(items),
        "shownCount": len(shown),
        "workItems": [_compact_item(item) for item in shown],
    }
    if groups:
        payload["children"] = {str(parent): children for parent, children in groups.items()}
    return f"<work_items>\n{json.dumps(payload, indent=1)}\n</work_items>"


def build_synthesis_messages(query: str, analysis: Optional[QueryAnalysis], data: str) -> List[Dict[str, str]]:
    intent = analysis.intent if analysis else "list_collection"
    return to_provider_messages(SYNTHESIS_TEMPLATE.format_messages(query=query, intent=intent, data=data))
