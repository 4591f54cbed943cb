"""
Response synthesis: retrieved data to summary, insights and follow-up suggestions.

When the provider fails the caller still gets the raw data with a generic
count-based summary and the default suggestions.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple

import structlog
from pydantic import Field, field_validator

from api.composer.parsing import looks_structured, parse_model_output
from api.composer.prompts import build_synthesis_messages, format_work_items
from api.llm.provider_client import ResilientProviderClient
from api.schemas.query import EntityKind, QueryAnalysis, StageOutcome, Visualization, WorkItem
from api.tools.collection_detector import format_collection_context
from api.tools.hierarchy import group_by_parent
from libs.common.backoff import Deadline
from libs.common.errors import ConfigurationError, ParseError, UpstreamError
from libs.models.base import CamelModel

logger = structlog.get_logger(__name__)

MAX_SUGGESTIONS = 4
DEFAULT_SUGGESTIONS = [
    "Show me my active items",
    "List all projects",
    "What users are available?",
]


class SynthesisPayload(CamelModel):
    summary: str = Field(..., min_length=1)
    insights: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)

    @field_validator("insights", "suggestions", mode="before")
    @classmethod
    def drop_blank(cls, v: Any) -> Any:
        if isinstance(v, list):
            return [str(entry).strip() for entry in v if str(entry).strip()]
        return v


@dataclass
class Synthesis:
    summary: str
    insights: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    visualizations: List[Visualization] = field(default_factory=list)


def fallback_summary(count: int, kind: EntityKind = EntityKind.WORK_ITEMS) -> str:
    noun = "work items" if kind is EntityKind.WORK_ITEMS else kind.value
    if count == 0:
        return f"No {noun} matched your query. Try broadening the search or removing filters."
    if count == 1:
        return f"Found 1 {noun.rstrip('s')} matching your query."
    return f"Found {count} {noun} matching your query."


def build_visualizations(items: Sequence[WorkItem]) -> List[Visualization]:
    """State and type distributions for a work item result set."""
    if not items:
        return []
    by_state = Counter(item.state or "Unknown" for item in items)
    by_type = Counter(item.type or "Unknown" for item in items)
    return [
        Visualization(
            kind="pie",
            title="Work items by state",
            data=[{"label": label, "value": value} for label, value in by_state.most_common()],
        ),
        Visualization(
            kind="bar",
            title="Work items by type",
            data=[{"label": label, "value": value} for label, value in by_type.most_common()],
        ),
    ]


class ResponseSynthesizer:
    """Produces the user-facing answer for a query and its data."""

    def __init__(self, client: ResilientProviderClient):
        self.client = client

    async def synthesize(
        self,
        query: str,
        analysis: Optional[QueryAnalysis],
        items: Sequence[WorkItem] = (),
        collection: Optional[Tuple[EntityKind, Sequence[Mapping[str, Any]]]] = None,
        deadline: Optional[Deadline] = None,
    ) -> Tuple[Synthesis, StageOutcome]:
        if collection is not None:
            kind, entries = collection
            data = format_collection_context(kind, entries)
            count = len(entries)
            visualizations: List[Visualization] = []
        elif analysis is not None and not analysis.needs_backend_data:
            kind, count = EntityKind.WORK_ITEMS, 0
            data = "No work item data was needed for this question."
            visualizations = []
        else:
            kind, count = EntityKind.WORK_ITEMS, len(items)
            data = format_work_items(items, groups=group_by_parent(items))
            visualizations = build_visualizations(items)

        start_time = time.time()
        try:
            completion = await self.client.complete(
                build_synthesis_messages(query, analysis, data),
                purpose="synthesis",
                json_mode=True,
                temperature=0.3,
                max_tokens=1500,
                deadline=deadline,
            )
            payload = parse_model_output(completion.content, SynthesisPayload)
        except ParseError as e:
            # Plain prose instead of JSON is still a usable answer
            text = e.raw.strip()
            if not text or looks_structured(text):
                logger.warning("Synthesis output unusable", empty=not text)
                return self._fallback(count, kind, visualizations), StageOutcome.FELLBACK
            logger.info("Synthesis output used as plain text summary")
            return (
                Synthesis(summary=text, suggestions=list(DEFAULT_SUGGESTIONS), visualizations=visualizations),
                StageOutcome.FELLBACK,
            )
        except (UpstreamError, ConfigurationError) as e:
            logger.warning(
                "Synthesis fell back to generic summary",
                error_code=e.code,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return self._fallback(count, kind, visualizations), StageOutcome.FELLBACK

        logger.info(
            "Synthesis completed",
            provider=completion.provider,
            insights=len(payload.insights),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return (
            Synthesis(
                summary=payload.summary,
                insights=payload.insights,
                suggestions=payload.suggestions[:MAX_SUGGESTIONS] or list(DEFAULT_SUGGESTIONS),
                visualizations=visualizations,
            ),
            StageOutcome.SUCCEEDED,
        )

    @staticmethod
    def _fallback(count: int, kind: EntityKind, visualizations: List[Visualization]) -> Synthesis:
        return Synthesis(
            summary=fallback_summary(count, kind),
            suggestions=list(DEFAULT_SUGGESTIONS),
            visualizations=visualizations,
        )
