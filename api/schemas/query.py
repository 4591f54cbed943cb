"""Models that flow through the query pipeline.

All of them serialize to camelCase so they can be returned from the HTTP
layer as-is.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import ConfigDict, Field, field_validator

from libs.models.base import CamelModel


class EntityKind(str, Enum):
    """Closed set of things a query can be about."""

    WORK_ITEMS = "work_items"
    PROJECTS = "projects"
    TEAMS = "teams"
    USERS = "users"
    STATES = "states"
    TYPES = "types"
    TAGS = "tags"
    NONE = "none"


COLLECTION_KINDS = (
    EntityKind.PROJECTS,
    EntityKind.TEAMS,
    EntityKind.USERS,
    EntityKind.STATES,
    EntityKind.TYPES,
    EntityKind.TAGS,
)


class Confidence(str, Enum):
    HIGH = "high"
    LOW = "low"


class StageOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    CACHED = "cached"
    FELLBACK = "fellback"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def score(self) -> Optional[float]:
        return _OUTCOME_SCORES[self]


_OUTCOME_SCORES = {
    StageOutcome.SUCCEEDED: 1.0,
    StageOutcome.CACHED: 1.0,
    StageOutcome.FELLBACK: 0.5,
    StageOutcome.FAILED: 0.0,
    StageOutcome.SKIPPED: None,
}


class CollectionMatch(CamelModel):
    type: EntityKind = EntityKind.NONE
    confidence: Confidence = Confidence.LOW
    keywords: List[str] = Field(default_factory=list)


class SearchCriteria(CamelModel):
    """Structured search derived from a free-text query."""

    model_config = ConfigDict(extra="ignore")

    entity_kind: EntityKind = EntityKind.WORK_ITEMS
    status: Optional[str] = None
    type: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    assignee: Optional[str] = None
    free_text: Optional[str] = None
    priority: Optional[int] = Field(None, ge=1, le=4)
    project: Optional[str] = None
    sprint: Optional[str] = Field(None, description="Sprint name or current/previous/next.")
    limit: int = Field(50, ge=1, le=200)

    @field_validator("priority", mode="before")
    @classmethod
    def coerce_priority(cls, v: Any) -> Any:
        """Accept ``P1``, ``"2"`` and plain ints."""
        if isinstance(v, str):
            match = re.search(r"\d", v)
            return int(match.group()) if match else None
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def coerce_tags(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [tag.strip() for tag in v.split(",") if tag.strip()]
        return v

    @field_validator("status", "type", "assignee", "free_text", "project", "sprint", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class QueryAnalysis(CamelModel):
    needs_backend_data: bool
    search_criteria: Optional[SearchCriteria] = None
    intent: str
    requires_summary: bool = False


class GlobalFilters(CamelModel):
    """User-level filters applied to every work item query."""

    ignore_states: List[str] = Field(default_factory=list)
    ignore_closed: bool = False
    ignore_created_by: List[str] = Field(default_factory=list)
    only_my_tickets: bool = False
    current_user: Optional[str] = None
    ignore_older_than_days: Optional[int] = Field(None, ge=1)


class QueryOptions(CamelModel):
    skip_cache: bool = False
    verbose: bool = False


class WorkItem(CamelModel):
    id: int
    title: str = ""
    type: str = ""
    state: str = ""
    assigned_to: str = "Unassigned"
    created_by: Optional[str] = None
    created_date: Optional[str] = None
    changed_date: Optional[str] = None
    priority: int = 3
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    project: Optional[str] = None
    iteration_path: Optional[str] = None
    parent_id: Optional[int] = None
    url: Optional[str] = None
    relevance: Optional[float] = None


BackendSource = Literal["enhanced", "rest"]


class FetchResult(CamelModel):
    items: List[WorkItem] = Field(default_factory=list)
    source: BackendSource = "rest"
    cache_hit: bool = False
    queries_executed: int = 0


class Visualization(CamelModel):
    kind: Literal["pie", "bar"]
    title: str
    data: List[Dict[str, Any]]


class ResultMetadata(CamelModel):
    queries_executed: int = 0
    data_sources: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    processing_time: int = Field(0, description="Wall-clock milliseconds.")
    cache_hit: bool = False
    stages: Dict[str, StageOutcome] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    timed_out: bool = False


class OrchestratorResult(CamelModel):
    success: bool
    summary: str
    analysis: Optional[QueryAnalysis] = None
    raw_data: List[Dict[str, Any]] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    visualizations: List[Visualization] = Field(default_factory=list)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    conversation_id: Optional[str] = None


class BatchFailure(CamelModel):
    id: int
    error: str


class PartialBatchFailure(CamelModel):
    """Outcome of a bulk operation with per-item isolation."""

    deleted_count: int = 0
    total: int = 0
    errors: List[BatchFailure] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.errors
