"""State carried through the query pipeline graph.

Each node returns a partial dict of updates; LangGraph merges it into the
state before the next node runs. Per-request collaborators (the backend
selector and the deadline) travel in the RunnableConfig instead.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from api.schemas.query import (
    CollectionMatch,
    GlobalFilters,
    QueryAnalysis,
    QueryOptions,
    StageOutcome,
    Visualization,
    WorkItem,
)
from libs.models.conversation import Message


class PipelineState(BaseModel):
    """Everything one query accumulates on its way through the graph."""

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex, description="Per-request identifier")

    # Input
    query: str = Field(description="Original user query")
    user_id: str = Field(description="Email of the requesting user")
    conversation_id: str = Field(description="Conversation the exchange is recorded in")
    history: List[Message] = Field(default_factory=list, description="Recent conversation messages")
    filters: Optional[GlobalFilters] = None
    options: QueryOptions = Field(default_factory=QueryOptions)

    # Detection and analysis
    collection: Optional[CollectionMatch] = None
    analysis: Optional[QueryAnalysis] = None

    # Retrieval
    items: List[WorkItem] = Field(default_factory=list)
    collection_entries: List[Dict[str, Any]] = Field(default_factory=list)
    data_sources: List[str] = Field(default_factory=list)
    queries_executed: int = 0
    cache_hit: bool = False

    # Synthesis
    summary: Optional[str] = None
    insights: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    visualizations: List[Visualization] = Field(default_factory=list)

    # Bookkeeping
    stages: Dict[str, StageOutcome] = Field(default_factory=dict, description="Outcome per completed stage")
    errors: List[str] = Field(default_factory=list)

    def with_stage(self, name: str, outcome: StageOutcome) -> Dict[str, StageOutcome]:
        return {**self.stages, name: outcome}
