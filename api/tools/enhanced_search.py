"""
Enhanced backend mode: Azure DevOps Search and iteration time-frame resolution.

Adds two things REST mode cannot do on its own:
- full-text relevance ranking through the work item search service
- resolving "current", "previous" or "next" sprint to a concrete iteration path
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import structlog

from api.schemas.query import GlobalFilters, SearchCriteria, WorkItem
from api.tools.ado_client import AdoRestClient, apply_global_filters, split_tags
from libs.common.backoff import Deadline
from libs.common.errors import ParseError

logger = structlog.get_logger(__name__)

# Relative sprint words and the team-settings timeframe they map to
SPRINT_TIMEFRAMES = {
    "current": "current",
    "this": "current",
    "active": "current",
    "previous": "past",
    "last": "past",
    "past": "past",
    "next": "future",
    "upcoming": "future",
    "future": "future",
}


def relative_sprint_timeframe(sprint: str) -> Optional[str]:
    words = sprint.lower().replace("sprint", " ").split()
    return SPRINT_TIMEFRAMES.get(words[0]) if len(words) == 1 else None


def map_search_result(result: Dict[str, Any], rank: int, total: int) -> WorkItem:
    """Map one search hit. Search returns lower-cased field reference names."""
    fields = result.get("fields")
    if not isinstance(fields, dict) or not fields.get("system.id"):
        raise ParseError("Search hit without work item id")
    return WorkItem(
        id=int(fields["system.id"]),
        title=fields.get("system.title", ""),
        type=fields.get("system.workitemtype", ""),
        state=fields.get("system.state", ""),
        assigned_to=(fields.get("system.assignedto") or "Unassigned").split("<")[0].strip() or "Unassigned",
        created_by=fields.get("system.createdby"),
        created_date=fields.get("system.createddate"),
        changed_date=fields.get("system.changeddate"),
        tags=split_tags(fields.get("system.tags")),
        project=(result.get("project") or {}).get("name") or fields.get("system.teamproject"),
        iteration_path=fields.get("system.iterationpath"),
        url=result.get("url"),
        relevance=round(1 - rank / max(total, 1), 3),
    )


class EnhancedSearchClient:
    """Search-service and timeframe-aware access layered on the REST client."""

    def __init__(self, rest: AdoRestClient, search_base_url: str = "https://almsearch.dev.azure.com", enabled: bool = True):
        self.rest = rest
        self.search_base_url = search_base_url.rstrip("/")
        self.enabled = enabled

    @property
    def configured(self) -> bool:
        return self.enabled and self.rest.configured and bool(self.rest.project)

    async def resolve_sprint(self, sprint: str, deadline: Optional[Deadline] = None) -> Optional[str]:
        """Iteration path for a sprint reference, or None when it cannot be resolved."""
        timeframe = relative_sprint_timeframe(sprint)
        if timeframe is None:
            iterations = await self.rest.get_iterations()
            needle = sprint.lower()
            match = next((i for i in iterations if needle in str(i.get("name", "")).lower()), None)
            return match.get("path") if match else None

        iterations = await self.rest.get_iterations(timeframe=timeframe)
        if not iterations:
            return None
        # past iterations come back oldest first
        chosen = iterations[-1] if timeframe == "past" else iterations[0]
        logger.debug("Sprint resolved", sprint=sprint, timeframe=timeframe, path=chosen.get("path"))
        return chosen.get("path")

    async def search(
        self,
        criteria: SearchCriteria,
        deadline: Optional[Deadline] = None,
    ) -> List[WorkItem]:
        """Full-text search ranked by relevance."""
        search_filters: Dict[str, List[str]] = {"System.TeamProject": [criteria.project or self.rest.project]}
        if criteria.type:
            search_filters["System.WorkItemType"] = [criteria.type]
        if criteria.status:
            search_filters["System.State"] = [criteria.status]
        if criteria.assignee and criteria.assignee.lower() not in ("me", "@me"):
            search_filters["System.AssignedTo"] = [criteria.assignee]

        text = criteria.free_text or " ".join(criteria.tags) or "*"
        url = f"{self.search_base_url}/{self.rest.organization}/{self.rest.project}/_apis/search/workitemsearchresults"
        data = await self.rest.request_json(
            "POST",
            url,
            body={"searchText": text, "$skip": 0, "$top": criteria.limit, "filters": search_filters, "includeFacets": False},
            idempotent=True,
            deadline=deadline,
        )

        results = data.get("results") if isinstance(data, dict) else None
        if not isinstance(results, list):
            raise ParseError("Search response did not contain a result list")
        return [map_search_result(result, rank, len(results)) for rank, result in enumerate(results)]

    async def fetch(
        self,
        criteria: SearchCriteria,
        filters: Optional[GlobalFilters] = None,
        deadline: Optional[Deadline] = None,
    ) -> Tuple[List[WorkItem], int]:
        """
        Fetch work items using search and sprint resolution where they apply.

        Returns:
            (work items, number of backend queries executed)
        """
        queries = 0
        sprint_path = None
        if criteria.sprint:
            sprint_path = await self.resolve_sprint(criteria.sprint, deadline=deadline)
            queries += 1

        if criteria.free_text:
            items = await self.search(criteria, deadline=deadline)
            queries += 1
            if sprint_path:
                items = [i for i in items if (i.iteration_path or "").startswith(sprint_path)]
            return apply_global_filters(items, filters), queries

        items, executed = await self.rest.query_work_items(criteria, filters, sprint_path=sprint_path, deadline=deadline)
        return items, queries + executed
