"""
Azure DevOps REST access: WIQL queries, reference data and bulk deletes.

REST mode is the universal baseline every other access path falls back to.
All traffic goes through ResilientProviderClient so classification and
retries are shared with the language-model calls.
"""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from api.llm.provider_client import RequestSpec, ResilientProviderClient
from api.schemas.query import BatchFailure, GlobalFilters, PartialBatchFailure, SearchCriteria, WorkItem
from libs.common.backoff import Deadline
from libs.common.errors import AdoqError, ConfigurationError

logger = structlog.get_logger(__name__)

PROVIDER = "azure-devops"
CLOSED_STATES = ("Closed", "Done", "Removed")
MAX_BATCH_IDS = 200
WORK_ITEM_FIELDS = (
    "System.Id",
    "System.Title",
    "System.WorkItemType",
    "System.State",
    "System.AssignedTo",
    "System.CreatedBy",
    "System.CreatedDate",
    "System.ChangedDate",
    "System.Description",
    "System.Tags",
    "System.TeamProject",
    "System.IterationPath",
    "System.Parent",
    "Microsoft.VSTS.Common.Priority",
)


def _quote(value: Any) -> str:
    """WIQL string literal with embedded quotes doubled."""
    return "'" + str(value).replace("'", "''") + "'"


def build_wiql(
    criteria: SearchCriteria,
    filters: Optional[GlobalFilters] = None,
    project: Optional[str] = None,
    sprint_path: Optional[str] = None,
) -> str:
    """Translate search criteria and global filters into a WIQL query."""
    conditions: List[str] = []

    team_project = criteria.project or project
    if team_project:
        conditions.append(f"[System.TeamProject] = {_quote(team_project)}")
    if criteria.status:
        conditions.append(f"[System.State] = {_quote(criteria.status)}")
    if criteria.type:
        conditions.append(f"[System.WorkItemType] = {_quote(criteria.type)}")
    if criteria.assignee:
        if criteria.assignee.strip().lower() in ("me", "@me"):
            conditions.append("[System.AssignedTo] = @Me")
        else:
            conditions.append(f"[System.AssignedTo] CONTAINS {_quote(criteria.assignee)}")
    if criteria.priority:
        conditions.append(f"[Microsoft.VSTS.Common.Priority] = {int(criteria.priority)}")
    if criteria.free_text:
        text = _quote(criteria.free_text)
        conditions.append(f"([System.Title] CONTAINS {text} OR [System.Description] CONTAINS {text})")
    if criteria.tags:
        tag_terms = " OR ".join(f"[System.Tags] CONTAINS {_quote(tag)}" for tag in criteria.tags)
        conditions.append(f"({tag_terms})")
    if sprint_path:
        conditions.append(f"[System.IterationPath] UNDER {_quote(sprint_path)}")

    if filters is not None:
        excluded = list(filters.ignore_states)
        if filters.ignore_closed:
            excluded.extend(state for state in CLOSED_STATES if state not in excluded)
        if excluded:
            conditions.append(f"[System.State] NOT IN ({', '.join(_quote(s) for s in excluded)})")
        for creator in filters.ignore_created_by:
            conditions.append(f"NOT [System.CreatedBy] CONTAINS {_quote(creator)}")
        if filters.only_my_tickets and filters.current_user:
            conditions.append(f"[System.AssignedTo] CONTAINS {_quote(filters.current_user)}")
        if filters.ignore_older_than_days:
            conditions.append(f"[System.ChangedDate] >= @Today - {int(filters.ignore_older_than_days)}")

    query = "SELECT [System.Id] FROM WorkItems"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    return query + " ORDER BY [System.ChangedDate] DESC"


def _identity_name(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("displayName") or value.get("uniqueName")
    return value or None


def split_tags(raw: Optional[str]) -> List[str]:
    return [tag.strip() for tag in (raw or "").split(";") if tag.strip()]


def map_work_item(raw: Dict[str, Any]) -> WorkItem:
    """Map a REST work item payload onto WorkItem."""
    fields = raw.get("fields") or {}
    return WorkItem(
        id=raw.get("id") or fields.get("System.Id"),
        title=fields.get("System.Title", ""),
        type=fields.get("System.WorkItemType", ""),
        state=fields.get("System.State", ""),
        assigned_to=_identity_name(fields.get("System.AssignedTo")) or "Unassigned",
        created_by=_identity_name(fields.get("System.CreatedBy")),
        created_date=fields.get("System.CreatedDate"),
        changed_date=fields.get("System.ChangedDate"),
        priority=fields.get("Microsoft.VSTS.Common.Priority") or 3,
        description=fields.get("System.Description"),
        tags=split_tags(fields.get("System.Tags")),
        project=fields.get("System.TeamProject"),
        iteration_path=fields.get("System.IterationPath"),
        parent_id=fields.get("System.Parent"),
        url=raw.get("url"),
    )


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def apply_global_filters(
    items: Iterable[WorkItem],
    filters: Optional[GlobalFilters],
    now: Optional[datetime] = None,
) -> List[WorkItem]:
    """Client-side equivalent of the WIQL filter clauses, for non-WIQL result sets."""
    items = list(items)
    if filters is None:
        return items

    excluded = {state.lower() for state in filters.ignore_states}
    if filters.ignore_closed:
        excluded.update(state.lower() for state in CLOSED_STATES)
    ignored_creators = [creator.lower() for creator in filters.ignore_created_by]
    cutoff = None
    if filters.ignore_older_than_days:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=filters.ignore_older_than_days)

    kept = []
    for item in items:
        if item.state.lower() in excluded:
            continue
        creator = (item.created_by or "").lower()
        if any(ignored in creator for ignored in ignored_creators):
            continue
        if filters.only_my_tickets and filters.current_user:
            if filters.current_user.lower() not in item.assigned_to.lower():
                continue
        if cutoff is not None:
            changed = _parse_date(item.changed_date or item.created_date)
            if changed is not None and changed < cutoff:
                continue
        kept.append(item)
    return kept


class AdoRestClient:
    """
    Plain REST access to one Azure DevOps organization.

    Usage:
        client = AdoRestClient(provider_client, "contoso", "Web", pat)
        items, queries = await client.query_work_items(SearchCriteria(status="Active"))
    """

    def __init__(
        self,
        http: ResilientProviderClient,
        organization: Optional[str],
        project: Optional[str],
        pat: Optional[str],
        api_version: str = "7.1",
        base_url: str = "https://dev.azure.com",
    ):
        self.http = http
        self.organization = organization
        self.project = project
        self.api_version = api_version
        self.base_url = base_url.rstrip("/")
        self._pat = pat

    @property
    def configured(self) -> bool:
        return bool(self.organization and self._pat)

    def _require_configured(self) -> None:
        if not self.organization:
            raise ConfigurationError(setting="ADO_ORGANIZATION")
        if not self._pat:
            raise ConfigurationError(setting="ADO_PAT")

    def _require_project(self) -> str:
        if not self.project:
            raise ConfigurationError(setting="ADO_PROJECT")
        return self.project

    @property
    def headers(self) -> Dict[str, str]:
        token = base64.b64encode(f":{self._pat}".encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}", "Content-Type": "application/json"}

    def url(self, path: str, project: Optional[str] = None) -> str:
        scope = f"/{project}" if project else ""
        return f"{self.base_url}/{self.organization}{scope}/_apis/{path.lstrip('/')}"

    async def request_json(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Any] = None,
        api_version: Optional[str] = None,
        idempotent: Optional[bool] = None,
        deadline: Optional[Deadline] = None,
    ) -> Any:
        self._require_configured()
        spec = RequestSpec(
            method=method,
            url=url,
            provider=PROVIDER,
            json=body,
            params={**(params or {}), "api-version": api_version or self.api_version},
            headers=self.headers,
            idempotent=idempotent,
        )
        response = await self.http.call(spec, deadline=deadline)
        if not response.content:
            return {}
        return response.json()

    async def query_work_items(
        self,
        criteria: SearchCriteria,
        filters: Optional[GlobalFilters] = None,
        sprint_path: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> Tuple[List[WorkItem], int]:
        """
        Run a WIQL query and fetch item details.

        Returns:
            (work items in WIQL order, number of backend queries executed)
        """
        wiql = build_wiql(criteria, filters, project=self.project, sprint_path=sprint_path)
        logger.info("Executing WIQL query", conditions=wiql.count(" AND ") + 1 if " WHERE " in wiql else 0)

        result = await self.request_json(
            "POST",
            self.url("wit/wiql", self.project),
            params={"$top": criteria.limit},
            body={"query": wiql},
            idempotent=True,
            deadline=deadline,
        )
        ids = [ref["id"] for ref in result.get("workItems", [])][: min(criteria.limit, MAX_BATCH_IDS)]
        if not ids:
            return [], 1

        details = await self.get_work_items(ids, deadline=deadline)
        return details, 2

    async def get_work_items(self, ids: List[int], deadline: Optional[Deadline] = None) -> List[WorkItem]:
        data = await self.request_json(
            "GET",
            self.url("wit/workitems"),
            params={"ids": ",".join(str(i) for i in ids[:MAX_BATCH_IDS]), "fields": ",".join(WORK_ITEM_FIELDS)},
            deadline=deadline,
        )
        by_id = {item.id: item for item in (map_work_item(raw) for raw in data.get("value", []))}
        return [by_id[i] for i in ids if i in by_id]

    async def fetch_reference_data(self, category: str) -> List[Dict[str, Any]]:
        fetchers = {
            "projects": self.get_projects,
            "teams": self.get_teams,
            "sprints": self.get_iterations,
            "users": self.get_users,
            "states": self.get_states,
            "types": self.get_work_item_types,
            "tags": self.get_tags,
            "queries": self.get_saved_queries,
        }
        return await fetchers[category]()

    async def get_projects(self) -> List[Dict[str, Any]]:
        data = await self.request_json("GET", self.url("projects"))
        return [
            {"id": p.get("id"), "name": p.get("name"), "description": p.get("description"), "state": p.get("state")}
            for p in data.get("value", [])
        ]

    async def get_teams(self) -> List[Dict[str, Any]]:
        project = self._require_project()
        data = await self.request_json("GET", self.url(f"projects/{project}/teams"))
        return [
            {"id": t.get("id"), "name": t.get("name"), "description": t.get("description")}
            for t in data.get("value", [])
        ]

    async def get_iterations(self, timeframe: Optional[str] = None, team: Optional[str] = None) -> List[Dict[str, Any]]:
        project = self._require_project()
        scope = f"{project}/{team}" if team else project
        params = {"$timeframe": timeframe} if timeframe else None
        data = await self.request_json("GET", self.url("work/teamsettings/iterations", scope), params=params)
        iterations = []
        for iteration in data.get("value", []):
            attributes = iteration.get("attributes") or {}
            iterations.append(
                {
                    "id": iteration.get("id"),
                    "name": iteration.get("name"),
                    "path": iteration.get("path"),
                    "startDate": attributes.get("startDate"),
                    "finishDate": attributes.get("finishDate"),
                    "timeFrame": attributes.get("timeFrame"),
                }
            )
        return iterations

    async def get_users(self) -> List[Dict[str, Any]]:
        project = self._require_project()
        teams = await self.get_teams()
        responses = await asyncio.gather(
            *(self.request_json("GET", self.url(f"projects/{project}/teams/{team['id']}/members")) for team in teams[:20])
        )
        users: Dict[str, Dict[str, Any]] = {}
        for response in responses:
            for member in response.get("value", []):
                identity = member.get("identity") or member
                if identity.get("id") and identity["id"] not in users:
                    users[identity["id"]] = {
                        "id": identity["id"],
                        "displayName": identity.get("displayName"),
                        "uniqueName": identity.get("uniqueName"),
                    }
        return list(users.values())

    async def _work_item_types_raw(self) -> List[Dict[str, Any]]:
        project = self._require_project()
        data = await self.request_json("GET", self.url("wit/workitemtypes", project))
        return data.get("value", [])

    async def get_work_item_types(self) -> List[Dict[str, Any]]:
        return [
            {"name": t.get("name"), "referenceName": t.get("referenceName"), "description": t.get("description")}
            for t in await self._work_item_types_raw()
            if not t.get("isDisabled")
        ]

    async def get_states(self) -> List[Dict[str, Any]]:
        states: Dict[str, Dict[str, Any]] = {}
        for work_item_type in await self._work_item_types_raw():
            for state in work_item_type.get("states") or []:
                name = state.get("name")
                if name and name not in states:
                    states[name] = {"name": name, "category": state.get("category"), "color": state.get("color")}
        return list(states.values())

    async def get_tags(self) -> List[Dict[str, Any]]:
        project = self._require_project()
        data = await self.request_json("GET", self.url("wit/tags", project), api_version=f"{self.api_version}-preview.1")
        return [{"id": t.get("id"), "name": t.get("name")} for t in data.get("value", [])]

    async def get_saved_queries(self) -> List[Dict[str, Any]]:
        project = self._require_project()
        data = await self.request_json("GET", self.url("wit/queries", project), params={"$depth": 2})

        queries: List[Dict[str, Any]] = []
        pending = list(data.get("value", []))
        while pending:
            node = pending.pop(0)
            if node.get("isFolder"):
                pending.extend(node.get("children") or [])
            else:
                queries.append({"id": node.get("id"), "name": node.get("name"), "path": node.get("path")})
        return queries

    async def delete_work_items(self, ids: List[int]) -> PartialBatchFailure:
        """
        Delete work items one at a time; a failure on one id never aborts the rest.

        Deletes are not retried.
        """
        self._require_configured()
        result = PartialBatchFailure(total=len(ids))
        for work_item_id in ids:
            try:
                await self.request_json("DELETE", self.url(f"wit/workitems/{work_item_id}"), idempotent=False)
            except AdoqError as e:
                logger.warning("Work item delete failed", work_item_id=work_item_id, error_code=e.code)
                result.errors.append(BatchFailure(id=work_item_id, error=e.user_message))
            else:
                result.deleted_count += 1

        logger.info("Bulk delete finished", deleted=result.deleted_count, failed=len(result.errors), total=len(ids))
        return result
