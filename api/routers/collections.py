"""Plain reference-data list endpoints.

Each returns ``{<entity>: [...]}``. When the backend is not configured or
the call fails the list is empty, so a UI populating dropdowns keeps working.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query

from api.auth import User, get_current_user
from api.dependencies import get_ado_client
from api.tools.ado_client import AdoRestClient
from libs.common.errors import AdoqError

router = APIRouter()
logger = structlog.get_logger(__name__)


async def _collection(name: str, fetch: Callable[[], Awaitable[List[Dict[str, Any]]]]) -> Dict[str, List[Dict[str, Any]]]:
    try:
        return {name: await fetch()}
    except AdoqError as e:
        logger.warning("Collection fetch failed, returning empty list", collection=name, error_code=e.code)
        return {name: []}


@router.get("/projects", tags=["Collections"])
async def list_projects(
    current_user: User = Depends(get_current_user),
    ado: AdoRestClient = Depends(get_ado_client),
):
    return await _collection("projects", ado.get_projects)


@router.get("/teams", tags=["Collections"])
async def list_teams(
    current_user: User = Depends(get_current_user),
    ado: AdoRestClient = Depends(get_ado_client),
):
    return await _collection("teams", ado.get_teams)


@router.get("/users", tags=["Collections"])
async def list_users(
    current_user: User = Depends(get_current_user),
    ado: AdoRestClient = Depends(get_ado_client),
):
    return await _collection("users", ado.get_users)


@router.get("/states", tags=["Collections"])
async def list_states(
    current_user: User = Depends(get_current_user),
    ado: AdoRestClient = Depends(get_ado_client),
):
    return await _collection("states", ado.get_states)


@router.get("/types", tags=["Collections"])
async def list_types(
    current_user: User = Depends(get_current_user),
    ado: AdoRestClient = Depends(get_ado_client),
):
    return await _collection("types", ado.get_work_item_types)


@router.get("/tags", tags=["Collections"])
async def list_tags(
    current_user: User = Depends(get_current_user),
    ado: AdoRestClient = Depends(get_ado_client),
):
    return await _collection("tags", ado.get_tags)


@router.get("/iterations", tags=["Collections"])
async def list_iterations(
    timeframe: Optional[str] = Query(None, pattern="^(past|current|future)$"),
    team: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    ado: AdoRestClient = Depends(get_ado_client),
):
    """Sprints, optionally limited to one time frame or one team."""
    return await _collection("iterations", lambda: ado.get_iterations(timeframe=timeframe, team=team))
