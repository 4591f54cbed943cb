"""Organization-wide reference data snapshot."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import ConfigDict, Field

from libs.models.base import CamelModel

CATEGORIES: Tuple[str, ...] = (
    "sprints",
    "users",
    "states",
    "types",
    "tags",
    "queries",
    "projects",
    "teams",
)


class MetadataSnapshot(CamelModel):
    """Immutable snapshot; replaced wholesale on refresh."""

    model_config = ConfigDict(frozen=True)

    sprints: Tuple[Dict[str, Any], ...] = ()
    users: Tuple[Dict[str, Any], ...] = ()
    states: Tuple[Dict[str, Any], ...] = ()
    types: Tuple[Dict[str, Any], ...] = ()
    tags: Tuple[Dict[str, Any], ...] = ()
    queries: Tuple[Dict[str, Any], ...] = ()
    projects: Tuple[Dict[str, Any], ...] = ()
    teams: Tuple[Dict[str, Any], ...] = ()
    last_updated: datetime

    def counts(self) -> Dict[str, int]:
        return {category: len(getattr(self, category)) for category in CATEGORIES}


class MetadataStats(CamelModel):
    cached: bool
    last_updated: Optional[datetime] = None
    counts: Dict[str, int] = Field(default_factory=dict)
