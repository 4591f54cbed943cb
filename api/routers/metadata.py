import time

import structlog
from fastapi import APIRouter, Depends

from api.auth import User, get_current_user
from api.dependencies import get_metadata_cache
from api.models import MetadataPreloadRequest, MetadataPreloadResponse
from libs.caching.metadata_cache import MetadataCache
from libs.models.metadata import MetadataStats

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.get("/metadata/preload", response_model=MetadataStats, tags=["Metadata"])
async def get_metadata_stats(
    current_user: User = Depends(get_current_user),
    metadata: MetadataCache = Depends(get_metadata_cache),
) -> MetadataStats:
    """Whether reference data is cached, when it was loaded and how much of each category."""
    return await metadata.get_stats()


@router.post("/metadata/preload", response_model=MetadataPreloadResponse, tags=["Metadata"])
async def preload_metadata(
    body: MetadataPreloadRequest,
    current_user: User = Depends(get_current_user),
    metadata: MetadataCache = Depends(get_metadata_cache),
) -> MetadataPreloadResponse:
    """
    Load reference data into the cache.

    ``preload`` reuses a fresh snapshot when one exists; ``refresh`` always
    fetches every category again.
    """
    start_time = time.time()
    if body.action == "refresh":
        snapshot = await metadata.refresh()
    else:
        snapshot = await metadata.preload_all()

    logger.info(
        "Metadata preload completed",
        action=body.action,
        counts=snapshot.counts(),
        duration_ms=round((time.time() - start_time) * 1000, 2),
    )
    return MetadataPreloadResponse(action=body.action, last_updated=snapshot.last_updated, counts=snapshot.counts())
