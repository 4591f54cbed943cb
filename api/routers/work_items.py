import structlog
from fastapi import APIRouter, Depends

from api.auth import User, get_current_user
from api.dependencies import get_ado_client
from api.models import DeleteWorkItemsRequest
from api.schemas.query import PartialBatchFailure
from api.tools.ado_client import AdoRestClient

router = APIRouter()
logger = structlog.get_logger(__name__)


@router.delete("/work-items", response_model=PartialBatchFailure, tags=["Work Items"])
async def delete_work_items(
    body: DeleteWorkItemsRequest,
    current_user: User = Depends(get_current_user),
    ado: AdoRestClient = Depends(get_ado_client),
) -> PartialBatchFailure:
    """
    Delete a batch of work items.

    Each id is deleted independently; failures are reported per id and never
    stop the remaining deletes.
    """
    logger.info("Bulk delete requested", user=current_user.email, count=len(body.work_item_ids))
    return await ado.delete_work_items(body.work_item_ids)
