from __future__ import annotations

import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import ORJSONResponse

from api.auth import User, ensure_owner, get_current_user
from api.dependencies import get_chat_limiter, get_conversation_store, get_orchestrator
from api.middleware.rate_limiter import RateLimiter
from api.models import ChatRequest, DeleteResponse
from api.orchestrators.query_orchestrator import ERROR_SUMMARY, QueryOrchestrator
from api.schemas.query import OrchestratorResult
from libs.common.errors import AdoqError, AuthorizationError, ConversationNotFoundError
from libs.memory.conversation_store import ConversationContextStore
from libs.models.conversation import ConversationStats

logger = structlog.get_logger(__name__)
router = APIRouter()


async def _check_conversation_owner(
    store: Optional[ConversationContextStore], conversation_id: str, user: User
) -> None:
    if store is None:
        raise ConversationNotFoundError(conversation_id)
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)
    ensure_owner(conversation, user)


@router.post("/chat", response_model=OrchestratorResult, tags=["Chat"])
async def chat(
    request: Request,
    chat_request: ChatRequest,
    current_user: User = Depends(get_current_user),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
    store: Optional[ConversationContextStore] = Depends(get_conversation_store),
    limiter: RateLimiter = Depends(get_chat_limiter),
):
    """Answer a work item question in the context of a conversation.

    Returns:
        OrchestratorResult: summary, raw data, insights and metadata

    Raises:
        HTTPException: 400 for missing input, 403 for foreign conversations, 429 for rate limits

    Example:
        ```bash
        curl -X POST http://localhost:8000/api/chat \\
          -H "Authorization: Bearer $TOKEN" \\
          -H "Content-Type: application/json" \\
          -d '{"query": "show my active bugs", "userId": "ana@example.com"}'
        ```
    """
    query = (chat_request.query or "").strip()
    user_id = (chat_request.user_id or "").strip().lower()
    if not query or not user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "INVALID_REQUEST", "message": "query and userId are required"},
        )
    if user_id != current_user.email:
        raise AuthorizationError()

    start_time = time.time()
    try:
        await limiter.check_rate_limit(user_id)

        if chat_request.conversation_id and store is not None:
            conversation = await store.get_conversation(chat_request.conversation_id)
            if conversation is not None:
                ensure_owner(conversation, current_user)

        logger.info(
            "Processing chat query",
            request_id=getattr(request.state, "request_id", "unknown"),
            query_text=query[:100],
            conversation_id=chat_request.conversation_id,
        )
        return await orchestrator.process(
            query,
            user_id,
            conversation_id=chat_request.conversation_id,
            filters=chat_request.filters,
            options=chat_request.options,
        )
    except (AdoqError, HTTPException):
        raise
    except Exception as e:
        logger.error("Chat request failed", error=str(e), exc_info=True)
        fallback = orchestrator.error_result(
            chat_request.conversation_id,
            ERROR_SUMMARY,
            int((time.time() - start_time) * 1000),
            type(e).__name__,
        )
        return ORJSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=fallback.to_wire())


@router.get("/chat", response_model=ConversationStats, tags=["Chat"])
async def get_chat_context(
    conversation_id: str = Query(..., alias="conversationId"),
    current_user: User = Depends(get_current_user),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
    store: Optional[ConversationContextStore] = Depends(get_conversation_store),
) -> ConversationStats:
    """Message and token statistics for one conversation."""
    await _check_conversation_owner(store, conversation_id, current_user)
    stats = await orchestrator.get_context_stats(conversation_id)
    if stats is None:
        raise ConversationNotFoundError(conversation_id)
    return stats


@router.delete("/chat", response_model=DeleteResponse, tags=["Chat"])
async def clear_chat_context(
    conversation_id: str = Query(..., alias="conversationId"),
    current_user: User = Depends(get_current_user),
    orchestrator: QueryOrchestrator = Depends(get_orchestrator),
    store: Optional[ConversationContextStore] = Depends(get_conversation_store),
) -> DeleteResponse:
    await _check_conversation_owner(store, conversation_id, current_user)
    deleted = await orchestrator.clear_context(conversation_id)
    logger.info("Chat context cleared", conversation_id=conversation_id, deleted=deleted)
    return DeleteResponse(success=deleted, conversation_id=conversation_id)
