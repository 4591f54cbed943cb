from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, status

from api.auth import User, ensure_owner, get_current_user
from api.dependencies import get_container, get_conversation_store
from api.models import AddMessageRequest, CleanupResponse, CreateConversationRequest, DeleteResponse
from libs.common.errors import ConfigurationError, ConversationNotFoundError
from libs.memory.conversation_store import ConversationContextStore
from libs.models.conversation import Conversation, ConversationUpdate, Message

router = APIRouter()
logger = structlog.get_logger(__name__)


def require_store(
    store: Optional[ConversationContextStore] = Depends(get_conversation_store),
) -> ConversationContextStore:
    if store is None:
        raise ConfigurationError(setting="REDIS_URL")
    return store


async def _owned_conversation(store: ConversationContextStore, conversation_id: str, user: User) -> Conversation:
    conversation = await store.get_conversation(conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)
    ensure_owner(conversation, user)
    return conversation


@router.get("/conversations", response_model=List[Conversation], tags=["Conversations"])
async def list_conversations(
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    store: ConversationContextStore = Depends(require_store),
) -> List[Conversation]:
    """The caller's conversations, most recently updated first."""
    return await store.list_user_conversations(current_user.email, limit=limit)


@router.post(
    "/conversations",
    response_model=Conversation,
    status_code=status.HTTP_201_CREATED,
    tags=["Conversations"],
)
async def create_conversation(
    body: CreateConversationRequest,
    current_user: User = Depends(get_current_user),
    store: ConversationContextStore = Depends(require_store),
) -> Conversation:
    return await store.create_conversation(
        current_user.email,
        title=body.title,
        model=body.model,
        system_prompt=body.system_prompt,
    )


# Declared before the {conversation_id} routes so "cleanup" is not read as an id
@router.delete("/conversations/cleanup", response_model=CleanupResponse, tags=["Conversations"])
async def cleanup_conversations(
    current_user: User = Depends(get_current_user),
    store: ConversationContextStore = Depends(require_store),
    container=Depends(get_container),
) -> CleanupResponse:
    """Delete the caller's conversations that have been inactive past the retention window."""
    deleted_ids = await store.cleanup_inactive(
        current_user.email,
        inactivity_days=container.settings.conversation_inactivity_days,
    )
    return CleanupResponse(deleted_count=len(deleted_ids), deleted_ids=deleted_ids)


@router.get("/conversations/{conversation_id}", response_model=Conversation, tags=["Conversations"])
async def get_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    store: ConversationContextStore = Depends(require_store),
) -> Conversation:
    return await _owned_conversation(store, conversation_id, current_user)


@router.patch("/conversations/{conversation_id}", response_model=Conversation, tags=["Conversations"])
async def update_conversation(
    conversation_id: str,
    patch: ConversationUpdate,
    current_user: User = Depends(get_current_user),
    store: ConversationContextStore = Depends(require_store),
) -> Conversation:
    await _owned_conversation(store, conversation_id, current_user)
    return await store.update_conversation(conversation_id, patch)


@router.delete("/conversations/{conversation_id}", response_model=DeleteResponse, tags=["Conversations"])
async def delete_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    store: ConversationContextStore = Depends(require_store),
) -> DeleteResponse:
    await _owned_conversation(store, conversation_id, current_user)
    deleted = await store.delete_conversation(conversation_id)
    return DeleteResponse(success=deleted, conversation_id=conversation_id)


@router.get("/conversations/{conversation_id}/messages", response_model=List[Message], tags=["Conversations"])
async def get_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    store: ConversationContextStore = Depends(require_store),
) -> List[Message]:
    """Most recent messages, oldest first."""
    await _owned_conversation(store, conversation_id, current_user)
    return await store.get_messages(conversation_id, limit=limit)


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
    tags=["Conversations"],
)
async def add_message(
    conversation_id: str,
    body: AddMessageRequest,
    current_user: User = Depends(get_current_user),
    store: ConversationContextStore = Depends(require_store),
) -> Message:
    await _owned_conversation(store, conversation_id, current_user)
    message = await store.add_message(conversation_id, body.role, body.content, metadata=body.metadata)
    logger.info("Message saved", conversation_id=conversation_id, role=body.role.value)
    return message
