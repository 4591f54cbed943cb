"""Pydantic models for conversations persisted in Redis.

Timestamps are epoch milliseconds, the unit used for the message log scores.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field

from libs.models.base import CamelModel

DEFAULT_TITLE = "New Conversation"


def now_ms() -> int:
    return int(time.time() * 1000)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(CamelModel):
    """A single immutable entry in a conversation's message log."""

    id: str = Field(..., description="Unique message id.")
    role: MessageRole = Field(..., description="Who sent the message.")
    content: str = Field(..., description="Message text.")
    timestamp: int = Field(default_factory=now_ms, description="Send time in epoch milliseconds.")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Optional structured data attached at send time.")


class Conversation(CamelModel):
    """Conversation record owned by exactly one user (by email)."""

    id: str
    user_id: str = Field(..., description="Email of the owning user.")
    title: str = DEFAULT_TITLE
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    message_count: int = 0
    model: str = "gpt-4o"
    total_tokens: int = 0
    last_message_preview: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationUpdate(CamelModel):
    """Patch accepted by ConversationContextStore.update_conversation."""

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    model: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ConversationStats(CamelModel):
    conversation_id: str
    title: str
    message_count: int
    user_messages: int
    assistant_messages: int
    total_tokens: int
    created_at: int
    updated_at: int
