"""Request and response models for the HTTP API.

Work item and pipeline shapes live in ``api.schemas.query``; this module
only holds the envelopes specific to individual endpoints. All bodies are
camelCase on the wire.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator

from api.schemas.query import GlobalFilters, QueryOptions
from libs.models.base import CamelModel
from libs.models.conversation import MessageRole


class ChatRequest(CamelModel):
    """Body of ``POST /api/chat``.

    ``query`` and ``user_id`` are optional at the schema level so the route
    can answer a missing value with a plain 400 instead of a 422.
    """

    query: Optional[str] = Field(default=None, max_length=2000, description="User question", examples=["Show my active bugs"])
    conversation_id: Optional[str] = Field(default=None, description="Existing conversation to continue")
    user_id: Optional[str] = Field(default=None, description="Email of the requesting user", examples=["ana@example.com"])
    filters: Optional[GlobalFilters] = None
    options: Optional[QueryOptions] = None


class ErrorResponse(CamelModel):
    error_code: str
    message: str


class CreateConversationRequest(CamelModel):
    title: Optional[str] = Field(default=None, max_length=200)
    model: Optional[str] = None
    system_prompt: Optional[str] = None


class AddMessageRequest(CamelModel):
    role: MessageRole
    content: str = Field(..., min_length=1)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("role")
    @classmethod
    def role_must_be_user_or_assistant(cls, v: MessageRole) -> MessageRole:
        if v not in (MessageRole.USER, MessageRole.ASSISTANT):
            raise ValueError("role must be user or assistant")
        return v


class CleanupResponse(CamelModel):
    success: bool = True
    deleted_count: int
    deleted_ids: List[str]


class DeleteResponse(CamelModel):
    success: bool
    conversation_id: str


class MetadataPreloadRequest(CamelModel):
    action: Literal["preload", "refresh"] = "preload"


class MetadataPreloadResponse(CamelModel):
    success: bool = True
    action: Literal["preload", "refresh"]
    last_updated: datetime
    counts: Dict[str, int]


class DeleteWorkItemsRequest(CamelModel):
    work_item_ids: List[int] = Field(..., min_length=1, max_length=200)


class HealthResponse(CamelModel):
    """Health check response model."""

    status: Literal["healthy", "ready", "degraded"] = Field(description="Service status")
    service: str = Field(description="Service name", examples=["api"])
    version: str = Field(description="Service version", examples=["0.1.0"])
    timestamp: float = Field(description="Unix timestamp of the check")
    checks: Dict[str, bool] = Field(default_factory=dict, description="Dependency checks")
