"""Conversation persistence in Redis."""

from libs.memory.conversation_store import ConversationContextStore

__all__ = ["ConversationContextStore"]
