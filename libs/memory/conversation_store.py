"""
Conversation storage in Redis.

Key layout:
- ``conversation:{id}``            hash with the conversation record
- ``conversation:{id}:messages``   sorted set, one member per message, scored by send time
- ``user:{email}:conversations``   sorted set of conversation ids, scored by updatedAt

Message members are prefixed with a per-conversation sequence number so that
messages sharing a timestamp keep insertion order. An append WATCHes the
conversation record and writes the message together with the counters in one
MULTI/EXEC block, retrying when the record changes underneath it.

Ownership is not checked here; every caller compares ``conversation.user_id``
with the authenticated email before reading or mutating.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import redis.asyncio as redis
import structlog

from libs.common.errors import ConversationNotFoundError
from libs.models.conversation import (
    DEFAULT_TITLE,
    Conversation,
    ConversationStats,
    ConversationUpdate,
    Message,
    MessageRole,
)

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an Azure DevOps assistant. Answer questions about work items, sprints "
    "and teams using the data provided, and say so when the data does not answer the question."
)
TITLE_SNIPPET_CHARS = 50
PREVIEW_CHARS = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def estimate_tokens(text: str) -> int:
    # Rough: 4 chars per token
    return max(1, len(text) // 4) if text else 0


def format_title_timestamp(moment: datetime) -> str:
    """Render e.g. ``Oct 19, 3:45 PM`` without locale-dependent directives."""
    hour = moment.hour % 12 or 12
    meridiem = "AM" if moment.hour < 12 else "PM"
    return f"{moment:%b} {moment.day}, {hour}:{moment:%M} {meridiem}"


def derive_title(content: str, sent_at: datetime) -> str:
    """Title from the first user message: first 50 characters plus a send-time suffix."""
    snippet = " ".join(content.split())[:TITLE_SNIPPET_CHARS].rstrip()
    return f"{snippet or DEFAULT_TITLE} ({format_title_timestamp(sent_at)})"


class ConversationContextStore:
    """
    Append-only per-conversation message log with derived conversation metadata.

    Usage:
        store = ConversationContextStore(redis_client)
        conversation = await store.create_conversation("ana@example.com")
        await store.add_message(conversation.id, MessageRole.USER, "Show my active bugs")
        recent = await store.get_messages(conversation.id, limit=10)
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        ttl_days: int = 30,
        display_timezone: str = "America/Los_Angeles",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.redis = redis_client
        self.ttl_seconds = ttl_days * 24 * 60 * 60
        self.display_tz = ZoneInfo(display_timezone)
        self._clock = clock

    @staticmethod
    def _conversation_key(conversation_id: str) -> str:
        return f"conversation:{conversation_id}"

    @staticmethod
    def _messages_key(conversation_id: str) -> str:
        return f"conversation:{conversation_id}:messages"

    @staticmethod
    def _user_index_key(user_id: str) -> str:
        return f"user:{user_id}:conversations"

    @staticmethod
    def _serialize(conversation: Conversation) -> Dict[str, Any]:
        return {
            "id": conversation.id,
            "userId": conversation.user_id,
            "title": conversation.title,
            "createdAt": conversation.created_at,
            "updatedAt": conversation.updated_at,
            "messageCount": conversation.message_count,
            "model": conversation.model,
            "totalTokens": conversation.total_tokens,
            "lastMessagePreview": conversation.last_message_preview,
            "metadata": json.dumps(conversation.metadata),
        }

    @staticmethod
    def _deserialize(data: Dict[str, str]) -> Conversation:
        return Conversation(
            id=data["id"],
            user_id=data["userId"],
            title=data.get("title") or DEFAULT_TITLE,
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
            message_count=int(data.get("messageCount", 0)),
            model=data.get("model") or "gpt-4o",
            total_tokens=int(data.get("totalTokens", 0)),
            last_message_preview=data.get("lastMessagePreview", ""),
            metadata=json.loads(data.get("metadata") or "{}"),
        )

    @staticmethod
    def _parse_member(member: str) -> Message:
        _, _, payload = member.partition("|")
        return Message.model_validate_json(payload)

    async def create_conversation(
        self,
        user_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Conversation:
        """Create an empty conversation owned by ``user_id`` and index it for listing."""
        now = _to_ms(self._clock())
        conversation = Conversation(
            id=conversation_id or uuid.uuid4().hex,
            user_id=user_id,
            title=title or DEFAULT_TITLE,
            created_at=now,
            updated_at=now,
            model=model or "gpt-4o",
            metadata={"systemPrompt": system_prompt or DEFAULT_SYSTEM_PROMPT},
        )
        key = self._conversation_key(conversation.id)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=self._serialize(conversation))
            pipe.expire(key, self.ttl_seconds)
            pipe.zadd(self._user_index_key(user_id), {conversation.id: now})
            await pipe.execute()

        logger.info("Conversation created", conversation_id=conversation.id)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        data = await self.redis.hgetall(self._conversation_key(conversation_id))
        # A record without its id is a leftover counter, not a conversation
        if not data or "id" not in data:
            return None
        return self._deserialize(data)

    async def add_message(
        self,
        conversation_id: str,
        role: MessageRole | str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """
        Append one message, metadata included, in a single write.

        Updates messageCount, totalTokens, lastMessagePreview and updatedAt in
        the same transaction. The first user message of a conversation that
        still carries the default title gets a derived title.

        Raises:
            ConversationNotFoundError: if the conversation does not exist
        """
        role = MessageRole(role)
        conversation_key = self._conversation_key(conversation_id)
        messages_key = self._messages_key(conversation_id)

        # WATCH the record so a concurrent delete or append aborts this write and it is retried
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(conversation_key)
                    data = await pipe.hgetall(conversation_key)
                    if not data or "id" not in data:
                        raise ConversationNotFoundError(conversation_id)
                    conversation = self._deserialize(data)
                    seq = int(data.get("messageSeq", 0)) + 1

                    sent_at = self._clock()
                    timestamp = _to_ms(sent_at)
                    message = Message(
                        id=uuid.uuid4().hex,
                        role=role,
                        content=content,
                        timestamp=timestamp,
                        metadata=metadata or None,
                    )
                    member = f"{seq:012d}|{message.model_dump_json(by_alias=True, exclude_none=True)}"

                    updated_at = max(timestamp, conversation.updated_at)
                    fields: Dict[str, Any] = {
                        "messageSeq": seq,
                        "updatedAt": updated_at,
                        "lastMessagePreview": content[:PREVIEW_CHARS],
                    }
                    if role is MessageRole.USER and conversation.title == DEFAULT_TITLE:
                        fields["title"] = derive_title(content, sent_at.astimezone(self.display_tz))

                    pipe.multi()
                    pipe.zadd(messages_key, {member: timestamp})
                    pipe.hincrby(conversation_key, "messageCount", 1)
                    pipe.hincrby(conversation_key, "totalTokens", estimate_tokens(content))
                    pipe.hset(conversation_key, mapping=fields)
                    pipe.zadd(self._user_index_key(conversation.user_id), {conversation_id: updated_at})
                    pipe.expire(conversation_key, self.ttl_seconds)
                    pipe.expire(messages_key, self.ttl_seconds)
                    await pipe.execute()
                    break
                except redis.WatchError:
                    logger.debug("Conversation changed during append, retrying", conversation_id=conversation_id)
                    continue

        logger.debug(
            "Message added to conversation",
            conversation_id=conversation_id,
            role=role.value,
            content_length=len(content),
            has_metadata=metadata is not None,
        )
        return message

    async def get_messages(self, conversation_id: str, limit: int = 50) -> List[Message]:
        """Most recent ``limit`` messages in chronological order."""
        if limit <= 0:
            return []
        members = await self.redis.zrange(self._messages_key(conversation_id), -limit, -1)
        return [self._parse_member(member) for member in members]

    async def get_recent_context(
        self,
        conversation_id: str,
        limit: int = 10,
        max_tokens: int = 2000,
    ) -> List[Message]:
        """
        Recent messages that fit a token budget, oldest first.

        Args:
            conversation_id: Conversation identifier
            limit: Upper bound on messages considered
            max_tokens: Token budget across the returned messages
        """
        messages = await self.get_messages(conversation_id, limit=limit)
        context: List[Message] = []
        current_tokens = 0
        for message in reversed(messages):
            msg_tokens = estimate_tokens(message.content)
            if current_tokens + msg_tokens > max_tokens:
                break
            context.append(message)
            current_tokens += msg_tokens
        return list(reversed(context))

    async def update_conversation(self, conversation_id: str, patch: ConversationUpdate) -> Conversation:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        updated_at = max(_to_ms(self._clock()), conversation.updated_at)
        fields: Dict[str, Any] = {"updatedAt": updated_at}
        if patch.title is not None:
            fields["title"] = patch.title
        if patch.model is not None:
            fields["model"] = patch.model
        if patch.metadata is not None:
            fields["metadata"] = json.dumps({**conversation.metadata, **patch.metadata})

        key = self._conversation_key(conversation_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping=fields)
            pipe.zadd(self._user_index_key(conversation.user_id), {conversation_id: updated_at})
            pipe.expire(key, self.ttl_seconds)
            await pipe.execute()

        return await self.get_conversation(conversation_id)

    async def list_user_conversations(self, user_id: str, limit: int = 50) -> List[Conversation]:
        """Conversations for ``user_id``, most recently updated first."""
        index_key = self._user_index_key(user_id)
        ids = await self.redis.zrevrange(index_key, 0, max(0, limit - 1))
        if not ids:
            return []

        async with self.redis.pipeline(transaction=False) as pipe:
            for conversation_id in ids:
                pipe.hgetall(self._conversation_key(conversation_id))
            records = await pipe.execute()

        conversations = []
        expired = []
        for conversation_id, data in zip(ids, records):
            if data and "id" in data:
                conversations.append(self._deserialize(data))
            else:
                expired.append(conversation_id)

        if expired:
            await self.redis.zrem(index_key, *expired)
            logger.debug("Pruned expired conversations from index", count=len(expired))

        return conversations

    async def delete_conversation(self, conversation_id: str) -> bool:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            return False

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._conversation_key(conversation_id))
            pipe.delete(self._messages_key(conversation_id))
            pipe.zrem(self._user_index_key(conversation.user_id), conversation_id)
            await pipe.execute()

        logger.info("Conversation deleted", conversation_id=conversation_id)
        return True

    async def cleanup_inactive(self, user_id: str, inactivity_days: int = 5) -> List[str]:
        """
        Delete the user's conversations not updated within ``inactivity_days``.

        Returns:
            Ids of the conversations that were deleted
        """
        cutoff = _to_ms(self._clock() - timedelta(days=inactivity_days))
        index_key = self._user_index_key(user_id)
        # The index is scored by updatedAt, so stale ids come straight from a range read
        stale_ids = await self.redis.zrangebyscore(index_key, "-inf", f"({cutoff}")

        deleted: List[str] = []
        for conversation_id in stale_ids:
            conversation = await self.get_conversation(conversation_id)
            if conversation is None:
                await self.redis.zrem(index_key, conversation_id)
                continue
            if conversation.updated_at < cutoff and await self.delete_conversation(conversation_id):
                deleted.append(conversation_id)

        logger.info(
            "Inactive conversations cleaned up",
            checked=len(stale_ids),
            deleted=len(deleted),
            inactivity_days=inactivity_days,
        )
        return deleted

    async def get_stats(self, conversation_id: str) -> Optional[ConversationStats]:
        conversation = await self.get_conversation(conversation_id)
        if conversation is None:
            return None

        messages = await self.get_messages(conversation_id, limit=max(conversation.message_count, 1))
        return ConversationStats(
            conversation_id=conversation.id,
            title=conversation.title,
            message_count=conversation.message_count,
            user_messages=sum(1 for m in messages if m.role is MessageRole.USER),
            assistant_messages=sum(1 for m in messages if m.role is MessageRole.ASSISTANT),
            total_tokens=conversation.total_tokens,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )
