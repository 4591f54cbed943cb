"""
Exact-match cache for backend query results.

Keys are a hash of the normalized criteria and filters, so the same logical
query served to two users with the same filters shares one entry.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, Optional

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class QueryResultCache:
    """Short-lived Redis cache for work item query results."""

    def __init__(self, redis_client: Optional[redis.Redis], ttl_seconds: int = 300, namespace: str = "ado:query"):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.namespace = namespace

    def _key(self, request: Dict[str, Any]) -> str:
        normalized = json.dumps(request, sort_keys=True, default=str)
        query_hash = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:32]
        return f"{self.namespace}:{query_hash}"

    async def get(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.redis is None:
            return None
        try:
            cached = await self.redis.get(self._key(request))
        except redis.RedisError as e:
            logger.error("Error reading query cache", error=str(e))
            return None
        if cached:
            logger.debug("Query cache hit")
            return json.loads(cached)
        return None

    async def set(self, request: Dict[str, Any], value: Dict[str, Any]) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(self._key(request), self.ttl_seconds, json.dumps(value, default=str))
        except redis.RedisError as e:
            logger.error("Error writing query cache", error=str(e))

    async def clear(self) -> int:
        if self.redis is None:
            return 0
        deleted = 0
        async for key in self.redis.scan_iter(match=f"{self.namespace}:*"):
            deleted += await self.redis.delete(key)
        return deleted
