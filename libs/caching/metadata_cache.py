"""
Cache-aside store for organization-wide reference data.

The current MetadataSnapshot is held as a single in-process reference and
mirrored to Redis (``ado:metadata:all``) so other workers start warm.
Refreshes build a complete new snapshot before swapping the reference, so
readers see either the old snapshot or the new one.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

import redis.asyncio as redis
import structlog
from pydantic import ValidationError

from libs.models.metadata import CATEGORIES, MetadataSnapshot, MetadataStats

logger = structlog.get_logger(__name__)

METADATA_KEY = "ado:metadata:all"


class MetadataSource(Protocol):
    async def fetch_reference_data(self, category: str) -> List[Dict[str, Any]]:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetadataCache:
    """
    Process-wide reference data cache with TTL-based staleness.

    Usage:
        cache = MetadataCache(ado_client, redis_client, ttl_seconds=1800)
        snapshot = await cache.preload_all()
        sprint = cache.current_sprint()
    """

    def __init__(
        self,
        source: MetadataSource,
        redis_client: Optional[redis.Redis] = None,
        ttl_seconds: int = 1800,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.source = source
        self.redis = redis_client
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._snapshot: Optional[MetadataSnapshot] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def snapshot(self) -> Optional[MetadataSnapshot]:
        """Current snapshot, possibly stale. None before the first load."""
        return self._snapshot

    def is_fresh(self, snapshot: Optional[MetadataSnapshot]) -> bool:
        return snapshot is not None and self._clock() - snapshot.last_updated < self.ttl

    async def preload_all(self) -> MetadataSnapshot:
        """Return the cached snapshot when fresh, otherwise load or fetch a new one."""
        snapshot = self._snapshot
        if self.is_fresh(snapshot):
            logger.debug("Metadata cache hit", last_updated=snapshot.last_updated.isoformat())
            return snapshot

        async with self._refresh_lock:
            # Another caller may have refreshed while we waited
            snapshot = self._snapshot
            if self.is_fresh(snapshot):
                return snapshot

            stored = await self._load()
            if self.is_fresh(stored) and (snapshot is None or stored.last_updated > snapshot.last_updated):
                self._snapshot = stored
                logger.info("Metadata loaded from Redis", counts=stored.counts())
                return stored

            return await self._refresh_locked()

    async def refresh(self) -> MetadataSnapshot:
        """Unconditionally fetch every category and replace the snapshot."""
        async with self._refresh_lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> MetadataSnapshot:
        start_time = time.time()
        results = await asyncio.gather(*(self.source.fetch_reference_data(category) for category in CATEGORIES))

        stamp = self._clock()
        previous = self._snapshot
        if previous is not None and stamp <= previous.last_updated:
            stamp = previous.last_updated + timedelta(microseconds=1)

        snapshot = MetadataSnapshot(
            **{category: tuple(items) for category, items in zip(CATEGORIES, results)},
            last_updated=stamp,
        )
        self._snapshot = snapshot
        await self._store(snapshot)

        logger.info(
            "Metadata refreshed",
            counts=snapshot.counts(),
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return snapshot

    async def _load(self) -> Optional[MetadataSnapshot]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(METADATA_KEY)
        except redis.RedisError as e:
            logger.warning("Error reading metadata from Redis", error=str(e))
            return None
        if not raw:
            return None
        try:
            return MetadataSnapshot.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Discarding unreadable metadata blob", error=str(e))
            return None

    async def _store(self, snapshot: MetadataSnapshot) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(
                METADATA_KEY,
                int(self.ttl.total_seconds()),
                snapshot.model_dump_json(by_alias=True),
            )
        except redis.RedisError as e:
            logger.warning("Error writing metadata to Redis", error=str(e))

    async def get_stats(self) -> MetadataStats:
        snapshot = self._snapshot
        if snapshot is None:
            snapshot = await self._load()
        if snapshot is None:
            return MetadataStats(cached=False)
        return MetadataStats(
            cached=self.is_fresh(snapshot),
            last_updated=snapshot.last_updated,
            counts=snapshot.counts(),
        )

    async def invalidate(self) -> None:
        self._snapshot = None
        if self.redis is not None:
            await self.redis.delete(METADATA_KEY)

    def find_sprints(self, term: str) -> List[Dict[str, Any]]:
        """Sprints whose name or path contains ``term`` (case-insensitive)."""
        if self._snapshot is None:
            return []
        needle = term.lower()
        return [
            sprint
            for sprint in self._snapshot.sprints
            if needle in str(sprint.get("name", "")).lower() or needle in str(sprint.get("path", "")).lower()
        ]

    def find_users(self, term: str) -> List[Dict[str, Any]]:
        if self._snapshot is None:
            return []
        needle = term.lower()
        return [
            user
            for user in self._snapshot.users
            if needle in str(user.get("displayName", "")).lower()
            or needle in str(user.get("uniqueName", "")).lower()
        ]

    def current_sprint(self) -> Optional[Dict[str, Any]]:
        if self._snapshot is None:
            return None
        return next((s for s in self._snapshot.sprints if s.get("timeFrame") == "current"), None)
