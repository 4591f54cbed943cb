"""
Redis-backed caches.

- redis_client: async client creation and health checks
- metadata_cache: organization reference data snapshot
- query_cache: short-lived work item query results
- rate_limit: fixed-window usage counters
"""

from libs.caching.metadata_cache import MetadataCache
from libs.caching.query_cache import QueryResultCache
from libs.caching.rate_limit import RateLimitCounter
from libs.caching.redis_client import close_redis_client, create_redis_client

__all__ = ["MetadataCache", "QueryResultCache", "RateLimitCounter", "close_redis_client", "create_redis_client"]
