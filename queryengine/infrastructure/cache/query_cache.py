"""
Query result cache backed by Redis.

KEY DESIGN PRINCIPLES:
----------------------
1. Cache is an OPTIMIZATION, not a source of truth
2. Graceful degradation: the engine works without Redis
3. No cache operation ever raises into the query path

CACHE KEY STRUCTURE:
Default:  query:{definition_id}:{version}:{hash8}  (version empty when unset)
Default:  query:{definition_id}:{version}:{hash8}
Template: cache.keyTemplate with every {{name}} replaced by the parameter
          value, prefixed with ``query:`` when it is not already

hash8 is the first 8 hex chars of SHA-256 over the parameters serialized as
JSON with sorted keys, so key order in the bag never changes the key.

Stored values are QueryResult envelopes with ``metadata.cached`` false;
reads flip it to true.
"""

import hashlib
import json
import logging
import re
from typing import Any, Dict, Mapping, Optional, Union

import redis

from queryengine.models import QueryDefinition, QueryResult

logger = logging.getLogger(__name__)

KEY_PREFIX = "query:"
DEFAULT_TTL_SECONDS = 300
TEMPLATE_TOKEN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")


def canonical_parameters(parameters: Optional[Mapping[str, Any]]) -> str:
    """Stable JSON for a parameter bag."""
    return json.dumps(parameters or {}, sort_keys=True, separators=(',', ':'), default=str)


def parameter_hash(parameters: Optional[Mapping[str, Any]]) -> str:
    return hashlib.sha256(canonical_parameters(parameters).encode('utf-8')).hexdigest()[:8]


def build_cache_key(definition: QueryDefinition, parameters: Optional[Mapping[str, Any]]) -> str:
    template = definition.cache.key_template if definition.cache else None
    if template:
        values = parameters or {}

        def _substitute(match):
            value = values.get(match.group(1))
            return "" if value is None else str(value)

        key = TEMPLATE_TOKEN.sub(_substitute, template)
        return key if key.startswith(KEY_PREFIX) else f"{KEY_PREFIX}{key}"

    version = definition.version or ""
    return f"{KEY_PREFIX}{definition.id}:{version}:{parameter_hash(parameters)}"


class QueryCache:
    """
    Read-through / write-through cache for query results.

    Constructed without a client the cache runs in store-unavailable mode:
    reads miss, writes and clears do nothing.
    """

    def __init__(self, client: Optional["redis.Redis"] = None):
        self._client = client

    @classmethod
    def from_url(
        cls,
        redis_url: Optional[str],
        connect_timeout: float = 2,
        socket_timeout: float = 5,
    ) -> "QueryCache":
        """Connect with fast-fail timeouts. An unreachable store disables caching."""
        if not redis_url:
            logger.info("No Redis URL configured. Caching disabled.")
            return cls(None)
        try:
            client = redis.from_url(
                redis_url,
                socket_connect_timeout=connect_timeout,
                socket_timeout=socket_timeout
            )
            client.ping()
            logger.info(f"Redis connected: {redis_url}")
        except Exception as e:
            logger.warning(f"Redis unavailable: {e}. Caching disabled.")
            client = None
        return cls(client)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def build_key(self, definition: QueryDefinition, parameters: Optional[Mapping[str, Any]]) -> str:
        return build_cache_key(definition, parameters)

    # -------------------------------------------------------------------------
    # Read / write
    # -------------------------------------------------------------------------

    def get(self, definition: QueryDefinition, parameters: Optional[Mapping[str, Any]]) -> Optional[QueryResult]:
        """Cached envelope with ``cached`` set, or None on miss or any failure."""
        if self._client is None:
            return None
        key = self.build_key(definition, parameters)
        try:
            raw = self._client.get(key)
            if raw is None:
                logger.debug(f"Cache miss: {key}")
                return None
            result = QueryResult.model_validate_json(raw)
        except Exception as e:
            logger.warning(f"Cache read error for {key}: {e}")
            return None
        logger.debug(f"Cache hit: {key}")
        return result.with_cached(True)

    def set(
        self,
        definition: QueryDefinition,
        parameters: Optional[Mapping[str, Any]],
        result: Union[QueryResult, Mapping[str, Any]],
    ) -> None:
        if self._client is None:
            return
        key = self.build_key(definition, parameters)
        try:
            if not isinstance(result, QueryResult):
                result = QueryResult.model_validate(result)
            payload = result.with_cached(False).model_dump_json(by_alias=True)
            ttl = definition.cache.ttl_seconds if definition.cache and definition.cache.ttl_seconds else DEFAULT_TTL_SECONDS
            self._client.set(key, payload, ex=ttl)
            logger.debug(f"Cached {key} for {ttl}s")
        except Exception as e:
            logger.warning(f"Cache write error for {key}: {e}")

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def clear(self, query_id: Optional[str] = None) -> int:
        """Delete entries for one definition, or every query entry. Returns count deleted."""
        pattern = f"{KEY_PREFIX}{query_id}:*" if query_id else f"{KEY_PREFIX}*"
        return self.invalidate_pattern(pattern)

    def invalidate_pattern(self, pattern: str) -> int:
        if self._client is None:
            return 0
        try:
            keys = self._client.keys(pattern)
            if keys:
                deleted = self._client.delete(*keys)
                logger.info(f"Invalidated {deleted} cache entries matching {pattern}")
                return deleted
        except Exception as e:
            logger.warning(f"Cache clear error: {e}")
        return 0

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def is_available(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(self._client.ping())
        except Exception as e:
            logger.debug(f"Redis ping failed: {e}")
            return False

    def get_ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -2 when missing or the store is unavailable."""
        if self._client is None:
            return -2
        try:
            return int(self._client.ttl(key))
        except Exception as e:
            logger.warning(f"Cache TTL lookup error for {key}: {e}")
            return -2

    def expire(self, key: str, ttl_seconds: int) -> bool:
        if self._client is None:
            return False
        try:
            return bool(self._client.expire(key, ttl_seconds))
        except Exception as e:
            logger.warning(f"Cache expire error for {key}: {e}")
            return False

    def get_stats(self) -> Dict[str, Any]:
        """Cache statistics for monitoring."""
        stats: Dict[str, Any] = {"redis_available": self._client is not None}
        if self._client is None:
            return stats
        try:
            info = self._client.info("memory")
            stats["redis_memory_used"] = info.get("used_memory_human")
            stats["cached_queries"] = len(self._client.keys(f"{KEY_PREFIX}*"))
        except Exception as e:
            stats["error"] = str(e)
        return stats
