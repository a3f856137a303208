"""
Cache Infrastructure

Redis-backed query result cache.
"""

from queryengine.infrastructure.cache.query_cache import (
    QueryCache,
    build_cache_key,
    canonical_parameters,
    parameter_hash,
)

__all__ = ["QueryCache", "build_cache_key", "canonical_parameters", "parameter_hash"]
