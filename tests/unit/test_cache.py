"""
Tests for the Redis-backed query result cache.
"""

import pytest

from queryengine.infrastructure.cache.query_cache import (
    DEFAULT_TTL_SECONDS,
    QueryCache,
    build_cache_key,
    canonical_parameters,
    parameter_hash,
)
from queryengine.models import QueryDefinition, QueryResult


@pytest.fixture
def definition(relational_definition):
    return QueryDefinition.model_validate(relational_definition)


class TestKeys:
    """Tests for cache key construction."""

    def test_default_key_shape(self, definition):
        key = build_cache_key(definition, {"id": 1})
        prefix, query_id, version, digest = key.split(":")
        assert (prefix, query_id, version) == ("query", "user_lookup", "1.0.0")
        assert len(digest) == 8

    def test_unversioned_definition_key(self, directory_definition):
        definition = QueryDefinition.model_validate(directory_definition)
        key = build_cache_key(definition, {"username": "alice"})
        assert key.startswith("query:ad_user_search::")
        assert "None" not in key

    def test_key_ignores_parameter_order(self):
        assert parameter_hash({"a": 1, "b": 2}) == parameter_hash({"b": 2, "a": 1})
        assert canonical_parameters({"b": 2, "a": 1}) == '{"a":1,"b":2}'

    def test_different_parameters_different_keys(self, definition):
        assert build_cache_key(definition, {"id": 1}) != build_cache_key(definition, {"id": 2})

    def test_key_template(self, relational_definition):
        relational_definition["cache"] = {"enabled": True, "ttlSeconds": 60, "keyTemplate": "user:{{id}}:{{missing}}"}
        definition = QueryDefinition.model_validate(relational_definition)
        assert build_cache_key(definition, {"id": 7}) == "query:user:7:"

    def test_key_template_keeps_existing_prefix(self, relational_definition):
        relational_definition["cache"] = {"enabled": True, "ttlSeconds": 60, "keyTemplate": "query:u:{{id}}"}
        definition = QueryDefinition.model_validate(relational_definition)
        assert build_cache_key(definition, {"id": 7}) == "query:u:7"


class TestReadWrite:
    """Tests for get / set round trips."""

    def test_set_then_get_marks_cached(self, cache, definition):
        """Test a stored envelope comes back with cached flipped on."""
        cache.set(definition, {"a": 1}, {
            "success": True,
            "data": [{"x": 1}],
            "metadata": {"cached": False, "executionTime": 3.0, "rowCount": 1},
        })
        hit = cache.get(definition, {"a": 1})
        assert hit is not None
        assert hit.data == [{"x": 1}]
        assert hit.metadata.cached is True

    def test_stored_payload_not_marked_cached(self, cache, fake_redis, definition):
        cache.set(definition, {"a": 1}, QueryResult.ok([{"x": 1}], execution_time=1.0).with_cached(True))
        raw = fake_redis.store[build_cache_key(definition, {"a": 1})]
        assert b'"cached":false' in raw

    def test_ttl_from_definition(self, cache, fake_redis, definition):
        cache.set(definition, {}, QueryResult.ok([], execution_time=1.0))
        assert fake_redis.ttls[build_cache_key(definition, {})] == 60

    def test_default_ttl(self, cache, fake_redis, relational_definition):
        relational_definition["cache"] = {"enabled": True}
        definition = QueryDefinition.model_validate(relational_definition)
        cache.set(definition, {}, QueryResult.ok([], execution_time=1.0))
        assert fake_redis.ttls[build_cache_key(definition, {})] == DEFAULT_TTL_SECONDS

    def test_miss(self, cache, definition):
        assert cache.get(definition, {"a": 2}) is None

    def test_corrupt_entry_is_a_miss(self, cache, fake_redis, definition):
        fake_redis.store[build_cache_key(definition, {})] = b"{not json"
        assert cache.get(definition, {}) is None

    def test_store_errors_never_raise(self, cache, fake_redis, definition):
        fake_redis.fail = True
        assert cache.get(definition, {}) is None
        cache.set(definition, {}, QueryResult.ok([], execution_time=1.0))
        assert cache.clear() == 0
        assert cache.is_available() is False


class TestUnavailable:
    """Tests for store-unavailable mode."""

    def test_no_client(self, definition):
        cache = QueryCache(None)
        assert cache.enabled is False
        cache.set(definition, {}, QueryResult.ok([{"x": 1}], execution_time=1.0))
        assert cache.get(definition, {}) is None
        assert cache.clear("user_lookup") == 0
        assert cache.get_ttl("query:x") == -2
        assert cache.expire("query:x", 10) is False
        assert cache.get_stats() == {"redis_available": False}

    def test_from_url_without_url(self):
        assert QueryCache.from_url(None).enabled is False

    def test_from_url_unreachable(self, monkeypatch):
        class Unreachable:
            def ping(self):
                raise OSError("connection refused")

        monkeypatch.setattr(
            "queryengine.infrastructure.cache.query_cache.redis.from_url",
            lambda url, **kwargs: Unreachable(),
        )
        assert QueryCache.from_url("redis://nowhere:6379/0").enabled is False

    def test_from_url_connected(self, monkeypatch, fake_redis):
        captured = {}

        def from_url(url, **kwargs):
            captured.update(kwargs)
            return fake_redis

        monkeypatch.setattr("queryengine.infrastructure.cache.query_cache.redis.from_url", from_url)
        cache = QueryCache.from_url("redis://cache:6379/0", connect_timeout=1, socket_timeout=3)
        assert cache.enabled is True
        assert captured == {"socket_connect_timeout": 1, "socket_timeout": 3}


class TestInvalidation:
    """Tests for clear and pattern invalidation."""

    def test_clear_one_definition(self, cache, fake_redis, definition):
        cache.set(definition, {"id": 1}, QueryResult.ok([], execution_time=1.0))
        cache.set(definition, {"id": 2}, QueryResult.ok([], execution_time=1.0))
        fake_redis.store["query:other:1.0.0:abcdef12"] = b"{}"

        assert cache.clear("user_lookup") == 2
        assert list(fake_redis.store) == ["query:other:1.0.0:abcdef12"]

    def test_clear_all(self, cache, fake_redis, definition):
        cache.set(definition, {"id": 1}, QueryResult.ok([], execution_time=1.0))
        fake_redis.store["query:other:1.0.0:abcdef12"] = b"{}"
        fake_redis.store["session:abc"] = b"{}"

        assert cache.clear() == 2
        assert list(fake_redis.store) == ["session:abc"]

    def test_ttl_and_expire(self, cache, definition):
        cache.set(definition, {}, QueryResult.ok([], execution_time=1.0))
        key = cache.build_key(definition, {})
        assert cache.get_ttl(key) == 60
        assert cache.expire(key, 5) is True
        assert cache.get_ttl(key) == 5

    def test_stats(self, cache, definition):
        cache.set(definition, {}, QueryResult.ok([], execution_time=1.0))
        stats = cache.get_stats()
        assert stats["redis_available"] is True
        assert stats["cached_queries"] == 1
        assert stats["redis_memory_used"] == "1.00M"
