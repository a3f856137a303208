"""
Pytest configuration and shared fixtures for query engine tests.
"""

import fnmatch
from datetime import datetime, timezone

import pytest

from queryengine.adapters.base import (
    AdapterResult,
    BackendReply,
    DirectoryExecutor,
    GraphExecutor,
    RelationalAdapter,
    ReportExecutor,
)
from queryengine.core.config import Settings
from queryengine.domain.query.service import QueryService
from queryengine.infrastructure.cache.query_cache import QueryCache
from queryengine.infrastructure.observability.metrics import InMemoryQueryMetrics


FIXED_NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeRedis:
    """In-memory stand-in for the subset of redis.Redis the cache uses."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RuntimeError("redis down")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.store[key] = value.encode("utf-8") if isinstance(value, str) else value
        self.ttls[key] = ex
        return True

    def keys(self, pattern):
        self._check()
        return [k for k in self.store if fnmatch.fnmatchcase(k, pattern)]

    def delete(self, *keys):
        self._check()
        deleted = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.ttls.pop(key, None)
                deleted += 1
        return deleted

    def ttl(self, key):
        self._check()
        if key not in self.store:
            return -2
        return self.ttls.get(key) or -1

    def expire(self, key, seconds):
        self._check()
        if key not in self.store:
            return False
        self.ttls[key] = seconds
        return True

    def info(self, section=None):
        self._check()
        return {"used_memory_human": "1.00M"}


class StubRelational(RelationalAdapter):
    """Relational adapter returning canned rows and recording every call."""

    ENGINE = "stub"

    def __init__(self, rows=None, error=None):
        super().__init__({})
        self.rows = rows if rows is not None else []
        self.error = error
        self.calls = []
        self.healthy = True

    def connect(self):
        self._connected = True

    def disconnect(self):
        self._connected = False

    def execute(self, sql, params=None, timeout_ms=None):
        self.calls.append({"sql": sql, "params": list(params or []), "timeout_ms": timeout_ms})
        if self.error is not None:
            raise self.error
        return AdapterResult(rows=[dict(r) for r in self.rows], engine=self.ENGINE, sql=sql, execution_time_ms=1.5)

    def health_check(self):
        return self.healthy


class StubExecutor(DirectoryExecutor, GraphExecutor, ReportExecutor):
    """Directory / graph / report executor returning a canned reply."""

    def __init__(self, reply=None, error=None):
        self.reply = reply if reply is not None else BackendReply()
        self.error = error
        self.requests = []
        self.healthy = True

    def execute(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.reply

    def health_check(self):
        return self.healthy


@pytest.fixture
def fixed_now():
    """Return a fixed UTC instant for clock-dependent code."""
    return FIXED_NOW


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return QueryCache(fake_redis)


@pytest.fixture
def metrics():
    return InMemoryQueryMetrics(slow_query_threshold_ms=10_000)


@pytest.fixture
def engine_settings():
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        directory_base_dn="DC=corp,DC=example",
        directory_username="svc_reader",
        directory_password="s3cret",
        graph_tenant_id="tenant",
        graph_client_id="client",
        graph_client_secret="secret",
    )


@pytest.fixture
def relational():
    return StubRelational(rows=[
        {"id": 1, "name": "alice"},
        {"id": 2, "name": "bob"},
    ])


@pytest.fixture
def directory():
    return StubExecutor(BackendReply(data=[{"cn": "alice"}], count=1, execution_time=4.0))


@pytest.fixture
def graph():
    return StubExecutor({"data": [{"displayName": "Alice"}], "count": 1, "executionTime": 7.0})


@pytest.fixture
def report():
    return StubExecutor({"data": [{"user": "alice", "mailboxSizeMB": 10}], "count": 1})


@pytest.fixture
def service(relational, cache, metrics, directory, graph, report, engine_settings):
    return QueryService(
        relational=relational,
        cache=cache,
        metrics=metrics,
        directory=directory,
        graph=graph,
        report=report,
        settings=engine_settings,
    )


@pytest.fixture
def relational_definition():
    """Return a valid relational definition with caching enabled."""
    return {
        "id": "user_lookup",
        "name": "User lookup",
        "version": "1.0.0",
        "dataSource": "relational",
        "statement": "SELECT id, name FROM accounts WHERE id = $1 LIMIT 10",
        "parameters": [
            {"name": "id", "type": "number", "required": True},
        ],
        "cache": {"enabled": True, "ttlSeconds": 60},
        "access": {"requiresAuth": True, "roles": ["admin"]},
    }


@pytest.fixture
def directory_definition():
    """Return a valid directory definition."""
    return {
        "id": "ad_user_search",
        "name": "Directory user search",
        "dataSource": "directory",
        "config": {
            "type": "ldap",
            "filter": "(&(objectClass=user)(sAMAccountName={{username}}))",
            "attributes": ["cn", "mail"],
            "base": "OU=Users,{{baseDN}}",
        },
        "parameters": [
            {"name": "username", "type": "string", "required": True},
        ],
        "access": {"requiresAuth": True},
    }


@pytest.fixture
def graph_definition():
    return {
        "id": "graph_users",
        "name": "Graph users",
        "version": "1.0.0",
        "dataSource": "graph",
        "config": {"type": "graph", "endpoint": "/users", "filter": "startswith(displayName,'{{prefix}}')"},
        "parameters": [{"name": "prefix", "type": "string", "required": True}],
        "constraints": {"maxResults": 25},
        "access": {"requiresAuth": False},
    }


@pytest.fixture
def report_definition():
    return {
        "id": "mailbox_usage",
        "name": "Mailbox usage",
        "version": "1.0.0",
        "dataSource": "report",
        "config": {"type": "report", "endpoint": "getMailboxUsageDetail"},
        "parameters": [{"name": "period", "type": "string", "validation": {"enum": ["D7", "D30"]}}],
        "access": {"requiresAuth": True},
    }
