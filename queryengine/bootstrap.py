"""
Process bootstrap.

Builds the one long-lived QueryService a process shares across request
handlers:

    from queryengine.bootstrap import create_query_service

    service = create_query_service(directory=MyDirectoryExecutor())
    result = service.execute_query(definition, {"parameters": {"id": 7}})

The relational pool is created when a database URL is configured; the
cache connects to Redis when a Redis URL is configured and caching is
enabled. Directory, graph and report executors are supplied by the caller.
"""

import logging
from typing import Optional

from queryengine.adapters.base import DirectoryExecutor, GraphExecutor, ReportExecutor
from queryengine.adapters.postgres_adapter import PostgresAdapter
from queryengine.core.config import Settings, get_settings
from queryengine.core.log_config import configure_logging
from queryengine.credentials import SettingsCredentialProvider, UserCredentialLookup
from queryengine.crypto import ValueCipher
from queryengine.domain.query.parameters import ParameterProcessor
from queryengine.domain.query.service import QueryService
from queryengine.infrastructure.cache.query_cache import QueryCache
from queryengine.infrastructure.observability.metrics import InMemoryQueryMetrics

logger = logging.getLogger(__name__)


def create_query_service(
    settings: Optional[Settings] = None,
    *,
    directory: Optional[DirectoryExecutor] = None,
    graph: Optional[GraphExecutor] = None,
    report: Optional[ReportExecutor] = None,
    user_credentials: Optional[UserCredentialLookup] = None,
) -> QueryService:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    relational = None
    if settings.database_url:
        relational = PostgresAdapter({
            "dsn": settings.database_url,
            "pool_min": settings.db_pool_min,
            "pool_max": settings.db_pool_max,
        })

    if settings.cache_enabled:
        cache = QueryCache.from_url(
            settings.redis_url,
            connect_timeout=settings.cache_connect_timeout,
            socket_timeout=settings.cache_socket_timeout,
        )
    else:
        cache = QueryCache(None)

    metrics = InMemoryQueryMetrics(
        retention_hours=settings.metrics_retention_hours,
        slow_query_threshold_ms=settings.slow_query_threshold_ms,
        enabled=settings.metrics_enabled,
    )

    service = QueryService(
        relational=relational,
        cache=cache,
        metrics=metrics,
        directory=directory,
        graph=graph,
        report=report,
        credentials=SettingsCredentialProvider(settings, user_lookup=user_credentials),
        processor=ParameterProcessor(cipher=ValueCipher(settings.secret_key) if settings.secret_key else None),
        settings=settings,
    )
    logger.info(
        f"{settings.app_name} {settings.app_version} ready "
        f"(relational={'on' if relational else 'off'}, cache={'on' if cache.enabled else 'off'})"
    )
    return service
