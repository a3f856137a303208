"""
Observability Infrastructure

Query execution metrics collection.
"""

from queryengine.infrastructure.observability.metrics import (
    InMemoryQueryMetrics,
    MetricsCollector,
    QueryMetric,
)

__all__ = ["InMemoryQueryMetrics", "MetricsCollector", "QueryMetric"]
