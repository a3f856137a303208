"""
Query execution metrics.

The orchestrator reports one QueryMetric per execution, cache hits and
failures included. Collectors are fire-and-forget from the engine's point
of view: the orchestrator swallows anything they raise.

InMemoryQueryMetrics keeps a retention window of records per process and
answers per-definition statistics:
- executions, average execution time, success rate, cache-hit rate
- last execution time and the most recent records
- slow queries (over the configured threshold) are logged as warnings
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from queryengine.crypto import mask_sensitive

logger = logging.getLogger(__name__)

RECENT_EXECUTIONS = 10


@dataclass
class QueryMetric:
    """Record of one query execution."""

    query_id: str
    execution_time: float
    row_count: int
    cached: bool = False
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    parameters: Dict[str, Any] = field(default_factory=dict)

    success: bool = True
    error: Optional[str] = None


class MetricsCollector(ABC):
    @abstractmethod
    def record(self, metric: QueryMetric) -> None:
        ...

    def get_stats(self, query_id: Optional[str] = None) -> Dict[str, Any]:
        return {}


class InMemoryQueryMetrics(MetricsCollector):
    """Thread-safe in-process metrics collector."""

    def __init__(
        self,
        retention_hours: int = 168,
        slow_query_threshold_ms: float = 1000.0,
        enabled: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.retention_hours = retention_hours
        self.slow_query_threshold_ms = slow_query_threshold_ms
        self.enabled = enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._records: Dict[str, List[QueryMetric]] = defaultdict(list)
        self._lock = threading.Lock()

    def record(self, metric: QueryMetric) -> None:
        """Record a query execution."""
        if not self.enabled:
            return

        metric.parameters = mask_sensitive(metric.parameters)
        logger.info(
            f"Query executed: {metric.query_id} in {metric.execution_time:.1f}ms, "
            f"{metric.row_count} rows, cached={metric.cached}, success={metric.success}",
            extra={"query_id": metric.query_id}
        )
        if metric.execution_time > self.slow_query_threshold_ms:
            logger.warning(
                f"Slow query: {metric.query_id} took {metric.execution_time:.1f}ms",
                extra={"query_id": metric.query_id}
            )

        with self._lock:
            self._records[metric.query_id].append(metric)
            self._cleanup_old_records()

    def _cleanup_old_records(self) -> None:
        """Remove records older than retention period."""
        cutoff = self._clock() - timedelta(hours=self.retention_hours)
        for query_id in list(self._records):
            kept = [r for r in self._records[query_id] if r.timestamp > cutoff]
            if kept:
                self._records[query_id] = kept
            else:
                del self._records[query_id]

    def get_stats(self, query_id: Optional[str] = None) -> Dict[str, Any]:
        """Statistics for one definition, or totals across all of them."""
        with self._lock:
            if query_id is None:
                records = [r for bucket in self._records.values() for r in bucket]
            else:
                records = list(self._records.get(query_id, []))

        total = len(records)
        stats: Dict[str, Any] = {
            "total_executions": total,
            "average_execution_time": sum(r.execution_time for r in records) / total if total else 0,
            "success_rate": sum(1 for r in records if r.success) / total if total else 0,
            "cache_hit_rate": sum(1 for r in records if r.cached) / total if total else 0,
            "last_executed": max(r.timestamp for r in records).isoformat() if records else None,
            "recent_executions": [
                {**asdict(r), "timestamp": r.timestamp.isoformat()}
                for r in sorted(records, key=lambda r: r.timestamp, reverse=True)[:RECENT_EXECUTIONS]
            ],
        }
        if query_id is not None:
            stats["query_id"] = query_id
        return stats

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
