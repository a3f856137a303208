"""
Backend Adapters

Relational adapters (PostgreSQL) plus the executor interfaces for the
directory service, identity graph API and reporting API.
"""

from queryengine.adapters.base import (
    AdapterResult,
    BackendReply,
    DirectoryExecutor,
    DirectoryRequest,
    GraphExecutor,
    GraphRequest,
    RelationalAdapter,
    ReportExecutor,
    ReportRequest,
)
from queryengine.adapters.postgres_adapter import PostgresAdapter

__all__ = [
    "AdapterResult",
    "BackendReply",
    "DirectoryExecutor",
    "DirectoryRequest",
    "GraphExecutor",
    "GraphRequest",
    "RelationalAdapter",
    "ReportExecutor",
    "ReportRequest",
    "PostgresAdapter",
]
