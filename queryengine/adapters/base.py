"""
Backend executor interfaces.

The engine talks to four kinds of backend, each behind its own interface:

- RelationalAdapter  SQL with positional $n placeholders -> AdapterResult
- DirectoryExecutor  LDAP-style search request -> BackendReply
- GraphExecutor      REST identity graph request -> BackendReply
- ReportExecutor     reporting API request -> BackendReply

DESIGN PRINCIPLES:
-----------------
1. Connection pooling and credential lifecycles belong to the executor
2. Results are lists of dicts (backend-agnostic)
3. Failures are raised as the engine's error taxonomy
   (ConnectionError, AuthenticationError, TimeoutError, ExecutionError)
4. No retries: one best-effort call per execution
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from queryengine.models import Row

logger = logging.getLogger(__name__)


@dataclass
class AdapterResult:
    """
    Result of a relational execution.

    Attributes:
        rows: Result rows as dicts, in column order
        columns: Column names
        row_count: Number of rows returned
        execution_time_ms: Execution time in milliseconds
        engine: Backend engine name
        sql: Executed SQL (with placeholders, not values)
    """
    rows: List[Row]
    columns: List[str] = field(default_factory=list)
    row_count: int = 0
    execution_time_ms: float = 0.0
    engine: str = ""
    sql: str = ""

    def __post_init__(self):
        self.row_count = len(self.rows)


class RelationalAdapter(ABC):
    """
    Abstract base class for relational stores.

    Statements arrive with ``$1..$n`` placeholders and a positional argument
    list; adapters convert placeholders to their driver's format. A timeout,
    when given, applies to this call's statement only.
    """

    ENGINE: str = "base"

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self._connected = False
        self._last_used: Optional[datetime] = None

    @abstractmethod
    def connect(self) -> None:
        ...

    @abstractmethod
    def disconnect(self) -> None:
        """Should be safe to call even if not connected."""
        ...

    @abstractmethod
    def execute(
        self,
        sql: str,
        params: Optional[List[Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> AdapterResult:
        ...

    @abstractmethod
    def health_check(self) -> bool:
        ...

    def convert_placeholders(self, sql: str, params: Optional[List[Any]] = None) -> Tuple[str, Any]:
        return sql, params or []

    def is_connected(self) -> bool:
        return self._connected

    def _update_last_used(self):
        self._last_used = datetime.now(timezone.utc)

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()
        return False


# =============================================================================
# Non-relational backends
# =============================================================================

@dataclass
class DirectoryRequest:
    filter: str
    attributes: List[str] = field(default_factory=list)
    base_dn: Optional[str] = None
    scope: str = "sub"
    size_limit: Optional[int] = None
    time_limit: Optional[int] = None
    cache_bypass: bool = False
    credentials: Any = None


@dataclass
class GraphRequest:
    endpoint: str
    select: Optional[List[str]] = None
    filter: Optional[str] = None
    top: Optional[int] = None
    orderby: Optional[str] = None
    expand: Optional[List[str]] = None
    cache_bypass: bool = False
    credentials: Any = None


@dataclass
class ReportRequest:
    endpoint: str
    period: Optional[str] = None
    format: str = "csv"
    cache_bypass: bool = False
    limit: Optional[int] = None
    credentials: Any = None


@dataclass
class BackendReply:
    """Normalized reply from a directory, graph or report executor."""
    data: List[Row] = field(default_factory=list)
    count: int = 0
    execution_time: float = 0.0
    cached: bool = False

    @classmethod
    def coerce(cls, reply: Union["BackendReply", Mapping[str, Any], None]) -> "BackendReply":
        if isinstance(reply, BackendReply):
            return reply
        if reply is None:
            return cls()
        data = list(reply.get("data") or [])
        return cls(
            data=data,
            count=reply.get("count", len(data)),
            execution_time=reply.get("executionTime", reply.get("execution_time", 0.0)),
            cached=bool(reply.get("cached", False)),
        )


class DirectoryExecutor(ABC):
    @abstractmethod
    def execute(self, request: DirectoryRequest) -> Union[BackendReply, Mapping[str, Any]]:
        ...

    @abstractmethod
    def health_check(self) -> bool:
        ...


class GraphExecutor(ABC):
    @abstractmethod
    def execute(self, request: GraphRequest) -> Union[BackendReply, Mapping[str, Any]]:
        ...

    @abstractmethod
    def health_check(self) -> bool:
        ...


class ReportExecutor(ABC):
    @abstractmethod
    def execute(self, request: ReportRequest) -> Union[BackendReply, Mapping[str, Any]]:
        ...

    @abstractmethod
    def health_check(self) -> bool:
        ...
