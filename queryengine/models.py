"""
Query engine data model.

Definitions are authored in camelCase JSON/YAML (``dataSource``,
``resultMapping``, ``ttlSeconds``...) and exposed as snake_case attributes.
Fields are deliberately permissive so a malformed definition can still be
loaded and reported on by the validator instead of failing at parse time.
"""

import json
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Row = Dict[str, Any]

ParameterType = Literal["string", "number", "boolean", "date", "array", "object"]
WhereOperator = Literal[
    "eq", "ne", "gt", "gte", "lt", "lte", "in", "nin", "like", "ilike",
    "is_null", "is_not_null", "isEmpty", "isNotEmpty"
]


class DataSource(str, Enum):
    RELATIONAL = "relational"
    DIRECTORY = "directory"
    GRAPH = "graph"
    REPORT = "report"


# Names used by definitions persisted before the data sources were generalized
LEGACY_DATA_SOURCES = {
    "postgres": DataSource.RELATIONAL.value,
    "postgresql": DataSource.RELATIONAL.value,
    "ad": DataSource.DIRECTORY.value,
    "ldap": DataSource.DIRECTORY.value,
    "azure": DataSource.GRAPH.value,
    "o365": DataSource.REPORT.value,
}

CONFIG_TYPES = {
    DataSource.DIRECTORY.value: "ldap",
    DataSource.GRAPH.value: "graph",
    DataSource.REPORT.value: "report",
}


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# =============================================================================
# PARAMETERS
# =============================================================================

class ParameterValidation(_Model):
    """Bounds apply to numeric values, or to string length for strings."""
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    enum: Optional[List[Any]] = None


class ParameterDefinition(_Model):
    name: str
    type: ParameterType = "string"
    required: bool = False
    default: Any = None
    description: Optional[str] = None
    validation: Optional[ParameterValidation] = None
    transform: Optional[str] = None

    @property
    def has_default(self) -> bool:
        """True when a default was declared, even an explicit null."""
        return "default" in self.model_fields_set


# =============================================================================
# POLICIES
# =============================================================================

class CachePolicy(_Model):
    enabled: bool = False
    ttl_seconds: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("ttlSeconds", "ttl_seconds", "ttl")
    )
    key_template: Optional[str] = None


class AccessPolicy(_Model):
    requires_auth: Optional[bool] = None
    roles: List[str] = Field(default_factory=list)
    permissions: List[str] = Field(default_factory=list)


class QueryConstraints(_Model):
    max_results: Optional[int] = None
    timeout_ms: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("timeoutMs", "timeout_ms", "timeout")
    )
    rate_limit_per_minute: Optional[int] = None


# =============================================================================
# RESULT MAPPING
# =============================================================================

class FieldMapping(_Model):
    target_field: Optional[str] = None
    type: Optional[ParameterType] = None
    transform: Optional[str] = None
    format: Optional[str] = None


class FilterCondition(_Model):
    field: str
    operator: WhereOperator
    value: Any = None


class SortCondition(_Model):
    field: str
    direction: Literal["asc", "desc"] = "asc"


class PostProcess(_Model):
    filter: List[FilterCondition] = Field(default_factory=list)
    sort: List[SortCondition] = Field(default_factory=list)
    limit: Optional[int] = None


class ResultMapping(_Model):
    # keyed by source field name
    field_mappings: Dict[str, FieldMapping] = Field(default_factory=dict)
    post_process: Optional[PostProcess] = None


# =============================================================================
# BACKEND CONFIGS
# =============================================================================

class DirectoryConfig(_Model):
    type: Literal["ldap"] = "ldap"
    filter: str
    attributes: List[str] = Field(default_factory=list)
    base: Optional[str] = Field(default=None, validation_alias=AliasChoices("base", "baseDN", "base_dn"))
    scope: Literal["base", "one", "sub"] = "sub"
    size_limit: Optional[int] = None
    time_limit: Optional[int] = None


class GraphConfig(_Model):
    type: Literal["graph"] = "graph"
    endpoint: str = "/users"
    select: Optional[List[str]] = None
    filter: Optional[str] = None
    top: Optional[int] = None
    orderby: Optional[str] = None
    expand: Optional[List[str]] = None


class ReportConfig(_Model):
    type: Literal["report", "o365report"] = "report"
    endpoint: str
    period: Optional[str] = None
    format: str = "csv"


BackendConfig = Annotated[
    Union[DirectoryConfig, GraphConfig, ReportConfig],
    Field(discriminator="type"),
]


# =============================================================================
# QUERY DEFINITION
# =============================================================================

class QueryDefinition(_Model):
    """
    A declarative query against one backend.

    Relational definitions carry SQL in ``statement``; the other data sources
    carry a tagged ``config``. Definitions are immutable: updates go through a
    full validated replacement in the registry.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    category: Optional[str] = None
    data_source: Optional[DataSource] = None
    statement: Optional[str] = Field(default=None, validation_alias=AliasChoices("statement", "sql"))
    config: Optional[BackendConfig] = None
    parameters: Union[List[ParameterDefinition], Dict[str, ParameterDefinition]] = Field(default_factory=list)
    result_mapping: Optional[ResultMapping] = None
    cache: Optional[CachePolicy] = None
    access: Optional[AccessPolicy] = None
    constraints: Optional[QueryConstraints] = None

    @model_validator(mode="before")
    @classmethod
    def _normalize_legacy_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)

        source_key = "dataSource" if "dataSource" in data else "data_source"
        source = data.get(source_key)
        if isinstance(source, DataSource):
            source = source.value
        elif isinstance(source, str):
            source = LEGACY_DATA_SOURCES.get(source.lower(), source)
            data[source_key] = source

        # Non-relational configs used to be stored as JSON inside the SQL slot
        if source in CONFIG_TYPES and not data.get("config"):
            for key in ("sql", "statement"):
                raw = data.get(key)
                if isinstance(raw, str) and raw.strip().startswith("{"):
                    try:
                        parsed = json.loads(raw)
                    except ValueError:
                        break
                    if isinstance(parsed, dict):
                        data["config"] = parsed
                        data.pop(key)
                    break

        config = data.get("config")
        if source in CONFIG_TYPES and isinstance(config, dict) and "type" not in config:
            data["config"] = {**config, "type": CONFIG_TYPES[source]}

        params = data.get("parameters")
        if isinstance(params, dict):
            data["parameters"] = {
                name: ({**entry, "name": entry.get("name", name)} if isinstance(entry, dict) else entry)
                for name, entry in params.items()
            }
        return data

    @property
    def uses_keyed_parameters(self) -> bool:
        return isinstance(self.parameters, dict)

    def parameter_list(self) -> List[ParameterDefinition]:
        """Parameter schema in declaration order."""
        if isinstance(self.parameters, dict):
            return list(self.parameters.values())
        return list(self.parameters)


# =============================================================================
# EXECUTION
# =============================================================================

class ExecutionOptions(_Model):
    skip_cache: bool = False
    timeout_ms: Optional[int] = None
    max_results: Optional[int] = None
    credential_id: Optional[str] = None


class QueryExecutionContext(_Model):
    user_id: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    options: ExecutionOptions = Field(default_factory=ExecutionOptions)


class ResultMetadata(_Model):
    execution_time: float = 0.0
    row_count: int = 0
    cached: bool = False
    data_source: Optional[DataSource] = None
    query_id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class QueryResult(_Model):
    """Envelope returned by every execution, success or failure."""
    success: bool
    data: List[Row] = Field(default_factory=list)
    metadata: ResultMetadata = Field(default_factory=ResultMetadata)
    error: Optional[str] = None

    @model_validator(mode="after")
    def _failed_results_carry_no_rows(self) -> "QueryResult":
        if not self.success and self.data:
            raise ValueError("failed results must not carry data")
        return self

    @classmethod
    def ok(
        cls,
        data: List[Row],
        execution_time: float,
        data_source: Optional[DataSource] = None,
        query_id: Optional[str] = None,
        cached: bool = False,
        warnings: Optional[List[str]] = None,
    ) -> "QueryResult":
        return cls(
            success=True,
            data=data,
            metadata=ResultMetadata(
                execution_time=execution_time,
                row_count=len(data),
                cached=cached,
                data_source=data_source,
                query_id=query_id,
                warnings=warnings or [],
            ),
        )

    @classmethod
    def failure(
        cls,
        error: str,
        execution_time: float,
        data_source: Optional[DataSource] = None,
        query_id: Optional[str] = None,
    ) -> "QueryResult":
        return cls(
            success=False,
            data=[],
            error=error,
            metadata=ResultMetadata(
                execution_time=execution_time,
                row_count=0,
                data_source=data_source,
                query_id=query_id,
            ),
        )

    def with_data(self, data: List[Row]) -> "QueryResult":
        """Copy with new rows and a row count that matches them."""
        return self.model_copy(
            update={"data": data, "metadata": self.metadata.model_copy(update={"row_count": len(data)})}
        )

    def with_cached(self, cached: bool) -> "QueryResult":
        return self.model_copy(update={"metadata": self.metadata.model_copy(update={"cached": cached})})

    def as_json_values(self) -> "QueryResult":
        """Copy whose row values are the JSON types a cache round trip yields."""
        return type(self).model_validate(self.model_dump(mode="json"))


class ValidationReport(_Model):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class WhereCondition(_Model):
    field: str
    operator: WhereOperator
    value: Any = None
    logic: Optional[Literal["AND", "OR"]] = None
