"""
Query Validator

Static review of a query definition and a parameter bag. Nothing is executed
and nothing is mutated: the same inputs always yield the same report.

Problems ACCUMULATE. A single run reports every structural, parameter and
security issue it finds so a definition author can fix them together.

CHECKS:
-------
- Structure: identity fields, data source payload, access and cache policy
- Parameters: required / unexpected / type / min / max / pattern / enum
- Security (relational only): mutating keywords, injection shapes,
  multi-statement text, missing placeholders
- Performance (relational only): SELECT *, large tables without WHERE,
  missing LIMIT, many JOINs without a result cap

The security scan is pattern based. Parameter binding in the executor is
what actually keeps values out of the statement text.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import sqlglot
from pydantic import ValidationError
from sqlglot.errors import SqlglotError

from queryengine.domain.query import coercion
from queryengine.models import (
    CONFIG_TYPES,
    DataSource,
    ParameterDefinition,
    QueryDefinition,
    ValidationReport,
)

logger = logging.getLogger(__name__)

ID_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")
PLACEHOLDER_PATTERN = re.compile(r"\$\d+")

DANGEROUS_KEYWORDS = [
    "DROP", "DELETE", "UPDATE", "INSERT", "ALTER", "CREATE",
    "TRUNCATE", "GRANT", "REVOKE", "EXEC", "EXECUTE",
]

INJECTION_PATTERNS = [
    re.compile(r";\s*(DROP|DELETE|UPDATE|INSERT|ALTER|CREATE)\b"),
    re.compile(r"\bUNION\s+(ALL\s+)?SELECT\b"),
    re.compile(r"'\s*(OR|AND)\s*'?1'?\s*=\s*'?1"),
    re.compile(r"--[^\n]*$", re.MULTILINE),
    re.compile(r"/\*.*?\*/", re.DOTALL),
]

LARGE_TABLES = ["USERS", "REPORT_HISTORY", "AUDIT_LOG"]

MAX_CACHE_TTL_SECONDS = 24 * 60 * 60
MAX_RESULTS_WARNING = 50000
MAX_TIMEOUT_MS_WARNING = 5 * 60 * 1000
MAX_JOINS_WITHOUT_LIMIT = 3

DefinitionInput = Union[QueryDefinition, Mapping[str, Any]]


def describe_validation_error(exc: ValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return messages


class QueryValidator:
    """Accumulating validator for query definitions and parameter bags."""

    def validate_query(
        self,
        definition: DefinitionInput,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> ValidationReport:
        """Validate a definition together with the parameters it will run with."""
        return self._run(definition, parameters, check_parameters=True)

    def validate_definition(self, definition: DefinitionInput) -> ValidationReport:
        """Structural and security review only, for registration time."""
        return self._run(definition, None, check_parameters=False)

    def _run(
        self,
        definition: DefinitionInput,
        parameters: Optional[Dict[str, Any]],
        check_parameters: bool,
    ) -> ValidationReport:
        try:
            parsed, parse_errors = self._parse(definition)
            if parsed is None:
                return ValidationReport(valid=False, errors=parse_errors)

            errors: List[str] = []
            warnings: List[str] = []

            self._check_structure(parsed, errors, warnings)
            self._check_schema(parsed, errors)
            if check_parameters:
                self._check_parameters(parsed, parameters or {}, errors, warnings)

            if parsed.data_source == DataSource.RELATIONAL and parsed.statement:
                self._check_security(parsed.statement, errors, warnings)
                self._check_performance(parsed, warnings)

            return ValidationReport(valid=not errors, errors=errors, warnings=warnings)
        except Exception as e:
            logger.exception("Unexpected validator failure")
            return ValidationReport(valid=False, errors=[f"Validation failed: {e}"])

    def _parse(self, definition: DefinitionInput) -> Tuple[Optional[QueryDefinition], List[str]]:
        if isinstance(definition, QueryDefinition):
            return definition, []
        try:
            return QueryDefinition.model_validate(dict(definition)), []
        except ValidationError as e:
            return None, describe_validation_error(e)

    # -------------------------------------------------------------------------
    # Structure
    # -------------------------------------------------------------------------

    def _check_structure(self, definition: QueryDefinition, errors: List[str], warnings: List[str]) -> None:
        if not definition.id:
            errors.append("Query ID is required")
        elif not ID_PATTERN.match(definition.id):
            errors.append("Query ID must contain only alphanumeric characters and underscores")

        if not definition.name:
            errors.append("Query name is required")

        # Directory definitions predate versioning and may omit it
        if not definition.version:
            if definition.data_source != DataSource.DIRECTORY:
                errors.append("Query version is required")
        elif not SEMVER_PATTERN.match(definition.version):
            warnings.append("Query version should follow semantic versioning (x.y.z)")

        if definition.data_source is None:
            errors.append("Data source is required")
        elif definition.data_source == DataSource.RELATIONAL:
            if not definition.statement:
                errors.append("SQL statement is required for relational queries")
        else:
            source = definition.data_source.value
            if definition.config is None:
                errors.append(f"Backend configuration is required for {source} queries")
            elif CONFIG_TYPES[source] != definition.config.type and not (
                source == DataSource.REPORT.value and definition.config.type == "o365report"
            ):
                errors.append(
                    f"Configuration type '{definition.config.type}' does not match data source '{source}'"
                )

        if definition.access is None:
            errors.append("Access configuration is required")
        elif definition.access.requires_auth is None:
            errors.append("requiresAuth must be explicitly set")

        cache = definition.cache
        if cache is not None and cache.enabled:
            if cache.ttl_seconds is None:
                errors.append("Cache TTL is required when caching is enabled")
            elif cache.ttl_seconds <= 0:
                errors.append("Cache TTL must be positive")
            elif cache.ttl_seconds > MAX_CACHE_TTL_SECONDS:
                warnings.append("Cache TTL over 24 hours may cause stale data issues")

        constraints = definition.constraints
        if constraints is not None:
            if constraints.max_results is not None and constraints.max_results > MAX_RESULTS_WARNING:
                warnings.append("MaxResults over 50,000 may cause performance issues")
            if constraints.timeout_ms is not None and constraints.timeout_ms > MAX_TIMEOUT_MS_WARNING:
                warnings.append("Query timeout over 5 minutes may cause connection issues")

    def _check_schema(self, definition: QueryDefinition, errors: List[str]) -> None:
        seen = set()
        for param in definition.parameter_list():
            if param.name in seen:
                errors.append(f"Duplicate parameter name: {param.name}")
            seen.add(param.name)

            if param.has_default and param.default is not None:
                try:
                    coercion.coerce(param.default, param.type)
                except ValueError:
                    errors.append(f"Default value for parameter {param.name} {coercion.TYPE_MESSAGES[param.type]}")

    # -------------------------------------------------------------------------
    # Parameters
    # -------------------------------------------------------------------------

    def _check_parameters(
        self,
        definition: QueryDefinition,
        parameters: Dict[str, Any],
        errors: List[str],
        warnings: List[str],
    ) -> None:
        schema = definition.parameter_list()
        declared = {param.name for param in schema}

        for param in schema:
            value = parameters.get(param.name)
            if value is None:
                if param.required and not param.has_default:
                    errors.append(f"Required parameter missing: {param.name}")
                continue

            if definition.uses_keyed_parameters:
                message = self._check_legacy_type(param, value)
            else:
                message = self._check_value(param, value)
            if message:
                errors.append(message)

        for key in parameters:
            if key not in declared:
                warnings.append(f"Unexpected parameter: {key}")

    def _check_value(self, param: ParameterDefinition, value: Any) -> Optional[str]:
        try:
            coerced = coercion.coerce(value, param.type)
        except ValueError:
            return f"Parameter {param.name} {coercion.TYPE_MESSAGES[param.type]}"
        return coercion.rule_violation(param.name, coerced, param.validation)

    def _check_legacy_type(self, param: ParameterDefinition, value: Any) -> Optional[str]:
        # Keyed schemas only ever declared scalar types
        actual = type(value).__name__
        if param.type == "string" and not isinstance(value, str):
            return f"Parameter {param.name} should be a string, got {actual}"
        if param.type == "number" and (isinstance(value, bool) or not isinstance(value, (int, float))):
            return f"Parameter {param.name} should be a number, got {actual}"
        if param.type == "boolean" and not isinstance(value, bool):
            return f"Parameter {param.name} should be a boolean, got {actual}"
        return None

    # -------------------------------------------------------------------------
    # Security & performance (relational only)
    # -------------------------------------------------------------------------

    def _check_security(self, statement: str, errors: List[str], warnings: List[str]) -> None:
        upper = statement.upper()

        for keyword in DANGEROUS_KEYWORDS:
            if re.search(rf"\b{keyword}\b", upper):
                errors.append(f"SQL contains potentially dangerous operation: {keyword}")

        if any(pattern.search(upper) for pattern in INJECTION_PATTERNS):
            errors.append("SQL contains potential injection patterns")

        try:
            statements = [s for s in sqlglot.parse(statement, read="postgres") if s is not None]
        except SqlglotError as e:
            warnings.append(f"SQL could not be parsed for review: {str(e).splitlines()[0]}")
        else:
            if len(statements) > 1:
                errors.append("SQL contains multiple statements")

        if not PLACEHOLDER_PATTERN.search(statement):
            warnings.append("SQL does not use parameterized queries - potential security risk")

    def _check_performance(self, definition: QueryDefinition, warnings: List[str]) -> None:
        upper = definition.statement.upper()
        has_where = re.search(r"\bWHERE\b", upper) is not None
        has_limit = re.search(r"\bLIMIT\b", upper) is not None
        max_results = definition.constraints.max_results if definition.constraints else None

        if re.search(r"\bSELECT\s+\*", upper):
            warnings.append("SELECT * may retrieve unnecessary data and impact performance")

        for table in LARGE_TABLES:
            if re.search(rf"\b{table}\b", upper) and not has_where:
                warnings.append(f"Query on large table {table.lower()} without WHERE clause may be slow")

        if not has_limit and not max_results:
            warnings.append("Query without LIMIT clause may return large result sets")

        join_count = len(re.findall(r"\bJOIN\b", upper))
        if join_count > MAX_JOINS_WITHOUT_LIMIT and not has_limit and not max_results:
            warnings.append("Complex JOIN query without result limits may be slow")
