"""
Query Service

Single entry point for executing query definitions against any backend.

PIPELINE:
---------
1. Validate definition + parameters; problems abort with QueryValidationError
2. Cache lookup (when the definition enables caching and the caller allows)
3. Process parameters into a positional argument list
4. Dispatch on the definition's data source
5. Apply the result mapping, if declared
6. Write the successful result through to the cache
7. Record an execution metric

Steps 2-6 never raise: any failure becomes a ``success=False`` envelope
carrying the error message, and a zero-row metric is still recorded. Cache
writes and metrics run as non-critical side effects.

One QueryService is built per process (see queryengine.bootstrap) and
shared by every request handler.
"""

import logging
import re
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote

from pydantic import ValidationError

from queryengine import errors
from queryengine.adapters.base import (
    BackendReply,
    DirectoryExecutor,
    DirectoryRequest,
    GraphExecutor,
    GraphRequest,
    RelationalAdapter,
    ReportExecutor,
    ReportRequest,
)
from queryengine.core.config import Settings, settings as default_settings
from queryengine.credentials import CredentialProvider
from queryengine.domain.query.effects import SideEffects
from queryengine.domain.query.parameters import ParameterProcessor
from queryengine.domain.query.transformer import ResultTransformer
from queryengine.domain.query.validator import QueryValidator, describe_validation_error
from queryengine.infrastructure.cache.query_cache import QueryCache
from queryengine.infrastructure.observability.metrics import MetricsCollector, QueryMetric
from queryengine.models import (
    DataSource,
    ExecutionOptions,
    QueryDefinition,
    QueryExecutionContext,
    QueryResult,
    ValidationReport,
)

logger = logging.getLogger(__name__)

BASE_DN_TOKEN = "{{baseDN}}"
DEFAULT_REPORT_PERIOD = "D7"

DefinitionInput = Union[QueryDefinition, Mapping[str, Any]]
ContextInput = Union[QueryExecutionContext, Mapping[str, Any], None]


def escape_ldap_filter_value(value: Any) -> str:
    """Escape a value for an LDAP search filter (RFC 4515)."""
    text = str(value)
    return (
        text.replace("\\", "\\5c")
        .replace("*", "\\2a")
        .replace("(", "\\28")
        .replace(")", "\\29")
        .replace("\x00", "\\00")
    )


def escape_odata_value(value: Any) -> str:
    """Double single quotes so a value stays inside an OData string literal."""
    return str(value).replace("'", "''")


def substitute_tokens(template: Optional[str], values: Mapping[str, Any], escape=str) -> Optional[str]:
    """Replace ``{{name}}`` with escaped values; unknown tokens are left in place."""
    if not template:
        return template

    def _replace(match):
        name = match.group(1)
        if name in values and values[name] is not None:
            return escape(values[name])
        return match.group(0)

    return re.sub(r"\{\{([A-Za-z0-9_]+)\}\}", _replace, template)


class QueryService:
    """Orchestrates validation, caching, dispatch and result shaping."""

    def __init__(
        self,
        relational: Optional[RelationalAdapter] = None,
        cache: Optional[QueryCache] = None,
        metrics: Optional[MetricsCollector] = None,
        directory: Optional[DirectoryExecutor] = None,
        graph: Optional[GraphExecutor] = None,
        report: Optional[ReportExecutor] = None,
        credentials: Optional[CredentialProvider] = None,
        effects: Optional[SideEffects] = None,
        validator: Optional[QueryValidator] = None,
        processor: Optional[ParameterProcessor] = None,
        transformer: Optional[ResultTransformer] = None,
        settings: Optional[Settings] = None,
    ):
        self.relational = relational
        self.cache = cache or QueryCache(None)
        self.metrics = metrics
        self.directory = directory
        self.graph = graph
        self.report = report
        self.credentials = credentials
        self.effects = effects or SideEffects()
        self.validator = validator or QueryValidator()
        self.processor = processor or ParameterProcessor()
        self.transformer = transformer or ResultTransformer()
        self.settings = settings or default_settings
        logger.info("QueryService initialized")

    # =========================================================================
    # Execution
    # =========================================================================

    def execute_query(self, definition: DefinitionInput, context: ContextInput = None) -> QueryResult:
        """
        Execute a definition with the caller's parameters.

        Raises:
            QueryValidationError: the definition or parameters were rejected.
                Nothing else escapes; execution failures come back as a
                failure envelope.
        """
        start = time.perf_counter()
        definition = self._coerce_definition(definition)
        context = self._coerce_context(context)
        parameters = context.parameters
        options = context.options
        log_extra = {"query_id": definition.id}

        report = self.validator.validate_query(definition, parameters)
        if not report.valid:
            raise errors.validation_failed(report.errors, report.warnings, query_id=definition.id)
        for warning in report.warnings:
            logger.debug(f"Validation warning: {warning}", extra=log_extra)

        caching = bool(definition.cache and definition.cache.enabled)

        try:
            if caching and not options.skip_cache:
                cached = self.cache.get(definition, parameters)
                if cached is not None:
                    elapsed = _elapsed_ms(start)
                    logger.debug(f"Cache hit for query {definition.id}", extra=log_extra)
                    result = cached.model_copy(
                        update={"metadata": cached.metadata.model_copy(update={"execution_time": elapsed})}
                    )
                    self._record_metric(definition, context, elapsed, result.metadata.row_count, cached=True)
                    return result

            args = self.processor.process_for(definition, parameters)
            result = self._dispatch(definition, args, context)

            if definition.result_mapping is not None and result.data:
                result = result.with_data(
                    self.transformer.transform_results(result.data, definition.result_mapping)
                )

            # Driver values (datetime, Decimal, UUID) become their JSON forms so
            # a live call and a cache hit return identical rows.
            result = result.as_json_values()
            result = result.model_copy(
                update={"metadata": result.metadata.model_copy(update={"execution_time": _elapsed_ms(start)})}
            )

            if caching and result.success:
                self.effects.run("cache write", self.cache.set, definition, parameters, result)

            self._record_metric(definition, context, result.metadata.execution_time, result.metadata.row_count)
            return result

        except Exception as e:
            elapsed = _elapsed_ms(start)
            if isinstance(e, errors.QueryEngineError):
                e.query_id = e.query_id or definition.id
                e.log()
            else:
                logger.error(f"Query execution failed for {definition.id}: {e}", exc_info=True, extra=log_extra)
            self._record_metric(definition, context, elapsed, 0, success=False, error=str(e))
            return QueryResult.failure(
                str(e),
                execution_time=elapsed,
                data_source=definition.data_source,
                query_id=definition.id,
            )

    def _dispatch(self, definition: QueryDefinition, args: List[Any], context: QueryExecutionContext) -> QueryResult:
        source = definition.data_source
        if source == DataSource.RELATIONAL:
            return self._execute_relational(definition, args, context)
        if source == DataSource.DIRECTORY:
            return self._execute_directory(definition, args, context)
        if source == DataSource.GRAPH:
            return self._execute_graph(definition, args, context)
        if source == DataSource.REPORT:
            return self._execute_report(definition, args, context)
        raise errors.execution_failed(f"Unsupported data source: {source}", query_id=definition.id)

    # -------------------------------------------------------------------------
    # Relational
    # -------------------------------------------------------------------------

    def _execute_relational(
        self,
        definition: QueryDefinition,
        args: List[Any],
        context: QueryExecutionContext,
    ) -> QueryResult:
        if self.relational is None:
            raise errors.backend_not_configured(DataSource.RELATIONAL.value)

        constraints = definition.constraints
        timeout_ms = context.options.timeout_ms or (constraints.timeout_ms if constraints else None)
        logger.debug(f"Executing relational query with {len(args)} parameters", extra={"query_id": definition.id})

        adapter_result = self.relational.execute(definition.statement, args, timeout_ms=timeout_ms)
        rows = adapter_result.rows
        warnings: List[str] = []

        max_results = self._max_results(definition, context)
        if max_results and len(rows) > max_results:
            message = f"Query {definition.id} returned {len(rows)} rows, limiting to {max_results}"
            logger.warning(message, extra={"query_id": definition.id})
            warnings.append(message)
            rows = rows[:max_results]

        return QueryResult.ok(
            rows,
            execution_time=adapter_result.execution_time_ms,
            data_source=DataSource.RELATIONAL,
            query_id=definition.id,
            warnings=warnings,
        )

    # -------------------------------------------------------------------------
    # Directory / graph / report
    # -------------------------------------------------------------------------

    def _execute_directory(
        self,
        definition: QueryDefinition,
        args: List[Any],
        context: QueryExecutionContext,
    ) -> QueryResult:
        if self.directory is None:
            raise errors.backend_not_configured(DataSource.DIRECTORY.value)

        config = definition.config
        values = self._named_values(definition, args)
        base_dn = self.settings.directory_base_dn

        search_filter = substitute_tokens(config.filter, values, escape_ldap_filter_value)
        search_base = substitute_tokens(config.base, values)
        if search_filter and BASE_DN_TOKEN in search_filter:
            search_filter = search_filter.replace(BASE_DN_TOKEN, base_dn)
        if search_base and BASE_DN_TOKEN in search_base:
            search_base = search_base.replace(BASE_DN_TOKEN, base_dn)
            logger.debug(f"Replaced {BASE_DN_TOKEN} with {base_dn}", extra={"query_id": definition.id})

        request = DirectoryRequest(
            filter=search_filter,
            attributes=list(config.attributes),
            base_dn=search_base,
            scope=config.scope,
            size_limit=config.size_limit,
            time_limit=config.time_limit,
            cache_bypass=context.options.skip_cache,
            credentials=self._resolve_credentials(DataSource.DIRECTORY, context),
        )
        reply = BackendReply.coerce(self.directory.execute(request))
        return self._reply_result(definition, reply, DataSource.DIRECTORY)

    def _execute_graph(
        self,
        definition: QueryDefinition,
        args: List[Any],
        context: QueryExecutionContext,
    ) -> QueryResult:
        if self.graph is None:
            raise errors.backend_not_configured(DataSource.GRAPH.value)

        config = definition.config
        values = self._named_values(definition, args)
        request = GraphRequest(
            endpoint=substitute_tokens(config.endpoint or "/users", values, _quote_path),
            select=config.select,
            filter=substitute_tokens(config.filter, values, escape_odata_value),
            top=config.top or self._max_results(definition, context),
            orderby=config.orderby,
            expand=config.expand,
            cache_bypass=context.options.skip_cache,
            credentials=self._resolve_credentials(DataSource.GRAPH, context),
        )
        reply = BackendReply.coerce(self.graph.execute(request))
        return self._reply_result(definition, reply, DataSource.GRAPH)

    def _execute_report(
        self,
        definition: QueryDefinition,
        args: List[Any],
        context: QueryExecutionContext,
    ) -> QueryResult:
        if self.report is None:
            raise errors.backend_not_configured(DataSource.REPORT.value)

        config = definition.config
        values = self._named_values(definition, args)
        request = ReportRequest(
            endpoint=substitute_tokens(config.endpoint, values, _quote_path),
            period=values.get("period") or config.period or DEFAULT_REPORT_PERIOD,
            format=config.format or "csv",
            cache_bypass=context.options.skip_cache,
            limit=self._max_results(definition, context),
            credentials=self._resolve_credentials(DataSource.REPORT, context),
        )
        reply = BackendReply.coerce(self.report.execute(request))
        return self._reply_result(definition, reply, DataSource.REPORT)

    def _reply_result(self, definition: QueryDefinition, reply: BackendReply, source: DataSource) -> QueryResult:
        return QueryResult.ok(
            reply.data,
            execution_time=reply.execution_time,
            data_source=source,
            query_id=definition.id,
            cached=reply.cached,
        )

    def _resolve_credentials(self, source: DataSource, context: QueryExecutionContext) -> Any:
        if not context.options.credential_id or self.credentials is None:
            return None
        return self.credentials.get_credentials(
            source,
            user_id=context.user_id,
            credential_id=context.options.credential_id,
        )

    # =========================================================================
    # Other operations
    # =========================================================================

    def validate_query(self, definition: DefinitionInput, parameters: Optional[Dict[str, Any]] = None) -> ValidationReport:
        return self.validator.validate_query(definition, parameters)

    def test_connection(self, data_source: Union[DataSource, str]) -> bool:
        """Health check of the executor behind a data source. Never raises."""
        try:
            source = DataSource(data_source)
            backend = {
                DataSource.RELATIONAL: self.relational,
                DataSource.DIRECTORY: self.directory,
                DataSource.GRAPH: self.graph,
                DataSource.REPORT: self.report,
            }[source]
            if backend is None:
                return False
            return bool(backend.health_check())
        except Exception as e:
            logger.warning(f"Connection test for {data_source} failed: {e}")
            return False

    def clear_cache(self, query_id: Optional[str] = None) -> int:
        return self.cache.clear(query_id)

    def get_query_stats(self, query_id: str) -> Dict[str, Any]:
        if self.metrics is None:
            return {}
        return self.metrics.get_stats(query_id)

    def warm_up(self, entries: Iterable[Tuple[DefinitionInput, Optional[Dict[str, Any]]]]) -> int:
        """Execute definitions to pre-populate the cache. Returns how many succeeded."""
        warmed = 0
        for definition, parameters in entries:
            context = QueryExecutionContext(
                parameters=parameters or {},
                options=ExecutionOptions(skip_cache=True),
            )
            try:
                result = self.execute_query(definition, context)
            except errors.QueryValidationError as e:
                logger.warning(f"Cache warm-up skipped invalid definition: {e.message}")
                continue
            if result.success:
                warmed += 1
            else:
                logger.warning(f"Cache warm-up failed for {result.metadata.query_id}: {result.error}")
        logger.info(f"Cache warm-up completed: {warmed} queries")
        return warmed

    # =========================================================================
    # Helpers
    # =========================================================================

    def _record_metric(
        self,
        definition: QueryDefinition,
        context: QueryExecutionContext,
        execution_time: float,
        row_count: int,
        cached: bool = False,
        success: bool = True,
        error: Optional[str] = None,
    ) -> None:
        if self.metrics is None:
            return
        metric = QueryMetric(
            query_id=definition.id,
            execution_time=execution_time,
            row_count=row_count,
            cached=cached,
            user_id=context.user_id,
            parameters=dict(context.parameters),
            success=success,
            error=error,
        )
        self.effects.run("metrics", self.metrics.record, metric)

    def _max_results(self, definition: QueryDefinition, context: QueryExecutionContext) -> Optional[int]:
        if context.options.max_results:
            return context.options.max_results
        return definition.constraints.max_results if definition.constraints else None

    def _named_values(self, definition: QueryDefinition, args: List[Any]) -> Dict[str, Any]:
        return {
            param.name: value
            for param, value in zip(definition.parameter_list(), args)
            if value is not None
        }

    def _coerce_definition(self, definition: DefinitionInput) -> QueryDefinition:
        if isinstance(definition, QueryDefinition):
            return definition
        try:
            return QueryDefinition.model_validate(dict(definition))
        except ValidationError as e:
            raise errors.validation_failed(describe_validation_error(e))

    def _coerce_context(self, context: ContextInput) -> QueryExecutionContext:
        if context is None:
            return QueryExecutionContext()
        if isinstance(context, QueryExecutionContext):
            return context
        try:
            return QueryExecutionContext.model_validate(dict(context))
        except ValidationError as e:
            raise errors.validation_failed(describe_validation_error(e))


def _quote_path(value: Any) -> str:
    return quote(str(value), safe="")


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000
