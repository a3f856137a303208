"""
Tests for definition parsing and the result envelope.
"""

import pytest
from pydantic import ValidationError

from queryengine.models import (
    DataSource,
    DirectoryConfig,
    GraphConfig,
    QueryDefinition,
    QueryExecutionContext,
    QueryResult,
    ReportConfig,
)


class TestQueryDefinition:
    """Tests for parsing authored definitions."""

    def test_camel_case_aliases(self, relational_definition):
        definition = QueryDefinition.model_validate(relational_definition)
        assert definition.data_source == DataSource.RELATIONAL
        assert definition.cache.ttl_seconds == 60
        assert definition.access.requires_auth is True
        assert definition.parameter_list()[0].name == "id"

    def test_snake_case_accepted(self):
        definition = QueryDefinition(
            id="q", name="Q", data_source=DataSource.RELATIONAL, statement="SELECT 1",
        )
        assert definition.statement == "SELECT 1"

    def test_sql_alias(self):
        definition = QueryDefinition.model_validate({"id": "q", "dataSource": "relational", "sql": "SELECT 1"})
        assert definition.statement == "SELECT 1"

    @pytest.mark.parametrize("legacy, expected", [
        ("postgres", DataSource.RELATIONAL),
        ("PostgreSQL", DataSource.RELATIONAL),
        ("ad", DataSource.DIRECTORY),
        ("azure", DataSource.GRAPH),
        ("o365", DataSource.REPORT),
    ])
    def test_legacy_data_source_names(self, legacy, expected):
        definition = QueryDefinition.model_validate({"id": "q", "dataSource": legacy})
        assert definition.data_source == expected

    def test_config_variant_by_data_source(self):
        directory = QueryDefinition.model_validate(
            {"id": "d", "dataSource": "directory", "config": {"filter": "(cn=*)", "baseDN": "OU=x"}}
        )
        graph = QueryDefinition.model_validate({"id": "g", "dataSource": "graph", "config": {"top": 5}})
        report = QueryDefinition.model_validate(
            {"id": "r", "dataSource": "report", "config": {"type": "o365report", "endpoint": "getX"}}
        )
        assert isinstance(directory.config, DirectoryConfig)
        assert directory.config.base == "OU=x"
        assert isinstance(graph.config, GraphConfig)
        assert graph.config.endpoint == "/users"
        assert isinstance(report.config, ReportConfig)

    def test_embedded_json_config(self):
        definition = QueryDefinition.model_validate({
            "id": "g",
            "dataSource": "azure",
            "sql": '{"endpoint": "/groups", "select": ["id", "displayName"]}',
        })
        assert definition.statement is None
        assert definition.config.endpoint == "/groups"
        assert definition.config.select == ["id", "displayName"]

    def test_keyed_parameters(self):
        definition = QueryDefinition.model_validate({
            "id": "q",
            "parameters": {"days": {"type": "number", "default": 30}, "ou": {"type": "string"}},
        })
        assert definition.uses_keyed_parameters is True
        assert [p.name for p in definition.parameter_list()] == ["days", "ou"]
        assert definition.parameter_list()[0].has_default is True
        assert definition.parameter_list()[1].has_default is False

    def test_unknown_fields_ignored(self):
        definition = QueryDefinition.model_validate({"id": "q", "owner": "team-a"})
        assert definition.id == "q"


class TestQueryResult:
    """Tests for the result envelope."""

    def test_ok(self):
        result = QueryResult.ok([{"a": 1}, {"a": 2}], execution_time=3.2, data_source=DataSource.GRAPH, query_id="q")
        assert result.success is True
        assert result.metadata.row_count == 2
        assert result.error is None

    def test_failure(self):
        result = QueryResult.failure("boom", execution_time=1.0, query_id="q")
        assert result.success is False
        assert result.data == []
        assert result.metadata.row_count == 0
        assert result.error == "boom"

    def test_failed_result_cannot_carry_rows(self):
        with pytest.raises(ValidationError):
            QueryResult(success=False, data=[{"a": 1}])

    def test_with_data_recounts(self):
        result = QueryResult.ok([{"a": 1}, {"a": 2}], execution_time=1.0).with_data([{"a": 1}])
        assert result.metadata.row_count == 1

    def test_camel_case_serialization(self):
        payload = QueryResult.ok([], execution_time=1.0, query_id="q").model_dump(by_alias=True)
        assert set(payload["metadata"]) >= {"executionTime", "rowCount", "cached", "dataSource", "queryId"}


class TestExecutionContext:
    def test_defaults(self):
        context = QueryExecutionContext()
        assert context.parameters == {}
        assert context.options.skip_cache is False

    def test_from_camel_case(self):
        context = QueryExecutionContext.model_validate(
            {"userId": "u1", "parameters": {"a": 1}, "options": {"skipCache": True, "credentialId": "c"}}
        )
        assert context.user_id == "u1"
        assert context.options.skip_cache is True
        assert context.options.credential_id == "c"
