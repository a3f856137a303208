"""
Tests for the PostgreSQL adapter, with the driver's pool mocked out.
"""

from unittest.mock import MagicMock

import psycopg2
import psycopg2.errors
import pytest

from queryengine import errors
from queryengine.adapters.postgres_adapter import PostgresAdapter


@pytest.fixture
def connection():
    conn = MagicMock()
    cursor = MagicMock()
    cursor.description = [("id",), ("name",)]
    cursor.fetchall.return_value = [(1, "alice"), (2, "bob")]
    conn.cursor.return_value = cursor
    return conn


@pytest.fixture
def adapter(monkeypatch, connection):
    pool = MagicMock()
    pool.getconn.return_value = connection
    monkeypatch.setattr(
        "queryengine.adapters.postgres_adapter.psycopg2.pool.ThreadedConnectionPool",
        MagicMock(return_value=pool),
    )
    return PostgresAdapter({"dsn": "postgresql://reader@db/reports", "pool_max": 4})


class TestConfig:
    """Tests for adapter configuration."""

    def test_missing_fields_rejected(self):
        with pytest.raises(errors.ConnectionError, match="host, database, user"):
            PostgresAdapter({})

    def test_field_config_accepted(self):
        adapter = PostgresAdapter({"host": "db", "database": "reports", "user": "reader"})
        kwargs = adapter._connect_kwargs()
        assert kwargs["dbname"] == "reports"
        assert kwargs["port"] == 5432


class TestPlaceholders:
    """Tests for $n conversion."""

    def test_positional_to_named(self, adapter):
        sql, params = adapter.convert_placeholders(
            "SELECT * FROM t WHERE a = $1 AND b = $2 AND c = $1", ["x", 5]
        )
        assert sql == "SELECT * FROM t WHERE a = %(p1)s AND b = %(p2)s AND c = %(p1)s"
        assert params == {"p1": "x", "p2": 5}

    def test_percent_is_escaped(self, adapter):
        sql, _ = adapter.convert_placeholders("SELECT * FROM t WHERE name LIKE 'a%' AND id = $1", [1])
        assert sql == "SELECT * FROM t WHERE name LIKE 'a%%' AND id = %(p1)s"


class TestExecute:
    """Tests for statement execution."""

    def test_rows_as_dicts(self, adapter, connection):
        result = adapter.execute("SELECT id, name FROM users WHERE id > $1", [0])
        assert result.rows == [{"id": 1, "name": "alice"}, {"id": 2, "name": "bob"}]
        assert result.columns == ["id", "name"]
        assert result.row_count == 2
        assert result.engine == "postgres"
        connection.cursor.return_value.execute.assert_called_once_with(
            "SELECT id, name FROM users WHERE id > %(p1)s", {"p1": 0}
        )

    def test_statement_timeout_scoped_to_call(self, adapter, connection):
        adapter.execute("SELECT 1", [], timeout_ms=1500)
        cursor = connection.cursor.return_value
        first_call = cursor.execute.call_args_list[0]
        assert first_call.args == ("SET LOCAL statement_timeout = %s", (1500,))
        connection.rollback.assert_called_once()

    def test_connection_returned_to_pool(self, adapter, connection):
        adapter.execute("SELECT 1")
        adapter._pool.putconn.assert_called_once_with(connection)

    def test_query_canceled_maps_to_timeout(self, adapter, connection):
        connection.cursor.return_value.execute.side_effect = psycopg2.errors.QueryCanceled("canceling statement")
        with pytest.raises(errors.TimeoutError):
            adapter.execute("SELECT pg_sleep(10)", timeout_ms=10)
        adapter._pool.putconn.assert_called_once_with(connection)

    def test_auth_failure_maps_to_authentication_error(self, adapter, connection):
        connection.cursor.return_value.execute.side_effect = psycopg2.OperationalError(
            'FATAL: password authentication failed for user "reader"'
        )
        with pytest.raises(errors.AuthenticationError):
            adapter.execute("SELECT 1")

    def test_operational_error_maps_to_connection_error(self, adapter, connection):
        connection.cursor.return_value.execute.side_effect = psycopg2.OperationalError("server closed the connection")
        with pytest.raises(errors.ConnectionError):
            adapter.execute("SELECT 1")

    def test_other_errors_map_to_execution_error(self, adapter, connection):
        connection.cursor.return_value.execute.side_effect = psycopg2.ProgrammingError('relation "nope" does not exist')
        with pytest.raises(errors.ExecutionError, match="does not exist"):
            adapter.execute("SELECT * FROM nope")


class TestHealth:
    def test_health_check(self, adapter):
        assert adapter.health_check() is True

    def test_health_check_failure(self, adapter, connection):
        connection.cursor.return_value.execute.side_effect = psycopg2.OperationalError("down")
        assert adapter.health_check() is False

    def test_disconnect(self, adapter):
        adapter.connect()
        pool = adapter._pool
        adapter.disconnect()
        pool.closeall.assert_called_once()
        assert adapter.is_connected() is False
