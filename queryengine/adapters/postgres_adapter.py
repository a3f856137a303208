"""
PostgreSQL adapter for the relational data source.

Features:
- Threaded connection pool shared by every execution in the process
- ``$n`` placeholders bound through psycopg2 named parameters
- Per-call statement timeout scoped to the call's transaction
- Driver errors mapped onto the engine's error taxonomy
"""

import re
import time
import logging
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
import psycopg2.errors
import psycopg2.pool

from queryengine import errors
from queryengine.adapters.base import AdapterResult, RelationalAdapter

logger = logging.getLogger(__name__)

POSITIONAL_PLACEHOLDER = re.compile(r"\$(\d+)")


class PostgresAdapter(RelationalAdapter):
    """
    Adapter for PostgreSQL.

    Config options:
        dsn: libpq connection string or URL (alternative to the fields below)
        host, port (default 5432), database, user, password
        sslmode: SSL mode (default: prefer)
        connect_timeout: Connection timeout in seconds (default: 10)
        pool_min / pool_max: Pool bounds (default: 1 / 10)

    Example:
        adapter = PostgresAdapter({"dsn": "postgresql://readonly:secret@db/reports"})
        result = adapter.execute("SELECT * FROM users WHERE id = $1", [42], timeout_ms=5000)
    """

    ENGINE = "postgres"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)

        if not config.get("dsn"):
            missing = [k for k in ("host", "database", "user") if k not in config]
            if missing:
                raise errors.connection_failed(self.ENGINE, f"Missing required config: {', '.join(missing)}")

        self.pool_min = config.get("pool_min", 1)
        self.pool_max = config.get("pool_max", 10)
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None

    def _connect_kwargs(self) -> Dict[str, Any]:
        if self.config.get("dsn"):
            return {"dsn": self.config["dsn"]}
        return {
            "host": self.config["host"],
            "port": self.config.get("port", 5432),
            "dbname": self.config["database"],
            "user": self.config["user"],
            "password": self.config.get("password"),
            "sslmode": self.config.get("sslmode", "prefer"),
            "connect_timeout": self.config.get("connect_timeout", 10),
        }

    def connect(self) -> None:
        """Create the connection pool."""
        if self._connected:
            return
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=self.pool_min,
                maxconn=self.pool_max,
                **self._connect_kwargs()
            )
        except psycopg2.Error as e:
            raise self._map_error(e)
        self._connected = True
        logger.info(f"PostgreSQL pool ready ({self.pool_min}-{self.pool_max} connections)")

    def disconnect(self) -> None:
        try:
            if self._pool:
                self._pool.closeall()
                self._pool = None
        except Exception as e:
            logger.warning(f"Error closing PostgreSQL pool: {e}")
        finally:
            self._connected = False

    def _get_connection(self):
        try:
            return self._pool.getconn()
        except psycopg2.pool.PoolError as e:
            raise errors.connection_failed(self.ENGINE, f"connection pool exhausted: {e}")

    def _release_connection(self, conn):
        if self._pool:
            self._pool.putconn(conn)

    def convert_placeholders(self, sql: str, params: Optional[List[Any]] = None) -> Tuple[str, Dict[str, Any]]:
        """Rewrite ``$n`` into ``%(pn)s``; literal ``%`` is doubled for the driver."""
        escaped = sql.replace("%", "%%")
        converted = POSITIONAL_PLACEHOLDER.sub(lambda m: f"%(p{m.group(1)})s", escaped)
        named = {f"p{index + 1}": value for index, value in enumerate(params or [])}
        return converted, named

    def execute(
        self,
        sql: str,
        params: Optional[List[Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> AdapterResult:
        """Run one read statement on a pooled connection."""
        if not self._connected:
            self.connect()

        self._update_last_used()
        start_time = time.perf_counter()
        pg_sql, pg_params = self.convert_placeholders(sql, params)

        conn = None
        cursor = None
        try:
            conn = self._get_connection()
            cursor = conn.cursor()

            if timeout_ms:
                cursor.execute("SET LOCAL statement_timeout = %s", (int(timeout_ms),))

            cursor.execute(pg_sql, pg_params)

            columns = [desc[0] for desc in cursor.description] if cursor.description else []
            data = cursor.fetchall() if cursor.description else []
            rows = [dict(zip(columns, row)) for row in data]

            return AdapterResult(
                rows=rows,
                columns=columns,
                execution_time_ms=(time.perf_counter() - start_time) * 1000,
                engine=self.ENGINE,
                sql=pg_sql,
            )
        except psycopg2.Error as e:
            raise self._map_error(e, timeout_ms)
        finally:
            if cursor:
                cursor.close()
            if conn:
                # reads only: ending the transaction also drops SET LOCAL
                try:
                    conn.rollback()
                except psycopg2.Error as e:
                    logger.warning(f"Rollback failed: {e}")
                self._release_connection(conn)

    def health_check(self) -> bool:
        conn = None
        cursor = None
        try:
            if not self._connected:
                self.connect()
            conn = self._get_connection()
            cursor = conn.cursor()
            cursor.execute("SELECT 1")
            cursor.fetchone()
            return True
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return False
        finally:
            if cursor:
                cursor.close()
            if conn:
                self._release_connection(conn)

    def _map_error(self, e: Exception, timeout_ms: Optional[int] = None) -> errors.QueryEngineError:
        if isinstance(e, psycopg2.errors.QueryCanceled):
            return errors.query_timeout(timeout_ms)
        if isinstance(e, psycopg2.OperationalError):
            message = str(e).strip()
            if "authentication failed" in message.lower():
                return errors.authentication_failed(self.ENGINE, message)
            return errors.connection_failed(self.ENGINE, message)
        return errors.execution_failed(f"PostgreSQL query failed: {str(e).strip()}")
