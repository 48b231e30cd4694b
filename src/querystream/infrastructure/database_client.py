"""
Database client for user target databases.

Target databases belong to users, so nothing is pooled: every call opens a
connection from the ConnectionDescriptor, runs inside a read-only
transaction where the dialect supports one, and closes the connection
before returning.

Supported dialects:
- postgresql: asyncpg
- sqlite: stdlib sqlite3 in a worker thread, opened with mode=ro
"""

import asyncio
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import asyncpg

from ..config import DatabaseConfig
from ..domain.base_enums import DatabaseDialect
from ..domain.connections import ConnectionDescriptor
from ..domain.errors import (
    DatabaseConnectionError,
    DatabaseQueryError,
    UnsupportedDialectError,
)
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id


logger = get_module_logger()

SUPPORTED_DIALECTS = frozenset({DatabaseDialect.POSTGRESQL, DatabaseDialect.SQLITE})


def sqlite_uri(database: str, read_only: bool = True) -> str:
    """Percent-encoded file: URI for a SQLite path, opened mode=ro when read_only."""
    uri = Path(database).resolve().as_uri()
    return f"{uri}?mode=ro" if read_only else uri


class DatabaseClient:
    """
    Low-level async client for target databases.

    This is a thin infrastructure layer. Schema introspection and result
    shaping live in the repositories.

    Features:
    - Per-call connections (opened and closed around each statement)
    - Read-only transactions and server-side statement timeout (PostgreSQL)
    - Read-only URI and progress-handler timeout (SQLite)
    - Structured logging with trace IDs

    Usage:
        client = DatabaseClient(config)
        rows = await client.fetch(connection, "SELECT * FROM users LIMIT 10", timeout_seconds=10)
    """

    def __init__(self, config: DatabaseConfig):
        """
        Initialize database client with configuration.

        Args:
            config: Target database settings
        """
        self.config = config

        logger.info(
            "DatabaseClient initialized",
            default_schema=config.default_schema,
            connection_timeout_seconds=config.connection_timeout_seconds,
            enforce_read_only=config.enforce_read_only,
            application_name=config.application_name
        )

    def supports(self, dialect: DatabaseDialect) -> bool:
        return dialect in SUPPORTED_DIALECTS

    async def fetch(
        self,
        connection: ConnectionDescriptor,
        query: str,
        params: Optional[Sequence[Any]] = None,
        timeout_seconds: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Execute a statement and return rows as dictionaries.

        Args:
            connection: Target database
            query: SQL text (dialect-specific placeholders for params)
            params: Optional positional parameters
            timeout_seconds: Server-side statement timeout

        Returns:
            Rows in driver order

        Raises:
            DatabaseConnectionError: If the database cannot be reached
            DatabaseQueryError: If the statement fails or times out
            UnsupportedDialectError: If no driver exists for the dialect
        """
        trace_id = current_trace_id()
        logger.debug(
            "Executing database query",
            connection_id=connection.id,
            dialect=connection.dialect.value,
            query=query[:200],
            trace_id=trace_id
        )

        if connection.dialect == DatabaseDialect.POSTGRESQL:
            return await self._fetch_postgres(connection, query, params, timeout_seconds)
        if connection.dialect == DatabaseDialect.SQLITE:
            return await asyncio.to_thread(self._fetch_sqlite, connection, query, params, timeout_seconds)

        raise UnsupportedDialectError(
            f"Dialect '{connection.dialect.value}' is not supported for execution",
            details={"connection_id": connection.id, "dialect": connection.dialect.value},
        )

    async def _connect_postgres(self, connection: ConnectionDescriptor) -> asyncpg.Connection:
        trace_id = current_trace_id()
        try:
            return await asyncpg.connect(
                **connection.connect_kwargs(),
                timeout=self.config.connection_timeout_seconds,
                server_settings={
                    'application_name': self.config.application_name,
                    'search_path': self.config.default_schema,
                },
            )
        except asyncpg.InvalidCatalogNameError as e:
            error_msg = f"Database does not exist: {e}"
            logger.error(error_msg, connection_id=connection.id, trace_id=trace_id)
            raise DatabaseConnectionError(error_msg) from e
        except asyncpg.InvalidPasswordError as e:
            error_msg = f"Authentication failed: {e}"
            logger.error(error_msg, connection_id=connection.id, trace_id=trace_id)
            raise DatabaseConnectionError(error_msg) from e
        except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
            error_msg = f"Failed to connect to database: {e}"
            logger.error(error_msg, error_type=type(e).__name__, connection_id=connection.id, trace_id=trace_id)
            raise DatabaseConnectionError(error_msg) from e

    async def _fetch_postgres(
        self,
        connection: ConnectionDescriptor,
        query: str,
        params: Optional[Sequence[Any]],
        timeout_seconds: Optional[int],
    ) -> List[Dict[str, Any]]:
        trace_id = current_trace_id()
        conn = await self._connect_postgres(connection)
        try:
            async with conn.transaction(readonly=self.config.enforce_read_only):
                if timeout_seconds:
                    await conn.execute(f"SET LOCAL statement_timeout = {int(timeout_seconds * 1000)}")
                rows = await conn.fetch(query, *(params or ()))
            return [dict(row) for row in rows]

        except asyncpg.QueryCanceledError as e:
            error_msg = f"Query timeout exceeded: {e}"
            logger.error(error_msg, query=query[:200], trace_id=trace_id)
            raise DatabaseQueryError(error_msg) from e

        except asyncpg.PostgresError as e:
            logger.error(
                "Query execution failed",
                error=str(e),
                error_type=type(e).__name__,
                query=query[:200],
                trace_id=trace_id
            )
            raise DatabaseQueryError(str(e)) from e

        finally:
            await conn.close()

    def _fetch_sqlite(
        self,
        connection: ConnectionDescriptor,
        query: str,
        params: Optional[Sequence[Any]],
        timeout_seconds: Optional[int],
    ) -> List[Dict[str, Any]]:
        uri = sqlite_uri(connection.database, read_only=self.config.enforce_read_only)
        try:
            conn = sqlite3.connect(uri, uri=True, timeout=self.config.connection_timeout_seconds)
        except sqlite3.Error as e:
            raise DatabaseConnectionError(f"Failed to open SQLite database: {e}") from e

        try:
            conn.row_factory = sqlite3.Row
            if timeout_seconds:
                deadline = time.monotonic() + timeout_seconds
                # Non-zero return aborts the running statement
                conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, 1000)
            cursor = conn.execute(query, tuple(params or ()))
            return [dict(row) for row in cursor.fetchall()]
        except sqlite3.OperationalError as e:
            if "interrupted" in str(e):
                raise DatabaseQueryError(f"Query timeout exceeded: {e}") from e
            raise DatabaseQueryError(str(e)) from e
        except sqlite3.Error as e:
            raise DatabaseQueryError(str(e)) from e
        finally:
            conn.close()
