"""
SQL Execution Repository.

Runs SQL that has passed the safety gate against the caller's target
database.

Safety Features:
- Read-only enforcement: statements run in a read-only transaction
- Timeout protection: bounded by asyncio.wait_for and a server-side
  statement timeout
- Row capping: at most `row_cap` rows are presented; the true row count
  is still reported

Values are converted to JSON-friendly types (Decimal -> float, dates ->
ISO text, UUID -> str, bytes -> hex) so rows can be streamed, cached and
persisted unchanged.

Usage:
    repo = SQLExecutionRepository(db_client, row_cap=100)
    result = await repo.execute(connection, "SELECT * FROM users", timeout_seconds=10)
    print(f"Returned {result.row_count} rows in {result.execution_time_ms}ms")
"""

import asyncio
import time
import uuid
from datetime import date, datetime, time as dt_time, timedelta
from decimal import Decimal
from typing import Any, Dict, List

from querystream.domain.connections import ConnectionDescriptor
from querystream.domain.errors import (
    DatabaseConnectionError,
    DatabaseQueryError,
    QueryExecutionError,
    UnsupportedDialectError,
)
from querystream.domain.results import ExecutionResult
from querystream.infrastructure.database_client import DatabaseClient
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()


def to_jsonable(value: Any) -> Any:
    """Convert one driver value to a JSON-friendly value."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    return str(value)


class SQLExecutionRepository:
    """
    Repository for SQL execution.

    Executes validated SQL with read-only enforcement.
    """

    def __init__(self, db_client: DatabaseClient, row_cap: int = 100):
        self.db_client = db_client
        self.row_cap = row_cap

    async def execute(
        self,
        connection: ConnectionDescriptor,
        sql: str,
        timeout_seconds: int,
    ) -> ExecutionResult:
        """
        Execute validated SQL.

        Args:
            connection: Target database
            sql: SQL that passed the safety gate
            timeout_seconds: Upper bound on execution time

        Returns:
            ExecutionResult with capped rows and the true row count

        Raises:
            QueryExecutionError: On driver error, timeout, unreachable
                database or unsupported dialect
        """
        trace_id = current_trace_id()

        logger.info(
            "Executing SQL query",
            connection_id=connection.id,
            dialect=connection.dialect.value,
            sql_length=len(sql),
            timeout=timeout_seconds,
            trace_id=trace_id,
        )

        start = time.perf_counter()
        try:
            rows = await asyncio.wait_for(
                self.db_client.fetch(connection, sql, timeout_seconds=timeout_seconds),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error("SQL execution timed out", timeout=timeout_seconds, trace_id=trace_id)
            raise QueryExecutionError(f"Query timed out after {timeout_seconds} seconds", attempted_sql=sql) from e
        except (DatabaseQueryError, DatabaseConnectionError, UnsupportedDialectError) as e:
            logger.error(
                "SQL execution failed",
                error=e.message,
                error_code=e.error_code,
                trace_id=trace_id,
            )
            raise QueryExecutionError(e.message, attempted_sql=sql) from e

        execution_time_ms = int((time.perf_counter() - start) * 1000)

        row_count = len(rows)
        presented: List[Dict[str, Any]] = [
            {str(key): to_jsonable(value) for key, value in row.items()}
            for row in rows[: self.row_cap]
        ]

        result = ExecutionResult(
            rows=presented,
            column_names=list(rows[0].keys()) if rows else [],
            row_count=row_count,
            execution_time_ms=execution_time_ms,
            was_limited=row_count > self.row_cap,
        )

        logger.info(
            "SQL execution successful",
            row_count=row_count,
            presented_rows=len(presented),
            execution_time_ms=execution_time_ms,
            trace_id=trace_id,
        )

        return result
