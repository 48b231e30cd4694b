"""
Schema Repository for introspecting target databases.

Reads tables, columns, primary keys and foreign keys of a user's database
and returns them as one SchemaContext (see domain/schema_context.py).

- PostgreSQL: information_schema, two bulk queries per introspection
- SQLite: sqlite_master plus PRAGMA table_info / foreign_key_list

Columns named `<table>_id` without a declared constraint get an inferred
reference so the SQL generator still sees the join path.
"""

from collections import defaultdict
from typing import Dict, List

from ..domain.base_enums import DatabaseDialect
from ..domain.connections import ConnectionDescriptor
from ..domain.errors import (
    DatabaseConnectionError,
    DatabaseQueryError,
    SchemaIntrospectionError,
    UnsupportedDialectError,
)
from ..domain.schema_context import (
    ColumnInfo,
    ForeignKeyInfo,
    SchemaContext,
    TableInfo,
    infer_foreign_keys,
)
from ..infrastructure.database_client import DatabaseClient
from ..utils.logging import get_module_logger
from ..utils.tracing import current_trace_id


logger = get_module_logger()

_PG_COLUMNS_QUERY = """
    SELECT
        c.table_name,
        c.column_name,
        c.data_type,
        c.is_nullable,
        c.column_default,
        COALESCE(bool_or(tc.constraint_type = 'PRIMARY KEY'), false) AS is_primary_key
    FROM information_schema.columns c
    JOIN information_schema.tables t
        ON t.table_schema = c.table_schema
        AND t.table_name = c.table_name
        AND t.table_type = 'BASE TABLE'
    LEFT JOIN information_schema.key_column_usage kcu
        ON c.column_name = kcu.column_name
        AND c.table_schema = kcu.table_schema
        AND c.table_name = kcu.table_name
    LEFT JOIN information_schema.table_constraints tc
        ON kcu.constraint_name = tc.constraint_name
        AND kcu.table_schema = tc.table_schema
        AND tc.constraint_type = 'PRIMARY KEY'
    WHERE c.table_schema = $1
    GROUP BY c.table_name, c.column_name, c.data_type, c.is_nullable, c.column_default, c.ordinal_position
    ORDER BY c.table_name, c.ordinal_position
"""

_PG_FOREIGN_KEYS_QUERY = """
    SELECT
        tc.table_name AS from_table,
        kcu.column_name AS from_column,
        ccu.table_name AS to_table,
        ccu.column_name AS to_column
    FROM information_schema.table_constraints AS tc
    JOIN information_schema.key_column_usage AS kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
    JOIN information_schema.constraint_column_usage AS ccu
        ON ccu.constraint_name = tc.constraint_name
        AND ccu.table_schema = tc.table_schema
    WHERE tc.constraint_type = 'FOREIGN KEY'
        AND tc.table_schema = $1
    ORDER BY tc.table_name, kcu.column_name
"""

_SQLITE_TABLES_QUERY = (
    "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
)


def _quote_sqlite(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class SchemaRepository:
    """
    Repository for schema metadata operations.

    Usage:
        schema_repo = SchemaRepository(db_client, schema="public")
        context = await schema_repo.introspect(connection)
        prompt_text = context.to_prompt_text()
    """

    def __init__(self, db_client: DatabaseClient, schema: str = "public"):
        """
        Initialize schema repository.

        Args:
            db_client: DatabaseClient instance for database operations
            schema: PostgreSQL schema to introspect
        """
        self.db_client = db_client
        self.schema = schema

    async def introspect(self, connection: ConnectionDescriptor) -> SchemaContext:
        """
        Read the full schema of a connection.

        Raises:
            SchemaIntrospectionError: If the database is unreachable, the
                catalog queries fail or the dialect is unsupported
        """
        trace_id = current_trace_id()
        logger.info(
            "Introspecting schema",
            connection_id=connection.id,
            dialect=connection.dialect.value,
            trace_id=trace_id
        )

        try:
            if connection.dialect == DatabaseDialect.POSTGRESQL:
                tables = await self._introspect_postgres(connection)
            elif connection.dialect == DatabaseDialect.SQLITE:
                tables = await self._introspect_sqlite(connection)
            else:
                raise UnsupportedDialectError(
                    f"Schema introspection is not supported for '{connection.dialect.value}'"
                )
        except (DatabaseQueryError, DatabaseConnectionError, UnsupportedDialectError) as e:
            error_msg = f"Failed to read schema: {e.message}"
            logger.error(error_msg, connection_id=connection.id, error_code=e.error_code, trace_id=trace_id)
            raise SchemaIntrospectionError(error_msg, details={"connection_id": connection.id}) from e

        context = SchemaContext(
            connection_id=connection.id,
            dialect=connection.dialect,
            tables=infer_foreign_keys(tables),
        )

        logger.info(
            "Schema introspected successfully",
            connection_id=connection.id,
            tables=len(context.tables),
            trace_id=trace_id
        )
        return context

    async def _introspect_postgres(self, connection: ConnectionDescriptor) -> List[TableInfo]:
        column_rows = await self.db_client.fetch(connection, _PG_COLUMNS_QUERY, params=[self.schema])
        fk_rows = await self.db_client.fetch(connection, _PG_FOREIGN_KEYS_QUERY, params=[self.schema])

        columns: Dict[str, List[ColumnInfo]] = defaultdict(list)
        for row in column_rows:
            columns[row["table_name"]].append(
                ColumnInfo(
                    name=row["column_name"],
                    data_type=row["data_type"],
                    is_nullable=(row["is_nullable"] == "YES"),
                    is_primary_key=bool(row["is_primary_key"]),
                    default=row["column_default"],
                )
            )

        foreign_keys: Dict[str, List[ForeignKeyInfo]] = defaultdict(list)
        for row in fk_rows:
            foreign_keys[row["from_table"]].append(
                ForeignKeyInfo(
                    column=row["from_column"],
                    foreign_table=row["to_table"],
                    foreign_column=row["to_column"],
                )
            )

        return [
            TableInfo(name=name, columns=cols, foreign_keys=foreign_keys.get(name, []))
            for name, cols in sorted(columns.items())
        ]

    async def _introspect_sqlite(self, connection: ConnectionDescriptor) -> List[TableInfo]:
        table_rows = await self.db_client.fetch(connection, _SQLITE_TABLES_QUERY)

        tables = []
        for table_row in table_rows:
            name = table_row["name"]
            quoted = _quote_sqlite(name)
            column_rows = await self.db_client.fetch(connection, f"PRAGMA table_info({quoted})")
            fk_rows = await self.db_client.fetch(connection, f"PRAGMA foreign_key_list({quoted})")

            tables.append(
                TableInfo(
                    name=name,
                    columns=[
                        ColumnInfo(
                            name=row["name"],
                            data_type=row["type"] or "ANY",
                            is_nullable=not row["notnull"],
                            is_primary_key=bool(row["pk"]),
                            default=None if row["dflt_value"] is None else str(row["dflt_value"]),
                        )
                        for row in column_rows
                    ],
                    foreign_keys=[
                        ForeignKeyInfo(
                            column=row["from"],
                            foreign_table=row["table"],
                            foreign_column=row["to"] or "id",
                        )
                        for row in fk_rows
                    ],
                )
            )
        return tables
