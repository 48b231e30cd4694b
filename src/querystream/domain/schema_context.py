"""
Schema context models.

A SchemaContext is the introspected structure of one target database,
rendered to text for the SQL generation prompt.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from .base_enums import DatabaseDialect


class ColumnInfo(BaseModel):
    """Represents one column of a target table."""

    name: str = Field(..., description="Name of the column")
    data_type: str = Field(..., description="Data type as reported by the database")
    is_nullable: bool = Field(default=True, description="Indicates if the column can contain null values")
    is_primary_key: bool = Field(default=False, description="Indicates if the column is part of the primary key")
    default: Optional[str] = Field(default=None, description="Column default expression, if any")


class ForeignKeyInfo(BaseModel):
    """Represents a column reference to another table."""

    column: str = Field(..., description="Referencing column in this table")
    foreign_table: str = Field(..., description="Referenced table")
    foreign_column: str = Field(..., description="Referenced column")
    inferred: bool = Field(default=False, description="True when derived from naming rather than a declared constraint")


class TableInfo(BaseModel):
    """Represents one table of the target database."""

    name: str = Field(..., description="Name of the table")
    columns: List[ColumnInfo] = Field(default_factory=list, description="Columns in ordinal order")
    foreign_keys: List[ForeignKeyInfo] = Field(default_factory=list, description="Declared and inferred references")

    def column_names(self) -> List[str]:
        return [column.name for column in self.columns]


class SchemaContext(BaseModel):
    """Introspected schema of one connection."""

    connection_id: str = Field(..., description="Connection the schema belongs to")
    dialect: DatabaseDialect = Field(..., description="Database dialect")
    tables: List[TableInfo] = Field(default_factory=list, description="Tables in name order")
    introspected_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the schema was read",
    )

    def table(self, name: str) -> Optional[TableInfo]:
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def to_prompt_text(self) -> str:
        """
        Render the schema for the SQL generation prompt.

        Format:
            DATABASE TYPE: POSTGRESQL

            DATABASE SCHEMA:

            TABLE: orders
            Columns:
              - id: integer (required) [PRIMARY KEY]
              - user_id: integer
            Foreign Keys:
              - user_id references users.id
        """
        lines = [f"DATABASE TYPE: {self.dialect.value.upper()}", "", "DATABASE SCHEMA:", ""]

        for table in self.tables:
            lines.append(f"TABLE: {table.name}")
            lines.append("Columns:")
            for column in table.columns:
                line = f"  - {column.name}: {column.data_type}"
                if not column.is_nullable:
                    line += " (required)"
                if column.is_primary_key:
                    line += " [PRIMARY KEY]"
                if column.default is not None:
                    line += f" [DEFAULT: {column.default}]"
                lines.append(line)

            if table.foreign_keys:
                lines.append("Foreign Keys:")
                for fk in table.foreign_keys:
                    line = f"  - {fk.column} references {fk.foreign_table}.{fk.foreign_column}"
                    if fk.inferred:
                        line += " (inferred)"
                    lines.append(line)
            lines.append("")

        return "\n".join(lines)


def infer_foreign_keys(tables: List[TableInfo]) -> List[TableInfo]:
    """
    Add naming-based references where no constraint is declared.

    A column `<name>_id` is taken to reference `<name>.id`, `<name>s.id` or
    `<name>es.id`, whichever table exists with an `id` column. Declared
    foreign keys always win.
    """
    with_id = {table.name.lower(): table.name for table in tables if "id" in table.column_names()}

    enriched = []
    for table in tables:
        declared = {fk.column for fk in table.foreign_keys}
        inferred = []
        for column in table.columns:
            lowered = column.name.lower()
            if column.name in declared or column.is_primary_key or not lowered.endswith("_id"):
                continue
            stem = lowered[: -len("_id")]
            if not stem:
                continue
            for candidate in (stem, f"{stem}s", f"{stem}es"):
                target = with_id.get(candidate)
                if target and target != table.name:
                    inferred.append(
                        ForeignKeyInfo(column=column.name, foreign_table=target, foreign_column="id", inferred=True)
                    )
                    break
        if inferred:
            table = table.model_copy(update={"foreign_keys": [*table.foreign_keys, *inferred]})
        enriched.append(table)
    return enriched
