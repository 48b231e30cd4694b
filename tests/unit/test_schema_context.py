"""Unit tests for schema context rendering and foreign key inference."""

from querystream.domain.base_enums import DatabaseDialect
from querystream.domain.schema_context import (
    ColumnInfo,
    ForeignKeyInfo,
    SchemaContext,
    TableInfo,
    infer_foreign_keys,
)


def orders_schema() -> SchemaContext:
    return SchemaContext(
        connection_id="conn-1",
        dialect=DatabaseDialect.POSTGRESQL,
        tables=[
            TableInfo(
                name="orders",
                columns=[
                    ColumnInfo(name="id", data_type="integer", is_nullable=False, is_primary_key=True),
                    ColumnInfo(name="user_id", data_type="integer"),
                    ColumnInfo(name="status", data_type="text", default="'new'::text"),
                ],
                foreign_keys=[ForeignKeyInfo(column="user_id", foreign_table="users", foreign_column="id")],
            ),
            TableInfo(name="users", columns=[ColumnInfo(name="id", data_type="integer", is_primary_key=True)]),
        ],
    )


class TestPromptText:
    def test_render(self):
        text = orders_schema().to_prompt_text()

        assert text.startswith("DATABASE TYPE: POSTGRESQL\n\nDATABASE SCHEMA:\n\nTABLE: orders\nColumns:\n")
        assert "  - id: integer (required) [PRIMARY KEY]" in text
        assert "  - status: text [DEFAULT: 'new'::text]" in text
        assert "Foreign Keys:\n  - user_id references users.id" in text
        assert "TABLE: users" in text

    def test_lookup(self):
        schema = orders_schema()
        assert schema.table("users").column_names() == ["id"]
        assert schema.table("missing") is None


class TestInferForeignKeys:
    def test_plural_table_inferred(self):
        tables = [
            TableInfo(name="payments", columns=[ColumnInfo(name="id", data_type="int"), ColumnInfo(name="merchant_id", data_type="int")]),
            TableInfo(name="merchants", columns=[ColumnInfo(name="id", data_type="int")]),
        ]

        enriched = infer_foreign_keys(tables)

        fk = enriched[0].foreign_keys[0]
        assert (fk.column, fk.foreign_table, fk.foreign_column, fk.inferred) == ("merchant_id", "merchants", "id", True)
        assert "(inferred)" in SchemaContext(
            connection_id="c", dialect=DatabaseDialect.SQLITE, tables=enriched
        ).to_prompt_text()

    def test_es_plural(self):
        tables = [
            TableInfo(name="orders", columns=[ColumnInfo(name="address_id", data_type="int")]),
            TableInfo(name="addresses", columns=[ColumnInfo(name="id", data_type="int")]),
        ]
        assert infer_foreign_keys(tables)[0].foreign_keys[0].foreign_table == "addresses"

    def test_declared_key_wins(self):
        schema = orders_schema()
        enriched = infer_foreign_keys(schema.tables)
        assert len(enriched[0].foreign_keys) == 1
        assert enriched[0].foreign_keys[0].inferred is False

    def test_no_target(self):
        tables = [TableInfo(name="events", columns=[ColumnInfo(name="session_id", data_type="text")])]
        assert infer_foreign_keys(tables)[0].foreign_keys == []
