"""Catalog introspection: table listing and column metadata.

Issues fixed catalog queries with bound parameters on pooled
connections. Caller input is only ever a parameter value, so these reads
do not go through the statement classifier.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import sentry_sdk

from sqlgate.core.config import DEFAULT_STATEMENT_TIMEOUT
from sqlgate.core.exceptions import InputError, NotFoundError
from sqlgate.core.logging import get_logger
from sqlgate.core.models import ColumnDescriptor, TableInfo
from sqlgate.core.session import read_only_session

if TYPE_CHECKING:
    import psycopg

    from sqlgate.core.pool import ConnectionPool

# Base tables (plain and partitioned); views, sequences, catalogs and
# toast/temp schemas are excluded.
_TABLES_SQL = """
SELECT
    c.relname AS name,
    n.nspname AS schema,
    pg_catalog.obj_description(c.oid, 'pg_class') AS remarks
FROM pg_catalog.pg_class c
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
WHERE c.relkind IN ('r', 'p')
  AND n.nspname NOT IN ('pg_catalog', 'information_schema')
  AND n.nspname !~ '^pg_(toast|temp_)'
  {schema_clause}
ORDER BY n.nspname, c.relname
"""

_VISIBLE_SCHEMA_SQL = """
SELECT n.nspname
FROM pg_catalog.pg_class c
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
WHERE c.relname = %(table)s
  AND c.relkind IN ('r', 'p', 'v', 'm', 'f')
  AND pg_catalog.pg_table_is_visible(c.oid)
LIMIT 1
"""

_PRIMARY_KEY_SQL = """
SELECT a.attname
FROM pg_catalog.pg_index i
JOIN pg_catalog.pg_class c ON c.oid = i.indrelid
JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
JOIN pg_catalog.pg_attribute a
  ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
WHERE i.indisprimary
  AND n.nspname = %(schema)s
  AND c.relname = %(table)s
"""

_COLUMNS_SQL = """
SELECT
    column_name,
    udt_name,
    COALESCE(character_maximum_length, numeric_precision, datetime_precision, 0)
        AS column_size,
    is_nullable = 'YES' AS nullable,
    pg_catalog.col_description(
        (quote_ident(table_schema)||'.'||quote_ident(table_name))::regclass::oid,
        ordinal_position::int
    ) AS remarks
FROM information_schema.columns
WHERE table_schema = %(schema)s AND table_name = %(table)s
ORDER BY ordinal_position
"""


def split_table_name(table_name: str) -> tuple[str | None, str]:
    """Split ``schema.table`` on the first dot. No dot means no schema."""
    name = table_name.strip()
    if "." in name:
        schema, table = name.split(".", 1)
        return schema or None, table
    return None, name


class SchemaInspector:
    """Metadata-only reads against the connection pool."""

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        statement_timeout: float = DEFAULT_STATEMENT_TIMEOUT,
        logger: Any | None = None,
    ) -> None:
        self.pool = pool
        self.statement_timeout = statement_timeout
        self._log = logger or get_logger("inspector")

    def list_tables(self, schema_filter: str | None = None) -> list[TableInfo]:
        """List base tables, optionally restricted by a LIKE schema pattern."""
        params: dict[str, Any] = {}
        schema_clause = ""
        if schema_filter:
            schema_clause = "AND n.nspname LIKE %(schema)s"
            params["schema"] = schema_filter
        sql = _TABLES_SQL.format(schema_clause=schema_clause)

        with self._span("list_tables"):
            with read_only_session(self.pool, self.statement_timeout) as conn:
                rows = self._fetch(conn, sql, params)

        tables = [
            TableInfo(name=name, table_schema=schema, table_type="TABLE", remarks=remarks)
            for name, schema, remarks in rows
        ]
        self._log.info("listed tables", schema=schema_filter, count=len(tables))
        return tables

    def table_names(self, schema_filter: str | None = None) -> list[str]:
        return [t.qualified_name for t in self.list_tables(schema_filter)]

    def get_table_schema(self, table_name: str) -> list[ColumnDescriptor]:
        """Column metadata for ``table_name`` (optionally ``schema.table``).

        Raises NotFoundError when the table yields no columns.
        """
        if table_name is None or not table_name.strip():
            raise InputError("Table name cannot be empty")
        schema, table = split_table_name(table_name)

        with self._span("get_table_schema"):
            with read_only_session(self.pool, self.statement_timeout) as conn:
                if schema is None:
                    found = self._fetch(conn, _VISIBLE_SCHEMA_SQL, {"table": table})
                    schema = found[0][0] if found else None
                if schema is None:
                    pk_rows: list[tuple[Any, ...]] = []
                    col_rows: list[tuple[Any, ...]] = []
                else:
                    params = {"schema": schema, "table": table}
                    pk_rows = self._fetch(conn, _PRIMARY_KEY_SQL, params)
                    col_rows = self._fetch(conn, _COLUMNS_SQL, params)

        if not col_rows:
            self._log.warning("table not found", table=table_name)
            raise NotFoundError(f"Table not found: {table_name}")

        primary_keys = {row[0] for row in pk_rows}
        columns = [
            ColumnDescriptor(
                name=name,
                native_type=type_name,
                declared_size=size or 0,
                nullable=bool(nullable),
                is_primary_key=name in primary_keys,
                remarks=remarks,
            )
            for name, type_name, size, nullable, remarks in col_rows
        ]
        self._log.info("retrieved table schema", table=table_name, columns=len(columns))
        return columns

    def describe_table_text(self, table_name: str) -> str:
        """Human-readable column listing for ``table_name``."""
        columns = self.get_table_schema(table_name)
        lines = [
            f"Table: {table_name}",
            f"Columns ({len(columns)}):",
            "-" * 80,
        ]
        for col in columns:
            type_label = f"{col.native_type}({col.declared_size})"
            null_label = "NULL" if col.nullable else "NOT NULL"
            key_label = "PRIMARY KEY" if col.is_primary_key else ""
            lines.append(
                f"  {col.name:<30} {type_label:<15} {null_label:<10} {key_label}".rstrip()
            )
        return "\n".join(lines)

    def _fetch(
        self, conn: psycopg.Connection[Any], sql: str, params: dict[str, Any]
    ) -> list[tuple[Any, ...]]:
        with conn.cursor() as cur:
            cur.execute(sql, params or None)
            return cur.fetchall()

    def _span(self, name: str) -> Any:
        return sentry_sdk.start_span(op="db.metadata", description=name)
