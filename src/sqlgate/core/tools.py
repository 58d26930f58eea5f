"""Caller-facing operations: list_tables, get_table_schema, execute_query.

``Gateway`` wires one connection pool to an executor and an inspector and
exposes the three operations with the argument and result shapes a tool
transport expects. ``Gateway.call`` dispatches a named tool call and
turns every sqlgate error into a ``ToolError`` payload tagged with its
``ErrorKind``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pydantic

from sqlgate.core.exceptions import (
    ErrorKind,
    InputError,
    SqlGateError,
)
from sqlgate.core.executor import QueryExecutor
from sqlgate.core.inspector import SchemaInspector
from sqlgate.core.logging import get_logger
from sqlgate.core.marshal import ResultMarshaller
from sqlgate.core.models import PoolState, Query
from sqlgate.core.pool import ConnectionPool

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlgate.core.config import ResolvedConfig

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "list_tables",
        "description": (
            "List all tables in the database. Optionally filter by schema name."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "schema": {
                    "type": "string",
                    "description": "Optional schema name filter",
                },
            },
        },
    },
    {
        "name": "get_table_schema",
        "description": (
            "Get the schema/structure of a specific table including column "
            "names, types, nullable status, and primary keys."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "table_name": {
                    "type": "string",
                    "description": "Name of the table (can include schema: schema.table)",
                },
            },
            "required": ["table_name"],
        },
    },
    {
        "name": "execute_query",
        "description": (
            "Execute a SELECT query against the database. Only SELECT statements "
            "are allowed (read-only). Queries are validated for security."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "SQL SELECT statement to execute (read-only)",
                },
                "max_rows": {
                    "type": "integer",
                    "description": "Maximum number of rows to return",
                    "default": 10000,
                },
            },
            "required": ["query"],
        },
    },
]


def tool_error(error: SqlGateError) -> dict[str, Any]:
    """Error payload. ``kind`` is the discriminator; ``text`` keeps the prefix."""
    prefix = "Security Error" if error.kind is ErrorKind.VALIDATION else "Error"
    return {
        "isError": True,
        "kind": str(error.kind),
        "message": error.message,
        "text": f"{prefix}: {error.message}",
    }


def _require_str(arguments: dict[str, Any], key: str, *, allow_blank: bool = False) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or (not allow_blank and not value.strip()):
        raise InputError(f"{key} is required")
    return value


class Gateway:
    """The three read-only operations over one shared connection pool."""

    def __init__(
        self,
        config: ResolvedConfig,
        *,
        pool: ConnectionPool | None = None,
        logger: Any | None = None,
    ) -> None:
        self.config = config
        self._log = logger or get_logger("gateway")
        self.pool = pool or ConnectionPool.from_config(config, logger=self._log)
        self.executor = QueryExecutor(
            self.pool,
            marshaller=ResultMarshaller(max_text_length=config.max_text_length),
            logger=self._log,
        )
        self.inspector = SchemaInspector(
            self.pool,
            statement_timeout=config.statement_timeout,
            logger=self._log,
        )
        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "list_tables": self._call_list_tables,
            "get_table_schema": self._call_get_table_schema,
            "execute_query": self._call_execute_query,
        }

    def __enter__(self) -> Gateway:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self.pool.close()

    # -- operations -----------------------------------------------------------

    def list_tables(self, schema: str | None = None) -> dict[str, Any]:
        tables = self.inspector.list_tables(schema)
        return {"tables": [t.to_payload() for t in tables], "count": len(tables)}

    def get_table_schema(self, table_name: str) -> dict[str, Any]:
        columns = self.inspector.get_table_schema(table_name)
        return {
            "tableName": table_name,
            "columnCount": len(columns),
            "columns": [c.to_payload() for c in columns],
        }

    def execute_query(self, query: str, max_rows: int | None = None) -> dict[str, Any]:
        try:
            q = Query(
                text=query,
                max_rows=self.config.default_max_rows if max_rows is None else max_rows,
                timeout_seconds=self.config.statement_timeout,
            )
        except pydantic.ValidationError as e:
            raise InputError(f"Invalid query arguments: {e.errors()[0]['msg']}") from e
        return self.executor.execute(q).to_payload()

    def health(self) -> dict[str, Any]:
        healthy = self.pool.health_check()
        state: PoolState = self.pool.stats()
        return {
            "healthy": healthy,
            "pool": state.model_dump(),
            "summary": state.describe(),
        }

    # -- dispatch -------------------------------------------------------------

    def call(self, name: str, arguments: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a tool by name; failures come back as ToolError payloads."""
        handler = self._handlers.get(name)
        if handler is None:
            return tool_error(InputError(f"Unknown tool: {name}"))
        try:
            result = handler(arguments or {})
        except SqlGateError as e:
            if e.kind is ErrorKind.VALIDATION:
                self._log.warning("tool call denied", tool=name, error=e.message)
            else:
                self._log.error("tool call failed", tool=name, kind=str(e.kind), error=e.message)
            return tool_error(e)
        self._log.info("tool call complete", tool=name)
        return result

    def _call_list_tables(self, arguments: dict[str, Any]) -> dict[str, Any]:
        schema = arguments.get("schema")
        if schema is not None and not isinstance(schema, str):
            raise InputError("schema must be a string")
        return self.list_tables(schema or None)

    def _call_get_table_schema(self, arguments: dict[str, Any]) -> dict[str, Any]:
        return self.get_table_schema(_require_str(arguments, "table_name"))

    def _call_execute_query(self, arguments: dict[str, Any]) -> dict[str, Any]:
        # blank text is left to the classifier, which denies it
        query = _require_str(arguments, "query", allow_blank=True)
        max_rows = arguments.get("max_rows")
        if isinstance(max_rows, float) and max_rows.is_integer():
            max_rows = int(max_rows)
        if max_rows is not None and (isinstance(max_rows, bool) or not isinstance(max_rows, int)):
            raise InputError("max_rows must be an integer")
        return self.execute_query(query, max_rows)
