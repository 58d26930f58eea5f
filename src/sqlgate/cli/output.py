"""Rendering of tool payloads on stdout.

Commands hand over the same payload dicts the tool surface returns.
JSON prints the payload itself; table and csv flatten it into a grid
first: result rows for ``execute_query``, one row per table for
``list_tables`` and one row per column for ``get_table_schema``.
"""

from __future__ import annotations

import csv
import json
import shutil
import sys
from enum import StrEnum
from typing import TYPE_CHECKING, Any, NamedTuple, TextIO

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Callable

TABLE_COLUMNS = ["schema", "name", "type", "remarks"]
SCHEMA_COLUMNS = ["name", "type", "size", "nullable", "primaryKey", "remarks"]
NO_ROWS = "No results"


class OutputFormat(StrEnum):
    TABLE = "table"
    JSON = "json"
    CSV = "csv"


def detect_tty() -> bool:
    return sys.stdout.isatty()


def resolve_format(format_flag: str | None) -> OutputFormat:
    """Explicit --format wins; otherwise table on a terminal, csv in a pipe."""
    if format_flag is not None:
        return OutputFormat(format_flag)
    return OutputFormat.TABLE if detect_tty() else OutputFormat.CSV


class Grid(NamedTuple):
    columns: list[str]
    rows: list[dict[str, Any]]
    notice: str | None = None


def query_grid(payload: dict[str, Any]) -> Grid:
    return Grid(payload["columns"], payload["rows"], payload.get("message"))


def tables_grid(payload: dict[str, Any]) -> Grid:
    return Grid(TABLE_COLUMNS, payload["tables"])


def schema_grid(payload: dict[str, Any]) -> Grid:
    return Grid(SCHEMA_COLUMNS, payload["columns"])


def cell_text(value: Any) -> str:
    """NULL prints as an empty cell; JSON documents keep their JSON form."""
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


class PayloadPrinter:
    """Write payloads to a stream in one output format."""

    def __init__(
        self,
        fmt: OutputFormat,
        *,
        compact: bool = False,
        width: int = 40,
        stream: TextIO | None = None,
    ) -> None:
        self.fmt = fmt
        self.compact = compact
        self.width = width
        self.stream = stream

    @property
    def _out(self) -> TextIO:
        # Looked up per write so a swapped sys.stdout is honoured.
        return self.stream or sys.stdout

    def emit(self, payload: dict[str, Any], grid: Callable[[dict[str, Any]], Grid]) -> None:
        if self.fmt is OutputFormat.JSON:
            self.write_json(payload)
        elif self.fmt is OutputFormat.CSV:
            self._csv(grid(payload))
        else:
            self._table(grid(payload))

    def write_json(self, payload: dict[str, Any]) -> None:
        indent = None if self.compact else 2
        self._out.write(json.dumps(payload, indent=indent, default=str) + "\n")

    def _csv(self, grid: Grid) -> None:
        writer = csv.writer(self._out, lineterminator="\n")
        writer.writerow(grid.columns)
        for row in grid.rows:
            writer.writerow([cell_text(row.get(col)) for col in grid.columns])

    def _table(self, grid: Grid) -> None:
        out = self._out
        if not grid.rows:
            out.write(NO_ROWS + "\n")
            return
        table = Table(box=box.SIMPLE_HEAD)
        for col in grid.columns:
            table.add_column(
                Text(col), no_wrap=True, max_width=self.width, overflow="ellipsis"
            )
        for row in grid.rows:
            table.add_row(*(Text(cell_text(row.get(col))) for col in grid.columns))
        console = Console(file=out, width=shutil.get_terminal_size((120, 24)).columns)
        console.print(table)
        if grid.notice:
            out.write(grid.notice + "\n")
