"""Value types shared by the sqlgate core.

Pydantic models for queries, classifier verdicts, column metadata, query
results and pool state. Request-scoped values are frozen.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from sqlgate.core.config import DEFAULT_MAX_ROWS, DEFAULT_STATEMENT_TIMEOUT


class Query(BaseModel):
    """A caller-supplied statement plus its execution limits."""

    model_config = ConfigDict(frozen=True)

    text: str
    max_rows: int = Field(default=DEFAULT_MAX_ROWS, ge=1)
    timeout_seconds: float = Field(default=DEFAULT_STATEMENT_TIMEOUT, gt=0)


class Verdict(BaseModel):
    """Admit/deny decision for one statement text."""

    model_config = ConfigDict(frozen=True)

    admitted: bool
    reason: str | None = None
    keyword: str | None = None
    had_comments: bool = False

    @classmethod
    def admit(cls, *, had_comments: bool = False) -> Verdict:
        return cls(admitted=True, had_comments=had_comments)

    @classmethod
    def deny(
        cls, reason: str, *, keyword: str | None = None, had_comments: bool = False
    ) -> Verdict:
        return cls(
            admitted=False, reason=reason, keyword=keyword, had_comments=had_comments
        )


class ColumnDescriptor(BaseModel):
    """Metadata for a single table column."""

    model_config = ConfigDict(frozen=True)

    name: str
    native_type: str
    declared_size: int = 0
    nullable: bool = True
    is_primary_key: bool = False
    remarks: str | None = None

    def __str__(self) -> str:
        return " ".join(
            part
            for part in (
                self.name,
                f"{self.native_type}({self.declared_size})",
                "NULL" if self.nullable else "NOT NULL",
                "PRIMARY KEY" if self.is_primary_key else "",
            )
            if part
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "type": self.native_type,
            "size": self.declared_size,
            "nullable": self.nullable,
            "primaryKey": self.is_primary_key,
        }
        if self.remarks and self.remarks.strip():
            payload["remarks"] = self.remarks
        return payload


class TableInfo(BaseModel):
    """A base table reported by the schema inspector."""

    model_config = ConfigDict(frozen=True)

    name: str
    table_schema: str
    table_type: str = "TABLE"
    remarks: str | None = None

    @property
    def qualified_name(self) -> str:
        return f"{self.table_schema}.{self.name}" if self.table_schema else self.name

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "schema": self.table_schema,
            "type": self.table_type,
        }
        if self.remarks and self.remarks.strip():
            payload["remarks"] = self.remarks
        return payload


class QueryResult(BaseModel):
    """Marshalled result of one admitted query.

    ``row_count == len(rows) <= max_rows``; ``truncated`` means the row cap,
    not exhaustion of the cursor, ended iteration.
    """

    columns: list[str]
    rows: list[dict[str, Any]]
    row_count: int
    truncated: bool = False
    max_rows: int = DEFAULT_MAX_ROWS

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "columns": self.columns,
            "rows": self.rows,
            "rowCount": self.row_count,
        }
        if self.truncated:
            payload["truncated"] = True
            payload["message"] = f"Results limited to {self.max_rows} rows"
        return payload


class PoolState(BaseModel):
    """Point-in-time snapshot of pool occupancy."""

    capacity: int
    active: int
    idle: int
    waiters: int

    @property
    def total(self) -> int:
        return self.active + self.idle

    def describe(self) -> str:
        return (
            f"Pool Stats - Active: {self.active}, Idle: {self.idle}, "
            f"Total: {self.total}, Waiting: {self.waiters}"
        )
