"""Conversion of driver values into transport-safe values.

Every cell of a result row goes through ``ResultMarshaller.convert``:

* ``None`` stays ``None``.
* date / time / timestamp values become ISO 8601 strings.
* large character data (text, xml) is materialised as ``str``, optionally
  capped at ``max_text_length`` with a truncation marker.
* large binary data (bytea) is never materialised: a psycopg loader
  replaces it with its byte length while the row is decoded, and the
  marshaller renders ``[BLOB n bytes]``.
* any other raw bytes become ``[BINARY DATA]``.
* NaN and infinite floats use PostgreSQL's spelling (``"NaN"``,
  ``"Infinity"``, ``"-Infinity"``) since JSON has no literal for them.
* everything else passes through when JSON-native, otherwise ``str()``.
"""

from __future__ import annotations

import datetime as dt
import math
from enum import Enum
from typing import TYPE_CHECKING, Any, NamedTuple

from psycopg.adapt import Loader
from psycopg.pq import Format

if TYPE_CHECKING:
    from collections.abc import Sequence

    import psycopg

BINARY_PLACEHOLDER = "[BINARY DATA]"
TRUNCATION_MARKER = "... [truncated {remaining} chars]"

# Mapping from psycopg type OIDs to human-readable names.
# Covers the most common PostgreSQL types; unknown OIDs fall back to "unknown".
_TYPE_NAMES: dict[int, str] = {
    16: "bool",
    17: "bytea",
    18: "char",
    19: "name",
    20: "int8",
    21: "int2",
    23: "int4",
    25: "text",
    26: "oid",
    114: "json",
    142: "xml",
    700: "float4",
    701: "float8",
    790: "money",
    1042: "bpchar",
    1043: "varchar",
    1082: "date",
    1083: "time",
    1114: "timestamp",
    1184: "timestamptz",
    1186: "interval",
    1266: "timetz",
    1560: "bit",
    1562: "varbit",
    1700: "numeric",
    2950: "uuid",
    3802: "jsonb",
}


class ColumnKind(Enum):
    TEMPORAL = "temporal"
    CLOB = "clob"
    BLOB = "blob"
    BINARY = "binary"
    SCALAR = "scalar"


_KIND_BY_TYPE: dict[str, ColumnKind] = {
    "date": ColumnKind.TEMPORAL,
    "time": ColumnKind.TEMPORAL,
    "timetz": ColumnKind.TEMPORAL,
    "timestamp": ColumnKind.TEMPORAL,
    "timestamptz": ColumnKind.TEMPORAL,
    "text": ColumnKind.CLOB,
    "xml": ColumnKind.CLOB,
    "bytea": ColumnKind.BLOB,
    "bit": ColumnKind.BINARY,
    "varbit": ColumnKind.BINARY,
}


def type_name(oid: int) -> str:
    return _TYPE_NAMES.get(oid, "unknown")


def column_kind(oid: int) -> ColumnKind:
    return _KIND_BY_TYPE.get(type_name(oid), ColumnKind.SCALAR)


def _non_finite_text(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    return "Infinity" if value > 0 else "-Infinity"


class BlobSize(NamedTuple):
    """Stand-in for a binary value: only its length survives decoding."""

    length: int

    def __str__(self) -> str:
        return f"[BLOB {self.length} bytes]"


class ByteaSizeTextLoader(Loader):
    """Decode hex-format bytea into its byte length without copying it."""

    format = Format.TEXT

    def load(self, data: Any) -> BlobSize:
        # hex output is "\x" followed by two digits per byte
        return BlobSize(max(len(data) - 2, 0) // 2)


class ByteaSizeBinaryLoader(Loader):
    format = Format.BINARY

    def load(self, data: Any) -> BlobSize:
        return BlobSize(len(data))


class ResultMarshaller:
    """Per-cell conversion of cursor rows into ordered dicts."""

    def __init__(self, max_text_length: int | None = None) -> None:
        self.max_text_length = max_text_length

    def install(self, cursor: psycopg.Cursor[Any]) -> None:
        """Register the size-only bytea loaders on ``cursor``."""
        cursor.adapters.register_loader("bytea", ByteaSizeTextLoader)
        cursor.adapters.register_loader("bytea", ByteaSizeBinaryLoader)

    def describe(self, description: Sequence[Any] | None) -> tuple[list[str], list[ColumnKind]]:
        """Column names (driver order) and their kinds from cursor metadata."""
        if not description:
            return [], []
        names = [desc.name for desc in description]
        kinds = [column_kind(desc.type_code) for desc in description]
        return names, kinds

    def row(
        self, names: Sequence[str], kinds: Sequence[ColumnKind], raw: Sequence[Any]
    ) -> dict[str, Any]:
        return {
            name: self.convert(value, kind)
            for name, kind, value in zip(names, kinds, raw, strict=True)
        }

    def convert(self, value: Any, kind: ColumnKind = ColumnKind.SCALAR) -> Any:
        if value is None:
            return None
        if isinstance(value, BlobSize):
            return str(value)
        if kind is ColumnKind.BLOB and isinstance(value, (bytes, bytearray, memoryview)):
            return str(BlobSize(len(value)))
        if kind is ColumnKind.BINARY or isinstance(value, (bytes, bytearray, memoryview)):
            return BINARY_PLACEHOLDER
        if isinstance(value, (dt.date, dt.time)):
            return value.isoformat()
        if isinstance(value, str):
            if kind is ColumnKind.CLOB:
                return self._cap_text(value)
            return value
        return self._scalar(value)

    def _cap_text(self, value: str) -> str:
        cap = self.max_text_length
        if cap is None or len(value) <= cap:
            return value
        return value[:cap] + TRUNCATION_MARKER.format(remaining=len(value) - cap)

    def _scalar(self, value: Any) -> Any:
        if isinstance(value, float) and not math.isfinite(value):
            return _non_finite_text(value)
        if isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, dict):
            return {str(k): self._scalar(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.convert(v) for v in value]
        if isinstance(value, (dt.date, dt.time)):
            return value.isoformat()
        return str(value)
