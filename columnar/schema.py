"""Column schema: ordered, typed field descriptors for a record type.

A schema is built once per record type from an explicit accessor table
(path, ColumnType). Paths follow the "this" / "this.x" / "this.a.b" access
convention; the part after "this." is resolved with operator.attrgetter, or
segment by segment as keys when records are plain mappings ({"a": {"b": 1}}).
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from columnar.errors import UnsupportedSchema

ROOT = "this"

# Array cells in the fixed region hold an int64 offset into the blob region.
ARRAY_OFFSET_WIDTH = 8


class PrimitiveKind(Enum):
    """Element kinds a column, constant or free variable may carry."""

    BYTE = "int8"
    SHORT = "int16"
    INT = "int32"
    LONG = "int64"
    FLOAT = "float32"
    DOUBLE = "float64"

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.value).newbyteorder("<")

    @property
    def width(self) -> int:
        return self.dtype.itemsize

    @classmethod
    def from_dtype(cls, dtype) -> PrimitiveKind | None:
        """Exact dtype lookup; returns None for kinds with no column type."""
        dt = np.dtype(dtype)
        if dt.byteorder == ">":
            return None
        return _KIND_BY_DTYPE.get(dt.str.lstrip("<=|"))


_KIND_BY_DTYPE = {
    "i1": PrimitiveKind.BYTE,
    "i2": PrimitiveKind.SHORT,
    "i4": PrimitiveKind.INT,
    "i8": PrimitiveKind.LONG,
    "f4": PrimitiveKind.FLOAT,
    "f8": PrimitiveKind.DOUBLE,
}


class ColumnType(Enum):
    """Primitive or array-of-primitive column kind with a stable wire code."""

    BYTE = (1, PrimitiveKind.BYTE, False)
    SHORT = (2, PrimitiveKind.SHORT, False)
    INT = (3, PrimitiveKind.INT, False)
    LONG = (4, PrimitiveKind.LONG, False)
    FLOAT = (5, PrimitiveKind.FLOAT, False)
    DOUBLE = (6, PrimitiveKind.DOUBLE, False)
    BYTE_ARRAY = (17, PrimitiveKind.BYTE, True)
    SHORT_ARRAY = (18, PrimitiveKind.SHORT, True)
    INT_ARRAY = (19, PrimitiveKind.INT, True)
    LONG_ARRAY = (20, PrimitiveKind.LONG, True)
    FLOAT_ARRAY = (21, PrimitiveKind.FLOAT, True)
    DOUBLE_ARRAY = (22, PrimitiveKind.DOUBLE, True)

    def __init__(self, code: int, kind: PrimitiveKind, is_array: bool):
        self.code = code
        self.kind = kind
        self.is_array = is_array

    @property
    def bytes(self) -> int:
        """Width of one cell in the fixed region."""
        return ARRAY_OFFSET_WIDTH if self.is_array else self.kind.width

    @property
    def element_width(self) -> int:
        return self.kind.width

    @property
    def cell_dtype(self) -> np.dtype:
        """Dtype of the fixed-region cells (offsets for array columns)."""
        return PrimitiveKind.LONG.dtype if self.is_array else self.kind.dtype

    @classmethod
    def from_code(cls, code: int) -> ColumnType:
        for member in cls:
            if member.code == code:
                return member
        raise ValueError(f"Unknown column type code {code}")

    @classmethod
    def of(cls, kind: PrimitiveKind, is_array: bool = False) -> ColumnType:
        for member in cls:
            if member.kind is kind and member.is_array == is_array:
                return member
        raise ValueError(f"No column type for {kind} (array={is_array})")


def _strip_root(path: str) -> str:
    if path == ROOT:
        return ""
    if path.startswith(ROOT + "."):
        return path[len(ROOT) + 1:]
    return path


def _nest(by_path: dict[str, Any]) -> dict[str, Any]:
    """Dict record from {"this.a.b": v, ...}, one level per path segment."""
    record: dict[str, Any] = {}
    for path, value in by_path.items():
        *parents, leaf = _strip_root(path).split(".")
        node = record
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
    return record


@dataclass(frozen=True)
class Column:
    """One field of a record type: access path + column type."""

    name: str
    column_type: ColumnType
    _attr: Callable[[Any], Any] | None = field(init=False, repr=False, compare=False)
    _keys: tuple[str, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        if not self.name:
            raise UnsupportedSchema("Column name must not be empty")
        rel = _strip_root(self.name)
        object.__setattr__(self, "_attr", operator.attrgetter(rel) if rel else None)
        object.__setattr__(self, "_keys", tuple(rel.split(".")) if rel else ())

    @property
    def is_root(self) -> bool:
        return self._attr is None

    def memory_usage(self, size: int) -> int:
        return self.column_type.bytes * size

    def get(self, record):
        """Read this column's value from a record.

        Mapping records are walked key by key along the path relative to
        "this", so "this.a.b" reads record["a"]["b"].
        """
        if self._attr is None:
            return record
        if isinstance(record, Mapping):
            value = record
            for key in self._keys:
                value = value[key]
            return value
        return self._attr(record)


class Schema:
    """Ordered, immutable list of columns for one record type.

    The column order is the buffer order of every partition built with this
    schema and must match between producers and consumers.
    """

    def __init__(
        self,
        columns: Iterable[Column],
        record_type: type | None = None,
        record_factory: Callable[[dict[str, Any]], Any] | None = None,
    ):
        self._columns = tuple(columns)
        self._record_type = record_type
        self._record_factory = record_factory
        self._validate()
        self._by_name = {col.name: col for col in self._columns}

    def _validate(self) -> None:
        if not self._columns:
            raise UnsupportedSchema("Schema must have at least one column")
        names = [col.name for col in self._columns]
        if len(set(names)) != len(names):
            raise UnsupportedSchema(f"Duplicate column names in schema: {names}")
        if any(col.is_root for col in self._columns) and len(self._columns) > 1:
            raise UnsupportedSchema("A root column ('this') must be the only column")
        arrays = [col.name for col in self._columns if col.column_type.is_array]
        if len(arrays) > 1:
            # Only one blob region per partition exists.
            raise UnsupportedSchema(f"At most one array column is supported, got {arrays}")
        if self._record_factory is not None:
            return
        nested = [col.name for col in self._columns if "." in _strip_root(col.name)]
        if nested and not self.builds_mappings:
            raise UnsupportedSchema(
                f"Nested paths {nested} need an explicit record_factory"
            )
        if self.builds_mappings:
            # A mapping cannot hold both a value and a sub-mapping under one key.
            for col in self._columns:
                for other in self._columns:
                    if other.name.startswith(col.name + "."):
                        raise UnsupportedSchema(
                            f"Column '{col.name}' is a prefix of '{other.name}'"
                        )

    # -- constructors ------------------------------------------------------

    @classmethod
    def primitive(cls, column_type: ColumnType) -> Schema:
        """Schema for records that are a single primitive value or array."""
        return cls([Column(ROOT, column_type)])

    @classmethod
    def of(
        cls,
        record_type: type,
        fields: Iterable[tuple[str, ColumnType]],
        record_factory: Callable[[dict[str, Any]], Any] | None = None,
    ) -> Schema:
        """Schema from an explicit accessor table of (path, ColumnType)."""
        columns = []
        for path, column_type in fields:
            if path != ROOT and not path.startswith(ROOT + "."):
                path = f"{ROOT}.{path}"
            columns.append(Column(path, column_type))
        return cls(columns, record_type=record_type, record_factory=record_factory)

    # -- accessors ---------------------------------------------------------

    @property
    def columns(self) -> tuple[Column, ...]:
        return self._columns

    @property
    def record_type(self) -> type | None:
        return self._record_type

    @property
    def builds_mappings(self) -> bool:
        """True when records are plain dicts keyed by path relative to "this"."""
        return self._record_factory is None and self._record_type in (None, dict)

    @property
    def is_primitive(self) -> bool:
        return len(self._columns) == 1 and self._columns[0].is_root

    @property
    def array_column(self) -> Column | None:
        for col in self._columns:
            if col.column_type.is_array:
                return col
        return None

    def column(self, name: str) -> Column:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(
                f"Column '{name}' not in schema. Available: {list(self._by_name)}"
            ) from None

    def ordered_columns(self, names: Iterable[str]) -> list[Column]:
        return [self.column(name) for name in names]

    def memory_usage(self, size: int) -> int:
        return sum(col.memory_usage(size) for col in self._columns)

    def descriptor(self) -> tuple[tuple[str, ColumnType], ...]:
        return tuple((col.name, col.column_type) for col in self._columns)

    def make_record(self, values: list) -> Any:
        """Build one record from per-column values in schema order."""
        if self.is_primitive:
            return values[0]
        by_path = {col.name: value for col, value in zip(self._columns, values)}
        if self._record_factory is not None:
            return self._record_factory(by_path)
        if self.builds_mappings:
            return _nest(by_path)
        return self._record_type(**{_strip_root(name): v for name, v in by_path.items()})

    def __eq__(self, other) -> bool:
        if not isinstance(other, Schema):
            return NotImplemented
        return self.descriptor() == other.descriptor() and self._record_type is other._record_type

    def __hash__(self) -> int:
        return hash(self.descriptor())

    def __repr__(self) -> str:
        cols = ", ".join(f"{name}:{ct.name}" for name, ct in self.descriptor())
        kind = self._record_type.__name__ if self._record_type else "record"
        return f"Schema<{kind}>({cols})"
