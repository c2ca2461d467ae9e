"""Byte-exact wire format for moving partitions across process boundaries.

Layout (all integers little-endian):

    schema descriptor   b"CPD" + version byte, uint32 column count,
                        per column: uint8 type code, uint16 name length, UTF-8 name
    int64               row count
    column bytes        width * row count bytes per column, schema order, no padding
    int64               blob count (0 or 1)
    per blob            int64 length, raw blob bytes (128-byte aligned entries)
"""

from __future__ import annotations

import struct
from typing import Any

import numpy as np

from columnar import blob as blob_layout
from columnar.errors import UnsupportedSchema, WireFormatCorruption
from columnar.partition import ColumnarPartition
from columnar.schema import Column, ColumnType, Schema

MAGIC = b"CPD"
VERSION = 1

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_I64 = struct.Struct("<q")


def encode_schema(schema: Schema) -> bytes:
    parts = [MAGIC, _U8.pack(VERSION), _U32.pack(len(schema.columns))]
    for name, column_type in schema.descriptor():
        raw = name.encode("utf-8")
        parts.append(_U8.pack(column_type.code))
        parts.append(_U16.pack(len(raw)))
        parts.append(raw)
    return b"".join(parts)


def to_wire_format(partition: ColumnarPartition) -> bytes:
    """Encode a live partition; see module docstring for the layout."""
    buffers = partition.host_buffers()
    blobs = partition.ordered_blob_buffers()
    parts = [encode_schema(partition.schema), _I64.pack(partition.size)]
    parts.extend(buf.tobytes() for buf in buffers)
    parts.append(_I64.pack(len(blobs)))
    for blob in blobs:
        parts.append(_I64.pack(blob.nbytes))
        parts.append(blob.tobytes())
    return b"".join(parts)


class _Reader:
    """Bounds-checked cursor over an encoded partition."""

    def __init__(self, data: bytes):
        self._view = memoryview(data)
        self.pos = 0

    def take(self, nbytes: int, what: str) -> memoryview:
        if nbytes < 0:
            raise WireFormatCorruption(f"Negative length {nbytes} declared for {what}")
        end = self.pos + nbytes
        if end > len(self._view):
            raise WireFormatCorruption(
                f"Truncated {what}: need {nbytes} bytes at offset {self.pos}, "
                f"only {len(self._view) - self.pos} left"
            )
        chunk = self._view[self.pos:end]
        self.pos = end
        return chunk

    def unpack(self, fmt: struct.Struct, what: str) -> int:
        return fmt.unpack(self.take(fmt.size, what))[0]

    @property
    def remaining(self) -> int:
        return len(self._view) - self.pos


def decode_schema(reader: _Reader) -> list[Column]:
    if bytes(reader.take(len(MAGIC), "magic")) != MAGIC:
        raise WireFormatCorruption("Not an encoded columnar partition (bad magic)")
    version = reader.unpack(_U8, "version")
    if version != VERSION:
        raise WireFormatCorruption(f"Unsupported wire format version {version}")
    count = reader.unpack(_U32, "column count")
    columns = []
    for i in range(count):
        code = reader.unpack(_U8, f"type code of column {i}")
        try:
            column_type = ColumnType.from_code(code)
        except ValueError as exc:
            raise WireFormatCorruption(str(exc)) from exc
        name_len = reader.unpack(_U16, f"name length of column {i}")
        raw = bytes(reader.take(name_len, f"name of column {i}"))
        try:
            columns.append(Column(raw.decode("utf-8"), column_type))
        except (UnicodeDecodeError, UnsupportedSchema) as exc:
            raise WireFormatCorruption(f"Invalid name of column {i}: {exc}") from exc
    return columns


def from_wire_format(
    data: bytes, schema: Schema | None = None, partition_id: Any = None
) -> ColumnarPartition:
    """Decode a partition produced by to_wire_format.

    When `schema` is given its descriptor must match the encoded one and it
    is used for record reconstruction; otherwise a descriptor-only schema is
    built (records come back as dicts keyed by path relative to "this").
    """
    reader = _Reader(data)
    columns = decode_schema(reader)
    if schema is None:
        try:
            schema = Schema(columns)
        except UnsupportedSchema as exc:
            raise WireFormatCorruption(f"Encoded schema is invalid: {exc}") from exc
    elif schema.descriptor() != tuple((c.name, c.column_type) for c in columns):
        raise WireFormatCorruption(
            f"Encoded columns {[(c.name, c.column_type.name) for c in columns]} "
            f"do not match schema {schema!r}"
        )

    size = reader.unpack(_I64, "row count")
    if size < 0:
        raise WireFormatCorruption(f"Negative row count {size}")
    buffers = []
    for col in schema.columns:
        raw = reader.take(col.memory_usage(size), f"column '{col.name}'")
        buffers.append(np.frombuffer(raw, dtype=np.uint8).copy())

    blob_count = reader.unpack(_I64, "blob count")
    if blob_count not in (0, 1):
        raise WireFormatCorruption(f"Expected at most one blob region, got {blob_count}")
    blob = None
    if blob_count:
        length = reader.unpack(_I64, "blob length")
        blob = np.frombuffer(reader.take(length, "blob region"), dtype=np.uint8).copy()
    if reader.remaining:
        raise WireFormatCorruption(f"{reader.remaining} trailing bytes after partition")

    array_col = schema.array_column
    if array_col is not None and size:
        if blob is None:
            raise WireFormatCorruption(f"Array column '{array_col.name}' has no blob region")
        starts = blob_layout.validate_layout(blob, array_col.column_type.element_width)
        offsets = buffers[schema.columns.index(array_col)].view("<i8")
        if offsets.min() < 0 or offsets.max() + blob_layout.BLOB_METADATA_BLOCK_SIZE > blob.nbytes:
            raise WireFormatCorruption(
                f"Offsets of column '{array_col.name}' point outside the blob region"
            )
        stray = sorted(set(offsets.tolist()) - starts)
        if stray:
            raise WireFormatCorruption(
                f"Offsets {stray} of column '{array_col.name}' do not start a blob entry"
            )
    elif array_col is None and blob is not None:
        raise WireFormatCorruption("Blob region present but schema has no array column")

    return ColumnarPartition._from_buffers(schema, size, buffers, blob, partition_id)
