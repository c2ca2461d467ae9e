"""Columnar partition store: off-heap column buffers + blob region.

A ColumnarPartition owns one contiguous byte buffer per schema column
(exactly width * size bytes) and at most one blob region holding the
payloads of the schema's array column. Ownership is reference counted:
the partition starts with one reference, acquire() adds one, free()
drops one and releases every buffer when the count reaches zero.

Reference counting is not thread-safe; a partition has one logical owner
at a time. Use the partition (or acquire()) as a context manager so the
release happens on every exit path:

    with build(records, schema) as part:
        out = executor.run(kernel, part)
"""

from __future__ import annotations

import itertools
import logging
import uuid
from collections.abc import Iterable, Iterator, Sequence
from typing import TYPE_CHECKING, Any

import numpy as np

from columnar import blob as blob_layout
from columnar.errors import RecordStreamExhausted, UnsupportedSchema, UseAfterFree
from columnar.schema import Column, Schema

if TYPE_CHECKING:
    from cuda_runtime.backend import DeviceBuffer
    from cuda_runtime.device_cache import DeviceBufferCache
    from cuda_runtime.device_context import DeviceContext

logger = logging.getLogger(__name__)

# Cache key name of the (single) blob region, next to column names.
BLOB_KEY = "#blob0"


def new_partition_id() -> str:
    return f"partition-{uuid.uuid4().hex[:12]}"


class ColumnarPartition:
    """Partition of records stored as typed column buffers."""

    def __init__(
        self,
        schema: Schema,
        size: int,
        partition_id: Any = None,
        output_array_sizes: Sequence[int] | None = None,
    ):
        if size < 0:
            raise ValueError(f"Partition size must be non-negative, got {size}")
        self._schema = schema
        self._size = int(size)
        self.partition_id = partition_id if partition_id is not None else new_partition_id()
        self.persist_on_device = False
        self._ref_count = 1
        self._index = {col.name: i for i, col in enumerate(schema.columns)}
        self._buffers: list[np.ndarray] | None = [
            np.zeros(col.memory_usage(self._size), dtype=np.uint8) for col in schema.columns
        ]
        self._blob: np.ndarray | None = None
        self._device_cache: DeviceBufferCache | None = None
        self._filled = False
        if output_array_sizes:
            self._presize_blob(output_array_sizes)

    @classmethod
    def _from_buffers(
        cls,
        schema: Schema,
        size: int,
        buffers: list[np.ndarray],
        blob: np.ndarray | None,
        partition_id: Any = None,
    ) -> ColumnarPartition:
        part = cls.__new__(cls)
        part._schema = schema
        part._size = int(size)
        part.partition_id = partition_id if partition_id is not None else new_partition_id()
        part.persist_on_device = False
        part._ref_count = 1
        part._index = {col.name: i for i, col in enumerate(schema.columns)}
        part._buffers = buffers
        part._blob = blob
        part._device_cache = None
        part._filled = True
        return part

    def _presize_blob(self, output_array_sizes: Sequence[int]) -> None:
        col = self._schema.array_column
        if col is None:
            raise UnsupportedSchema(
                f"Output array sizes given but schema {self._schema!r} has no array column"
            )
        if len(output_array_sizes) != 1:
            raise UnsupportedSchema(
                f"Exactly one output array size is supported, got {list(output_array_sizes)}"
            )
        length = int(output_array_sizes[0])
        capacity = blob_layout.aligned_capacity(length * col.column_type.element_width)
        blob = np.zeros(capacity * self._size, dtype=np.uint8)
        for row in range(self._size):
            blob_layout.write_header(blob, row * capacity, capacity, length)
        self._cells(col)[:] = np.arange(self._size, dtype=np.int64) * capacity
        self._blob = blob

    # -- properties --------------------------------------------------------

    @property
    def schema(self) -> Schema:
        return self._schema

    @property
    def size(self) -> int:
        return self._size

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def is_released(self) -> bool:
        return self._ref_count <= 0

    @property
    def blob(self) -> np.ndarray | None:
        self._check_live("blob")
        return self._blob

    @property
    def blob_nbytes(self) -> int:
        return 0 if self._blob is None else self._blob.nbytes

    @property
    def memory_usage(self) -> int:
        """Bytes held in column buffers and the blob region."""
        return self._schema.memory_usage(self._size) + self.blob_nbytes

    def __len__(self) -> int:
        return self._size

    def __repr__(self) -> str:
        state = "released" if self.is_released else f"refs={self._ref_count}"
        return f"ColumnarPartition({self.partition_id!r}, size={self._size}, {state})"

    # -- lifecycle ---------------------------------------------------------

    def _check_live(self, operation: str) -> None:
        if self._ref_count <= 0:
            raise UseAfterFree(self.partition_id, operation)

    def _mark_filled(self) -> None:
        self._filled = True

    def acquire(self) -> ColumnarPartition:
        """Take one more reference; pair with free() or use as a context manager."""
        self._check_live("acquire")
        self._ref_count += 1
        return self

    def free(self) -> None:
        """Drop one reference and release all buffers when none remain."""
        self._check_live("free")
        self._ref_count -= 1
        if self._ref_count == 0:
            self._release()

    def _release(self) -> None:
        logger.debug("Releasing partition %r (%d bytes)", self.partition_id, self.memory_usage)
        self._buffers = None
        self._blob = None
        cache = self._device_cache
        self._device_cache = None
        if cache is not None and not self.persist_on_device:
            cache.release_partition(self.partition_id)

    def __enter__(self) -> ColumnarPartition:
        self._check_live("__enter__")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.free()

    # -- host buffers ------------------------------------------------------

    def _cells(self, col: Column) -> np.ndarray:
        return self._buffers[self._index[col.name]].view(col.column_type.cell_dtype)

    def column_values(self, name: str) -> np.ndarray:
        """Typed view of one column's fixed-region cells."""
        self._check_live("column_values")
        return self._cells(self._schema.column(name))

    def host_buffers(self) -> list[np.ndarray]:
        """Raw byte buffers of all columns in schema order."""
        self._check_live("host_buffers")
        return list(self._buffers)

    def ordered_host_buffers(self, names: Iterable[str]) -> list[np.ndarray]:
        self._check_live("ordered_host_buffers")
        return [self._buffers[self._index[col.name]] for col in self._schema.ordered_columns(names)]

    def ordered_blob_buffers(self) -> list[np.ndarray]:
        self._check_live("ordered_blob_buffers")
        return [] if self._blob is None else [self._blob]

    # -- record stream -----------------------------------------------------

    def serialize(self, records: Iterable[Any]) -> None:
        """Write exactly `size` records into the column buffers.

        Nothing is written when the stream holds fewer than `size` records.
        A partition is filled once; decoded partitions and kernel outputs
        are already filled.
        """
        self._check_live("serialize")
        if self._filled:
            raise RuntimeError(f"Partition {self.partition_id!r} is already filled")
        rows = list(itertools.islice(iter(records), self._size))
        if len(rows) < self._size:
            raise RecordStreamExhausted(self.partition_id, self._size, len(rows))

        for col in self._schema.columns:
            if col.column_type.is_array:
                self._write_array_column(col, rows)
            else:
                self._cells(col)[:] = np.fromiter(
                    (col.get(row) for row in rows),
                    dtype=col.column_type.cell_dtype,
                    count=self._size,
                )
        self._filled = True

    def _write_array_column(self, col: Column, rows: list) -> None:
        dtype = col.column_type.kind.dtype
        arrays = [np.asarray(col.get(row), dtype=dtype) for row in rows]
        for arr in arrays:
            if arr.ndim != 1:
                raise ValueError(
                    f"Column '{col.name}' expects 1-D arrays, got shape {arr.shape}"
                )
        if not arrays:
            self._blob = None
            return
        # Every row gets the capacity of the first row's array.
        capacity = blob_layout.aligned_capacity(len(arrays[0]) * dtype.itemsize)
        blob = np.zeros(capacity * self._size, dtype=np.uint8)
        offsets = self._cells(col)
        for row, arr in enumerate(arrays):
            offset = row * capacity
            try:
                blob_layout.write_entry(blob, offset, capacity, arr)
            except ValueError as exc:
                raise ValueError(
                    f"Row {row} of column '{col.name}' in partition {self.partition_id!r}: {exc}"
                ) from exc
            offsets[row] = offset
        self._blob = blob

    def deserialize(self) -> Iterator[Any]:
        """Lazy, one-pass iterator over exactly `size` reconstructed records."""
        self._check_live("deserialize")
        return self._iter_records()

    __iter__ = deserialize

    def _iter_records(self) -> Iterator[Any]:
        readers = [self._reader(col) for col in self._schema.columns]
        make_record = self._schema.make_record
        for row in range(self._size):
            if self._ref_count <= 0:
                raise UseAfterFree(self.partition_id, "deserialize")
            yield make_record([read(row) for read in readers])

    def _reader(self, col: Column):
        cells = self._cells(col)
        if not col.column_type.is_array:
            return lambda row: cells[row].item()
        blob = self._blob
        dtype = col.column_type.kind.dtype
        if blob is None and self._size:
            raise RuntimeError(
                f"Partition {self.partition_id!r} has array column '{col.name}' but no blob"
            )
        return lambda row: blob_layout.read_entry(blob, int(cells[row]), dtype)

    # -- device view -------------------------------------------------------

    def device_pointers_for(
        self, names: Iterable[str], ctx: DeviceContext, stream
    ) -> list[DeviceBuffer]:
        """Device buffers for the named columns, in the given order.

        Cache hits are returned as-is; misses allocate a device buffer and
        schedule an asynchronous host->device copy on `stream`. Callers must
        synchronize the stream before relying on the copy.
        """
        self._check_live("device_pointers_for")
        self._device_cache = ctx.cache
        pointers = []
        for col in self._schema.ordered_columns(names):
            buf, _ = ctx.cache.get_or_create_with_transfer(
                self.partition_id, col.name, self._buffers[self._index[col.name]], stream,
            )
            pointers.append(buf)
        return pointers

    def device_blob_pointers(self, ctx: DeviceContext, stream) -> list[DeviceBuffer]:
        self._check_live("device_blob_pointers")
        if self._blob is None:
            return []
        self._device_cache = ctx.cache
        buf, _ = ctx.cache.get_or_create_with_transfer(
            self.partition_id, BLOB_KEY, self._blob, stream,
        )
        return [buf]

    def device_cached(self, cache: DeviceBufferCache) -> bool:
        """Whether any device copy of this partition is cached."""
        return bool(cache.entries_for(self.partition_id))

    def is_device_persistent(self, cache: DeviceBufferCache) -> bool:
        return self.persist_on_device or cache.is_persistent(self.partition_id)

    # -- wire format -------------------------------------------------------

    def to_wire_format(self) -> bytes:
        from columnar.wire import to_wire_format

        return to_wire_format(self)

    @classmethod
    def from_wire_format(
        cls, data: bytes, schema: Schema | None = None, partition_id: Any = None
    ) -> ColumnarPartition:
        from columnar.wire import from_wire_format

        return from_wire_format(data, schema=schema, partition_id=partition_id)

    def __reduce__(self):
        self._check_live("pickle")
        return (
            _restore_partition,
            (self.to_wire_format(), self._schema, self.partition_id, self.persist_on_device),
        )


def _restore_partition(data: bytes, schema: Schema, partition_id, persist: bool):
    part = ColumnarPartition.from_wire_format(data, schema=schema, partition_id=partition_id)
    part.persist_on_device = persist
    return part


def build(
    records: Iterable[Any], schema: Schema, partition_id: Any = None
) -> ColumnarPartition:
    """Build a partition sized to the record stream and fill it."""
    rows = list(records)
    part = ColumnarPartition(schema, len(rows), partition_id=partition_id)
    try:
        part.serialize(rows)
    except BaseException:
        part.free()
        raise
    return part
