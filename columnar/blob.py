"""Blob region layout for variable-length array cells.

Each entry starts on a BLOB_METADATA_BLOCK_SIZE boundary with a header
block holding [int64 capacity][int64 logical length]; the payload follows
the header block. Capacity counts the header block, so the next entry
begins at offset + capacity.
"""

from __future__ import annotations

import numpy as np

from columnar.errors import WireFormatCorruption

BLOB_METADATA_BLOCK_SIZE = 128

_HEADER_DTYPE = np.dtype("<i8")
_HEADER_NBYTES = 2 * _HEADER_DTYPE.itemsize


def aligned_capacity(payload_nbytes: int) -> int:
    """Entry capacity (header block + payload) rounded up to the block size."""
    block = BLOB_METADATA_BLOCK_SIZE
    return (block + payload_nbytes + block - 1) // block * block


def write_header(blob: np.ndarray, offset: int, capacity: int, length: int) -> None:
    blob[offset:offset + _HEADER_NBYTES].view(_HEADER_DTYPE)[:] = (capacity, length)


def read_header(blob: np.ndarray, offset: int) -> tuple[int, int]:
    capacity, length = blob[offset:offset + _HEADER_NBYTES].view(_HEADER_DTYPE)
    return int(capacity), int(length)


def write_entry(blob: np.ndarray, offset: int, capacity: int, values: np.ndarray) -> None:
    """Write header and payload of one entry at offset."""
    payload = np.ascontiguousarray(values).view(np.uint8)
    if BLOB_METADATA_BLOCK_SIZE + payload.nbytes > capacity:
        raise ValueError(
            f"Array of {payload.nbytes} bytes does not fit a blob entry of capacity {capacity}"
        )
    write_header(blob, offset, capacity, len(values))
    start = offset + BLOB_METADATA_BLOCK_SIZE
    blob[start:start + payload.nbytes] = payload


def read_entry(blob: np.ndarray, offset: int, dtype: np.dtype) -> np.ndarray:
    """Copy the payload of the entry at offset out as an array of dtype."""
    _, length = read_header(blob, offset)
    start = offset + BLOB_METADATA_BLOCK_SIZE
    return blob[start:start + length * dtype.itemsize].view(dtype).copy()


def validate_layout(blob: np.ndarray, element_width: int | None = None) -> set[int]:
    """Walk every entry of a blob and check headers against its length.

    Returns the start offset of every entry. Raises WireFormatCorruption
    on a header whose capacity is misaligned, overruns the blob, or cannot
    hold its declared length.
    """
    offset = 0
    starts = set()
    total = blob.nbytes
    while offset < total:
        if offset + _HEADER_NBYTES > total:
            raise WireFormatCorruption(f"Truncated blob entry header at offset {offset}")
        capacity, length = read_header(blob, offset)
        if capacity <= 0 or capacity % BLOB_METADATA_BLOCK_SIZE:
            raise WireFormatCorruption(
                f"Blob entry at offset {offset} has invalid capacity {capacity}"
            )
        if offset + capacity > total:
            raise WireFormatCorruption(
                f"Blob entry at offset {offset} declares capacity {capacity} "
                f"beyond blob length {total}"
            )
        if length < 0 or (
            element_width is not None
            and BLOB_METADATA_BLOCK_SIZE + length * element_width > capacity
        ):
            raise WireFormatCorruption(
                f"Blob entry at offset {offset} declares length {length} "
                f"exceeding capacity {capacity}"
            )
        starts.add(offset)
        offset += capacity
    return starts
