"""Per-process device buffer cache keyed by (partition identity, column name).

Entries live until their partition is released (unless the partition is
marked persistent) or explicitly evicted. At most one entry exists per
key.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

import numpy as np

from columnar.errors import DeviceAllocationFailure
from cuda_runtime.backend import DeviceBackend, DeviceBuffer

if TYPE_CHECKING:
    from cuda_runtime.device_context import TransferStats

logger = logging.getLogger(__name__)


class DeviceBufferCache:
    """Device allocator + cache of host->device copies of partition buffers."""

    def __init__(self, backend: DeviceBackend, stats: TransferStats):
        self._backend = backend
        self._stats = stats
        self._entries: dict[tuple[Any, str], DeviceBuffer] = {}
        self._persistent: set[Any] = set()
        # Agent messages may be handled on a transport thread.
        self._lock = threading.RLock()

    # -- primitives --------------------------------------------------------

    def allocate(self, nbytes: int, partition_id: Any = None, column: str | None = None) -> DeviceBuffer:
        try:
            buf = self._backend.allocate(nbytes)
        except DeviceAllocationFailure as exc:
            if partition_id is None and column is None:
                raise
            raise DeviceAllocationFailure(
                "Device allocation failed", nbytes, partition_id, column,
            ) from exc
        self._stats.allocations += 1
        return buf

    def free(self, buffer: DeviceBuffer) -> None:
        self._backend.free(buffer)
        self._stats.frees += 1

    def copy_to_device(self, dst: DeviceBuffer, host: np.ndarray, stream) -> None:
        self._backend.copy_host_to_device(dst, host, stream)
        self._stats.h2d_copies += 1
        self._stats.h2d_bytes += host.nbytes

    def get_or_create_with_transfer(
        self, partition_id: Any, name: str, host: np.ndarray, stream,
    ) -> tuple[DeviceBuffer, bool]:
        """Cached device copy of `host`, scheduling the copy on a miss.

        Returns (buffer, transferred). The copy is asynchronous on `stream`.
        """
        key = (partition_id, name)
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                logger.debug("Device cache hit for %r/%s", partition_id, name)
                return cached, False
            buf = self.allocate(host.nbytes, partition_id, name)
            try:
                self.copy_to_device(buf, host, stream)
            except BaseException:
                self.free(buf)
                raise
            self._entries[key] = buf
        logger.debug("Device cache miss for %r/%s: %d bytes scheduled", partition_id, name, host.nbytes)
        return buf, True

    # -- eviction ----------------------------------------------------------

    def release_partition(self, partition_id: Any) -> int:
        """Drop a partition's entries unless it is marked persistent."""
        with self._lock:
            if partition_id in self._persistent:
                return 0
            return self.evict_partition(partition_id)

    def evict_partition(self, partition_id: Any) -> int:
        """Free every entry of a partition regardless of persistence."""
        with self._lock:
            keys = [key for key in self._entries if key[0] == partition_id]
            for key in keys:
                self.free(self._entries.pop(key))
        if keys:
            logger.debug("Evicted %d device buffers of partition %r", len(keys), partition_id)
        return len(keys)

    def mark_persistent(self, partition_id: Any) -> None:
        with self._lock:
            self._persistent.add(partition_id)

    def unmark_persistent(self, partition_id: Any) -> None:
        with self._lock:
            self._persistent.discard(partition_id)

    def is_persistent(self, partition_id: Any) -> bool:
        return partition_id in self._persistent

    # -- inspection --------------------------------------------------------

    def entries_for(self, partition_id: Any) -> dict[str, DeviceBuffer]:
        with self._lock:
            return {name: buf for (pid, name), buf in self._entries.items() if pid == partition_id}

    def __contains__(self, key: tuple[Any, str]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        """Free all entries and forget persistence marks."""
        with self._lock:
            for buf in self._entries.values():
                self.free(buf)
            self._entries.clear()
            self._persistent.clear()
