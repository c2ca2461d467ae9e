"""Explicit device context: backend, buffer cache, streams, loaded modules.

Every core operation takes a DeviceContext instead of reaching for
process-global state. One worker process normally owns one context per
device.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any

import numpy as np

from cuda_runtime.backend import DeviceBackend, DeviceBuffer
from cuda_runtime.device_cache import DeviceBufferCache
from cuda_runtime.kernel import ModuleRef
from cuda_runtime.runtime_config import DEFAULT_CONFIG, RuntimeConfig

logger = logging.getLogger(__name__)


@dataclass
class TransferStats:
    """Counters of device traffic issued through one context."""
    h2d_copies: int = 0
    h2d_bytes: int = 0
    d2h_copies: int = 0
    d2h_bytes: int = 0
    allocations: int = 0
    frees: int = 0
    launches: int = 0

    @property
    def live_allocations(self) -> int:
        return self.allocations - self.frees

    def reset(self) -> None:
        for f in fields(self):
            setattr(self, f.name, 0)


class StreamPool:
    """Small pool of device streams selected by working-set size.

    Stream 0 is shared by small requests; larger working sets rotate over
    the remaining streams so they can overlap with each other.
    """

    def __init__(self, backend: DeviceBackend, size: int):
        self._streams = [backend.create_stream() for _ in range(max(1, size))]
        self._next = 0

    def __len__(self) -> int:
        return len(self._streams)

    def __getitem__(self, index: int) -> Any:
        return self._streams[index]

    def select(self, memory_usage: int, threshold: int) -> Any:
        if len(self._streams) == 1 or memory_usage < threshold:
            return self._streams[0]
        index = 1 + self._next % (len(self._streams) - 1)
        self._next += 1
        return self._streams[index]


class DeviceContext:
    """Everything a kernel invocation needs from the device side."""

    def __init__(self, backend: DeviceBackend, config: RuntimeConfig = DEFAULT_CONFIG):
        self.backend = backend
        self.config = config
        self.stats = TransferStats()
        self.cache = DeviceBufferCache(backend, self.stats)
        self.streams = StreamPool(backend, config.stream_pool_size)
        self._modules: dict[ModuleRef, Any] = {}
        self._functions: dict[tuple[ModuleRef, str], Any] = {}

    @classmethod
    def cuda(cls, config: RuntimeConfig = DEFAULT_CONFIG) -> DeviceContext:
        """Context on a CUDA device through CuPy."""
        from cuda_runtime.cuda_backend import CUDABackend

        return cls(CUDABackend(config.device_id), config)

    def select_stream(self, memory_usage: int) -> Any:
        return self.streams.select(memory_usage, self.config.dedicated_stream_threshold_bytes)

    # -- modules -----------------------------------------------------------

    def load_module(self, ref: ModuleRef) -> Any:
        """Load (once per context) the module behind a reference."""
        module = self._modules.get(ref)
        if module is None:
            image = ref.resolve()
            logger.debug("Loading %s module %s", image.kind, image.digest)
            module = self.backend.load_module(image)
            self._modules[ref] = module
        return module

    def get_function(self, ref: ModuleRef, name: str) -> Any:
        key = (ref, name)
        function = self._functions.get(key)
        if function is None:
            function = self.backend.get_function(self.load_module(ref), name)
            self._functions[key] = function
        return function

    # -- recorded device operations ---------------------------------------

    def copy_to_host(self, dst: np.ndarray, src: DeviceBuffer, stream: Any) -> None:
        self.backend.copy_device_to_host(dst, src, stream)
        self.stats.d2h_copies += 1
        self.stats.d2h_bytes += dst.nbytes

    def launch(self, function: Any, grid, block, args: tuple, stream: Any) -> None:
        self.backend.launch(function, _dim3(grid), _dim3(block), args, stream)
        self.stats.launches += 1

    def synchronize(self, stream: Any = None) -> None:
        self.backend.synchronize(stream)

    # -- teardown ----------------------------------------------------------

    def close(self) -> None:
        """Free every cached device buffer."""
        self.cache.clear()
        self._functions.clear()
        self._modules.clear()

    def __enter__(self) -> DeviceContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _dim3(dims) -> tuple[int, ...]:
    if isinstance(dims, int):
        return (dims,)
    return tuple(int(d) for d in dims)
