"""Shared fixtures: a host-memory device backend and Python "kernels".

FakeBackend implements DeviceBackend with numpy byte arrays as device
memory. Kernels are plain callables invoked as kernel(grid, block, *args)
where buffer arguments arrive as their uint8 arrays, so the executor,
device cache and coordinator can be exercised without a GPU.
"""

from dataclasses import dataclass

import numpy as np
import pytest

from columnar.blob import BLOB_METADATA_BLOCK_SIZE, read_header
from columnar.errors import DeviceAllocationFailure
from cuda_runtime.backend import DeviceBackend, DeviceBuffer
from cuda_runtime.device_context import DeviceContext
from cuda_runtime.kernel import ModuleRef
from cuda_runtime.runtime_config import RuntimeConfig

FAKE_MODULE = ModuleRef.source("// kernels provided by the fake backend")


class FakeBuffer(DeviceBuffer):
    def __init__(self, nbytes):
        self._data = np.zeros(nbytes, dtype=np.uint8)

    @property
    def size_bytes(self):
        return 0 if self._data is None else self._data.nbytes

    @property
    def native_handle(self):
        if self._data is None:
            raise RuntimeError("fake device buffer used after free")
        return self._data

    @property
    def freed(self):
        return self._data is None

    def release(self):
        self._data = None


@dataclass
class FakeStream:
    index: int
    syncs: int = 0


@dataclass
class LaunchRecord:
    name: str
    grid: tuple
    block: tuple
    args: tuple
    # Copies of buffer contents / scalar values as the kernel saw them.
    snapshot: tuple


class FakeFunction:
    def __init__(self, name, fn):
        self.name = name
        self.fn = fn


class FakeBackend(DeviceBackend):
    """DeviceBackend over host memory; counts everything it is asked to do."""

    def __init__(self, kernels=None, fail_allocation_after=None):
        self.kernels = dict(kernels or {})
        self.fail_allocation_after = fail_allocation_after
        self.allocated = 0
        self.loaded_modules = []
        self.launches = []
        self.streams = []

    @property
    def name(self):
        return "fake"

    def allocate(self, nbytes):
        if self.fail_allocation_after is not None and self.allocated >= self.fail_allocation_after:
            raise DeviceAllocationFailure("Fake device memory exhausted", nbytes)
        self.allocated += 1
        return FakeBuffer(nbytes)

    def free(self, buffer):
        buffer.release()

    def copy_host_to_device(self, dst, src, stream):
        raw = np.ascontiguousarray(src).view(np.uint8).ravel()
        dst.native_handle[:raw.nbytes] = raw

    def copy_device_to_host(self, dst, src, stream):
        dst.view(np.uint8)[...] = src.native_handle[:dst.nbytes]

    def create_stream(self):
        stream = FakeStream(len(self.streams))
        self.streams.append(stream)
        return stream

    def synchronize(self, stream=None):
        for s in [stream] if stream is not None else self.streams:
            s.syncs += 1

    def load_module(self, image):
        self.loaded_modules.append(image.digest)
        return image

    def get_function(self, module, name):
        if name not in self.kernels:
            raise RuntimeError(f"Function '{name}' not found in module")
        return FakeFunction(name, self.kernels[name])

    def launch(self, function, grid, block, args, stream):
        native = tuple(a.native_handle if isinstance(a, DeviceBuffer) else a for a in args)
        snapshot = tuple(a.copy() if isinstance(a, np.ndarray) else a for a in native)
        self.launches.append(LaunchRecord(function.name, grid, block, args, snapshot))
        function.fn(grid, block, *native)


# ---------------------------------------------------------------------------
# Python kernels
# ---------------------------------------------------------------------------

def identity_int(grid, block, inp, out, n):
    out.view(np.int32)[:n] = inp.view(np.int32)[:n]


def add_constant(grid, block, inp, out, n, delta):
    out.view(np.int32)[:n] = inp.view(np.int32)[:n] + delta


def reduce_sum(grid, block, inp, out, n, scratch, stage, total_stages):
    """Two-pass sum: per-block partial sums, then the sum of the partials."""
    partials = scratch.view(np.int64)
    if stage == 0:
        chunks = np.array_split(inp.view(np.int32)[:n].astype(np.int64), grid[0])
        partials[:grid[0]] = [chunk.sum() for chunk in chunks]
    else:
        out.view(np.int64)[0] = partials.sum()


def identity_int_array(grid, block, in_offsets, in_blob, out_offsets, out_blob, n):
    """Copies each row's payload; output headers/offsets are pre-laid-out."""
    header = BLOB_METADATA_BLOCK_SIZE
    for row in range(n):
        src = int(in_offsets.view(np.int64)[row])
        dst = int(out_offsets.view(np.int64)[row])
        _, length = read_header(in_blob, src)
        nbytes = length * 4
        out_blob[dst + header:dst + header + nbytes] = in_blob[src + header:src + header + nbytes]


def scale_by_free_array(grid, block, inp, out, n, factors, bias):
    out.view(np.float64)[:n] = inp.view(np.float64)[:n] * factors.view(np.float64)[:n] + bias


def faulting_kernel(grid, block, *args):
    raise RuntimeError("an illegal memory access was encountered")


def record_args(grid, block, *args):
    pass


FAKE_KERNELS = {
    "identity_int": identity_int,
    "add_constant": add_constant,
    "reduce_sum": reduce_sum,
    "identity_int_array": identity_int_array,
    "scale_by_free_array": scale_by_free_array,
    "faulting_kernel": faulting_kernel,
    "record_args": record_args,
}


@pytest.fixture
def backend():
    return FakeBackend(FAKE_KERNELS)


@pytest.fixture
def ctx(backend):
    """DeviceContext over the fake backend; closed after the test."""
    with DeviceContext(backend, RuntimeConfig(stream_pool_size=3,
                                              dedicated_stream_threshold_bytes=1 << 20)) as context:
        yield context
