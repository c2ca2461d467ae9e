"""CUDA backend: CuPy-based DeviceBackend and DeviceBuffer implementations.

Device buffers are cupy uint8 ndarrays. Copies go through
MemoryPointer.copy_{from,to}_host_async on the selected stream; modules are
loaded from binary images (PTX/cubin/fatbin) with cupy.cuda.function.Module
or compiled from CUDA C with NVRTC through cupy.RawModule.
"""

from __future__ import annotations

import ctypes
from typing import Any

import numpy as np

from columnar.errors import DeviceAllocationFailure
from cuda_runtime.backend import DeviceBackend, DeviceBuffer

try:
    import cupy as cp

    HAS_CUPY = True
except ImportError:
    cp = None
    HAS_CUPY = False


class CUDABuffer(DeviceBuffer):
    """CUDA device buffer backed by a cupy uint8 ndarray."""

    def __init__(self, data: cp.ndarray):
        self._data = data

    @property
    def size_bytes(self) -> int:
        return 0 if self._data is None else self._data.nbytes

    @property
    def native_handle(self) -> Any:
        """Return the underlying cupy.ndarray."""
        if self._data is None:
            raise RuntimeError("CUDA buffer used after it was freed")
        return self._data

    def release(self) -> None:
        # Memory goes back to CuPy's pool once the last reference is dropped.
        self._data = None

    def to_numpy(self) -> np.ndarray:
        """Blocking download of the raw bytes."""
        return cp.asnumpy(self.native_handle)

    @classmethod
    def from_numpy(cls, data: np.ndarray) -> CUDABuffer:
        """Blocking upload of an array's raw bytes."""
        return cls(cp.asarray(np.ascontiguousarray(data).view(np.uint8).ravel()))


class CUDABackend(DeviceBackend):
    """CUDA GPU device backend using CuPy."""

    def __init__(self, device_id: int = 0):
        if not HAS_CUPY:
            raise RuntimeError("CuPy is not installed. Install with: pip install '.[cuda]'")
        self._device_id = device_id
        self._cp_device = cp.cuda.Device(device_id)

    @property
    def name(self) -> str:
        return "cuda"

    @property
    def device(self) -> Any:
        """Return CuPy device object."""
        return self._cp_device

    def allocate(self, nbytes: int) -> CUDABuffer:
        with self._cp_device:
            try:
                return CUDABuffer(cp.zeros(nbytes, dtype=cp.uint8))
            except cp.cuda.memory.OutOfMemoryError as exc:
                raise DeviceAllocationFailure("Device memory exhausted", nbytes) from exc
            except cp.cuda.runtime.CUDARuntimeError as exc:
                raise DeviceAllocationFailure(f"CUDA allocation failed: {exc}", nbytes) from exc

    def free(self, buffer: CUDABuffer) -> None:
        buffer.release()

    def copy_host_to_device(self, dst: CUDABuffer, src: np.ndarray, stream: Any) -> None:
        if src.nbytes == 0:
            return
        src = np.ascontiguousarray(src)
        dst.native_handle.data.copy_from_host_async(
            ctypes.c_void_p(src.ctypes.data), src.nbytes, stream,
        )

    def copy_device_to_host(self, dst: np.ndarray, src: CUDABuffer, stream: Any) -> None:
        if dst.nbytes == 0:
            return
        if not dst.flags.c_contiguous:
            raise ValueError("Host destination of a device copy must be contiguous")
        src.native_handle.data.copy_to_host_async(
            ctypes.c_void_p(dst.ctypes.data), dst.nbytes, stream,
        )

    def create_stream(self) -> Any:
        with self._cp_device:
            return cp.cuda.Stream()

    def synchronize(self, stream: Any = None) -> None:
        if stream is not None:
            stream.synchronize()
        else:
            self._cp_device.synchronize()

    def load_module(self, image) -> Any:
        with self._cp_device:
            if image.kind == "source":
                return cp.RawModule(code=image.data)
            module = cp.cuda.function.Module()
            try:
                module.load(image.data)
            except cp.cuda.driver.CUDADriverError as exc:
                raise RuntimeError(f"Loading module {image.digest} failed: {exc}") from exc
            return module

    def get_function(self, module: Any, name: str) -> Any:
        try:
            return module.get_function(name)
        except cp.cuda.driver.CUDADriverError as exc:
            raise RuntimeError(f"Function '{name}' not found: {exc}") from exc

    def launch(self, function, grid, block, args, stream) -> None:
        native = tuple(
            arg.native_handle if isinstance(arg, DeviceBuffer) else arg for arg in args
        )
        with self._cp_device, stream:
            function(grid, block, native)
