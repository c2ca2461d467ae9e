"""Abstract device backend interfaces for the kernel runtime."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import numpy as np


class DeviceBuffer(ABC):
    """Abstract device-resident byte buffer."""

    @property
    @abstractmethod
    def size_bytes(self) -> int:
        ...

    @property
    @abstractmethod
    def native_handle(self) -> Any:
        """Backend-native object passed to kernels (e.g. cupy.ndarray)."""
        ...


class DeviceBackend(ABC):
    """Abstract device: memory, async copies, modules and launches.

    Copies and launches are ordered per stream; nothing is guaranteed to be
    visible on the host until synchronize() returns for that stream.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    def allocate(self, nbytes: int) -> DeviceBuffer:
        """Allocate a zero-filled device buffer; raises DeviceAllocationFailure."""
        ...

    @abstractmethod
    def free(self, buffer: DeviceBuffer) -> None:
        ...

    @abstractmethod
    def copy_host_to_device(self, dst: DeviceBuffer, src: np.ndarray, stream: Any) -> None:
        ...

    @abstractmethod
    def copy_device_to_host(self, dst: np.ndarray, src: DeviceBuffer, stream: Any) -> None:
        ...

    @abstractmethod
    def create_stream(self) -> Any:
        ...

    @abstractmethod
    def synchronize(self, stream: Any = None) -> None:
        ...

    @abstractmethod
    def load_module(self, image) -> Any:
        """Load a module from a ModuleImage (binary or CUDA C source)."""
        ...

    @abstractmethod
    def get_function(self, module: Any, name: str) -> Any:
        ...

    @abstractmethod
    def launch(
        self,
        function: Any,
        grid: tuple[int, ...],
        block: tuple[int, ...],
        args: tuple,
        stream: Any,
    ) -> None:
        ...
