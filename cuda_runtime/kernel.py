"""Kernel descriptor data model: module references and kernel arguments.

A KernelDescriptor names a kernel inside a compiled module, the order in
which input/output columns are passed to it, its constant arguments and,
for multi-stage (reduction) launches, the stage-count and geometry
functions. Descriptors are immutable and picklable as long as the
stage-count/dimension callables are module-level functions.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import numpy as np

from columnar.errors import UnsupportedArgumentType
from columnar.schema import PrimitiveKind


# ---------------------------------------------------------------------------
# Module references
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModuleImage:
    """Loadable module contents: a binary image (PTX/cubin/fatbin) or CUDA C source."""

    kind: str  # "binary" | "source"
    data: bytes | str

    @property
    def digest(self) -> str:
        raw = self.data.encode() if isinstance(self.data, str) else self.data
        return self.kind + ":" + hashlib.md5(raw).hexdigest()


@dataclass(frozen=True)
class ModuleRef:
    """Where a kernel's compiled module comes from.

    Inline binary data, a resource locator (path or file:// URL), or CUDA C
    source for NVRTC. All three resolve to a ModuleImage.
    """

    kind: str  # "binary" | "path" | "source"
    payload: bytes | str

    @classmethod
    def binary(cls, data: bytes | str) -> ModuleRef:
        if isinstance(data, str):
            data = data.encode("utf-8")
        return cls("binary", bytes(data))

    @classmethod
    def path(cls, locator: str | Path) -> ModuleRef:
        return cls("path", str(locator))

    @classmethod
    def source(cls, cuda_source: str) -> ModuleRef:
        return cls("source", cuda_source)

    def resolve(self) -> ModuleImage:
        if self.kind == "binary":
            return ModuleImage("binary", self.payload)
        if self.kind == "source":
            return ModuleImage("source", self.payload)
        if self.kind == "path":
            return ModuleImage("binary", _locator_path(self.payload).read_bytes())
        raise ValueError(f"Unknown module reference kind '{self.kind}'")

    def __repr__(self) -> str:
        if self.kind == "path":
            return f"ModuleRef.path({self.payload!r})"
        return f"ModuleRef.{self.kind}(<{len(self.payload)} bytes>)"


def _locator_path(locator: str) -> Path:
    parsed = urlparse(locator)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ValueError(f"Unsupported module locator scheme '{parsed.scheme}' in {locator}")
    return Path(locator)


# ---------------------------------------------------------------------------
# Kernel arguments (closed variant)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScalarArg:
    """Scalar passed to the kernel by value."""

    kind: PrimitiveKind
    value: np.generic

    @property
    def native(self) -> np.generic:
        return self.value


@dataclass(frozen=True, eq=False)
class ArrayArg:
    """1-D array copied into a fresh device buffer; the kernel gets a pointer."""

    kind: PrimitiveKind
    values: np.ndarray

    @property
    def nbytes(self) -> int:
        return self.values.nbytes

    def host_bytes(self) -> np.ndarray:
        return self.values.view(np.uint8)


KernelArg = ScalarArg | ArrayArg


def kernel_arg(value: Any, role: str = "argument", kernel: str | None = None) -> KernelArg:
    """Classify a Python/numpy value as a kernel argument.

    numpy scalars and arrays map exactly by dtype; Python int is LONG and
    float is DOUBLE. Anything else raises UnsupportedArgumentType.
    """
    if isinstance(value, (ScalarArg, ArrayArg)):
        return value
    if isinstance(value, (bool, np.bool_)):
        raise UnsupportedArgumentType(value, role, kernel)
    if isinstance(value, np.generic):
        kind = PrimitiveKind.from_dtype(value.dtype)
        if kind is None:
            raise UnsupportedArgumentType(value, role, kernel)
        return ScalarArg(kind, kind.dtype.type(value))
    if isinstance(value, int):
        try:
            return ScalarArg(PrimitiveKind.LONG, np.int64(value))
        except OverflowError as exc:
            raise UnsupportedArgumentType(value, role, kernel, "outside int64 range") from exc
    if isinstance(value, float):
        return ScalarArg(PrimitiveKind.DOUBLE, np.float64(value))
    if isinstance(value, np.ndarray):
        kind = PrimitiveKind.from_dtype(value.dtype)
        if kind is None or value.ndim != 1:
            raise UnsupportedArgumentType(value, role, kernel)
        values = np.array(value, dtype=kind.dtype, copy=True)
        values.flags.writeable = False
        return ArrayArg(kind, values)
    raise UnsupportedArgumentType(value, role, kernel)


# ---------------------------------------------------------------------------
# Kernel descriptor
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class KernelDescriptor:
    """Immutable description of one device kernel and how to call it.

    The kernel is called with: input column pointers, input blob pointers,
    output column pointers, output blob pointers, the row count (int64),
    free variables, constant arguments and, for multi-stage kernels,
    (stage, total_stages) as int32. Kernels must tolerate more threads than
    rows.
    """

    name: str
    input_columns: Sequence[str]
    output_columns: Sequence[str]
    module: ModuleRef
    const_args: Sequence[Any] = ()
    stage_count: Callable[[int], int] | None = None
    dimensions: Callable[[int, int], tuple[int, int]] | None = None
    _const_kernel_args: tuple[ScalarArg, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "input_columns", tuple(self.input_columns))
        object.__setattr__(self, "output_columns", tuple(self.output_columns))
        object.__setattr__(self, "const_args", tuple(self.const_args))
        classified = []
        for value in self.const_args:
            arg = kernel_arg(value, "constant argument", self.name)
            if isinstance(arg, ArrayArg):
                # Constants are passed by value only.
                raise UnsupportedArgumentType(value, "constant argument", self.name)
            classified.append(arg)
        object.__setattr__(self, "_const_kernel_args", tuple(classified))

    @property
    def is_multi_stage(self) -> bool:
        return self.stage_count is not None

    @property
    def constant_kernel_args(self) -> tuple[ScalarArg, ...]:
        return self._const_kernel_args
