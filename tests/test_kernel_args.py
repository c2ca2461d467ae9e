"""Tests for kernel argument classification, module references and descriptors."""

import pickle

import numpy as np
import pytest

from columnar.errors import UnsupportedArgumentType
from columnar.schema import PrimitiveKind
from cuda_runtime.kernel import (
    ArrayArg,
    KernelDescriptor,
    ModuleRef,
    ScalarArg,
    kernel_arg,
)
from cuda_runtime.runtime_config import RuntimeConfig, compute_dimensions


def two_stages(size):
    return 2


def stage_dims(size, stage):
    return (64, 256) if stage == 0 else (1, 1)


class TestKernelArg:
    @pytest.mark.parametrize("value,kind", [
        (np.int8(1), PrimitiveKind.BYTE),
        (np.int16(1), PrimitiveKind.SHORT),
        (np.int32(1), PrimitiveKind.INT),
        (np.int64(1), PrimitiveKind.LONG),
        (np.float32(1), PrimitiveKind.FLOAT),
        (np.float64(1), PrimitiveKind.DOUBLE),
        (3, PrimitiveKind.LONG),
        (2.5, PrimitiveKind.DOUBLE),
    ])
    def test_scalars(self, value, kind):
        arg = kernel_arg(value)
        assert isinstance(arg, ScalarArg)
        assert arg.kind is kind
        assert arg.native.dtype == kind.dtype

    def test_array_is_copied_read_only(self):
        values = np.arange(4, dtype=np.float32)
        arg = kernel_arg(values)
        assert isinstance(arg, ArrayArg)
        assert arg.kind is PrimitiveKind.FLOAT
        assert arg.nbytes == 16
        values[0] = 99
        assert arg.values[0] == 0
        assert not arg.values.flags.writeable

    @pytest.mark.parametrize("value", [
        True, np.bool_(False), "x", [1, 2], np.uint32(1),
        np.zeros((2, 2), dtype=np.int32), np.zeros(3, dtype=np.complex64), None,
    ])
    def test_unsupported(self, value):
        with pytest.raises(UnsupportedArgumentType):
            kernel_arg(value, "free variable", "k")

    def test_error_names_kernel_and_role(self):
        with pytest.raises(UnsupportedArgumentType, match="free variable of kernel 'mykernel'"):
            kernel_arg("oops", "free variable", "mykernel")

    @pytest.mark.parametrize("value", [2 ** 63, -(2 ** 63) - 1, 10 ** 30])
    def test_int_outside_int64_range(self, value):
        with pytest.raises(UnsupportedArgumentType, match="outside int64 range") as info:
            kernel_arg(value, "free variable", "k")
        assert isinstance(info.value.__cause__, OverflowError)

    @pytest.mark.parametrize("value", [2 ** 63 - 1, -(2 ** 63)])
    def test_int64_bounds_accepted(self, value):
        assert int(kernel_arg(value).native) == value

    def test_already_classified_passes_through(self):
        arg = ScalarArg(PrimitiveKind.INT, np.int32(5))
        assert kernel_arg(arg) is arg


class TestModuleRef:
    def test_binary_and_source(self):
        assert ModuleRef.binary(b"\x7fELF").resolve().kind == "binary"
        assert ModuleRef.binary("//PTX").resolve().data == b"//PTX"
        assert ModuleRef.source("extern \"C\" {}").resolve().kind == "source"

    def test_path_and_file_url(self, tmp_path):
        ptx = tmp_path / "kernel.ptx"
        ptx.write_bytes(b".version 7.0")
        assert ModuleRef.path(ptx).resolve().data == b".version 7.0"
        assert ModuleRef.path(ptx.as_uri()).resolve().data == b".version 7.0"

    def test_unsupported_scheme(self):
        with pytest.raises(ValueError, match="scheme"):
            ModuleRef.path("http://example.com/k.ptx").resolve()

    def test_same_image_same_digest(self):
        assert ModuleRef.binary(b"abc").resolve().digest == ModuleRef.binary(b"abc").resolve().digest


class TestKernelDescriptor:
    def test_const_args_classified(self):
        k = KernelDescriptor("k", ["this"], ["this"], ModuleRef.source(""), const_args=[7, 0.5])
        assert [a.kind for a in k.constant_kernel_args] == [PrimitiveKind.LONG, PrimitiveKind.DOUBLE]
        assert k.input_columns == ("this",)

    def test_array_const_rejected(self):
        with pytest.raises(UnsupportedArgumentType, match="constant argument"):
            KernelDescriptor("k", ["this"], ["this"], ModuleRef.source(""),
                             const_args=[np.arange(3)])

    def test_multi_stage_descriptor_pickles(self):
        k = KernelDescriptor("sum", ["this"], ["this"], ModuleRef.binary(b"ptx"),
                             stage_count=two_stages, dimensions=stage_dims)
        assert k.is_multi_stage
        clone = pickle.loads(pickle.dumps(k))
        assert clone == k
        assert clone.stage_count(10) == 2


class TestComputeDimensions:
    @pytest.mark.parametrize("size,expected", [
        (0, (1, 32)),
        (1, (1, 32)),
        (33, (1, 64)),
        (1024, (1, 1024)),
        (30000, (30, 1024)),
    ])
    def test_default_geometry(self, size, expected):
        assert compute_dimensions(size) == expected

    def test_custom_config(self):
        config = RuntimeConfig(max_block_size=256)
        assert compute_dimensions(1000, config) == (4, 256)
