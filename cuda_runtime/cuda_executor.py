"""CUDA executor: runs KernelDescriptors over columnar partitions.

Architecture:
    - Argument marshaling and stage validation happen before any device
      allocation, so those failures need no cleanup
    - Modules and functions are loaded once per DeviceContext
    - Input columns go through the device buffer cache (hit: no transfer)
    - Output and free-variable buffers are fresh per call and always freed
    - One stream per call, chosen by working-set size; the stream is
      synchronized before the output partition is returned

Kernel argument order:
    input column pointers, input blob pointers, output column pointers,
    output blob pointers, row count (int64), free variables, constants,
    then (stage, total_stages) as int32 for multi-stage kernels.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from contextlib import ExitStack
from typing import Any

import numpy as np

from columnar.errors import (
    ColumnarCudaError,
    InvalidStageCount,
    KernelLaunchFailure,
    MissingDimensionFunction,
    UnsupportedSchema,
    UseAfterFree,
)
from columnar.partition import BLOB_KEY, ColumnarPartition
from columnar.schema import Schema
from cuda_runtime.backend import DeviceBuffer
from cuda_runtime.device_context import DeviceContext
from cuda_runtime.kernel import ArrayArg, KernelArg, KernelDescriptor, kernel_arg
from cuda_runtime.runtime_config import compute_dimensions

logger = logging.getLogger(__name__)


class CUDAExecutor:
    """Executes KernelDescriptors on the device owned by a DeviceContext.

    Per-call work:
        - validate arguments and stage plan (no allocations)
        - allocate output partition + device output buffers
        - marshal free variables, fetch input device buffers from the cache
        - launch once, or once per stage
        - copy outputs back, synchronize, release temporaries
    """

    def __init__(self, ctx: DeviceContext):
        self._ctx = ctx

    @property
    def context(self) -> DeviceContext:
        return self._ctx

    def run(
        self,
        kernel: KernelDescriptor,
        input: ColumnarPartition,
        output_schema: Schema | None = None,
        output_size: int | None = None,
        output_array_sizes: Sequence[int] | None = None,
        free_variables: Sequence[Any] | None = None,
        cache_on_device: bool = False,
        partition_id: Any = None,
    ) -> ColumnarPartition:
        """Run `kernel` over `input` and return a new output partition.

        Args:
            kernel: Kernel to launch.
            input: Live input partition; its reference count is untouched.
            output_schema: Schema of the result (default: input schema).
            output_size: Rows of the result (default: input size).
            output_array_sizes: Element count per row of the output array column.
            free_variables: Extra scalars (by value) or 1-D arrays (by pointer).
            cache_on_device: Persist-on-device flag of the result.
            partition_id: Identity of the result (default: a fresh one).

        Returns:
            Output partition owned by the caller (reference count 1).
        """
        ctx = self._ctx
        if input.is_released:
            raise UseAfterFree(input.partition_id, "run")

        # 1. Validation: nothing allocated yet.
        out_schema = output_schema if output_schema is not None else input.schema
        input.schema.ordered_columns(kernel.input_columns)
        out_schema.ordered_columns(kernel.output_columns)
        free_args = [
            kernel_arg(value, "free variable", kernel.name) for value in (free_variables or ())
        ]
        total_stages = self._stage_count(kernel, input.size)
        out_size = input.size if output_size is None else int(output_size)
        array_col = out_schema.array_column
        if array_col is not None and out_size > 0 and not output_array_sizes:
            raise UnsupportedSchema(
                f"Kernel '{kernel.name}' writes array column '{array_col.name}' "
                f"but no output_array_sizes were given"
            )

        # 2. Module, stream
        function = ctx.get_function(kernel.module, kernel.name)
        persisted = input.is_device_persistent(ctx.cache)
        memory_usage = (
            (0 if input.device_cached(ctx.cache) else input.memory_usage)
            + out_schema.memory_usage(out_size)
        )
        stream = ctx.select_stream(memory_usage)

        out = ColumnarPartition(out_schema, out_size, partition_id, output_array_sizes)
        try:
            temporaries: list[DeviceBuffer] = []
            with ExitStack() as cleanup:
                cleanup.callback(self._release_input, input, persisted)
                cleanup.callback(self._free_temporaries, temporaries)
                cleanup.push(self._drain_on_error(stream))

                # 3. Fresh output buffers (never cached)
                out_ptrs = self._allocate_outputs(out, kernel.output_columns, stream, temporaries)
                out_blob_ptrs = self._allocate_output_blobs(out, stream, temporaries)

                # 4./5. Free variables and constants
                free_native = self._marshal(free_args, out.partition_id, stream, temporaries)
                const_native = [arg.native for arg in kernel.constant_kernel_args]

                # 6. Input buffers through the device cache
                in_ptrs = input.device_pointers_for(kernel.input_columns, ctx, stream)
                in_blob_ptrs = input.device_blob_pointers(ctx, stream)

                args = (
                    *in_ptrs, *in_blob_ptrs, *out_ptrs, *out_blob_ptrs,
                    np.int64(input.size), *free_native, *const_native,
                )

                # 7. Launch
                if total_stages is None:
                    dims = (
                        kernel.dimensions(input.size, 0)
                        if kernel.dimensions is not None
                        else compute_dimensions(input.size, ctx.config)
                    )
                    self._launch(kernel, function, dims, args, stream, input, None)
                else:
                    for stage in range(total_stages):
                        dims = kernel.dimensions(input.size, stage)
                        stage_args = args + (np.int32(stage), np.int32(total_stages))
                        self._launch(kernel, function, dims, stage_args, stream, input, stage)

                # 8. Results back to the host
                for host, dev in zip(out.ordered_host_buffers(kernel.output_columns), out_ptrs):
                    ctx.copy_to_host(host, dev, stream)
                for host, dev in zip(out.ordered_blob_buffers(), out_blob_ptrs):
                    ctx.copy_to_host(host, dev, stream)

                # 9. Host reads below this point must see completed copies.
                self._synchronize(kernel, stream, input)
        except BaseException:
            out.free()
            raise

        out._mark_filled()
        out.persist_on_device = cache_on_device
        logger.debug(
            "Kernel '%s' on %r -> %r (%d rows, %s)",
            kernel.name, input.partition_id, out.partition_id, out.size,
            "single stage" if total_stages is None else f"{total_stages} stages",
        )
        return out

    # -- validation --------------------------------------------------------

    @staticmethod
    def _stage_count(kernel: KernelDescriptor, size: int) -> int | None:
        if kernel.stage_count is None:
            return None
        total = kernel.stage_count(size)
        if not isinstance(total, (int, np.integer)) or isinstance(total, bool) or total <= 0:
            raise InvalidStageCount(kernel.name, total)
        if kernel.dimensions is None:
            raise MissingDimensionFunction(kernel.name)
        return int(total)

    # -- allocation / marshaling ------------------------------------------

    def _allocate_outputs(
        self,
        out: ColumnarPartition,
        names: Sequence[str],
        stream,
        temporaries: list[DeviceBuffer],
    ) -> list[DeviceBuffer]:
        cache = self._ctx.cache
        presized = out.blob_nbytes > 0
        pointers = []
        for col, host in zip(out.schema.ordered_columns(names), out.ordered_host_buffers(names)):
            buf = cache.allocate(host.nbytes, out.partition_id, col.name)
            temporaries.append(buf)
            if presized and col.column_type.is_array:
                # Pre-laid-out offsets; kernels only need to write payloads.
                cache.copy_to_device(buf, host, stream)
            pointers.append(buf)
        return pointers

    def _allocate_output_blobs(
        self, out: ColumnarPartition, stream, temporaries: list[DeviceBuffer],
    ) -> list[DeviceBuffer]:
        cache = self._ctx.cache
        pointers = []
        for host in out.ordered_blob_buffers():
            buf = cache.allocate(host.nbytes, out.partition_id, BLOB_KEY)
            temporaries.append(buf)
            cache.copy_to_device(buf, host, stream)
            pointers.append(buf)
        return pointers

    def _marshal(
        self, args: list[KernelArg], partition_id, stream, temporaries: list[DeviceBuffer],
    ) -> list:
        cache = self._ctx.cache
        native = []
        for i, arg in enumerate(args):
            if isinstance(arg, ArrayArg):
                buf = cache.allocate(arg.nbytes, partition_id, f"free variable {i}")
                temporaries.append(buf)
                cache.copy_to_device(buf, arg.host_bytes(), stream)
                native.append(buf)
            else:
                native.append(arg.native)
        return native

    # -- device calls ------------------------------------------------------

    def _launch(self, kernel, function, dims, args, stream, input, stage) -> None:
        grid, block = dims
        logger.debug(
            "Launching '%s' grid=%s block=%s stage=%s", kernel.name, grid, block, stage,
        )
        try:
            self._ctx.launch(function, grid, block, args, stream)
        except ColumnarCudaError:
            raise
        except Exception as exc:
            raise KernelLaunchFailure(kernel.name, input.partition_id, stage, exc) from exc

    def _synchronize(self, kernel, stream, input) -> None:
        try:
            self._ctx.synchronize(stream)
        except ColumnarCudaError:
            raise
        except Exception as exc:
            raise KernelLaunchFailure(kernel.name, input.partition_id, None, exc) from exc

    # -- cleanup -----------------------------------------------------------

    def _drain_on_error(self, stream):
        """Exit callback waiting for queued work before buffers are freed."""
        def drain(exc_type, exc, tb):
            if exc_type is not None:
                try:
                    self._ctx.synchronize(stream)
                except Exception as sync_exc:
                    logger.warning("Stream drain after failure also failed: %s", sync_exc)
            return False
        return drain

    def _free_temporaries(self, temporaries: list[DeviceBuffer]) -> None:
        cache = self._ctx.cache
        while temporaries:
            cache.free(temporaries.pop())

    def _release_input(self, input: ColumnarPartition, persisted: bool) -> None:
        if not persisted:
            self._ctx.cache.release_partition(input.partition_id)


def run_kernel(
    ctx: DeviceContext,
    kernel: KernelDescriptor,
    input: ColumnarPartition,
    **kwargs,
) -> ColumnarPartition:
    """Functional form of CUDAExecutor(ctx).run(kernel, input, ...)."""
    return CUDAExecutor(ctx).run(kernel, input, **kwargs)
