"""Error taxonomy shared by the columnar store and the CUDA runtime.

Every error derives from ColumnarCudaError and from the builtin it most
resembles, so callers may catch either.
"""

from __future__ import annotations


class ColumnarCudaError(Exception):
    """Base class for all columnar/CUDA runtime errors."""


class UnsupportedArgumentType(ColumnarCudaError, TypeError):
    """A free variable or constant argument is not a supported scalar/array kind."""

    def __init__(
        self, value, role: str = "argument", kernel: str | None = None, reason: str | None = None,
    ):
        self.value = value
        self.role = role
        self.kernel = kernel
        where = f" of kernel '{kernel}'" if kernel else ""
        why = f" ({reason})" if reason else ""
        super().__init__(
            f"Unsupported type {type(value).__name__} passed as a {role}{where}{why}"
        )


class InvalidStageCount(ColumnarCudaError, ValueError):
    """A stage-count function returned a non-positive number."""

    def __init__(self, kernel: str, stages):
        self.kernel = kernel
        self.stages = stages
        super().__init__(
            f"Number of stages in a launch of kernel '{kernel}' must be positive, got {stages}"
        )


class MissingDimensionFunction(ColumnarCudaError, ValueError):
    """Multi-stage launch requested without a geometry function."""

    def __init__(self, kernel: str):
        self.kernel = kernel
        super().__init__(f"Dimensions must be provided for multi-stage kernel '{kernel}'")


class UseAfterFree(ColumnarCudaError, RuntimeError):
    """Operation on a partition whose reference counter already reached zero."""

    def __init__(self, partition_id, operation: str):
        self.partition_id = partition_id
        self.operation = operation
        super().__init__(f"{operation}() on released partition {partition_id!r}")


class DeviceAllocationFailure(ColumnarCudaError, MemoryError):
    """Device memory exhausted or a driver allocation/copy call failed."""

    def __init__(self, message: str, nbytes: int | None = None, partition_id=None,
                 column: str | None = None):
        self.nbytes = nbytes
        self.partition_id = partition_id
        self.column = column
        parts = [message]
        if nbytes is not None:
            parts.append(f"{nbytes} bytes")
        if partition_id is not None:
            parts.append(f"partition {partition_id!r}")
        if column is not None:
            parts.append(f"column '{column}'")
        super().__init__(", ".join(parts))


class KernelLaunchFailure(ColumnarCudaError, RuntimeError):
    """The driver rejected a kernel launch or failed while running it."""

    def __init__(self, kernel: str, partition_id, stage: int | None, cause: BaseException):
        self.kernel = kernel
        self.partition_id = partition_id
        self.stage = stage
        stage_info = f" (stage {stage})" if stage is not None else ""
        super().__init__(
            f"Launch of kernel '{kernel}'{stage_info} on partition {partition_id!r} failed: {cause}"
        )


class AgentAcknowledgmentFailure(ColumnarCudaError, RuntimeError):
    """A cache/uncache broadcast got a non-success reply from an agent."""

    def __init__(self, agent: str, message, reply=None, cause: BaseException | None = None):
        self.agent = agent
        self.message = message
        self.reply = reply
        detail = f"raised {cause!r}" if cause is not None else f"returned {reply!r}"
        super().__init__(f"Agent '{agent}' {detail} for {message!r}, expected True")


class WireFormatCorruption(ColumnarCudaError, ValueError):
    """Decode-time mismatch between declared and actual buffer lengths."""


class UnsupportedSchema(ColumnarCudaError, ValueError):
    """Schema shape the columnar store cannot represent (e.g. two array columns)."""


class RecordStreamExhausted(ColumnarCudaError, ValueError):
    """The record stream ended before the partition was filled."""

    def __init__(self, partition_id, expected: int, written: int):
        self.partition_id = partition_id
        self.expected = expected
        self.written = written
        super().__init__(
            f"Record stream for partition {partition_id!r} ended after {written} of {expected} rows"
        )
