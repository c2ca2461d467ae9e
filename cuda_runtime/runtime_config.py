"""Runtime configuration for the CUDA device layer."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RuntimeConfig:
    """Device- and protocol-level constants for one worker process."""
    device_id: int = 0
    warp_size: int = 32
    max_block_size: int = 1024
    # Stream 0 is shared; streams 1..N-1 are handed out to large working sets.
    stream_pool_size: int = 4
    dedicated_stream_threshold_bytes: int = 64 * 1024 * 1024
    ack_max_attempts: int = 3
    ack_retry_wait_s: float = 0.1


DEFAULT_CONFIG = RuntimeConfig()


# ---------------------------------------------------------------------------
# Launch geometry
# ---------------------------------------------------------------------------

def compute_dimensions(size: int, config: RuntimeConfig = DEFAULT_CONFIG) -> tuple[int, int]:
    """Default 1D (grid, block) for one thread per row.

    Block size is maximized; below max_block_size it is the row count
    rounded up to a whole warp. Kernels must ignore threads whose global
    index is >= size.
    """
    warp = config.warp_size
    if size >= config.max_block_size:
        block = config.max_block_size
    else:
        block = max(warp, (size + warp - 1) // warp * warp)
    grid = max(1, (size + block - 1) // block)
    return grid, block
