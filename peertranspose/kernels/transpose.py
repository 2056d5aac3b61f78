"""
Tile-transpose kernel.

One algorithm, rendered for each backend:

1. every in-bounds thread (x, y) stages ``input[x * width + y]`` into the
   block's scratch memory at ``y * width + x``;
2. every thread of the block, in bounds or not, waits at the barrier;
3. every in-bounds thread writes its scratch cell to ``output[y * width + x]``.

The scratch array is either sized at build time from a fixed width or
supplied at launch as a byte count.
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Generator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray


FLOAT_BYTES = np.dtype(np.float32).itemsize


def scratch_bytes(width: int) -> int:
    """Bytes of scratch memory a block needs for a `width` x `width` matrix."""
    return width * width * FLOAT_BYTES


def reference_transpose(matrix: NDArray[np.float32], width: int) -> NDArray[np.float32]:
    """Host-side transpose of a flat row-major matrix."""
    return np.ascontiguousarray(matrix.reshape(width, width).T).reshape(-1)


# ---------------------------------------------------------------------------
# Simulator rendition
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ThreadIndex:
    """Coordinates of one emulated thread."""

    block_idx: tuple[int, int]
    block_dim: tuple[int, int]
    thread_idx: tuple[int, int]

    @property
    def x(self) -> int:
        return self.block_idx[0] * self.block_dim[0] + self.thread_idx[0]

    @property
    def y(self) -> int:
        return self.block_idx[1] * self.block_dim[1] + self.thread_idx[1]


def transpose_tile(
    thread: ThreadIndex,
    inp: Any,
    out: Any,
    width: int,
    scratch: Any,
) -> Generator[None, None, None]:
    """
    Per-thread body for the simulator.

    Each ``yield`` is a block-wide barrier.
    """
    x = thread.x
    y = thread.y
    inside = x < width and y < width

    if inside:
        scratch[y * width + x] = inp[x * width + y]

    yield

    if inside:
        out[y * width + x] = scratch[y * width + x]


@dataclass(frozen=True)
class SimulatedKernel:
    """Kernel handle understood by the simulated backend."""

    name: str
    body: Callable[..., Generator[None, None, None]]
    static_scratch_elements: int | None = None
    static_width: int | None = None


def build_simulated_kernel(static_width: int | None) -> SimulatedKernel:
    """Build the simulator kernel, with fixed scratch when `static_width` is set."""
    if static_width is None:
        return SimulatedKernel(name="transpose_dynamic", body=transpose_tile)
    return SimulatedKernel(
        name=f"transpose_static_{static_width}",
        body=transpose_tile,
        static_scratch_elements=static_width * static_width,
        static_width=static_width,
    )


# ---------------------------------------------------------------------------
# Numba CUDA rendition
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=None)
def _cuda_tile_body() -> Callable[..., None]:
    from numba import cuda

    @cuda.jit(device=True)
    def transpose_tile_device(inp: Any, out: Any, width: Any, scratch: Any) -> None:
        x = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
        y = cuda.blockIdx.y * cuda.blockDim.y + cuda.threadIdx.y
        inside = x < width and y < width

        if inside:
            scratch[y * width + x] = inp[x * width + y]

        # All threads of the block, including out-of-bounds ones.
        cuda.syncthreads()

        if inside:
            out[y * width + x] = scratch[y * width + x]

    return transpose_tile_device


@functools.lru_cache(maxsize=None)
def build_cuda_kernel(static_width: int | None) -> Callable[..., None]:
    """
    Build the Numba CUDA kernel.

    Args:
        static_width: Width frozen into the shared array shape, or None to
            take the shared array size from the launch configuration.

    Returns:
        A Numba CUDA dispatcher taking ``(inp, out, width)``.
    """
    from numba import cuda, float32

    body = _cuda_tile_body()

    if static_width is None:

        @cuda.jit
        def transpose_dynamic(inp: Any, out: Any, width: Any) -> None:
            scratch = cuda.shared.array(0, dtype=float32)
            body(inp, out, width, scratch)

        return transpose_dynamic

    scratch_elements = static_width * static_width

    @cuda.jit
    def transpose_static(inp: Any, out: Any, width: Any) -> None:
        scratch = cuda.shared.array(scratch_elements, dtype=float32)
        body(inp, out, width, scratch)

    return transpose_static
