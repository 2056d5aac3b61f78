"""
Simulated multi-device backend for peertranspose.

Emulates a set of accelerator devices on the CPU with NumPy. Useful for
testing and development without GPUs, and for exercising topologies a
single machine does not have (one device, no peer access, ...).

What is modelled:
    - a directed peer-capability matrix and per-link enable state
    - one in-order queue per device; launches and peer copies are only
      queued, and run when the host synchronizes the device or performs
      a blocking download
    - kernels run block by block, every thread of a block advancing to
      the next barrier before any thread passes it
    - a trace of runtime calls, plus optionally every global memory access
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from peertranspose.backends.base import Backend, BackendType, DeviceBuffer, DeviceStream
from peertranspose.exceptions import (
    InvalidConfigurationError,
    ResourceError,
    RuntimeCallError,
)
from peertranspose.kernels.transpose import (
    FLOAT_BYTES,
    SimulatedKernel,
    ThreadIndex,
    build_simulated_kernel,
)

if TYPE_CHECKING:
    from collections.abc import Generator

    from numpy.typing import DTypeLike, NDArray

    from peertranspose.kernels.dispatcher import KernelLaunchConfig

logger = logging.getLogger(__name__)

# Error codes mirror the CUDA runtime's
ERROR_INVALID_VALUE = 1
ERROR_MEMORY_ALLOCATION = 2
ERROR_INVALID_CONFIGURATION = 9
ERROR_INVALID_DEVICE = 101
ERROR_PEER_ACCESS_UNSUPPORTED = 217
ERROR_ILLEGAL_ADDRESS = 700
ERROR_PEER_ACCESS_ALREADY_ENABLED = 704
ERROR_PEER_ACCESS_NOT_ENABLED = 705

MAX_THREADS_PER_BLOCK = 1024
MAX_SHARED_MEMORY_PER_BLOCK = 48 * 1024


@dataclass(frozen=True)
class TraceEvent:
    """One runtime call or queued operation observed by the simulator."""

    kind: str
    device: int
    detail: str = ""


@dataclass(frozen=True)
class MemoryAccess:
    """One global memory access performed by an emulated thread."""

    device: int
    buffer_id: int
    index: int
    write: bool
    thread: tuple[int, int]


class _ThreadMemory:
    """Bounds-checked view of one array as seen by one emulated thread."""

    def __init__(
        self,
        array: NDArray[Any],
        device: int,
        buffer_id: int,
        thread: ThreadIndex,
        log: list[MemoryAccess] | None,
    ) -> None:
        self._array = array
        self._device = device
        self._buffer_id = buffer_id
        self._thread = thread
        self._log = log

    def _check(self, index: int, write: bool) -> None:
        if not 0 <= index < self._array.size:
            raise RuntimeCallError(
                "launch",
                ERROR_ILLEGAL_ADDRESS,
                f"thread ({self._thread.x}, {self._thread.y}) accessed index {index} "
                f"of a {self._array.size}-element buffer",
            )
        if self._log is not None:
            self._log.append(
                MemoryAccess(
                    device=self._device,
                    buffer_id=self._buffer_id,
                    index=index,
                    write=write,
                    thread=(self._thread.x, self._thread.y),
                )
            )

    def __getitem__(self, index: int) -> Any:
        self._check(index, write=False)
        return self._array[index]

    def __setitem__(self, index: int, value: Any) -> None:
        self._check(index, write=True)
        self._array[index] = value


class SimulatedBackend(Backend):
    """
    CPU emulation of a multi-device accelerator.

    Example:
        >>> backend = SimulatedBackend(device_count=2, peer_access=[(1, 0)])
        >>> backend.can_access_peer(1, 0)
        True
        >>> backend.can_access_peer(0, 1)
        False
    """

    def __init__(
        self,
        device_count: int = 2,
        peer_access: Iterable[tuple[int, int]] | None = None,
        *,
        memory_per_device: int = 1 << 30,
        record_accesses: bool = False,
        fail_calls: Iterable[str] = (),
    ) -> None:
        """
        Initialize the simulated backend.

        Args:
            device_count: Number of emulated devices.
            peer_access: Directed (current, peer) pairs where `current` can
                access `peer`'s memory. None means every distinct pair.
            memory_per_device: Bytes available on each device.
            record_accesses: Record every global memory access of kernels.
            fail_calls: Runtime call names that should report failure.
        """
        if device_count < 0:
            raise InvalidConfigurationError("device_count", device_count, "must be >= 0")

        self._device_count = device_count
        if peer_access is None:
            peer_access = (
                (a, b) for a in range(device_count) for b in range(device_count) if a != b
            )
        self._peer_access = frozenset((int(a), int(b)) for a, b in peer_access if a != b)
        self._memory_per_device = memory_per_device
        self._record_accesses = record_accesses
        self._fail_calls = frozenset(fail_calls)

        self._enabled_links: set[tuple[int, int]] = set()
        self._allocations: dict[int, DeviceBuffer] = {}
        self._used_bytes = [0] * device_count
        self._queues: dict[int, list[tuple[str, Callable[[], None]]]] = {
            device: [] for device in range(device_count)
        }
        self._next_stream = 0
        self._trace: list[TraceEvent] = []
        self._accesses: list[MemoryAccess] = []

    @property
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        return BackendType.SIMULATED

    @property
    def is_available(self) -> bool:
        """Check if this backend is available."""
        return True

    @property
    def device_count(self) -> int:
        """Get the number of emulated devices."""
        self._call("getDeviceCount")
        return self._device_count

    @property
    def trace(self) -> list[TraceEvent]:
        """Get the recorded runtime calls and queued operations."""
        return self._trace.copy()

    @property
    def accesses(self) -> list[MemoryAccess]:
        """Get recorded global memory accesses (empty unless record_accesses)."""
        return self._accesses.copy()

    @property
    def enabled_links(self) -> set[tuple[int, int]]:
        """Get the (current, peer) links currently enabled."""
        return set(self._enabled_links)

    @property
    def live_allocations(self) -> int:
        """Get the number of buffers not yet freed."""
        return len(self._allocations)

    def pending(self, device: int) -> int:
        """Get the number of queued operations on a device."""
        return len(self._queues[device])

    def _call(self, name: str) -> None:
        if name in self._fail_calls:
            raise RuntimeCallError(name, ERROR_INVALID_VALUE, "injected failure")

    def _check_device(self, device: int, call: str) -> None:
        if not 0 <= device < self._device_count:
            raise RuntimeCallError(call, ERROR_INVALID_DEVICE, f"invalid device ordinal {device}")

    def _record(self, kind: str, device: int, detail: str = "") -> None:
        self._trace.append(TraceEvent(kind=kind, device=device, detail=detail))

    def can_access_peer(self, current: int, peer: int) -> bool:
        """Check the emulated peer-capability matrix."""
        self._call("deviceCanAccessPeer")
        self._check_device(current, "deviceCanAccessPeer")
        self._check_device(peer, "deviceCanAccessPeer")
        return (current, peer) in self._peer_access

    def enable_peer_access(self, current: int, peer: int) -> None:
        """Enable the directed link current -> peer."""
        self._call("deviceEnablePeerAccess")
        self._check_device(current, "deviceEnablePeerAccess")
        self._check_device(peer, "deviceEnablePeerAccess")
        if (current, peer) not in self._peer_access:
            raise RuntimeCallError(
                "deviceEnablePeerAccess",
                ERROR_PEER_ACCESS_UNSUPPORTED,
                f"device {current} cannot access device {peer}",
            )
        if (current, peer) in self._enabled_links:
            raise RuntimeCallError(
                "deviceEnablePeerAccess",
                ERROR_PEER_ACCESS_ALREADY_ENABLED,
                f"peer access {current}->{peer} is already enabled",
            )
        self._enabled_links.add((current, peer))
        self._record("enable_peer", current, f"peer={peer}")

    def disable_peer_access(self, current: int, peer: int) -> None:
        """Disable the directed link current -> peer."""
        self._call("deviceDisablePeerAccess")
        self._check_device(current, "deviceDisablePeerAccess")
        self._check_device(peer, "deviceDisablePeerAccess")
        if (current, peer) not in self._enabled_links:
            raise RuntimeCallError(
                "deviceDisablePeerAccess",
                ERROR_PEER_ACCESS_NOT_ENABLED,
                f"peer access {current}->{peer} is not enabled",
            )
        self._enabled_links.discard((current, peer))
        self._record("disable_peer", current, f"peer={peer}")

    def allocate(self, device: int, size: int, dtype: DTypeLike = np.float32) -> DeviceBuffer:
        """Allocate a zero-filled NumPy array standing in for device memory."""
        self._check_device(device, "malloc")
        nbytes = size * np.dtype(dtype).itemsize
        try:
            self._call("malloc")
        except RuntimeCallError as e:
            raise ResourceError(device, nbytes, e) from e
        if self._used_bytes[device] + nbytes > self._memory_per_device:
            raise ResourceError(
                device,
                nbytes,
                RuntimeCallError("malloc", ERROR_MEMORY_ALLOCATION, "out of memory"),
            )

        buffer = DeviceBuffer(np.zeros(size, dtype=dtype), device, self)
        self._allocations[id(buffer)] = buffer
        self._used_bytes[device] += nbytes
        self._record("alloc", device, f"{nbytes}B")
        return buffer

    def free(self, buffer: DeviceBuffer) -> None:
        """Release an emulated allocation."""
        self._call("free")
        if self._allocations.pop(id(buffer), None) is None and not buffer.is_freed:
            raise RuntimeCallError("free", ERROR_INVALID_VALUE, "buffer not owned by this backend")
        data = buffer.mark_freed()
        self._used_bytes[buffer.device] -= data.nbytes
        self._record("free", buffer.device, f"{data.nbytes}B")

    def copy_to_device(self, device: int, host_array: NDArray[Any]) -> DeviceBuffer:
        """Allocate on `device` and copy a host array into it."""
        flat = np.ascontiguousarray(host_array).reshape(-1)
        buffer = self.allocate(device, flat.size, flat.dtype)
        try:
            self._call("memcpyHtoD")
        except RuntimeCallError:
            self.free(buffer)
            raise
        buffer.data[:] = flat
        self._record("upload", device, f"{flat.nbytes}B")
        return buffer

    def copy_to_host(self, buffer: DeviceBuffer) -> NDArray[Any]:
        """Drain the owning device's queue, then copy the buffer out."""
        self._drain(buffer.device)
        self._call("memcpyDtoH")
        self._record("download", buffer.device, f"{buffer.nbytes}B")
        return buffer.data.copy()

    def copy_peer(
        self,
        dst: DeviceBuffer,
        src: DeviceBuffer,
        nbytes: int,
        stream: DeviceStream,
    ) -> None:
        """Queue a direct copy; the destination device must have peer access to the source."""
        self._call("memcpyPeerAsync")
        if stream.device != dst.device:
            raise RuntimeCallError(
                "memcpyPeerAsync",
                ERROR_INVALID_VALUE,
                f"stream on device {stream.device}, destination on device {dst.device}",
            )
        if (dst.device, src.device) not in self._enabled_links:
            raise RuntimeCallError(
                "memcpyPeerAsync",
                ERROR_PEER_ACCESS_NOT_ENABLED,
                f"peer access {dst.device}->{src.device} is not enabled",
            )
        if nbytes > dst.nbytes or nbytes > src.nbytes or nbytes % dst.dtype.itemsize:
            raise RuntimeCallError(
                "memcpyPeerAsync", ERROR_INVALID_VALUE, f"invalid copy size {nbytes}"
            )

        count = nbytes // dst.dtype.itemsize

        def run() -> None:
            dst.data[:count] = src.data[:count]

        self._enqueue(dst.device, f"copy_peer {src.device}->{dst.device} {nbytes}B", run)

    def create_stream(self, device: int) -> DeviceStream:
        """Create a stream; all streams of a device share its in-order queue."""
        self._check_device(device, "streamCreate")
        self._call("streamCreate")
        self._next_stream += 1
        return DeviceStream(device=device, handle=self._next_stream)

    def synchronize(self, device: int) -> None:
        """Run every queued operation of `device` in issue order."""
        self._check_device(device, "deviceSynchronize")
        self._call("deviceSynchronize")
        self._record("synchronize", device)
        self._drain(device)

    def compile_transpose(self, static_width: int | None) -> SimulatedKernel:
        """Build the simulator rendition of the transpose."""
        return build_simulated_kernel(static_width)

    def launch(self, kernel: SimulatedKernel, config: KernelLaunchConfig, *args: Any) -> None:
        """Validate a launch and queue it on the stream's device."""
        self._call("launchKernel")
        if config.stream is None:
            raise RuntimeCallError("launchKernel", ERROR_INVALID_VALUE, "no stream given")
        device = config.stream.device
        self._check_device(device, "launchKernel")

        threads_per_block = int(np.prod(config.block_size))
        if threads_per_block > MAX_THREADS_PER_BLOCK:
            raise RuntimeCallError(
                "launchKernel",
                ERROR_INVALID_CONFIGURATION,
                f"{threads_per_block} threads per block exceeds {MAX_THREADS_PER_BLOCK}",
            )
        scratch_elements = self._scratch_elements(kernel, config)
        if scratch_elements * FLOAT_BYTES > MAX_SHARED_MEMORY_PER_BLOCK:
            raise RuntimeCallError(
                "launchKernel",
                ERROR_INVALID_CONFIGURATION,
                f"{scratch_elements * FLOAT_BYTES}B of shared memory exceeds "
                f"{MAX_SHARED_MEMORY_PER_BLOCK}B",
            )

        self._enqueue(
            device,
            f"launch {kernel.name}",
            lambda: self._run_kernel(kernel, config, device, scratch_elements, args),
        )

    @staticmethod
    def _scratch_elements(kernel: SimulatedKernel, config: KernelLaunchConfig) -> int:
        if kernel.static_scratch_elements is not None:
            return kernel.static_scratch_elements
        return config.shared_memory_bytes // FLOAT_BYTES

    def _enqueue(self, device: int, label: str, op: Callable[[], None]) -> None:
        self._queues[device].append((label, op))
        self._record("issue", device, label)

    def _drain(self, device: int) -> None:
        queue = self._queues[device]
        while queue:
            label, op = queue.pop(0)
            self._record("execute", device, label)
            op()

    def _bind(self, arg: Any, device: int, thread: ThreadIndex) -> Any:
        if not isinstance(arg, DeviceBuffer):
            return arg
        if arg.device != device and (device, arg.device) not in self._enabled_links:
            raise RuntimeCallError(
                "launch",
                ERROR_ILLEGAL_ADDRESS,
                f"kernel on device {device} touched memory of device {arg.device}",
            )
        log = self._accesses if self._record_accesses else None
        return _ThreadMemory(arg.data, arg.device, id(arg), thread, log)

    def _run_kernel(
        self,
        kernel: SimulatedKernel,
        config: KernelLaunchConfig,
        device: int,
        scratch_elements: int,
        args: tuple[Any, ...],
    ) -> None:
        grid_x, grid_y = (tuple(config.grid_size) + (1, 1))[:2]
        block_x, block_y = (tuple(config.block_size) + (1, 1))[:2]

        for by in range(grid_y):
            for bx in range(grid_x):
                scratch = np.zeros(scratch_elements, dtype=np.float32)
                threads = []
                for ty in range(block_y):
                    for tx in range(block_x):
                        index = ThreadIndex(
                            block_idx=(bx, by),
                            block_dim=(block_x, block_y),
                            thread_idx=(tx, ty),
                        )
                        bound = [self._bind(arg, device, index) for arg in args]
                        shared = _ThreadMemory(scratch, device, -1, index, None)
                        threads.append(kernel.body(index, *bound, shared))
                self._run_block(kernel.name, threads)

    @staticmethod
    def _run_block(name: str, threads: list[Generator[None, None, None]]) -> None:
        live = threads
        while live:
            waiting = []
            for thread in live:
                try:
                    next(thread)
                except StopIteration:
                    continue
                waiting.append(thread)
            if waiting and len(waiting) != len(live):
                raise RuntimeCallError(
                    "launch",
                    detail=f"{name}: barrier reached by {len(waiting)} of {len(live)} threads",
                )
            live = waiting

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"SimulatedBackend(devices={self._device_count}, "
            f"peer_pairs={len(self._peer_access)}, links={len(self._enabled_links)})"
        )
