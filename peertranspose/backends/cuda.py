"""
CUDA backend for peertranspose.

Provides the accelerator runtime surface using CuPy for runtime calls and
memory, and Numba for the transpose kernels.
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from peertranspose.backends.base import Backend, BackendType, DeviceBuffer, DeviceStream
from peertranspose.exceptions import BackendNotAvailableError, ResourceError, RuntimeCallError
from peertranspose.kernels.transpose import build_cuda_kernel

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from numpy.typing import DTypeLike, NDArray

    from peertranspose.kernels.dispatcher import KernelLaunchConfig

logger = logging.getLogger(__name__)


def _check_cuda_available() -> bool:
    """Check if CUDA is available."""
    try:
        import cupy as cp

        return cp.cuda.runtime.getDeviceCount() > 0
    except (ImportError, RuntimeError):
        return False


class CUDABackend(Backend):
    """
    CUDA backend implementation using CuPy and Numba.

    Example:
        >>> backend = CUDABackend()
        >>> if backend.device_count >= 2 and backend.can_access_peer(1, 0):
        ...     backend.enable_peer_access(1, 0)
    """

    def __init__(self) -> None:
        """
        Initialize the CUDA backend.

        Raises:
            BackendNotAvailableError: If CuPy/Numba are missing or no device is present.
        """
        try:
            import cupy as cp
            from numba import cuda
        except ImportError as e:
            raise BackendNotAvailableError(
                "CUDA",
                f"Required packages not installed: {e}",
            ) from e

        if not _check_cuda_available():
            raise BackendNotAvailableError("CUDA", "no CUDA device found")

        self._cp = cp
        self._cuda = cuda

    @contextlib.contextmanager
    def _runtime_call(self, name: str, device: int | None = None) -> Iterator[None]:
        """Run runtime calls with `device` selected, translating failures."""
        from numba.cuda.cudadrv.driver import CudaAPIError

        try:
            if device is None:
                yield
            else:
                with self._cp.cuda.Device(device):
                    yield
        except self._cp.cuda.runtime.CUDARuntimeError as e:
            raise RuntimeCallError(name, e.status, str(e)) from e
        except CudaAPIError as e:
            raise RuntimeCallError(name, e.code, e.msg) from e

    @property
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        return BackendType.CUDA

    @property
    def is_available(self) -> bool:
        """Check if this backend is available."""
        return True

    @property
    def device_count(self) -> int:
        """Get the number of CUDA devices."""
        with self._runtime_call("getDeviceCount"):
            return int(self._cp.cuda.runtime.getDeviceCount())

    def can_access_peer(self, current: int, peer: int) -> bool:
        """Query cudaDeviceCanAccessPeer."""
        with self._runtime_call("deviceCanAccessPeer"):
            return bool(self._cp.cuda.runtime.deviceCanAccessPeer(current, peer))

    def enable_peer_access(self, current: int, peer: int) -> None:
        """Grant `current` access into `peer`'s memory."""
        with self._runtime_call("deviceEnablePeerAccess", current):
            self._cp.cuda.runtime.deviceEnablePeerAccess(peer)
        logger.debug(f"Enabled peer access {current}->{peer}")

    def disable_peer_access(self, current: int, peer: int) -> None:
        """Revoke `current`'s access into `peer`'s memory."""
        with self._runtime_call("deviceDisablePeerAccess", current):
            self._cp.cuda.runtime.deviceDisablePeerAccess(peer)
        logger.debug(f"Disabled peer access {current}->{peer}")

    def allocate(self, device: int, size: int, dtype: DTypeLike = np.float32) -> DeviceBuffer:
        """
        Allocate a CuPy array on a device.

        Raises:
            ResourceError: If allocation fails.
        """
        nbytes = size * np.dtype(dtype).itemsize
        try:
            with self._runtime_call("malloc", device):
                data = self._cp.empty(size, dtype=dtype)
        except self._cp.cuda.memory.OutOfMemoryError as e:
            raise ResourceError(device, nbytes, e) from e
        except RuntimeCallError as e:
            raise ResourceError(device, nbytes, e) from e
        return DeviceBuffer(data, device, self)

    def free(self, buffer: DeviceBuffer) -> None:
        """
        Free a CuPy array.

        Dropping the last reference returns the block to CuPy's memory pool
        of the owning device.
        """
        data = buffer.mark_freed()
        del data

    def copy_to_device(self, device: int, host_array: NDArray[Any]) -> DeviceBuffer:
        """Allocate on `device` and upload a NumPy array."""
        flat = np.ascontiguousarray(host_array).reshape(-1)
        buffer = self.allocate(device, flat.size, flat.dtype)
        try:
            with self._runtime_call("memcpyHtoD", device):
                buffer.data.set(flat)
        except RuntimeCallError:
            self.free(buffer)
            raise
        return buffer

    def copy_to_host(self, buffer: DeviceBuffer) -> NDArray[Any]:
        """Download a CuPy array; blocks on the device's legacy default stream."""
        with self._runtime_call("memcpyDtoH", buffer.device):
            return buffer.data.get()

    def copy_peer(
        self,
        dst: DeviceBuffer,
        src: DeviceBuffer,
        nbytes: int,
        stream: DeviceStream,
    ) -> None:
        """Issue cudaMemcpyPeerAsync into `stream`."""
        with self._runtime_call("memcpyPeerAsync", stream.device):
            self._cp.cuda.runtime.memcpyPeerAsync(
                dst.data.data.ptr,
                dst.device,
                src.data.data.ptr,
                src.device,
                nbytes,
                stream.handle.ptr,
            )

    def create_stream(self, device: int) -> DeviceStream:
        """Create a blocking CuPy stream on `device`."""
        with self._runtime_call("streamCreate", device):
            return DeviceStream(device=device, handle=self._cp.cuda.Stream(non_blocking=False))

    def synchronize(self, device: int) -> None:
        """cudaDeviceSynchronize on `device`."""
        with self._runtime_call("deviceSynchronize", device):
            self._cp.cuda.runtime.deviceSynchronize()

    def compile_transpose(self, static_width: int | None) -> Callable[..., None]:
        """Build the Numba CUDA rendition of the transpose."""
        return build_cuda_kernel(static_width)

    def launch(self, kernel: Any, config: KernelLaunchConfig, *args: Any) -> None:
        """Launch a Numba kernel into the configured CuPy stream."""
        if config.stream is None:
            raise RuntimeCallError("launchKernel", detail="no stream given")

        device = config.stream.device
        with self._runtime_call("launchKernel", device), self._cuda.gpus[device]:
            nb_stream = self._cuda.external_stream(config.stream.handle.ptr)
            kernel_args = [
                self._cuda.as_cuda_array(arg.data) if isinstance(arg, DeviceBuffer) else arg
                for arg in args
            ]
            kernel[
                config.grid_size,
                config.block_size,
                nb_stream,
                config.shared_memory_bytes,
            ](*kernel_args)

    def __repr__(self) -> str:
        """String representation."""
        return f"CUDABackend(devices={self.device_count})"
