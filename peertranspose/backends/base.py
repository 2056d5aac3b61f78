"""
Backend base classes and interfaces.

Defines the accelerator runtime surface consumed by the transpose pipeline.
Every call takes an explicit device ordinal; backends never leave an ambient
"current device" selected for callers to depend on.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

import numpy as np

from peertranspose.exceptions import RuntimeCallError

if TYPE_CHECKING:
    from numpy.typing import DTypeLike, NDArray

    from peertranspose.kernels.dispatcher import KernelLaunchConfig


class BackendType(Enum):
    """Type of compute backend."""

    SIMULATED = auto()
    CUDA = auto()


@dataclass(frozen=True)
class DeviceStream:
    """An in-order execution queue owned by one device."""

    device: int
    handle: Any = None  # cp.cuda.Stream for CUDA, queue id for the simulator


class DeviceBuffer:
    """
    Device-resident allocation tagged with its owning device.

    The pipeline frees every buffer explicitly, exactly once.
    """

    def __init__(self, data: Any, device: int, backend: Backend) -> None:
        """
        Initialize a device buffer.

        Args:
            data: Backend array holding the allocation.
            device: Ordinal of the device that owns the memory.
            backend: Backend that allocated it.
        """
        self._data = data
        self._device = device
        self._backend = backend
        self._size = int(data.size)
        self._dtype = np.dtype(data.dtype)
        self._freed = False

    @property
    def data(self) -> Any:
        """Get the underlying backend array."""
        if self._freed:
            raise RuntimeCallError("access", detail=f"buffer on device {self._device} was freed")
        return self._data

    @property
    def device(self) -> int:
        """Get the owning device ordinal."""
        return self._device

    @property
    def backend(self) -> Backend:
        """Get the backend."""
        return self._backend

    @property
    def size(self) -> int:
        """Get the number of elements."""
        return self._size

    @property
    def dtype(self) -> np.dtype[Any]:
        """Get the element dtype."""
        return self._dtype

    @property
    def nbytes(self) -> int:
        """Get total size in bytes."""
        return self._size * self._dtype.itemsize

    @property
    def is_freed(self) -> bool:
        """Check whether the buffer has been released."""
        return self._freed

    def mark_freed(self) -> Any:
        """Release the wrapper's reference and return the backend array."""
        if self._freed:
            raise RuntimeCallError(
                "free", detail=f"buffer on device {self._device} was already freed"
            )
        data = self._data
        self._data = None
        self._freed = True
        return data

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"DeviceBuffer(device={self._device}, size={self.size}, dtype={self.dtype}, "
            f"backend={self._backend.backend_type.name}, freed={self._freed})"
        )


class Backend(ABC):
    """
    Abstract base class for accelerator backends.

    All backends implement this interface so the pipeline can run
    unchanged on real devices or on the simulator.
    """

    @property
    @abstractmethod
    def backend_type(self) -> BackendType:
        """Get the backend type."""
        ...

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if this backend is available."""
        ...

    @property
    @abstractmethod
    def device_count(self) -> int:
        """Get the number of installed devices."""
        ...

    @abstractmethod
    def can_access_peer(self, current: int, peer: int) -> bool:
        """Check whether `current` can read and write `peer`'s memory directly."""
        ...

    @abstractmethod
    def enable_peer_access(self, current: int, peer: int) -> None:
        """Grant `current` direct access into `peer`'s memory (no flags)."""
        ...

    @abstractmethod
    def disable_peer_access(self, current: int, peer: int) -> None:
        """Revoke the access granted by `enable_peer_access`."""
        ...

    @abstractmethod
    def allocate(self, device: int, size: int, dtype: DTypeLike = np.float32) -> DeviceBuffer:
        """
        Allocate a 1-D buffer on a device.

        Args:
            device: Target device ordinal.
            size: Number of elements.
            dtype: Element type.

        Returns:
            The new buffer.

        Raises:
            ResourceError: If the allocation fails.
        """
        ...

    @abstractmethod
    def free(self, buffer: DeviceBuffer) -> None:
        """Release a buffer allocated by this backend."""
        ...

    @abstractmethod
    def copy_to_device(self, device: int, host_array: NDArray[Any]) -> DeviceBuffer:
        """
        Allocate a buffer on a device and upload a host array into it.

        Blocks until the upload has completed.
        """
        ...

    @abstractmethod
    def copy_to_host(self, buffer: DeviceBuffer) -> NDArray[Any]:
        """
        Download a device buffer.

        Blocks until previously issued work on the owning device completes.
        """
        ...

    @abstractmethod
    def copy_peer(
        self,
        dst: DeviceBuffer,
        src: DeviceBuffer,
        nbytes: int,
        stream: DeviceStream,
    ) -> None:
        """
        Issue a direct device-to-device copy into `stream`.

        Returns immediately; the copy runs in the stream's order.
        """
        ...

    @abstractmethod
    def create_stream(self, device: int) -> DeviceStream:
        """Create an in-order queue on a device."""
        ...

    @abstractmethod
    def synchronize(self, device: int) -> None:
        """Block until all work issued to `device` has completed."""
        ...

    @abstractmethod
    def compile_transpose(self, static_width: int | None) -> Any:
        """
        Build the tile-transpose kernel.

        Args:
            static_width: Width baked into the kernel's scratch array at build
                time, or None for the variant whose scratch size is supplied
                at launch.

        Returns:
            Backend-specific kernel handle accepted by `launch`.
        """
        ...

    @abstractmethod
    def launch(self, kernel: Any, config: KernelLaunchConfig, *args: Any) -> None:
        """
        Issue a kernel into the configured stream.

        Returns immediately; DeviceBuffer arguments are passed as device memory.
        """
        ...
