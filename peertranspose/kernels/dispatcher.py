"""
Kernel dispatcher for the tile transpose.

Configures and launches the transpose in either scratch-memory variant.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from peertranspose.exceptions import InvalidConfigurationError
from peertranspose.kernels.transpose import scratch_bytes

if TYPE_CHECKING:
    from peertranspose.backends.base import Backend, DeviceBuffer, DeviceStream

logger = logging.getLogger(__name__)


class KernelVariant(Enum):
    """How the kernel's scratch memory is provisioned."""

    STATIC = auto()  # sized when the kernel is built
    DYNAMIC = auto()  # sized by the launch


@dataclass
class KernelLaunchConfig:
    """Configuration for a kernel launch."""

    grid_size: tuple[int, ...] = (1,)
    block_size: tuple[int, ...] = (256,)
    shared_memory_bytes: int = 0
    stream: DeviceStream | None = None
    variant: KernelVariant = KernelVariant.DYNAMIC

    def __post_init__(self) -> None:
        """Validate configuration."""
        if isinstance(self.grid_size, int):
            self.grid_size = (self.grid_size,)
        if isinstance(self.block_size, int):
            self.block_size = (self.block_size,)
        if self.shared_memory_bytes < 0:
            raise InvalidConfigurationError(
                "shared_memory_bytes", self.shared_memory_bytes, "must be >= 0"
            )

    @classmethod
    def for_variant(
        cls,
        variant: KernelVariant,
        width: int,
        block_size: int,
        stream: DeviceStream | None = None,
    ) -> KernelLaunchConfig:
        """
        Build the 2-D launch configuration for a transpose of `width` x `width`.

        Grid size per dimension is ``ceil(width / block_size)``. Only the
        dynamic variant requests scratch memory from the launch.
        """
        if width < 1:
            raise InvalidConfigurationError("width", width, "must be >= 1")
        if block_size < 1:
            raise InvalidConfigurationError("block_size", block_size, "must be >= 1")

        blocks = math.ceil(width / block_size)
        shared = scratch_bytes(width) if variant is KernelVariant.DYNAMIC else 0
        return cls(
            grid_size=(blocks, blocks),
            block_size=(block_size, block_size),
            shared_memory_bytes=shared,
            stream=stream,
            variant=variant,
        )

    @property
    def total_threads(self) -> int:
        """Get the number of threads in the launch."""
        return math.prod(self.grid_size) * math.prod(self.block_size)


class KernelDispatcher:
    """
    Launches the tile transpose on a backend.

    The static variant is built once for `static_width`; launching it with a
    different width is rejected.

    Example:
        >>> dispatcher = KernelDispatcher(backend, static_width=32)
        >>> dispatcher.launch(KernelVariant.STATIC, inp, out, 32, 4, stream)
    """

    def __init__(self, backend: Backend, static_width: int) -> None:
        """
        Initialize the dispatcher.

        Args:
            backend: Backend that builds and runs the kernels.
            static_width: Compile-time width of the static variant.
        """
        if static_width < 1:
            raise InvalidConfigurationError("static_width", static_width, "must be >= 1")

        self._backend = backend
        self._static_width = static_width
        self._kernels: dict[KernelVariant, Any] = {}
        self._history: list[KernelLaunchConfig] = []

    @property
    def static_width(self) -> int:
        """Get the width the static variant is built for."""
        return self._static_width

    @property
    def history(self) -> list[KernelLaunchConfig]:
        """Get the launch configurations issued so far."""
        return self._history.copy()

    def _kernel_for(self, variant: KernelVariant) -> Any:
        kernel = self._kernels.get(variant)
        if kernel is None:
            static_width = self._static_width if variant is KernelVariant.STATIC else None
            logger.debug(f"Building {variant.name.lower()} transpose kernel (width={static_width})")
            kernel = self._backend.compile_transpose(static_width)
            self._kernels[variant] = kernel
        return kernel

    def launch(
        self,
        variant: KernelVariant,
        inp: DeviceBuffer,
        out: DeviceBuffer,
        width: int,
        block_size: int,
        stream: DeviceStream,
    ) -> KernelLaunchConfig:
        """
        Issue one transpose into `stream`.

        Args:
            variant: Scratch-memory provisioning.
            inp: Source matrix on the stream's device.
            out: Destination matrix on the stream's device.
            width: Matrix width.
            block_size: Threads per block along each dimension.
            stream: Target queue.

        Returns:
            The launch configuration used.

        Raises:
            InvalidConfigurationError: On a width the static kernel was not
                built for, undersized buffers, or buffers on another device.
        """
        if variant is KernelVariant.STATIC and width != self._static_width:
            raise InvalidConfigurationError(
                "width",
                width,
                f"static kernel is built for width {self._static_width}",
            )
        for name, buffer in (("input", inp), ("output", out)):
            if buffer.device != stream.device:
                raise InvalidConfigurationError(
                    name,
                    buffer.device,
                    f"buffer lives on device {buffer.device}, stream on device {stream.device}",
                )
            if buffer.size < width * width:
                raise InvalidConfigurationError(
                    name, buffer.size, f"needs {width * width} elements"
                )

        config = KernelLaunchConfig.for_variant(variant, width, block_size, stream)
        kernel = self._kernel_for(variant)

        logger.debug(
            f"Launching {variant.name.lower()} transpose on device {stream.device}: "
            f"grid={config.grid_size} block={config.block_size} "
            f"shared={config.shared_memory_bytes}B"
        )
        self._backend.launch(kernel, config, inp, out, width)
        self._history.append(config)
        return config
