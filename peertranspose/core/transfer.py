"""
Cross-device transfers.

Direct device-to-device copies over an enabled peer link, and an explicit
host-staged alternative for pairs without one.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from peertranspose.exceptions import InvalidConfigurationError, PeerLinkStateError

if TYPE_CHECKING:
    from peertranspose.backends.base import Backend, DeviceBuffer, DeviceStream
    from peertranspose.core.peer_link import PeerLinkManager

logger = logging.getLogger(__name__)


class CrossDeviceTransfer:
    """
    Moves buffers between devices.

    Example:
        >>> transfer = CrossDeviceTransfer(backend, links)
        >>> with links.link(1, 0):
        ...     transfer.copy(1, 0, dst, src, src.nbytes, stream)
    """

    def __init__(self, backend: Backend, links: PeerLinkManager) -> None:
        """
        Initialize the transfer helper.

        Args:
            backend: Backend that owns the buffers.
            links: Manager whose link state gates direct copies.
        """
        self._backend = backend
        self._links = links

    @staticmethod
    def _check_buffers(
        dst: int,
        src: int,
        dst_buffer: DeviceBuffer,
        src_buffer: DeviceBuffer,
        size_bytes: int,
    ) -> None:
        if dst_buffer.device != dst:
            raise InvalidConfigurationError(
                "dst_buffer", dst_buffer.device, f"expected a buffer on device {dst}"
            )
        if src_buffer.device != src:
            raise InvalidConfigurationError(
                "src_buffer", src_buffer.device, f"expected a buffer on device {src}"
            )
        if size_bytes < 0 or size_bytes > dst_buffer.nbytes or size_bytes > src_buffer.nbytes:
            raise InvalidConfigurationError(
                "size_bytes",
                size_bytes,
                f"must fit both buffers ({src_buffer.nbytes}B -> {dst_buffer.nbytes}B)",
            )

    def copy(
        self,
        dst: int,
        src: int,
        dst_buffer: DeviceBuffer,
        src_buffer: DeviceBuffer,
        size_bytes: int,
        stream: DeviceStream,
    ) -> None:
        """
        Issue a direct copy from `src` to `dst` into `dst`'s stream.

        The link dst -> src must be enabled; otherwise nothing is issued.
        Work previously issued on `src` is not waited for: synchronize the
        source device first.

        Raises:
            PeerLinkStateError: If the link is not enabled.
            InvalidConfigurationError: On mismatched buffers or size.
            RuntimeCallError: If the backend call fails.
        """
        if not self._links.is_enabled(dst, src):
            raise PeerLinkStateError(dst, src, "DISABLED", "copy over")
        self._check_buffers(dst, src, dst_buffer, src_buffer, size_bytes)
        if stream.device != dst:
            raise InvalidConfigurationError(
                "stream", stream.device, f"expected a stream on device {dst}"
            )

        logger.debug(f"Direct copy of {size_bytes}B from device {src} to device {dst}")
        self._backend.copy_peer(dst_buffer, src_buffer, size_bytes, stream)

    def copy_staged(
        self,
        dst: int,
        src: int,
        dst_buffer: DeviceBuffer,
        src_buffer: DeviceBuffer,
        size_bytes: int,
    ) -> DeviceBuffer:
        """
        Copy through host memory, for pairs without peer access.

        Blocks until `src` has drained, downloads, and uploads into a new
        buffer on `dst`. The previous `dst_buffer` is freed and replaced.

        Returns:
            The buffer on `dst` now holding the data.
        """
        self._check_buffers(dst, src, dst_buffer, src_buffer, size_bytes)
        count = size_bytes // src_buffer.dtype.itemsize

        logger.debug(f"Staged copy of {size_bytes}B from device {src} to device {dst}")
        self._backend.synchronize(src)
        host = self._backend.copy_to_host(src_buffer)

        if count == dst_buffer.size:
            staged = host[:count]
        else:
            self._backend.synchronize(dst)
            staged = self._backend.copy_to_host(dst_buffer)
            staged[:count] = host[:count]

        replacement = self._backend.copy_to_device(dst, staged)
        self._backend.free(dst_buffer)
        return replacement
