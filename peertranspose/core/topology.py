"""
Device topology discovery.

Finds the first pair of devices with direct peer access.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from peertranspose.exceptions import (
    InsufficientDevicesError,
    NoPeerAccessError,
    ResourceError,
    RuntimeCallError,
)

if TYPE_CHECKING:
    from peertranspose.backends.base import Backend

logger = logging.getLogger(__name__)

MIN_DEVICES = 2


@dataclass(frozen=True)
class DevicePair:
    """Two devices where `current` can access `peer`'s memory directly."""

    current: int
    peer: int

    def __post_init__(self) -> None:
        """Validate the pair."""
        if self.current == self.peer:
            raise ValueError(f"A device pair needs two devices, got {self.current} twice")


class DeviceTopologyProber:
    """
    Probes pairwise peer-access capability.

    Example:
        >>> prober = DeviceTopologyProber(backend)
        >>> pair = prober.discover_pair()
        >>> pair.peer < pair.current
        True
    """

    def __init__(self, backend: Backend) -> None:
        """
        Initialize the prober.

        Args:
            backend: Backend to query.
        """
        self._backend = backend

    def _device_count(self) -> int:
        try:
            return self._backend.device_count
        except RuntimeCallError as e:
            raise ResourceError(None, cause=e) from e

    def peer_matrix(self) -> list[list[bool]]:
        """
        Get the full capability table.

        Returns:
            ``matrix[current][peer]`` is True when `current` can access
            `peer`. The diagonal is always False.
        """
        count = self._device_count()
        return [
            [current != peer and self._backend.can_access_peer(current, peer) for peer in range(count)]
            for current in range(count)
        ]

    def discover_pair(self) -> DevicePair:
        """
        Find the first capable pair in scan order.

        Devices are scanned by ascending ordinal; for each `current`, every
        `peer < current` is tried in ascending order.

        Returns:
            The first pair whose capability is confirmed.

        Raises:
            InsufficientDevicesError: Fewer than two devices.
            NoPeerAccessError: No pair supports peer access.
            ResourceError: If the device count cannot be queried.
        """
        count = self._device_count()
        logger.debug(f"Found {count} device(s)")
        if count < MIN_DEVICES:
            raise InsufficientDevicesError(count, MIN_DEVICES)

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Peer access matrix: {self.peer_matrix()}")

        for current in range(count):
            for peer in range(current):
                if self._backend.can_access_peer(current, peer):
                    logger.info(f"Device {current} can access device {peer} directly")
                    return DevicePair(current=current, peer=peer)
                logger.debug(f"Device {current} cannot access device {peer}")

        raise NoPeerAccessError(count)
