"""
Unit tests for cross-device transfers.
"""

from __future__ import annotations

import numpy as np
import pytest

from peertranspose.backends.simulated import SimulatedBackend
from peertranspose.core.peer_link import PeerLinkManager
from peertranspose.core.transfer import CrossDeviceTransfer
from peertranspose.exceptions import InvalidConfigurationError, PeerLinkStateError


@pytest.fixture
def links(backend: SimulatedBackend) -> PeerLinkManager:
    """Provide a link manager on the shared backend."""
    return PeerLinkManager(backend)


@pytest.fixture
def transfer(backend: SimulatedBackend, links: PeerLinkManager) -> CrossDeviceTransfer:
    """Provide a transfer helper on the shared backend."""
    return CrossDeviceTransfer(backend, links)


class TestDirectCopy:
    """Tests for CrossDeviceTransfer.copy."""

    def test_copy(
        self,
        backend: SimulatedBackend,
        links: PeerLinkManager,
        transfer: CrossDeviceTransfer,
    ) -> None:
        """Test a direct copy over an enabled link."""
        data = np.arange(16, dtype=np.float32)
        src = backend.copy_to_device(0, data)
        dst = backend.allocate(1, 16)
        stream = backend.create_stream(1)

        with links.link(1, 0):
            transfer.copy(1, 0, dst, src, src.nbytes, stream)
            assert backend.pending(1) == 1
            backend.synchronize(1)

        np.testing.assert_array_equal(backend.copy_to_host(dst), data)

    def test_partial_copy(
        self,
        backend: SimulatedBackend,
        links: PeerLinkManager,
        transfer: CrossDeviceTransfer,
    ) -> None:
        """Test copying a prefix of the source."""
        src = backend.copy_to_device(0, np.ones(8, dtype=np.float32))
        dst = backend.allocate(1, 8)

        with links.link(1, 0):
            transfer.copy(1, 0, dst, src, 4 * 4, backend.create_stream(1))
            backend.synchronize(1)

        np.testing.assert_array_equal(backend.copy_to_host(dst), [1, 1, 1, 1, 0, 0, 0, 0])

    def test_copy_without_link(
        self, backend: SimulatedBackend, transfer: CrossDeviceTransfer
    ) -> None:
        """Test nothing is issued when the link is not enabled."""
        src = backend.copy_to_device(0, np.ones(4, dtype=np.float32))
        dst = backend.allocate(1, 4)

        with pytest.raises(PeerLinkStateError):
            transfer.copy(1, 0, dst, src, src.nbytes, backend.create_stream(1))

        assert backend.pending(1) == 0
        assert not any(event.kind == "issue" for event in backend.trace)

    def test_link_in_wrong_direction(
        self,
        backend: SimulatedBackend,
        links: PeerLinkManager,
        transfer: CrossDeviceTransfer,
    ) -> None:
        """Test a link src -> dst does not permit a copy into dst."""
        src = backend.copy_to_device(0, np.ones(4, dtype=np.float32))
        dst = backend.allocate(1, 4)

        with links.link(0, 1), pytest.raises(PeerLinkStateError):
            transfer.copy(1, 0, dst, src, src.nbytes, backend.create_stream(1))

    def test_buffer_device_mismatch(
        self,
        backend: SimulatedBackend,
        links: PeerLinkManager,
        transfer: CrossDeviceTransfer,
    ) -> None:
        """Test buffers must live on the named devices."""
        src = backend.allocate(0, 4)
        dst = backend.allocate(0, 4)

        with links.link(1, 0), pytest.raises(InvalidConfigurationError):
            transfer.copy(1, 0, dst, src, src.nbytes, backend.create_stream(1))

    def test_oversized_copy(
        self,
        backend: SimulatedBackend,
        links: PeerLinkManager,
        transfer: CrossDeviceTransfer,
    ) -> None:
        """Test the size must fit both buffers."""
        src = backend.allocate(0, 8)
        dst = backend.allocate(1, 4)

        with links.link(1, 0), pytest.raises(InvalidConfigurationError):
            transfer.copy(1, 0, dst, src, src.nbytes, backend.create_stream(1))

    def test_stream_on_wrong_device(
        self,
        backend: SimulatedBackend,
        links: PeerLinkManager,
        transfer: CrossDeviceTransfer,
    ) -> None:
        """Test the copy is issued into the destination device's stream."""
        src = backend.allocate(0, 4)
        dst = backend.allocate(1, 4)

        with links.link(1, 0), pytest.raises(InvalidConfigurationError):
            transfer.copy(1, 0, dst, src, src.nbytes, backend.create_stream(0))


class TestStagedCopy:
    """Tests for CrossDeviceTransfer.copy_staged."""

    def test_staged_copy_without_peer_access(self) -> None:
        """Test the host-staged path works on devices with no peer access."""
        backend = SimulatedBackend(device_count=2, peer_access=[])
        transfer = CrossDeviceTransfer(backend, PeerLinkManager(backend))
        data = np.arange(16, dtype=np.float32)
        src = backend.copy_to_device(0, data)
        dst = backend.allocate(1, 16)

        replacement = transfer.copy_staged(1, 0, dst, src, src.nbytes)

        assert dst.is_freed
        assert replacement.device == 1
        np.testing.assert_array_equal(backend.copy_to_host(replacement), data)
        assert not any(event.kind == "enable_peer" for event in backend.trace)

    def test_staged_partial_copy(self) -> None:
        """Test a staged prefix copy keeps the rest of the destination."""
        backend = SimulatedBackend(device_count=2, peer_access=[])
        transfer = CrossDeviceTransfer(backend, PeerLinkManager(backend))
        src = backend.copy_to_device(0, np.ones(4, dtype=np.float32))
        dst = backend.copy_to_device(1, np.full(6, 7, dtype=np.float32))

        replacement = transfer.copy_staged(1, 0, dst, src, 2 * 4)

        np.testing.assert_array_equal(backend.copy_to_host(replacement), [1, 1, 7, 7, 7, 7])
