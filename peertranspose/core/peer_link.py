"""
Peer link management.

Tracks directed peer-access links and guarantees they are released:

DISABLED → ENABLED → DISABLED
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from peertranspose.exceptions import InvalidTopologyError, PeerLinkStateError, PeerTransposeError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from peertranspose.backends.base import Backend

logger = logging.getLogger(__name__)


class LinkState(Enum):
    """State of a directed peer link."""

    DISABLED = auto()
    ENABLED = auto()


@dataclass
class PeerLink:
    """Directed link: `current` may access `peer`'s memory while ENABLED."""

    current: int
    peer: int
    state: LinkState = field(default=LinkState.DISABLED)

    def __post_init__(self) -> None:
        """Validate the link."""
        if self.current == self.peer:
            raise InvalidTopologyError(self.current, self.peer, "link")

    @property
    def is_enabled(self) -> bool:
        """Check whether the link is enabled."""
        return self.state is LinkState.ENABLED


class PeerLinkManager:
    """
    Enables and disables peer links on a backend.

    Prefer `link()`, which disables the link on every exit path.

    Example:
        >>> manager = PeerLinkManager(backend)
        >>> with manager.link(1, 0):
        ...     transfer.copy(1, 0, dst, src, nbytes, stream)
    """

    def __init__(self, backend: Backend) -> None:
        """
        Initialize the manager.

        Args:
            backend: Backend that owns the devices.
        """
        self._backend = backend
        self._links: dict[tuple[int, int], PeerLink] = {}

    def _link_for(self, current: int, peer: int, operation: str) -> PeerLink:
        if current == peer:
            raise InvalidTopologyError(current, peer, operation)
        key = (current, peer)
        link = self._links.get(key)
        if link is None:
            link = PeerLink(current=current, peer=peer)
            self._links[key] = link
        return link

    def is_enabled(self, current: int, peer: int) -> bool:
        """Check whether `current` currently has access to `peer`."""
        link = self._links.get((current, peer))
        return link is not None and link.is_enabled

    def active_links(self) -> list[PeerLink]:
        """Get every enabled link."""
        return [link for link in self._links.values() if link.is_enabled]

    def enable(self, current: int, peer: int) -> PeerLink:
        """
        Grant `current` direct access to `peer`'s memory.

        Raises:
            InvalidTopologyError: If `current == peer`.
            PeerLinkStateError: If the link is already enabled.
            RuntimeCallError: If the backend call fails.
        """
        link = self._link_for(current, peer, "enable")
        if link.is_enabled:
            raise PeerLinkStateError(current, peer, link.state.name, "enable")

        self._backend.enable_peer_access(current, peer)
        link.state = LinkState.ENABLED
        logger.info(f"Peer link {current}->{peer} enabled")
        return link

    def disable(self, current: int, peer: int) -> PeerLink:
        """
        Revoke the access granted by `enable`.

        Raises:
            InvalidTopologyError: If `current == peer`.
            PeerLinkStateError: If the link is not enabled.
            RuntimeCallError: If the backend call fails.
        """
        link = self._link_for(current, peer, "disable")
        if not link.is_enabled:
            raise PeerLinkStateError(current, peer, link.state.name, "disable")

        self._backend.disable_peer_access(current, peer)
        link.state = LinkState.DISABLED
        logger.info(f"Peer link {current}->{peer} disabled")
        return link

    @contextmanager
    def link(self, current: int, peer: int) -> Iterator[PeerLink]:
        """
        Hold a link for the duration of a block.

        The link is disabled on exit, including when the block raises. A
        failure to disable while the block's own error propagates is logged
        and the block's error is re-raised.
        """
        peer_link = self.enable(current, peer)
        try:
            yield peer_link
        except BaseException:
            if peer_link.is_enabled:
                try:
                    self.disable(current, peer)
                except PeerTransposeError as e:
                    logger.error(f"Failed to disable peer link {current}->{peer}: {e}")
            raise
        if peer_link.is_enabled:
            self.disable(current, peer)
