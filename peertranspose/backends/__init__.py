"""
Backend implementations for peertranspose.
"""

from __future__ import annotations

import logging

from peertranspose.backends.base import Backend, BackendType, DeviceBuffer, DeviceStream
from peertranspose.backends.simulated import SimulatedBackend
from peertranspose.exceptions import BackendNotAvailableError, InvalidConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "Backend",
    "BackendType",
    "DeviceBuffer",
    "DeviceStream",
    "SimulatedBackend",
    "get_backend",
]

# Conditionally export CUDA backend if available
try:
    from peertranspose.backends.cuda import CUDABackend  # noqa: F401

    __all__.append("CUDABackend")
except ImportError:
    pass

BACKEND_NAMES = ("auto", "cuda", "simulated")


def get_backend(name: str = "auto") -> Backend:
    """
    Create a backend by name.

    Args:
        name: "cuda", "simulated", or "auto" (CUDA when usable, else simulated).

    Returns:
        A ready backend.

    Raises:
        BackendNotAvailableError: If "cuda" is requested but unusable.
        InvalidConfigurationError: On an unknown name.
    """
    if name not in BACKEND_NAMES:
        raise InvalidConfigurationError("backend", name, f"expected one of {BACKEND_NAMES}")

    if name == "simulated":
        return SimulatedBackend()

    try:
        from peertranspose.backends.cuda import CUDABackend

        return CUDABackend()
    except BackendNotAvailableError as e:
        if name == "cuda":
            raise
        logger.info(f"{e}; using the simulated backend")
        return SimulatedBackend()
