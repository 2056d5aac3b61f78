"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pytest

from peertranspose.backends.simulated import SimulatedBackend
from peertranspose.core.orchestrator import initial_matrix
from peertranspose.kernels.dispatcher import KernelDispatcher, KernelVariant


@pytest.fixture
def backend() -> SimulatedBackend:
    """Provide a simulated machine with two mutually accessible devices."""
    return SimulatedBackend(device_count=2)


@pytest.fixture
def tracing_backend() -> SimulatedBackend:
    """Provide a two-device simulator that records every memory access."""
    return SimulatedBackend(device_count=2, record_accesses=True)


def round_trip(
    backend: SimulatedBackend,
    width: int,
    block_size: int,
    device: int = 0,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Transpose a sequential matrix twice on one device.

    Returns:
        (input, after static transpose, after dynamic transpose)
    """
    dispatcher = KernelDispatcher(backend, static_width=width)
    stream = backend.create_stream(device)
    host = initial_matrix(width)

    inp = backend.copy_to_device(device, host)
    mid = backend.allocate(device, width * width)
    out = backend.allocate(device, width * width)

    dispatcher.launch(KernelVariant.STATIC, inp, mid, width, block_size, stream)
    dispatcher.launch(KernelVariant.DYNAMIC, mid, out, width, block_size, stream)
    backend.synchronize(device)

    results = host, backend.copy_to_host(mid), backend.copy_to_host(out)
    for buffer in (inp, mid, out):
        backend.free(buffer)
    return results


@pytest.fixture
def transpose_round_trip() -> Any:
    """Provide the round_trip helper."""
    return round_trip


# Markers for CUDA tests
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "cuda: mark test as requiring CUDA"
    )
    config.addinivalue_line(
        "markers", "multi_gpu: mark test as requiring two peer-capable CUDA devices"
    )


def _cuda_device_count() -> int:
    try:
        import cupy as cp

        return cp.cuda.runtime.getDeviceCount()
    except (ImportError, RuntimeError):
        return 0


def pytest_collection_modifyitems(
    config: pytest.Config,
    items: list[pytest.Item],
) -> None:
    """Skip CUDA tests if CUDA is not available."""
    device_count = _cuda_device_count()

    skip_cuda = pytest.mark.skip(reason="CUDA not available")
    skip_multi = pytest.mark.skip(reason="fewer than two CUDA devices")
    for item in items:
        if "cuda" in item.keywords and device_count == 0:
            item.add_marker(skip_cuda)
        elif "multi_gpu" in item.keywords and device_count < 2:
            item.add_marker(skip_multi)
