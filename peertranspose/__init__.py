"""
peertranspose - multi-device peer-to-peer transpose demonstration.

Finds two accelerator devices with direct peer access, transposes a matrix
on the first with a statically sized scratch buffer, copies the result
straight into the second device's memory, transposes it back there with a
dynamically sized scratch buffer, and checks the round trip.

Core Features:
    - Topology discovery: first peer-capable device pair in scan order
    - Scoped peer links: always disabled, including on error paths
    - One transpose algorithm, two scratch-memory launch variants
    - CUDA backend via CuPy and Numba
    - Simulated backend: any device count and peer topology, on the CPU

Quick Start:
    >>> from peertranspose import SimulatedBackend, TransposePipeline
    >>>
    >>> report = TransposePipeline(SimulatedBackend(device_count=2)).run()
    >>> report.state.name, report.validation.error_count
    ('DONE', 0)
"""

from peertranspose.backends import Backend, SimulatedBackend, get_backend
from peertranspose.core.orchestrator import (
    PipelineConfig,
    PipelineReport,
    PipelineState,
    TransposePipeline,
    run_pipeline,
)
from peertranspose.core.peer_link import PeerLinkManager
from peertranspose.core.topology import DevicePair, DeviceTopologyProber
from peertranspose.core.transfer import CrossDeviceTransfer
from peertranspose.core.validator import compare
from peertranspose.kernels.dispatcher import KernelDispatcher, KernelLaunchConfig, KernelVariant

__version__ = "0.1.0"

__all__ = [
    # Version
    "__version__",
    # Backends
    "Backend",
    "SimulatedBackend",
    "get_backend",
    # Components
    "DevicePair",
    "DeviceTopologyProber",
    "PeerLinkManager",
    "KernelDispatcher",
    "KernelLaunchConfig",
    "KernelVariant",
    "CrossDeviceTransfer",
    "compare",
    # Pipeline
    "PipelineConfig",
    "PipelineReport",
    "PipelineState",
    "TransposePipeline",
    "run_pipeline",
]
