"""
Core pipeline components for peertranspose.
"""

from peertranspose.core.orchestrator import (
    PipelineConfig,
    PipelineReport,
    PipelineState,
    TransposePipeline,
    run_pipeline,
)
from peertranspose.core.peer_link import LinkState, PeerLink, PeerLinkManager
from peertranspose.core.topology import DevicePair, DeviceTopologyProber
from peertranspose.core.transfer import CrossDeviceTransfer
from peertranspose.core.validator import ValidationResult, compare, validate

__all__ = [
    "DevicePair",
    "DeviceTopologyProber",
    "LinkState",
    "PeerLink",
    "PeerLinkManager",
    "CrossDeviceTransfer",
    "ValidationResult",
    "compare",
    "validate",
    "PipelineConfig",
    "PipelineReport",
    "PipelineState",
    "TransposePipeline",
    "run_pipeline",
]
