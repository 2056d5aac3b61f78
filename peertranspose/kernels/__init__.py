"""
Tile-transpose kernels and their dispatcher.
"""

from peertranspose.kernels.dispatcher import KernelDispatcher, KernelLaunchConfig, KernelVariant
from peertranspose.kernels.transpose import reference_transpose, scratch_bytes

__all__ = [
    "KernelDispatcher",
    "KernelLaunchConfig",
    "KernelVariant",
    "reference_transpose",
    "scratch_bytes",
]
