"""
peertranspose examples.

This module contains example programs demonstrating the peer-to-peer
transpose components.
"""

from examples.p2p_transpose import run_p2p_transpose_example

__all__ = [
    "run_p2p_transpose_example",
]
