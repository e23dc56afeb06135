"""
Per-agent read tracking.

Depth lattice and the store that holds each agent's state per symbol.
"""

from readscope.tracking.depth import DEPTH_LABELS, ReadDepth
from readscope.tracking.store import ReadState, ReadStateStore, aggregate_states

__all__ = [
    "DEPTH_LABELS",
    "ReadDepth",
    "ReadState",
    "ReadStateStore",
    "aggregate_states",
]
