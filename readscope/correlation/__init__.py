"""
Event correlation.

Resolves tool-use events to symbols and read depths under a configurable
depth policy.
"""

from readscope.correlation.correlator import (
    CorrelationResult,
    CorrelationStatus,
    EventCorrelator,
)
from readscope.correlation.policy import CallShape, DepthPolicy, PolicyLoader

__all__ = [
    "CallShape",
    "CorrelationResult",
    "CorrelationStatus",
    "DepthPolicy",
    "EventCorrelator",
    "PolicyLoader",
]
