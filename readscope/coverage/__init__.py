"""
Readscope Coverage Reporting.

Per-file seen/full/stale counts projected from engine snapshots.
"""

from readscope.coverage.report import CoverageReport, FileCoverage

__all__ = [
    "CoverageReport",
    "FileCoverage",
]
