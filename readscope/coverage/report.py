"""
Per-file coverage projection over a snapshot.

A read-only view: it never changes engine state, it only counts how many of
each file's symbols were seen at all, read in full, or went stale.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from readscope.coordinator import Snapshot
from readscope.tracking.depth import ReadDepth


@dataclass
class FileCoverage:
    """Coverage counts for one file."""

    path: str
    total: int = 0
    seen: int = 0
    full: int = 0
    stale: int = 0

    @property
    def seen_percentage(self) -> float:
        """Share of symbols above Unseen (0.0 to 100.0)."""
        if self.total == 0:
            return 0.0
        return (self.seen / self.total) * 100.0

    @property
    def full_percentage(self) -> float:
        """Share of symbols read in full (0.0 to 100.0)."""
        if self.total == 0:
            return 0.0
        return (self.full / self.total) * 100.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "path": self.path,
            "total": self.total,
            "seen": self.seen,
            "full": self.full,
            "stale": self.stale,
            "seen_percentage": round(self.seen_percentage, 2),
            "full_percentage": round(self.full_percentage, 2),
        }


@dataclass
class CoverageReport:
    """Coverage table for a whole project, least-read files first."""

    session_id: str | None
    timestamp: datetime
    files: list[FileCoverage]
    agent: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_snapshot(cls, snapshot: Snapshot, agent: str | None = None) -> "CoverageReport":
        """
        Build the report for a snapshot.

        Args:
            snapshot: Published engine snapshot
            agent: Restrict to one agent (all agents aggregated when None)
        """
        rows: list[FileCoverage] = []
        for path in sorted(snapshot.files):
            row = FileCoverage(path=path)
            for symbol in snapshot.files[path].symbols():
                state = snapshot.state_of(symbol.id, agent)
                row.total += 1
                if state.depth.is_seen:
                    row.seen += 1
                if state.depth >= ReadDepth.FULL_BODY:
                    row.full += 1
                if state.stale:
                    row.stale += 1
            rows.append(row)
        rows.sort(key=lambda r: (r.full_percentage, r.path))
        return cls(
            session_id=snapshot.session_id,
            timestamp=datetime.now(UTC),
            files=rows,
            agent=agent,
            metadata={"revision": snapshot.revision, **snapshot.diagnostics.to_dict()},
        )

    @property
    def total(self) -> int:
        return sum(f.total for f in self.files)

    @property
    def seen(self) -> int:
        return sum(f.seen for f in self.files)

    @property
    def full(self) -> int:
        return sum(f.full for f in self.files)

    @property
    def stale(self) -> int:
        return sum(f.stale for f in self.files)

    @property
    def seen_percentage(self) -> float:
        return (self.seen / self.total) * 100.0 if self.total else 0.0

    @property
    def full_percentage(self) -> float:
        return (self.full / self.total) * 100.0 if self.total else 0.0

    def get_file(self, path: str) -> FileCoverage | None:
        return next((f for f in self.files if f.path == path), None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "session_id": self.session_id,
            "agent": self.agent,
            "timestamp": self.timestamp.isoformat(),
            "totals": {
                "total": self.total,
                "seen": self.seen,
                "full": self.full,
                "stale": self.stale,
                "seen_percentage": round(self.seen_percentage, 2),
                "full_percentage": round(self.full_percentage, 2),
            },
            "files": [f.to_dict() for f in self.files],
            "metadata": self.metadata,
        }
