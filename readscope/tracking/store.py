"""
Read-State Store.

Holds one ReadState per (symbol id, agent id). States only move up the depth
lattice; the explicit resets are retirement (a symbol vanished or could not
be matched), agent discard (log truncation) and clear (session switch).
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace

import structlog

from readscope.tracking.depth import ReadDepth

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReadState:
    """What one agent knows about one symbol."""

    depth: ReadDepth = ReadDepth.UNSEEN
    stale: bool = False
    stale_threshold: ReadDepth = ReadDepth.UNSEEN
    updated_at: int = 0
    event_id: str | None = None


UNSEEN_STATE = ReadState()


class ReadStateStore:
    """
    Mutable per-agent read state, owned by a single writer.

    Usage:
        store = ReadStateStore()
        store.observe("a.py::f", "session-1", ReadDepth.FULL_BODY, "session-1:0:0")
        store.mark_stale("a.py::f")
    """

    def __init__(self) -> None:
        self._states: dict[str, dict[str, ReadState]] = {}
        self._agents: dict[str, None] = {}
        self.revision = 0

    def get(self, symbol_id: str, agent_id: str) -> ReadState:
        return self._states.get(symbol_id, {}).get(agent_id, UNSEEN_STATE)

    def states_for(self, symbol_id: str) -> dict[str, ReadState]:
        return dict(self._states.get(symbol_id, {}))

    def register_agent(self, agent_id: str) -> None:
        self._agents.setdefault(agent_id, None)

    def agents(self) -> tuple[str, ...]:
        return tuple(self._agents)

    def tracked_symbols(self) -> list[str]:
        return list(self._states)

    def observe(
        self,
        symbol_id: str,
        agent_id: str,
        contributed: ReadDepth,
        event_id: str | None = None,
    ) -> bool:
        """
        Merge an observed depth into a symbol's state for one agent.

        Depth becomes the maximum of the held and contributed depths. A stale
        state is cleared only when the contribution reaches the depth held
        before the change that made it stale.

        Args:
            symbol_id: Target symbol
            agent_id: Observing agent
            contributed: Depth implied by the observation
            event_id: Id of the contributing event

        Returns:
            True if the state changed
        """
        self.register_agent(agent_id)
        current = self.get(symbol_id, agent_id)
        depth = max(current.depth, contributed)
        stale = current.stale and contributed < current.stale_threshold

        if depth == current.depth and stale == current.stale:
            return False

        self.revision += 1
        self._states.setdefault(symbol_id, {})[agent_id] = ReadState(
            depth=ReadDepth(depth),
            stale=stale,
            stale_threshold=current.stale_threshold if stale else ReadDepth.UNSEEN,
            updated_at=self.revision,
            event_id=event_id,
        )
        return True

    def mark_stale(self, symbol_id: str) -> int:
        """
        Flag a symbol stale for every agent that has seen it.

        The threshold recorded is the depth held at the moment of the change.

        Returns:
            Number of agent states that changed
        """
        changed = 0
        for agent_id, state in self._states.get(symbol_id, {}).items():
            if not state.depth.is_seen:
                continue
            if state.stale and state.stale_threshold == state.depth:
                continue
            self.revision += 1
            self._states[symbol_id][agent_id] = replace(
                state, stale=True, stale_threshold=state.depth, updated_at=self.revision
            )
            changed += 1
        return changed

    def retire(self, symbol_ids: Iterable[str]) -> int:
        """Drop all state for symbols that no longer exist."""
        removed = 0
        for symbol_id in symbol_ids:
            if self._states.pop(symbol_id, None) is not None:
                removed += 1
        if removed:
            self.revision += 1
        return removed

    def discard_agent(self, agent_id: str) -> int:
        """Forget everything one agent has read."""
        removed = 0
        for symbol_id in list(self._states):
            per_agent = self._states[symbol_id]
            if per_agent.pop(agent_id, None) is not None:
                removed += 1
            if not per_agent:
                del self._states[symbol_id]
        self.revision += 1
        logger.info("agent_state_discarded", agent=agent_id, symbols=removed)
        return removed

    def clear(self) -> None:
        self._states.clear()
        self._agents.clear()
        self.revision += 1

    def export(self) -> dict[str, dict[str, ReadState]]:
        """Copy of all states, symbol id -> agent id -> state."""
        return {symbol_id: dict(per_agent) for symbol_id, per_agent in self._states.items()}


def aggregate_states(
    states: Mapping[str, ReadState],
    agents: Iterable[str] | None = None,
) -> ReadState:
    """
    Combine per-agent states into one view.

    Depth is the maximum over the included agents; the result is stale if any
    included agent's state is stale.

    Args:
        states: agent id -> state for one symbol
        agents: Agents to include (all when None)
    """
    selected = set(agents) if agents is not None else None
    depth = ReadDepth.UNSEEN
    stale = False
    updated_at = 0
    for agent_id, state in states.items():
        if selected is not None and agent_id not in selected:
            continue
        depth = max(depth, state.depth)
        stale = stale or state.stale
        updated_at = max(updated_at, state.updated_at)
    return ReadState(depth=ReadDepth(depth), stale=stale, updated_at=updated_at)
