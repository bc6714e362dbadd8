"""
Build Phase State Machine
=========================

Explicit transition table for one build session.

    Idle -> Preparation -> Configuration -> Patching -> Building
         -> Validation -> {Completed, Failed}

Cancelled is reachable from every non-terminal phase, Failed from every
phase after Idle. Any other transition raises InvalidTransition.

Entering a phase issues a PhaseLease for it; leaving revokes the lease.
The Patching lease is what the enforcement layer needs to get a write
handle, so no other phase can write the build script.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Tuple

import networkx as nx

from ..contracts.base import Error, ErrorCode, InvalidTransition, SessionId, Timestamp
from ..contracts.events import BuildPhase, PhaseChanged
from ..enforcement.writer import PhaseLease, _issue_lease


_FORWARD: Dict[BuildPhase, BuildPhase] = {
    BuildPhase.IDLE: BuildPhase.PREPARATION,
    BuildPhase.PREPARATION: BuildPhase.CONFIGURATION,
    BuildPhase.CONFIGURATION: BuildPhase.PATCHING,
    BuildPhase.PATCHING: BuildPhase.BUILDING,
    BuildPhase.BUILDING: BuildPhase.VALIDATION,
    BuildPhase.VALIDATION: BuildPhase.COMPLETED,
}


def _build_table() -> Dict[BuildPhase, FrozenSet[BuildPhase]]:
    table: Dict[BuildPhase, FrozenSet[BuildPhase]] = {}
    for phase in BuildPhase:
        if phase.is_terminal:
            table[phase] = frozenset()
            continue
        allowed = {BuildPhase.CANCELLED}
        if phase in _FORWARD:
            allowed.add(_FORWARD[phase])
        if phase != BuildPhase.IDLE:
            allowed.add(BuildPhase.FAILED)
        table[phase] = frozenset(allowed)
    return table


TRANSITIONS: Dict[BuildPhase, FrozenSet[BuildPhase]] = _build_table()


def is_allowed(current: BuildPhase, target: BuildPhase) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


# =============================================================================
# GRAPH ANALYSIS
# =============================================================================

@dataclass(frozen=True)
class TransitionGraphReport:
    """Structural facts about the transition table."""
    phase_count: int
    transition_count: int
    terminal_phases: Tuple[BuildPhase, ...]
    all_reach_terminal: bool
    cancel_reachable_everywhere: bool
    is_acyclic: bool
    happy_path: Tuple[BuildPhase, ...]


def transition_graph() -> nx.DiGraph:
    graph = nx.DiGraph()
    for phase in BuildPhase:
        graph.add_node(phase)
    for source, targets in TRANSITIONS.items():
        for target in targets:
            graph.add_edge(source, target)
    return graph


def analyze_transitions() -> TransitionGraphReport:
    graph = transition_graph()
    terminals = tuple(p for p in BuildPhase if p.is_terminal)
    live = [p for p in BuildPhase if not p.is_terminal]

    all_reach_terminal = all(
        any(nx.has_path(graph, p, t) for t in terminals) for p in live
    )
    cancel_everywhere = all(graph.has_edge(p, BuildPhase.CANCELLED) for p in live)
    happy = tuple(nx.shortest_path(graph, BuildPhase.IDLE, BuildPhase.COMPLETED))

    return TransitionGraphReport(
        phase_count=graph.number_of_nodes(),
        transition_count=graph.number_of_edges(),
        terminal_phases=terminals,
        all_reach_terminal=all_reach_terminal,
        cancel_reachable_everywhere=cancel_everywhere,
        is_acyclic=nx.is_directed_acyclic_graph(graph),
        happy_path=happy,
    )


# =============================================================================
# STATE MACHINE
# =============================================================================

class PhaseStateMachine:
    """
    Tracks the current phase of one session and owns its leases.

    Not thread-safe; one session is driven by one task.
    """

    def __init__(self, session_id: SessionId):
        self._session_id = session_id
        self._phase = BuildPhase.IDLE
        self._lease: Optional[PhaseLease] = None
        self._history: List[PhaseChanged] = []

    @property
    def phase(self) -> BuildPhase:
        return self._phase

    @property
    def lease(self) -> Optional[PhaseLease]:
        """Lease for the current phase; None in Idle and terminal phases."""
        return self._lease

    @property
    def history(self) -> List[PhaseChanged]:
        return list(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._phase.is_terminal

    def transition(self, target: BuildPhase) -> PhaseChanged:
        if not is_allowed(self._phase, target):
            raise InvalidTransition(Error.create(
                ErrorCode.INVALID_STATE_TRANSITION,
                f"Transition {self._phase.value} -> {target.value} is not allowed",
                current=self._phase.value,
                target=target.value,
            ))

        if self._lease is not None:
            self._lease.revoke()
        self._lease = None if target.is_terminal else _issue_lease(target, self._session_id)

        event = PhaseChanged(
            session_id=self._session_id,
            previous=self._phase,
            current=target,
            timestamp=Timestamp.now(),
        )
        self._phase = target
        self._history.append(event)
        return event

    def advance(self) -> PhaseChanged:
        """Move along the happy path."""
        target = _FORWARD.get(self._phase)
        if target is None:
            raise InvalidTransition(Error.create(
                ErrorCode.INVALID_STATE_TRANSITION,
                f"No forward transition from {self._phase.value}",
                current=self._phase.value,
            ))
        return self.transition(target)
