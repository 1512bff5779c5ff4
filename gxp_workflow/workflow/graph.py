"""Declarative state graphs for case types."""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from ..exceptions import InvalidTransition


@dataclass(frozen=True)
class StateGraph:
    """
    Finite state graph of one case type.

    Attributes:
        case_type: Discriminator of the case type, e.g. ``"OOS"``.
        states: Every state a case of this type may hold.
        initial: State a new case is created in.
        terminal: States from which no transition is legal.
        transitions: Map of state to its legal successor states.

    Example:
        >>> graph = StateGraph.build(
        ...     "DEMO",
        ...     initial="OPEN",
        ...     terminal=["DONE"],
        ...     transitions={"OPEN": ["DONE"]},
        ... )
        >>> graph.can_transition("OPEN", "DONE")
        True
    """

    case_type: str
    states: FrozenSet[str]
    initial: str
    terminal: FrozenSet[str]
    transitions: Mapping[str, FrozenSet[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        problems: List[str] = []
        if self.initial not in self.states:
            problems.append(f"initial state {self.initial} is not declared")
        for state in self.terminal:
            if state not in self.states:
                problems.append(f"terminal state {state} is not declared")
            if self.transitions.get(state):
                problems.append(f"terminal state {state} has successors")
        for source, targets in self.transitions.items():
            if source not in self.states:
                problems.append(f"state {source} is not declared")
            for target in targets:
                if target not in self.states:
                    problems.append(f"successor {target} of {source} is not declared")
        if problems:
            raise ValueError(f"Invalid state graph for {self.case_type}: " + "; ".join(problems))

    @classmethod
    def build(
        cls,
        case_type: str,
        initial: str,
        terminal: Iterable[str],
        transitions: Mapping[str, Iterable[str]],
        extra_states: Iterable[str] = (),
    ) -> "StateGraph":
        """Build a graph, deriving the state set from its edges."""
        terminal = frozenset(terminal)
        edges: Dict[str, FrozenSet[str]] = {
            source: frozenset(targets) for source, targets in transitions.items()
        }
        states = {initial, *terminal, *extra_states, *edges}
        for targets in edges.values():
            states.update(targets)
        return cls(
            case_type=case_type,
            states=frozenset(states),
            initial=initial,
            terminal=terminal,
            transitions=edges,
        )

    def successors(self, state: str) -> FrozenSet[str]:
        return self.transitions.get(state, frozenset())

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """True only for an edge declared in the graph."""
        return to_state in self.successors(from_state)

    def check(self, from_state: str, to_state: str, reason: Optional[str] = None) -> None:
        """Raise InvalidTransition unless ``from_state -> to_state`` is an edge."""
        if not self.can_transition(from_state, to_state):
            raise InvalidTransition(
                self.case_type,
                from_state,
                to_state,
                self.successors(from_state),
                reason=reason,
            )

    def to_dict(self) -> Dict[str, object]:
        return {
            "case_type": self.case_type,
            "initial": self.initial,
            "terminal": sorted(self.terminal),
            "transitions": {
                state: sorted(self.successors(state)) for state in sorted(self.states)
            },
        }


class GraphRegistry:
    """Graphs by case type, for the pure ``can_transition`` lookup."""

    def __init__(self, graphs: Iterable[StateGraph] = ()):
        self._graphs: Dict[str, StateGraph] = {}
        for graph in graphs:
            self.register(graph)

    def register(self, graph: StateGraph) -> None:
        if graph.case_type in self._graphs:
            raise ValueError(f"State graph for {graph.case_type} already registered")
        self._graphs[graph.case_type] = graph

    def get(self, case_type: str) -> StateGraph:
        return self._graphs[case_type]

    def case_types(self) -> List[str]:
        return sorted(self._graphs)

    def can_transition(self, case_type: str, from_state: str, to_state: str) -> bool:
        graph = self._graphs.get(case_type)
        return graph is not None and graph.can_transition(from_state, to_state)
