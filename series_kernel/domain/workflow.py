"""
Declarative state machines.

A ``Workflow`` lists its states and every legal ``(state, action)`` move.
It is checked once when constructed and is otherwise inert: callers look
up a transition and decide what to do when there is none.  ``Guard``
objects only name a precondition so it shows up in the declaration; the
caller evaluates it.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Guard:
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """Move from ``from_state`` to ``to_state`` when ``action`` is requested."""

    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    """States, terminal states and transitions of one lifecycle.

    Raises ``ValueError`` at construction when the initial state or a
    transition endpoint is undeclared, or when a terminal state has a way
    out.
    """

    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()
    _index: dict[tuple[str, str], Transition] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        declared = set(self.states)
        if self.initial_state not in declared:
            raise ValueError(
                f"{self.name}: initial state {self.initial_state!r} is not declared"
            )

        index: dict[tuple[str, str], Transition] = {}
        for move in self.transitions:
            if not {move.from_state, move.to_state} <= declared:
                raise ValueError(
                    f"{self.name}: {move.action!r} "
                    f"({move.from_state} -> {move.to_state}) uses an unknown state"
                )
            if move.from_state in self.terminal_states:
                raise ValueError(
                    f"{self.name}: terminal state {move.from_state!r} "
                    f"cannot be left via {move.action!r}"
                )
            index.setdefault((move.from_state, move.action), move)
        object.__setattr__(self, "_index", index)

    def find_transition(self, from_state: str, action: str) -> Transition | None:
        return self._index.get((from_state, action))

    def actions_from(self, state: str) -> tuple[str, ...]:
        return tuple(m.action for m in self.transitions if m.from_state == state)

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states
