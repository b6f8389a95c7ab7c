from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Mapping, TypeVar

from registry_crawlers.errors import InvalidTransitionError

S = TypeVar("S", bound=Enum)
C = TypeVar("C")


@dataclass
class FSMConfig:
    max_steps: int = 50


class FSMRunner(Generic[S, C]):
    """Runs state handlers until a terminal state, enforcing a transition table.

    ``interrupt`` is consulted before every step; returning a state short-circuits the
    pending handler and moves the machine there instead (used for deadline checks).
    """

    def __init__(
        self,
        *,
        initial_state: S,
        terminal_states: frozenset[S],
        handlers: Mapping[S, Callable[[C], S]],
        transitions: Mapping[S, frozenset[S]],
        on_transition: Callable[[C, S, S], None] | None = None,
        interrupt: Callable[[C, S], S | None] | None = None,
        config: FSMConfig | None = None,
    ) -> None:
        self.initial_state = initial_state
        self.terminal_states = terminal_states
        self.handlers = handlers
        self.transitions = transitions
        self.on_transition = on_transition
        self.interrupt = interrupt
        self.config = config or FSMConfig()

    def run(self, context: C) -> S:
        state = self.initial_state
        steps = 0

        while state not in self.terminal_states:
            if steps >= self.config.max_steps:
                raise RuntimeError(f"FSM max steps reached: {self.config.max_steps}")

            next_state = self.interrupt(context, state) if self.interrupt is not None else None
            if next_state is None:
                handler = self.handlers.get(state)
                if handler is None:
                    raise KeyError(f"Missing FSM handler for state: {state}")
                next_state = handler(context)

            if next_state not in self.transitions.get(state, frozenset()):
                raise InvalidTransitionError(f"Transition not allowed: {state.name} -> {next_state.name}")

            if self.on_transition is not None:
                self.on_transition(context, state, next_state)
            state = next_state
            steps += 1

        return state
