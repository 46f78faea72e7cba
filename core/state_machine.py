from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from core.errors import PipelinePhase


class StateMachineBackend(Protocol):
    """Adapter interface so the orchestrator does not depend on a concrete FSM."""

    def add_state(self, name: str) -> None: ...
    def add_transition(
        self, trigger: str, source: str, dest: str, on_transition: Callable[[], None] | None = None
    ) -> None: ...
    def set_state(self, name: str) -> None: ...
    def trigger(self, trigger: str) -> None: ...
    def can_trigger(self, trigger: str) -> bool: ...
    @property
    def state(self) -> str: ...


class InvalidTransition(RuntimeError):
    pass


@dataclass
class _Transition:
    trigger: str
    source: str
    dest: str
    on_transition: Callable[[], None] | None


class SimpleStateMachine(StateMachineBackend):
    """
    Minimal in-process FSM.
    Not thread-safe; raises InvalidTransition on unknown triggers.
    """

    def __init__(self) -> None:
        self._states: list[str] = []
        self._transitions: list[_Transition] = []
        self._state: str | None = None

    def add_state(self, name: str) -> None:
        if name not in self._states:
            self._states.append(name)

    def add_transition(
        self, trigger: str, source: str, dest: str, on_transition: Callable[[], None] | None = None
    ) -> None:
        for state in (source, dest):
            if state not in self._states:
                raise ValueError(f"Unknown state: {state}")
        self._transitions.append(
            _Transition(trigger=trigger, source=source, dest=dest, on_transition=on_transition)
        )

    def set_state(self, name: str) -> None:
        if name not in self._states:
            raise ValueError(f"Unknown state: {name}")
        self._state = name

    def _find(self, trigger: str) -> _Transition | None:
        for t in self._transitions:
            if t.trigger == trigger and t.source == self._state:
                return t
        return None

    def can_trigger(self, trigger: str) -> bool:
        return self._state is not None and self._find(trigger) is not None

    def trigger(self, trigger: str) -> None:
        if self._state is None:
            raise RuntimeError("State machine not initialized; call set_state() first")
        t = self._find(trigger)
        if t is None:
            raise InvalidTransition(f"No transition for trigger '{trigger}' from state '{self._state}'")
        if t.on_transition:
            t.on_transition()
        self._state = t.dest

    @property
    def state(self) -> str:
        if self._state is None:
            raise RuntimeError("State machine not initialized; call set_state() first")
        return self._state


# Forward path through the pipeline; cancel/fail are wired from every active phase.
# searching -> completed covers the zero-jobs case, analyzing -> completed the no-letters case.
_FORWARD: tuple[tuple[PipelinePhase, PipelinePhase], ...] = (
    (PipelinePhase.IDLE, PipelinePhase.PARSING),
    (PipelinePhase.PARSING, PipelinePhase.SEARCHING),
    (PipelinePhase.SEARCHING, PipelinePhase.ANALYZING),
    (PipelinePhase.SEARCHING, PipelinePhase.COMPLETED),
    (PipelinePhase.ANALYZING, PipelinePhase.GENERATING),
    (PipelinePhase.ANALYZING, PipelinePhase.COMPLETED),
    (PipelinePhase.GENERATING, PipelinePhase.COMPLETED),
)

ACTIVE_PHASES = (
    PipelinePhase.PARSING,
    PipelinePhase.SEARCHING,
    PipelinePhase.ANALYZING,
    PipelinePhase.GENERATING,
)

TERMINAL_PHASES = frozenset({PipelinePhase.COMPLETED, PipelinePhase.CANCELLED, PipelinePhase.ERROR})


class PhaseMachine:
    """Pipeline phase lifecycle on top of a StateMachineBackend.

    idle -> parsing -> searching -> [analyzing -> [generating]] -> completed,
    with `cancel` and `fail` available from idle and every active phase.
    """

    def __init__(self, backend: StateMachineBackend | None = None) -> None:
        self._fsm = backend or SimpleStateMachine()
        for phase in PipelinePhase:
            self._fsm.add_state(phase.value)
        for source, dest in _FORWARD:
            self._fsm.add_transition(f"to_{dest.value}", source.value, dest.value)
        for source in (PipelinePhase.IDLE, *ACTIVE_PHASES):
            self._fsm.add_transition("cancel", source.value, PipelinePhase.CANCELLED.value)
            self._fsm.add_transition("fail", source.value, PipelinePhase.ERROR.value)
        self._fsm.set_state(PipelinePhase.IDLE.value)

    @property
    def phase(self) -> PipelinePhase:
        return PipelinePhase(self._fsm.state)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def advance(self, dest: PipelinePhase) -> PipelinePhase:
        self._fsm.trigger(f"to_{dest.value}")
        return self.phase

    def cancel(self) -> bool:
        """Move to cancelled; False if already terminal."""
        if not self._fsm.can_trigger("cancel"):
            return False
        self._fsm.trigger("cancel")
        return True

    def fail(self) -> bool:
        if not self._fsm.can_trigger("fail"):
            return False
        self._fsm.trigger("fail")
        return True
