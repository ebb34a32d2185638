from __future__ import annotations

from typing import Dict, Set

from .models import LoopState


class InvalidTransitionError(RuntimeError):
    pass


LOOP_TRANSITIONS: Dict[LoopState, Set[LoopState]] = {
    LoopState.awaiting_model: {LoopState.parsing, LoopState.error},
    LoopState.parsing: {LoopState.executing_tools, LoopState.done, LoopState.error},
    LoopState.executing_tools: {LoopState.awaiting_model, LoopState.error},
    LoopState.done: set(),
    LoopState.error: set(),
}

TERMINAL_STATES: Set[LoopState] = {LoopState.done, LoopState.error}


def validate_loop_transition(current: LoopState, new: LoopState) -> bool:
    return new in LOOP_TRANSITIONS.get(current, set())


def transition(current: LoopState, new: LoopState) -> LoopState:
    if not validate_loop_transition(current, new):
        raise InvalidTransitionError(f"invalid loop transition: {current.value} -> {new.value}")
    return new
