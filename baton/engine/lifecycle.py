"""Per-turn stream state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    STARTING ──> STREAMING ──┬──> COMPLETING ──> DONE
        │                    ├──> ERRORING   ──> DONE
        │                    └──> ABORTING   ──> DONE
        ├──> ERRORING
        └──> ABORTING
"""
from __future__ import annotations

from enum import Enum


class StreamState(str, Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETING = "completing"
    ERRORING = "erroring"
    ABORTING = "aborting"
    DONE = "done"


VALID_TRANSITIONS: dict[StreamState, set[StreamState]] = {
    StreamState.STARTING: {
        StreamState.STREAMING,
        StreamState.ERRORING,
        StreamState.ABORTING,
    },
    StreamState.STREAMING: {
        StreamState.COMPLETING,
        StreamState.ERRORING,
        StreamState.ABORTING,
    },
    StreamState.COMPLETING: {StreamState.DONE},
    StreamState.ERRORING: {StreamState.DONE},
    StreamState.ABORTING: {StreamState.DONE},
    StreamState.DONE: set(),
}


def validate_transition(current: StreamState, target: StreamState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
