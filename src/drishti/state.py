"""Per-session turn state machine."""

from __future__ import annotations

from enum import StrEnum

from loguru import logger

from drishti.errors import InvalidTransitionError


class SessionState(StrEnum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    PLACEHOLDER_CREATED = "placeholder_created"
    RUNNING = "running"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.ERRORED, SessionState.CANCELLED})

_ALLOWED: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.SUBMITTED}),
    # back to idle when the turns could not be appended
    SessionState.SUBMITTED: frozenset({SessionState.PLACEHOLDER_CREATED, SessionState.IDLE}),
    SessionState.PLACEHOLDER_CREATED: frozenset({SessionState.RUNNING, SessionState.ERRORED, SessionState.CANCELLED}),
    SessionState.RUNNING: frozenset({SessionState.RUNNING, *TERMINAL_STATES}),
    SessionState.COMPLETED: frozenset({SessionState.IDLE}),
    SessionState.ERRORED: frozenset({SessionState.IDLE}),
    SessionState.CANCELLED: frozenset({SessionState.IDLE}),
}


class SessionStateMachine:
    """Idle -> Submitted -> PlaceholderCreated -> Running(stage)... -> terminal -> Idle."""

    def __init__(self) -> None:
        self._state = SessionState.IDLE
        self._stage: str | None = None
        self._history: list[tuple[SessionState, str | None]] = [(SessionState.IDLE, None)]

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def stage(self) -> str | None:
        return self._stage

    @property
    def idle(self) -> bool:
        return self._state is SessionState.IDLE

    @property
    def history(self) -> list[tuple[SessionState, str | None]]:
        return list(self._history)

    def transition(self, target: SessionState, *, stage: str | None = None) -> None:
        if target not in _ALLOWED[self._state]:
            raise InvalidTransitionError(f"cannot move from {self._state} to {target}")
        if target is SessionState.RUNNING and not stage:
            raise InvalidTransitionError("running state needs a stage name")
        logger.debug("session.state {} -> {} stage={}", self._state, target, stage or "-")
        self._state = target
        if target is SessionState.SUBMITTED:
            # history covers the current turn only
            self._history = [(SessionState.IDLE, None)]
        if target is SessionState.RUNNING:
            self._stage = stage
        elif target is SessionState.IDLE:
            self._stage = None
        self._history.append((target, stage))
