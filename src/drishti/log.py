"""Append-only ordered record of conversation turns."""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeAlias

from drishti.errors import OrderViolationError, TurnNotFoundError
from drishti.models import Turn

TurnMutator: TypeAlias = Callable[[Turn], Turn]


class MessageLog:
    """Ordered turns for one session. Turns are never removed."""

    def __init__(self) -> None:
        self._turns: list[Turn] = []
        self._index: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, turn: Turn) -> Turn:
        if turn.id in self._index:
            raise OrderViolationError(f"turn already appended: {turn.id}")
        if self._turns and turn.created_at < self._turns[-1].created_at:
            raise OrderViolationError(
                f"turn {turn.id} created at {turn.created_at.isoformat()} precedes "
                f"last turn at {self._turns[-1].created_at.isoformat()}"
            )
        self._index[turn.id] = len(self._turns)
        self._turns.append(turn)
        return turn

    def get(self, turn_id: str) -> Turn:
        position = self._index.get(turn_id)
        if position is None:
            raise TurnNotFoundError(turn_id)
        return self._turns[position]

    def update(self, turn_id: str, mutator: TurnMutator) -> Turn:
        """Replace the turn ``turn_id`` with ``mutator(turn)`` in place."""
        current = self.get(turn_id)
        updated = mutator(current)
        if updated.id != current.id:
            raise OrderViolationError(f"mutator changed turn id {current.id} -> {updated.id}")
        if updated.created_at != current.created_at:
            raise OrderViolationError(f"mutator changed creation time of turn {current.id}")
        self._turns[self._index[turn_id]] = updated
        return updated

    def snapshot(self) -> tuple[Turn, ...]:
        # Turns are frozen, so a tuple copy shares nothing mutable with the caller.
        return tuple(self._turns)

    def in_flight(self) -> list[Turn]:
        return [turn for turn in self._turns if turn.in_flight]
