"""Signal-based stream of turn updates for presentation layers."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeAlias

from blinker import Signal
from loguru import logger

from drishti.models import StructuredResult, Turn

UpdateHandler: TypeAlias = Callable[["TurnUpdate"], Awaitable[None] | None]


@dataclass(frozen=True)
class TurnUpdate:
    """One observable step of an agent turn."""

    turn_id: str
    result: StructuredResult | None
    status: str
    in_flight: bool
    state: str
    snapshot: tuple[Turn, ...] = ()


class UpdateBus:
    """In-process update stream backed by a blinker signal."""

    def __init__(self, name: str = "drishti.turn_update") -> None:
        self._signal = Signal(name)

    def subscribe(self, handler: UpdateHandler) -> Callable[[], None]:
        """Register ``handler``; the returned callable removes it again."""

        async def _receiver(sender: Any, *, update: TurnUpdate) -> None:
            outcome = handler(update)
            if inspect.isawaitable(outcome):
                await outcome

        self._signal.connect(_receiver, weak=False)
        return lambda: self._signal.disconnect(_receiver)

    @property
    def has_subscribers(self) -> bool:
        return bool(self._signal.receivers)

    async def publish(self, update: TurnUpdate) -> None:
        try:
            await self._signal.send_async(self, update=update)
        except Exception:
            logger.opt(exception=True).error("bus.publish.error turn_id={} status={}", update.turn_id, update.status)
            raise
