from __future__ import annotations

from collections.abc import Callable

import pytest
from helpers import make_session

from drishti.bus import TurnUpdate
from drishti.session import SessionController


@pytest.fixture
def session() -> SessionController:
    return make_session(session_id="test")


@pytest.fixture
def collect_updates() -> Callable[[SessionController], list[TurnUpdate]]:
    def _attach(target: SessionController) -> list[TurnUpdate]:
        updates: list[TurnUpdate] = []
        target.subscribe(updates.append)
        return updates

    return _attach
