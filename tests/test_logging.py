from __future__ import annotations

from typing import Any

import pytest
from helpers import make_session
from loguru import logger

from drishti.logging_utils import configure_logging, current_session, session_context


def test_session_context_is_scoped() -> None:
    assert current_session() == "-"
    with session_context("abc"):
        assert current_session() == "abc"
    assert current_session() == "-"


@pytest.mark.asyncio
async def test_pipeline_logs_carry_session_id() -> None:
    configure_logging(profile="plain", level="DEBUG")
    records: list[dict[str, Any]] = []
    sink_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    try:
        await make_session(session_id="log-test").submit("Is X safe?")
    finally:
        logger.remove(sink_id)

    stage_starts = [record for record in records if record["message"].startswith("pipeline.stage.start")]
    assert len(stage_starts) == 5
    assert {record["extra"]["session"] for record in stage_starts} == {"log-test"}
