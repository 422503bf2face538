from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from drishti.accumulator import StageUpdate
from drishti.bus import TurnUpdate
from drishti.errors import (
    FieldAlreadySetError,
    InvalidInputError,
    OrderViolationError,
    SessionBusyError,
    StageFailureError,
)
from drishti.models import IMAGE_ONLY_PROMPT, Role, StructuredResult, TurnOutcome, UserProfile, Verdict
from drishti.pipeline import PipelineRunner, Stage
from drishti.session import SessionController
from drishti.stages import ScriptedBackend
from drishti.state import SessionState

from helpers import make_session


class _FlakyBackend(ScriptedBackend):
    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def extract(self, result: StructuredResult) -> StageUpdate:
        if self.failures:
            self.failures -= 1
            raise ConnectionError("analysis backend unavailable")
        return await super().extract(result)


@pytest.mark.asyncio
async def test_text_submission_runs_all_stages(session: SessionController, collect_updates) -> None:
    updates: list[TurnUpdate] = collect_updates(session)

    agent = await session.submit("Is X safe?")

    user_turn, agent_turn = session.snapshot()
    assert user_turn.role is Role.USER
    assert user_turn.text == "Is X safe?"
    assert agent_turn.role is Role.AGENT
    assert agent_turn.id == agent.id
    assert agent_turn.in_flight is False
    assert agent_turn.outcome is TurnOutcome.COMPLETED
    assert agent_turn.result is not None
    assert agent_turn.result.verdict in set(Verdict)
    assert agent_turn.text == agent_turn.result.rationale

    first = updates[0]
    assert first.in_flight is True
    assert first.state == "placeholder_created"
    assert [turn.role for turn in first.snapshot] == [Role.USER, Role.AGENT]
    assert first.snapshot[1].in_flight is True
    assert first.result is not None and first.result.populated_fields() == []

    statuses = [update.status for update in updates if update.status]
    assert statuses[0] == "SCANNING IMAGE PIXELS..."
    assert statuses[-1] == "GENERATING SAFETY VERDICT..."
    assert updates[-1].in_flight is False
    assert updates[-1].state == "completed"
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_fields_are_revealed_progressively(session: SessionController, collect_updates) -> None:
    updates: list[TurnUpdate] = collect_updates(session)

    await session.submit("Is X safe?")

    revealed = [tuple(update.result.populated_fields()) for update in updates if update.result is not None]
    for earlier, later in zip(revealed, revealed[1:], strict=False):
        assert set(earlier) <= set(later)
    verdict_seen = [update for update in updates if update.result is not None and update.result.verdict is not None]
    assert verdict_seen[0].result is not None
    assert verdict_seen[0].result.rationale is not None
    assert verdict_seen[0].result.follow_ups is not None
    assert all(update.result.verdict is None for update in updates[: updates.index(verdict_seen[0])] if update.result)


@pytest.mark.asyncio
async def test_image_payload_is_echoed_unchanged(session: SessionController, collect_updates) -> None:
    updates: list[TurnUpdate] = collect_updates(session)
    payload = b"\x89PNG\r\n\x1a\nfake"

    await session.submit("", payload)

    assert session.snapshot()[0].text == IMAGE_ONLY_PROMPT
    assert updates
    assert all(update.result is not None and update.result.input_image is payload for update in updates)


@pytest.mark.asyncio
async def test_submit_while_in_flight_is_busy(session: SessionController) -> None:
    task = session.start("Is X safe?")

    with pytest.raises(SessionBusyError):
        session.start("second question")
    with pytest.raises(SessionBusyError):
        await session.submit("third question")
    assert len(session.snapshot()) == 2

    await task
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_at_most_one_turn_in_flight(session: SessionController) -> None:
    in_flight_counts: list[int] = []
    session.subscribe(lambda update: in_flight_counts.append(sum(turn.in_flight for turn in update.snapshot)))

    await session.submit("first")
    await session.submit("second")
    await session.submit("third")

    assert max(in_flight_counts) == 1
    assert in_flight_counts[-1] == 0
    assert [turn.role for turn in session.snapshot()] == [Role.USER, Role.AGENT] * 3


@pytest.mark.asyncio
async def test_stage_failure_errors_the_turn_and_allows_retry(collect_updates) -> None:
    session = make_session(_FlakyBackend())
    updates: list[TurnUpdate] = collect_updates(session)

    with pytest.raises(StageFailureError) as exc_info:
        await session.submit("Is X safe?")

    assert exc_info.value.stage_name == "extract"
    assert exc_info.value.retryable is True
    assert session.state is SessionState.IDLE
    assert (SessionState.ERRORED, None) in session.machine.history
    failed = session.snapshot()[1]
    assert failed.in_flight is False
    assert failed.outcome is TurnOutcome.ERRORED
    assert failed.error is not None and "extract" in failed.error
    assert all(
        update.result is None
        or (update.result.plan is None and update.result.search_needed is None and update.result.verdict is None)
        for update in updates
    )
    assert updates[-1].state == "errored"

    retried = await session.submit("Is X safe?")
    assert retried.outcome is TurnOutcome.COMPLETED
    assert len(session.snapshot()) == 4


@pytest.mark.asyncio
async def test_peanut_allergy_scenario() -> None:
    session = make_session(profile=UserProfile(allergies=("Peanuts",)))

    turn = await session.submit("Can I eat this?")

    assert turn.result is not None
    assert turn.result.extracted is not None
    assert "Roasted Peanuts" in turn.result.extracted.ingredients
    assert turn.result.verdict is Verdict.AVOID
    assert "Peanuts" in (turn.result.rationale or "")


@pytest.mark.asyncio
async def test_per_submission_profile_overrides_session_profile() -> None:
    session = make_session(profile=UserProfile(allergies=("Peanuts",)))

    turn = await session.submit("Can I eat this?", profile=UserProfile())

    assert turn.result is not None
    assert turn.result.verdict is Verdict.SAFE


@pytest.mark.asyncio
async def test_cancel_stops_at_stage_boundary(collect_updates) -> None:
    async def _plan(result: StructuredResult) -> StageUpdate:
        return {"plan": "p"}

    async def _verdict(result: StructuredResult) -> StageUpdate:
        return {"verdict": Verdict.SAFE}

    session = SessionController(PipelineRunner([Stage("plan", "PLAN", _plan), Stage("verdict", "VERDICT", _verdict, delay=30.0)]))
    updates: list[TurnUpdate] = collect_updates(session)

    def _cancel_on_verdict(update: TurnUpdate) -> None:
        if update.status == "VERDICT":
            session.cancel("navigated away")

    session.subscribe(_cancel_on_verdict)

    turn = await session.submit("q")

    assert turn.outcome is TurnOutcome.CANCELLED
    assert turn.in_flight is False
    assert turn.result is not None
    assert turn.result.plan == "p"
    assert turn.result.verdict is None
    assert "navigated away" in (turn.error or "")
    assert updates[-1].state == "cancelled"
    assert session.state is SessionState.IDLE
    assert session.cancel() is False


@pytest.mark.asyncio
async def test_re_emitted_field_marks_turn_errored() -> None:
    async def _plan(result: StructuredResult) -> StageUpdate:
        return {"plan": "p"}

    session = SessionController(PipelineRunner([Stage("one", "ONE", _plan), Stage("two", "TWO", _plan)]))

    with pytest.raises(FieldAlreadySetError):
        await session.submit("q")

    turn = session.snapshot()[1]
    assert turn.outcome is TurnOutcome.ERRORED
    assert turn.result is not None and turn.result.plan == "p"
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_blank_submission_is_rejected(session: SessionController) -> None:
    with pytest.raises(InvalidInputError):
        await session.submit("   ")

    assert session.snapshot() == ()
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_clock_going_backwards_rejects_submission_and_stays_idle() -> None:
    times = iter([datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=s) for s in (10, 10, 1, 2)])
    session = make_session(clock=lambda: next(times))

    await session.submit("first")
    with pytest.raises(OrderViolationError):
        await session.submit("second")

    assert len(session.snapshot()) == 2
    assert session.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_state_history_of_a_completed_turn(session: SessionController) -> None:
    await session.submit("Is X safe?")

    history = session.machine.history
    assert history[0] == (SessionState.IDLE, None)
    assert history[1:3] == [(SessionState.SUBMITTED, None), (SessionState.PLACEHOLDER_CREATED, None)]
    assert [stage for state, stage in history if state is SessionState.RUNNING] == [
        "scan",
        "extract",
        "reason",
        "search",
        "verdict",
    ]
    assert history[-2:] == [(SessionState.COMPLETED, None), (SessionState.IDLE, None)]


@pytest.mark.asyncio
async def test_snapshot_product_data_cannot_be_mutated(session: SessionController) -> None:
    await session.submit("Is X safe?")
    product = session.snapshot()[1].result.extracted

    with pytest.raises(TypeError):
        product.nutrition_facts["Calories"] = "0"  # type: ignore[index]

    assert session.snapshot()[1].result.extracted.nutrition_facts["Calories"] == "240"
    fresh = await make_session().submit("Is X safe?")
    assert fresh.result is not None and fresh.result.extracted is not None
    assert fresh.result.extracted.nutrition_facts["Calories"] == "240"


@pytest.mark.asyncio
async def test_malformed_input_failure_is_not_retryable(session: SessionController) -> None:
    with pytest.raises(StageFailureError) as exc_info:
        await session.submit("", b"")

    assert exc_info.value.stage_name == "extract"
    assert exc_info.value.retryable is False
    assert session.state is SessionState.IDLE
    user_turn, agent_turn = session.snapshot()
    assert user_turn.text == IMAGE_ONLY_PROMPT
    assert agent_turn.outcome is TurnOutcome.ERRORED
    assert agent_turn.in_flight is False


@pytest.mark.asyncio
async def test_whitespace_query_with_image_uses_scan_prompt(session: SessionController) -> None:
    await session.submit("   ", b"\x89PNG fake")

    assert session.snapshot()[0].text == IMAGE_ONLY_PROMPT
