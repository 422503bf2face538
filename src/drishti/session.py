"""Session controller: turn intake, pipeline driving and update publishing."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from datetime import datetime
from functools import partial

from loguru import logger

from drishti.accumulator import StageUpdate, merge
from drishti.bus import TurnUpdate, UpdateBus, UpdateHandler
from drishti.cancellation import CancellationToken
from drishti.config import Settings
from drishti.errors import InvalidInputError, PipelineCancelledError, SessionBusyError, StageFailureError
from drishti.log import MessageLog
from drishti.logging_utils import session_context
from drishti.models import (
    IMAGE_ONLY_PROMPT,
    Role,
    StructuredResult,
    Turn,
    TurnOutcome,
    UserProfile,
    new_turn_id,
    utcnow,
)
from drishti.pipeline import PipelineRunner, Stage
from drishti.stages import AnalysisBackend, ScriptedBackend, build_stages
from drishti.state import SessionState, SessionStateMachine

_OUTCOME_STATES: dict[TurnOutcome, SessionState] = {
    TurnOutcome.COMPLETED: SessionState.COMPLETED,
    TurnOutcome.ERRORED: SessionState.ERRORED,
    TurnOutcome.CANCELLED: SessionState.CANCELLED,
}


class SessionController:
    """Own one conversation: at most one pipeline run in flight at a time."""

    def __init__(
        self,
        runner: PipelineRunner,
        *,
        session_id: str | None = None,
        bus: UpdateBus | None = None,
        profile: UserProfile | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_id = session_id or new_turn_id()[:12]
        self._runner = runner
        self._bus = bus or UpdateBus()
        self._profile = profile
        self._clock = clock
        self._log = MessageLog()
        self._machine = SessionStateMachine()
        self._token: CancellationToken | None = None
        self._task: asyncio.Task[Turn] | None = None
        self._status = ""

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backend: AnalysisBackend | None = None,
        **kwargs: object,
    ) -> SessionController:
        stages = build_stages(backend or ScriptedBackend(), settings.stage_delays)
        runner = PipelineRunner(stages, delay_scale=settings.delay_scale)
        return cls(runner, **kwargs)  # type: ignore[arg-type]

    @property
    def state(self) -> SessionState:
        return self._machine.state

    @property
    def machine(self) -> SessionStateMachine:
        return self._machine

    @property
    def status(self) -> str:
        return self._status

    @property
    def bus(self) -> UpdateBus:
        return self._bus

    @property
    def busy(self) -> bool:
        return not self._machine.idle

    @property
    def current_task(self) -> asyncio.Task[Turn] | None:
        return self._task

    def snapshot(self) -> tuple[Turn, ...]:
        return self._log.snapshot()

    def subscribe(self, handler: UpdateHandler) -> Callable[[], None]:
        return self._bus.subscribe(handler)

    def start(
        self,
        query: str,
        image: bytes | str | None = None,
        *,
        profile: UserProfile | None = None,
    ) -> asyncio.Task[Turn]:
        """Accept a turn and schedule its pipeline run on the running loop.

        The user turn and the in-flight agent placeholder are appended before
        this returns, so a second call fails with ``SessionBusyError`` until
        the scheduled run has finished.
        """

        if not self._machine.idle:
            raise SessionBusyError(f"session {self.session_id} is {self._machine.state}")
        if not query.strip() and image is None:
            raise InvalidInputError("submission needs text or an image")
        loop = asyncio.get_running_loop()

        self._machine.transition(SessionState.SUBMITTED)
        try:
            self._log.append(Turn(role=Role.USER, text=query.strip() or IMAGE_ONLY_PROMPT, created_at=self._clock()))
            seed = StructuredResult(
                query=query,
                user_profile=profile if profile is not None else self._profile,
                input_image=image,
            )
            agent_turn = self._log.append(
                Turn(role=Role.AGENT, text="", created_at=self._clock(), result=seed, in_flight=True)
            )
        except Exception:
            self._machine.transition(SessionState.IDLE)
            raise
        self._machine.transition(SessionState.PLACEHOLDER_CREATED)

        logger.info(
            "session.submit session_id={} turn_id={} has_image={}",
            self.session_id,
            agent_turn.id,
            image is not None,
        )
        self._token = CancellationToken()
        self._task = loop.create_task(self._drive(agent_turn.id, seed, self._token))
        return self._task

    async def submit(
        self,
        query: str,
        image: bytes | str | None = None,
        *,
        profile: UserProfile | None = None,
    ) -> Turn:
        """Run one turn to its end and return the finished agent turn.

        Raises ``StageFailureError`` when a stage fails; the failed turn stays
        in the log and the session is idle again when the error surfaces.
        """

        return await self.start(query, image, profile=profile)

    def cancel(self, reason: str | None = None) -> bool:
        """Ask the in-flight run to stop at the next stage boundary."""
        if self._machine.idle or self._token is None:
            return False
        logger.info("session.cancel session_id={} reason={}", self.session_id, reason or "-")
        self._token.cancel(reason)
        return True

    async def _drive(self, turn_id: str, seed: StructuredResult, token: CancellationToken) -> Turn:
        with session_context(self.session_id):
            try:
                await self._publish(turn_id)
                await self._runner.run(
                    seed,
                    on_status=partial(self._on_status, turn_id),
                    on_update=partial(self._on_update, turn_id),
                    token=token,
                )
            except PipelineCancelledError as exc:
                return await self._finish(turn_id, TurnOutcome.CANCELLED, error=str(exc))
            except asyncio.CancelledError:
                await self._finish(turn_id, TurnOutcome.CANCELLED, error="run task cancelled")
                raise
            except StageFailureError as exc:
                logger.warning(
                    "session.turn.failed session_id={} stage={} retryable={}",
                    self.session_id,
                    exc.stage_name,
                    exc.retryable,
                )
                await self._finish(turn_id, TurnOutcome.ERRORED, error=str(exc))
                raise
            except Exception as exc:
                logger.opt(exception=True).error("session.turn.error session_id={}", self.session_id)
                await self._finish(turn_id, TurnOutcome.ERRORED, error=str(exc))
                raise
            return await self._finish(turn_id, TurnOutcome.COMPLETED)

    async def _on_status(self, turn_id: str, stage: Stage) -> None:
        self._machine.transition(SessionState.RUNNING, stage=stage.name)
        self._status = stage.label
        await self._publish(turn_id)

    async def _on_update(self, turn_id: str, stage: Stage, partial_update: StageUpdate) -> StructuredResult:
        def _apply(turn: Turn) -> Turn:
            return dataclasses.replace(turn, result=merge(turn.result or StructuredResult(query=""), partial_update))

        turn = self._log.update(turn_id, _apply)
        await self._publish(turn_id)
        return turn.result or StructuredResult(query="")

    async def _finish(self, turn_id: str, outcome: TurnOutcome, *, error: str | None = None) -> Turn:
        def _close(turn: Turn) -> Turn:
            text = turn.result.rationale if outcome is TurnOutcome.COMPLETED and turn.result else turn.text
            return dataclasses.replace(turn, in_flight=False, outcome=outcome, error=error, text=text or "")

        turn = self._log.update(turn_id, _close)
        terminal = _OUTCOME_STATES[outcome]
        self._machine.transition(terminal)
        self._machine.transition(SessionState.IDLE)
        self._token = None
        self._status = ""
        logger.info("session.turn.finish session_id={} turn_id={} outcome={}", self.session_id, turn_id, outcome)
        await self._publish(turn_id, state=terminal)
        return turn

    async def _publish(self, turn_id: str, *, state: SessionState | None = None) -> None:
        turn = self._log.get(turn_id)
        await self._bus.publish(
            TurnUpdate(
                turn_id=turn_id,
                result=turn.result,
                status=self._status,
                in_flight=turn.in_flight,
                state=str(state or self._machine.state),
                snapshot=self._log.snapshot(),
            )
        )
