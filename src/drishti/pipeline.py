"""Sequential stage runner."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TypeAlias

from loguru import logger

from drishti.accumulator import StageUpdate
from drishti.cancellation import CancellationToken
from drishti.errors import PipelineCancelledError, PipelineConfigurationError, StageFailureError
from drishti.models import StructuredResult

StageFn: TypeAlias = Callable[[StructuredResult], Awaitable[StageUpdate]]
StatusCallback: TypeAlias = Callable[["Stage"], Awaitable[None]]
UpdateCallback: TypeAlias = Callable[["Stage", StageUpdate], Awaitable[StructuredResult]]


@dataclass(frozen=True)
class Stage:
    """One unit of pipeline work.

    ``run`` receives the result accumulated so far and returns the partial
    fields this stage owns. A stage without ``run`` only reports its label.
    ``delay`` is the simulated latency before the stage body executes.
    """

    name: str
    label: str
    run: StageFn | None = None
    delay: float = 0.0


async def _no_update(_: StructuredResult) -> StageUpdate:
    return {}


class PipelineRunner:
    """Run a fixed, ordered list of stages strictly one after another."""

    def __init__(self, stages: Sequence[Stage], *, delay_scale: float = 1.0) -> None:
        if not stages:
            raise PipelineConfigurationError("pipeline needs at least one stage")
        names = [stage.name for stage in stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise PipelineConfigurationError(f"duplicate stage names: {', '.join(duplicates)}")
        if delay_scale < 0:
            raise PipelineConfigurationError("delay_scale must be >= 0")
        self._stages = tuple(stages)
        self._delay_scale = delay_scale

    @property
    def stages(self) -> tuple[Stage, ...]:
        return self._stages

    async def run(
        self,
        seed: StructuredResult,
        *,
        on_status: StatusCallback,
        on_update: UpdateCallback,
        token: CancellationToken | None = None,
    ) -> StructuredResult:
        """Drive every stage over ``seed`` and return the final merged result.

        ``on_update`` merges a stage's partial update, publishes it and returns
        the merged result; the next stage starts only after it returns.
        Stage exceptions are wrapped in ``StageFailureError``; errors raised by
        the callbacks propagate unchanged.
        """

        token = token or CancellationToken()
        result = seed
        last = len(self._stages) - 1
        for index, stage in enumerate(self._stages):
            if token.cancelled:
                raise PipelineCancelledError(stage.name, token.reason)
            if result.is_final:
                raise PipelineConfigurationError(f"verdict was set before stage {stage.name!r}")

            logger.info("pipeline.stage.start stage={} index={}/{}", stage.name, index + 1, last + 1)
            await on_status(stage)
            if await token.sleep(stage.delay * self._delay_scale):
                raise PipelineCancelledError(stage.name, token.reason)

            started = time.monotonic()
            body = stage.run or _no_update
            try:
                partial = await body(result)
                if partial is not None and not isinstance(partial, Mapping):
                    raise TypeError(f"stage returned {type(partial).__name__}, expected a mapping of fields")
            except Exception as exc:
                logger.opt(exception=True).warning("pipeline.stage.error stage={}", stage.name)
                raise StageFailureError(stage.name, exc) from exc

            result = await on_update(stage, partial or {})
            elapsed = int((time.monotonic() - started) * 1000)
            logger.info(
                "pipeline.stage.finish stage={} fields={} elapsed_ms={}",
                stage.name,
                sorted(partial or {}),
                elapsed,
            )
        return result
