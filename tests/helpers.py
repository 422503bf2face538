from __future__ import annotations

from drishti.pipeline import PipelineRunner
from drishti.session import SessionController
from drishti.stages import AnalysisBackend, ScriptedBackend, build_stages

ZERO_DELAYS = {"scan": 0.0, "extract": 0.0, "reason": 0.0, "search": 0.0, "verdict": 0.0}


def make_session(backend: AnalysisBackend | None = None, **kwargs) -> SessionController:
    runner = PipelineRunner(build_stages(backend or ScriptedBackend(), ZERO_DELAYS))
    return SessionController(runner, **kwargs)
