"""Drishti - staged label analysis over a conversational session."""

from .accumulator import merge
from .bus import TurnUpdate, UpdateBus
from .cancellation import CancellationToken
from .errors import (
    DrishtiError,
    FieldAlreadySetError,
    InvalidInputError,
    OrderViolationError,
    SessionBusyError,
    StageFailureError,
    TurnNotFoundError,
)
from .log import MessageLog
from .models import ProductData, Role, StructuredResult, Turn, TurnOutcome, UserProfile, Verdict
from .pipeline import PipelineRunner, Stage
from .session import SessionController
from .stages import ScriptedBackend, build_stages
from .state import SessionState

__version__ = "0.1.0"

__all__ = [
    "CancellationToken",
    "DrishtiError",
    "FieldAlreadySetError",
    "InvalidInputError",
    "MessageLog",
    "OrderViolationError",
    "PipelineRunner",
    "ProductData",
    "Role",
    "ScriptedBackend",
    "SessionBusyError",
    "SessionController",
    "SessionState",
    "Stage",
    "StageFailureError",
    "StructuredResult",
    "Turn",
    "TurnNotFoundError",
    "TurnOutcome",
    "TurnUpdate",
    "UpdateBus",
    "UserProfile",
    "Verdict",
    "build_stages",
    "merge",
]
