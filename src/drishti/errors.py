"""Exception types for the Drishti session core."""

from __future__ import annotations


class DrishtiError(Exception):
    """Base exception for Drishti."""


class OrderViolationError(DrishtiError):
    """Raised when a turn is appended with a timestamp older than the last turn."""


class TurnNotFoundError(DrishtiError, LookupError):
    """Raised when an update targets a turn id the log does not hold."""

    def __init__(self, turn_id: str) -> None:
        super().__init__(f"turn not found: {turn_id}")
        self.turn_id = turn_id


class FieldAlreadySetError(DrishtiError):
    """Raised when a stage emits a result field that an earlier stage already set."""

    def __init__(self, field: str) -> None:
        super().__init__(f"result field already set: {field}")
        self.field = field


class UnknownFieldError(DrishtiError):
    """Raised when a partial update names a field stages are not allowed to write."""

    def __init__(self, field: str) -> None:
        super().__init__(f"field is not writable by a stage: {field}")
        self.field = field


class SessionBusyError(DrishtiError):
    """Raised when a submission arrives while a turn is still in flight."""


class InvalidInputError(DrishtiError, ValueError):
    """Raised when a submission carries neither text nor an image."""


class MalformedInputError(DrishtiError):
    """Raised by a stage when the submitted input cannot be analyzed at all."""


class StageFailureError(DrishtiError):
    """A pipeline stage failed; carries the stage name and the underlying cause."""

    def __init__(self, stage_name: str, cause: BaseException) -> None:
        super().__init__(f"stage {stage_name!r} failed: {cause!s}")
        self.stage_name = stage_name
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return not isinstance(self.cause, MalformedInputError)


class PipelineCancelledError(DrishtiError):
    """Raised by the runner when a cancellation token fires between stages."""

    def __init__(self, stage_name: str, reason: str | None = None) -> None:
        super().__init__(f"pipeline cancelled at stage {stage_name!r}" + (f": {reason}" if reason else ""))
        self.stage_name = stage_name
        self.reason = reason


class PipelineConfigurationError(DrishtiError):
    """Raised when a stage list cannot form a valid pipeline."""


class InvalidTransitionError(DrishtiError):
    """Raised when the session state machine is asked for a move it does not allow."""
