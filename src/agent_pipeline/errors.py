from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for every failure reported by the pipeline core."""


class InvalidTransitionError(PipelineError):
    """Raised when an operation is not legal in the current phase."""

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        self.phase = phase


class NoActiveAgentError(PipelineError):
    """Raised when an agent-scoped operation runs while no agent is active."""

    def __init__(self, message: str, *, phase: str | None = None) -> None:
        super().__init__(message)
        self.phase = phase


class UnknownAgentError(PipelineError):
    """Raised when an agent name is not part of the pipeline."""


class PipelineStateError(PipelineError):
    """Raised when shared-state operations fail."""


class StoreCorruptError(PipelineStateError):
    """Raised when the persisted state record cannot be parsed."""


class StoreUnwritableError(PipelineStateError):
    """Raised when the persisted state cannot be written to disk."""


class PipelineConfigError(PipelineError):
    """Raised when the pipeline configuration file cannot be used."""
