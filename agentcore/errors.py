"""Exception types raised inside the orchestration core."""


class OrchestrationError(Exception):
    """Base class for orchestration failures."""


class ExternalCallError(OrchestrationError):
    """An external collaborator failed or timed out."""

    def __init__(self, label: str, cause: BaseException | None = None):
        self.label = label
        self.cause = cause
        detail = f": {type(cause).__name__}" if cause is not None else ""
        super().__init__(f"external call '{label}' failed{detail}")


class GenerationError(OrchestrationError):
    """The generation backend could not produce text."""


class InvalidControlError(ValueError):
    """An operator control update was rejected."""
