# errors.py
"""
Exception taxonomy for the progressive workflow.

Phase entry points never let these escape; they are converted into
`{success: False, error: ...}` results after any compensating refund.
"""


class WorkflowError(Exception):
    """Base class for every failure the workflow knows how to report."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WorkflowError):
    """Bad input. Raised before any side effect."""


class InvalidTransitionError(ValidationError):
    """The session is not in a state that allows the requested operation."""


class InsufficientCreditsError(WorkflowError):
    """The ledger refused a reservation. No generation was attempted."""


class GenerationError(WorkflowError):
    """The image generator produced no usable image."""

    def __init__(self, message: str, view: str = "front"):
        super().__init__(message)
        self.view = view


class UploadError(WorkflowError):
    """The object store did not return a canonical URL."""

    def __init__(self, message: str, view: str = "front"):
        super().__init__(message)
        self.view = view


class PersistenceError(WorkflowError):
    """A database write failed. Only transient failures are retried."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class IncompleteBatchError(WorkflowError):
    """A revision batch was submitted without all five views."""


class NotFoundError(WorkflowError):
    """Missing row, or a row owned by another user."""
