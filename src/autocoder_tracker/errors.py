from __future__ import annotations


class TrackerError(Exception):
    """Base class for autocoder-tracker errors."""


class ValidationError(TrackerError, ValueError):
    """Bad intake input. Raised before any state is touched."""


class TransientExternalError(TrackerError):
    """A branch or pull-request lookup against the VCS host failed."""


class ReconciliationError(TrackerError):
    """A work item cannot be matched against the VCS host at all."""


class PersistenceError(TrackerError):
    """Reading or writing the persisted collection failed."""


class WorkerError(TrackerError):
    """The code-generation worker exited unsuccessfully."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode
