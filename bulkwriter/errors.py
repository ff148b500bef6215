"""
Error taxonomy for bulk write operations.

Every failure kind is terminal for the unit it affects: a bad parameter set
stops setup, a remote failure stops the call that hit it, and a missing job
id stops the task that looked for it.
"""

from typing import List, Optional


class BulkWriterError(Exception):
    """Base class for all bulkwriter errors."""
    pass


class ValidationError(BulkWriterError):
    """Raised when job parameters or settings are invalid."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid parameters")


class RemoteServiceError(BulkWriterError):
    """
    Raised for any failure talking to the remote service.

    The original exception is kept on ``cause`` (and chained as ``__cause__``
    by callers using ``raise ... from``).
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.cause = cause
        self.status = status


class ConfigurationMissingError(BulkWriterError):
    """Raised when a task cannot find a value setup should have published."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            f"Configuration key '{key}' is not set; job setup never ran or never published"
        )


class ProtocolError(BulkWriterError):
    """Raised when the job lifecycle is driven out of order."""
    pass
