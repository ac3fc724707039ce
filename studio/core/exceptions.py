"""
Batch Job Exceptions
Structural errors surfaced synchronously to Control API callers.
Per-item generation failures live in studio.workers.base and never reach callers.
"""

from typing import Optional


class BatchJobError(Exception):
    """Base exception for batch job control errors."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class BatchValidationError(BatchJobError):
    """Malformed start request. The job is never created."""


class JobNotFoundError(BatchJobError):
    """No batch job with the given id."""


class NotAuthorizedError(BatchJobError):
    """Batch job exists but belongs to another owner."""


class InvalidTransitionError(BatchJobError):
    """Requested operation is not allowed from the job's current status."""

    def __init__(self, message: str, job_id: Optional[str] = None, status: Optional[str] = None):
        super().__init__(message, job_id=job_id)
        self.status = status


class SchedulingFailure(BatchJobError):
    """The deferred-invocation backend refused to enqueue the next step."""


__all__ = [
    "BatchJobError",
    "BatchValidationError",
    "JobNotFoundError",
    "NotAuthorizedError",
    "InvalidTransitionError",
    "SchedulingFailure",
]
