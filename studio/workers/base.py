"""
Base Worker Classes
Generation error taxonomy, retry/backoff policy and the base class for RQ workers.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from rq import get_current_job
from rq.job import Job

from studio.core.config import settings

logger = logging.getLogger(__name__)


class GenerationError(Exception):
    """Base exception for a failed generation attempt."""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        reason: str = "unknown",
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retryable = retryable
        self.reason = reason
        self.status_code = status_code


class NonRetryableGenerationError(GenerationError):
    """Error that should NOT be retried (e.g., invalid prompt, policy block)."""

    def __init__(self, message: str, reason: str = "unknown", status_code: Optional[int] = None):
        super().__init__(message, retryable=False, reason=reason, status_code=status_code)


class RetryableGenerationError(GenerationError):
    """Error that SHOULD be retried (e.g., upstream 5xx, timeout)."""

    def __init__(self, message: str, reason: str = "unknown", status_code: Optional[int] = None):
        super().__init__(message, retryable=True, reason=reason, status_code=status_code)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff bounds for one batch item."""
    max_retries: int = 3
    base_delay: float = 2.0  # seconds
    max_delay: float = 30.0  # seconds

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        )

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        return calculate_backoff_delay(attempt, self.base_delay, self.max_delay, rng=rng)


def calculate_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Exponential backoff with jitter.

    delay = min(base * 2^attempt, max) * uniform(0.75, 1.25)

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Cap applied before jitter
        rng: Source of uniform [0, 1) values

    Returns:
        Delay in seconds
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    exponential = min(base_delay * (2 ** attempt), max_delay)
    return exponential * (0.75 + rng() * 0.5)


class BaseWorker(ABC):
    """
    Abstract base class for RQ workers.

    Features:
    - RQ job meta tracking (when running inside an RQ worker)
    - Structured logging with timing
    """

    TASK_NAME = "task"

    def __init__(self):
        self.start_time: Optional[datetime] = None

    def _get_current_job(self) -> Optional[Job]:
        """Get the current RQ job context (None outside a worker)."""
        return get_current_job()

    def _update_meta(self, **values):
        """Attach values to the current RQ job meta, if any."""
        job = self._get_current_job()
        if job:
            job.meta.update(values)
            job.meta["updated_at"] = datetime.utcnow().isoformat()
            job.save_meta()

    def _log_start(self, **context):
        """Log task start with context."""
        self.start_time = datetime.utcnow()
        logger.info(f"[START] {self.TASK_NAME} | Context: {context}")

    def _log_complete(self, result_summary: str = ""):
        """Log task completion with timing."""
        duration = (datetime.utcnow() - self.start_time).total_seconds() if self.start_time else 0
        logger.info(f"[COMPLETE] {self.TASK_NAME} | Duration: {duration:.2f}s | {result_summary}")

    def _log_error(self, error: Exception):
        """Log task error with details."""
        duration = (datetime.utcnow() - self.start_time).total_seconds() if self.start_time else 0
        self._update_meta(error=str(error))
        logger.error(f"[ERROR] {self.TASK_NAME} | Duration: {duration:.2f}s | Error: {error}")

    @abstractmethod
    async def execute(self, *args, **kwargs) -> Any:
        """Execute the worker task. Must be implemented by subclasses."""


__all__ = [
    "GenerationError",
    "NonRetryableGenerationError",
    "RetryableGenerationError",
    "RetryPolicy",
    "calculate_backoff_delay",
    "BaseWorker",
]
