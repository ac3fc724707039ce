# Workers package - batch steps on RQ

from studio.workers.base import (
    GenerationError,
    NonRetryableGenerationError,
    RetryableGenerationError,
    RetryPolicy,
    calculate_backoff_delay,
    BaseWorker
)
from studio.workers.queue import (
    StepScheduler,
    RQStepScheduler,
    InlineStepScheduler,
    ThreadStepScheduler,
    get_step_scheduler
)

__all__ = [
    # Base
    "GenerationError",
    "NonRetryableGenerationError",
    "RetryableGenerationError",
    "RetryPolicy",
    "calculate_backoff_delay",
    "BaseWorker",
    # Queue
    "StepScheduler",
    "RQStepScheduler",
    "InlineStepScheduler",
    "ThreadStepScheduler",
    "get_step_scheduler",
]
