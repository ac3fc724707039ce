# Database models package
from studio.models.batch_job import BatchJob, BatchJobStatus, TERMINAL_STATUSES, ACTIVE_STATUSES
from studio.models.generated_image import GeneratedImage

__all__ = [
    "BatchJob",
    "BatchJobStatus",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "GeneratedImage",
]
