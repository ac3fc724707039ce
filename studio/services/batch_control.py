"""
Batch Control Service
start / pause / resume / cancel plus the read side used by the API.

Each control operation is a guarded status transition on the job store,
followed where needed by scheduling a driver step.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from studio.core.config import settings
from studio.core.exceptions import BatchValidationError, SchedulingFailure
from studio.models.batch_job import BatchJob, BatchJobStatus
from studio.models.generated_image import GeneratedImage
from studio.schemas.batch import GenerationParams
from studio.services.job_store import BatchJobStore
from studio.workers.queue import StepScheduler

logger = logging.getLogger(__name__)

PAUSABLE = frozenset({BatchJobStatus.PENDING.value, BatchJobStatus.PROCESSING.value})
CANCELLABLE = frozenset({
    BatchJobStatus.PENDING.value,
    BatchJobStatus.PROCESSING.value,
    BatchJobStatus.PAUSED.value,
})

RECENT_JOBS_LIMIT = 10


class BatchControlService:
    """Control operations, all scoped to the calling owner."""

    def __init__(self, store: BatchJobStore, scheduler: StepScheduler):
        self.store = store
        self.scheduler = scheduler

    def start(self, owner_id: str, params: Any, count: int) -> str:
        """
        Create a pending batch job and schedule its first step.

        Returns immediately with the job id; no item is executed here.

        Raises:
            BatchValidationError: count out of range or malformed params
            SchedulingFailure: the first step could not be enqueued
        """
        if not isinstance(count, int) or isinstance(count, bool):
            raise BatchValidationError("count must be an integer")
        if count < settings.MIN_BATCH_SIZE:
            raise BatchValidationError(f"count must be at least {settings.MIN_BATCH_SIZE}")
        if count > settings.MAX_BATCH_SIZE:
            raise BatchValidationError(f"count must be at most {settings.MAX_BATCH_SIZE}")

        template = self._validate_params(params)
        job = self.store.create(owner_id, count, template)
        try:
            self.scheduler.schedule(job.id, 0.0)
        except SchedulingFailure:
            # Left pending; pause then resume schedules it again
            self.store.release_step(job.id, owner_id)
            raise

        logger.info(f"Started batch {job.id}: {count} x '{template['prompt'][:50]}'")
        return job.id

    def pause(self, owner_id: str, job_id: str) -> BatchJob:
        """pending|processing -> paused. An in-flight item still gets recorded."""
        job = self.store.set_status(job_id, owner_id, BatchJobStatus.PAUSED.value, allowed_from=PAUSABLE)
        logger.info(f"Paused batch {job_id} at item {job.current_index}/{job.total_count}")
        return job

    def resume(self, owner_id: str, job_id: str) -> BatchJob:
        """
        paused -> processing, continuing at the persisted current_index.

        A step is scheduled only when the job has none queued or in flight;
        a step still waiting out its retry backoff keeps its delay.
        """
        job, needs_step = self.store.resume_processing(job_id, owner_id)
        if job.is_terminal:
            # Last item was recorded while paused
            logger.info(f"Resumed batch {job_id} with nothing left, now {job.status}")
            return job

        if not needs_step:
            logger.info(f"Resumed batch {job_id} at item {job.current_index}/{job.total_count}, step already queued")
            return job

        try:
            self.scheduler.schedule(job_id, 0.0)
        except SchedulingFailure:
            self.store.release_step(job_id, owner_id, status=BatchJobStatus.PAUSED.value)
            raise
        logger.info(f"Resumed batch {job_id} at item {job.current_index}/{job.total_count}")
        return job

    def cancel(self, owner_id: str, job_id: str) -> BatchJob:
        """pending|processing|paused -> cancelled. Terminal."""
        job = self.store.set_status(job_id, owner_id, BatchJobStatus.CANCELLED.value, allowed_from=CANCELLABLE)
        logger.info(
            f"Cancelled batch {job_id} "
            f"(completed={job.completed_count}, failed={job.failed_count}, total={job.total_count})"
        )
        return job

    def get_job(self, owner_id: str, job_id: str) -> BatchJob:
        return self.store.get(job_id, owner_id)

    def list_jobs(self, owner_id: str, limit: int = RECENT_JOBS_LIMIT) -> List[BatchJob]:
        return self.store.list_for_owner(owner_id, limit=limit)

    def list_active_jobs(self, owner_id: str) -> List[BatchJob]:
        return self.store.list_for_owner(owner_id, active_only=True)

    def get_job_items(self, owner_id: str, job_id: str) -> List[GeneratedImage]:
        return self.store.list_artifacts(job_id, owner_id)

    @staticmethod
    def _validate_params(params: Any) -> Dict[str, Any]:
        if isinstance(params, GenerationParams):
            model = params
        else:
            try:
                model = GenerationParams.model_validate(params)
            except ValidationError as e:
                raise BatchValidationError(f"Invalid generation params: {e.errors()}") from e
        return model.model_dump(exclude_none=True)


_control_service: Optional[BatchControlService] = None


def get_control_service() -> BatchControlService:
    """Get singleton BatchControlService."""
    global _control_service
    if _control_service is None:
        from studio.services.job_store import get_job_store
        from studio.workers.queue import get_step_scheduler

        _control_service = BatchControlService(get_job_store(), get_step_scheduler())
    return _control_service


__all__ = ["BatchControlService", "get_control_service", "RECENT_JOBS_LIMIT"]
