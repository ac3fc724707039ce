"""
Batch Driver
Walks a batch job through its items, one step per scheduled invocation.

The driver keeps no state between steps. Each step re-reads the job row,
executes the item at current_index, records the outcome through the job store
and schedules the following step. Paused, cancelled and finished jobs make a
step a no-op, which keeps duplicate or late deliveries harmless.

State machine:
    pending -> processing            first step runs
    processing -> processing         item recorded, more items left
    processing -> completed|failed   last item recorded (failed only if every item failed)
    pending|processing -> paused     Control API; the in-flight item still gets recorded
    paused -> processing             Control API; resumes at the persisted index
    pending|processing|paused -> cancelled   Control API; an in-flight outcome is discarded

A job has at most one step queued or running (batch_jobs.step_outstanding).
A step that finds its job paused clears the flag and ends the chain; resume()
schedules a new step only when the flag is clear.
"""

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from studio.core.config import settings
from studio.core.exceptions import InvalidTransitionError
from studio.models.batch_job import BatchJob, BatchJobStatus
from studio.models.generated_image import GeneratedImage
from studio.services.generation import (
    Artifact,
    GenerationExecutor,
    GenerationItem,
    execute_generation,
    resolve_item,
)
from studio.services.job_store import BatchJobStore, new_image_id
from studio.workers.base import BaseWorker, GenerationError, RetryPolicy
from studio.workers.queue import StepScheduler

logger = logging.getLogger(__name__)


class StepAction(str, Enum):
    """What a step did with its item outcome."""
    RECORD_SUCCESS = "record_success"
    RECORD_FAILURE = "record_failure"
    RETRY = "retry"


@dataclass(frozen=True)
class StepDecision:
    action: StepAction
    delay: float  # seconds before the next step, if one is due


@dataclass
class StepReport:
    """Summary of one driver step (also the RQ job result)."""
    job_id: str
    outcome: str
    status: Optional[str] = None
    index: Optional[int] = None
    next_delay: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "outcome": self.outcome,
            "status": self.status,
            "index": self.index,
            "next_delay": self.next_delay,
        }


def decide(
    retry_count: int,
    error: Optional[GenerationError],
    policy: RetryPolicy,
    interval: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> StepDecision:
    """
    Pure transition rule for one item outcome.

    success                        -> record it, next item after `interval`
    retryable, budget left         -> retry same index after backoff(retry_count)
    retryable, budget exhausted    -> record failure, next item after `interval`
    non-retryable                  -> record failure, next item after `interval`
    """
    if error is None:
        return StepDecision(StepAction.RECORD_SUCCESS, interval)
    if error.retryable and retry_count < policy.max_retries:
        return StepDecision(StepAction.RETRY, policy.delay_for(retry_count, rng=rng))
    return StepDecision(StepAction.RECORD_FAILURE, interval)


def next_step_delay(job: BatchJob, decision: StepDecision) -> Optional[float]:
    """Delay before the next step, or None when the job must not advance."""
    if job.status != BatchJobStatus.PROCESSING.value:
        return None
    if job.current_index >= job.total_count:
        return None
    return decision.delay


def build_image_row(item: GenerationItem, artifact: Artifact) -> GeneratedImage:
    """generated_images row for a successful item."""
    return GeneratedImage(
        id=new_image_id(),
        owner_id=item.owner_id,
        batch_job_id=item.job_id,
        item_index=item.index,
        storage_key=artifact.storage_key,
        url=artifact.url,
        content_type=artifact.content_type,
        size_bytes=artifact.size_bytes,
        prompt=item.params["prompt"],
        model=artifact.model,
        width=artifact.width,
        height=artifact.height,
        seed=artifact.seed,
        generation_params=artifact.params,
        visibility="unlisted" if item.params.get("private") else "public",
    )


class BatchDriver(BaseWorker):
    """Executes single batch steps."""

    TASK_NAME = "batch_step"

    def __init__(
        self,
        store: BatchJobStore,
        executor: GenerationExecutor,
        scheduler: StepScheduler,
        policy: Optional[RetryPolicy] = None,
        interval: Optional[float] = None,
        rng: Callable[[], float] = random.random,
        seed_rng: Callable[[int, int], int] = random.randint,
    ):
        super().__init__()
        self.store = store
        self.executor = executor
        self.scheduler = scheduler
        self.policy = policy or RetryPolicy.from_settings()
        self.interval = settings.BATCH_ITEM_INTERVAL_SECONDS if interval is None else interval
        self.rng = rng
        self.seed_rng = seed_rng

    async def execute(self, job_id: str) -> StepReport:
        return await self.step(job_id)

    async def step(self, job_id: str) -> StepReport:
        """Run one step for `job_id`. Safe to call any number of times."""
        job = self.store.get_internal(job_id)
        if job is None:
            logger.warning(f"Batch job {job_id} not found, dropping step")
            return StepReport(job_id, "missing")

        if job.is_terminal:
            logger.info(f"Batch {job_id} is {job.status}, stopping")
            return StepReport(job_id, "skipped", status=job.status)

        owner_id = job.owner_id
        try:
            job = self.store.claim_step(job_id, owner_id)
        except InvalidTransitionError as e:
            # Cancelled between the read and the claim
            logger.info(f"Batch {job_id} not runnable: {e}")
            return StepReport(job_id, "skipped", status=e.status)

        if job.status != BatchJobStatus.PROCESSING.value:
            logger.info(f"Batch {job_id} is {job.status}, ending step chain")
            return StepReport(job_id, "skipped", status=job.status)

        if job.current_index >= job.total_count:
            job = self.store.finalize(job_id, owner_id)
            return StepReport(job_id, "finalized", status=job.status)

        index = job.current_index
        item = resolve_item(job_id, owner_id, index, job.generation_params, rng=self.seed_rng)
        self._log_start(job_id=job_id, item=f"{index + 1}/{job.total_count}",
                        attempt=job.current_item_retry_count + 1)
        self._update_meta(batch_job_id=job_id, item_index=index)

        artifact: Optional[Artifact] = None
        error: Optional[GenerationError] = None
        try:
            artifact = await execute_generation(self.executor, item)
        except GenerationError as e:
            error = e
            logger.warning(
                f"Batch {job_id} item {index + 1} failed "
                f"({'retryable' if e.retryable else 'non-retryable'}, {e.reason}): {e.message}"
            )

        decision = decide(job.current_item_retry_count, error, self.policy, self.interval, self.rng)

        try:
            if decision.action == StepAction.RECORD_SUCCESS:
                updated = self.store.record_success(job_id, owner_id, index, build_image_row(item, artifact))
            elif decision.action == StepAction.RETRY:
                updated = self.store.note_retry(job_id, owner_id, index, error.message)
            else:
                updated = self.store.record_failure(job_id, owner_id, index, error.message)
        except InvalidTransitionError as e:
            # Cancelled while the item was in flight; terminal rows take no more writes
            logger.info(f"Batch {job_id} item {index + 1} outcome discarded: job is {e.status}")
            return StepReport(job_id, "discarded", status=e.status, index=index)

        if updated is None:
            logger.warning(f"Batch {job_id} item {index + 1} was already recorded, dropping duplicate step")
            return StepReport(job_id, "duplicate", index=index)

        delay = next_step_delay(updated, decision)
        if delay is not None:
            if decision.action == StepAction.RETRY:
                logger.info(
                    f"[Retry {updated.current_item_retry_count}/{self.policy.max_retries}] "
                    f"batch {job_id} item {index + 1} in {delay:.1f}s"
                )
            try:
                self.scheduler.schedule(job_id, delay)
            except Exception as e:
                # Row stays processing with a stale updated_at; a watchdog has to pick it up
                self._log_error(e)
                raise

        self._log_complete(
            f"Batch {job_id} item {index + 1}/{updated.total_count}: {decision.action.value} "
            f"(completed={updated.completed_count}, failed={updated.failed_count}, status={updated.status})"
        )
        return StepReport(job_id, decision.action.value, status=updated.status, index=index, next_delay=delay)


_driver: Optional[BatchDriver] = None


def get_batch_driver() -> BatchDriver:
    """Get singleton BatchDriver wired from settings."""
    global _driver
    if _driver is None:
        from studio.services.job_store import get_job_store
        from studio.workers.queue import get_step_scheduler

        _driver = BatchDriver(
            store=get_job_store(),
            executor=GenerationExecutor(),
            scheduler=get_step_scheduler(),
        )
    return _driver


__all__ = [
    "StepAction",
    "StepDecision",
    "StepReport",
    "decide",
    "next_step_delay",
    "build_image_row",
    "BatchDriver",
    "get_batch_driver",
]
