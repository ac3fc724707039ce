"""
Step Scheduling
The durable deferred-invocation primitive the batch driver is built on:
schedule(job_id, delay) -> the driver's step runs for that job after `delay` seconds.

- RQStepScheduler: Redis-backed, survives process restarts (production)
- ThreadStepScheduler: timer threads inside the API process (local dev, not durable)
- InlineStepScheduler: queued in memory and drained explicitly (tests, scripts)
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, List, Optional, Tuple

from redis.exceptions import RedisError
from rq import Queue

from studio.core.config import settings
from studio.core.exceptions import SchedulingFailure
from studio.core.redis import get_redis, Queues

logger = logging.getLogger(__name__)

STEP_TASK_PATH = "studio.workers.tasks.run_batch_step_task"


class StepScheduler(ABC):
    """schedule(job_id, delay) primitive."""

    @abstractmethod
    def schedule(self, job_id: str, delay: float = 0.0) -> None:
        """
        Arrange for one driver step on `job_id` after `delay` seconds.

        Raises:
            SchedulingFailure: if the step could not be enqueued
        """


class RQStepScheduler(StepScheduler):
    """
    Enqueues driver steps on an RQ queue.

    Delayed steps use RQ's scheduler, so workers must run with_scheduler=True
    (scripts/run_workers.py does).
    """

    def __init__(self, queue_name: str = Queues.BATCH, connection=None):
        self.queue_name = queue_name
        self._redis = connection
        self._queue: Optional[Queue] = None

    @property
    def redis(self):
        """Lazy Redis connection."""
        if self._redis is None:
            self._redis = get_redis()
        return self._redis

    @property
    def queue(self) -> Queue:
        if self._queue is None:
            self._queue = Queue(
                name=self.queue_name,
                connection=self.redis,
                default_timeout=settings.JOB_TIMEOUT_BATCH_STEP,
            )
            logger.debug(f"Created queue: {self.queue_name}")
        return self._queue

    def schedule(self, job_id: str, delay: float = 0.0) -> None:
        meta = {
            "type": "batch_step",
            "batch_job_id": job_id,
            "scheduled_at": datetime.utcnow().isoformat(),
        }
        try:
            if delay and delay > 0:
                rq_job = self.queue.enqueue_in(
                    timedelta(seconds=delay),
                    STEP_TASK_PATH,
                    job_id,
                    job_timeout=settings.JOB_TIMEOUT_BATCH_STEP,
                    meta=meta,
                )
            else:
                rq_job = self.queue.enqueue(
                    STEP_TASK_PATH,
                    job_id,
                    job_timeout=settings.JOB_TIMEOUT_BATCH_STEP,
                    meta=meta,
                )
        except RedisError as e:
            logger.error(f"Failed to schedule step for {job_id}: {e}")
            raise SchedulingFailure(f"Could not schedule batch step: {e}", job_id=job_id) from e

        logger.info(f"Scheduled step for {job_id} in {delay:.1f}s (rq job {rq_job.id})")


class InlineStepScheduler(StepScheduler):
    """
    Records scheduled steps in memory; run_until_idle() executes them in order.

    Delays are recorded, not slept, so time is virtual.
    """

    def __init__(self):
        self.pending: Deque[Tuple[str, float]] = deque()
        self.history: List[Tuple[str, float]] = []
        self.fail_next = False

    def schedule(self, job_id: str, delay: float = 0.0) -> None:
        if self.fail_next:
            self.fail_next = False
            raise SchedulingFailure("Scheduler unavailable", job_id=job_id)
        self.pending.append((job_id, delay))
        self.history.append((job_id, delay))

    def run_until_idle(self, step: Callable[[str], Any], max_steps: int = 10_000) -> int:
        """Run queued steps (including ones they schedule). Returns steps run."""
        ran = 0
        while self.pending:
            if ran >= max_steps:
                raise RuntimeError(f"Scheduler did not go idle after {max_steps} steps")
            job_id, _ = self.pending.popleft()
            result = step(job_id)
            if asyncio.iscoroutine(result):
                asyncio.run(result)
            ran += 1
        return ran

    def clear(self) -> None:
        self.pending.clear()


class ThreadStepScheduler(StepScheduler):
    """Runs steps on timer threads in this process. Steps are lost on restart."""

    def __init__(self, runner: Optional[Callable[[str], Any]] = None):
        self._runner = runner

    def _run(self, job_id: str) -> None:
        runner = self._runner
        if runner is None:
            from studio.workers.driver import get_batch_driver
            runner = lambda jid: asyncio.run(get_batch_driver().step(jid))  # noqa: E731
        try:
            runner(job_id)
        except Exception:
            logger.exception(f"Batch step failed for {job_id}")

    def schedule(self, job_id: str, delay: float = 0.0) -> None:
        timer = threading.Timer(max(delay, 0.0), self._run, args=(job_id,))
        timer.daemon = True
        timer.start()


_scheduler: Optional[StepScheduler] = None


def get_step_scheduler() -> StepScheduler:
    """Get the process-wide scheduler selected by SCHEDULER_BACKEND."""
    global _scheduler
    if _scheduler is None:
        if settings.SCHEDULER_BACKEND == "thread":
            _scheduler = ThreadStepScheduler()
        else:
            _scheduler = RQStepScheduler()
        logger.info(f"Step scheduler: {type(_scheduler).__name__}")
    return _scheduler


__all__ = [
    "StepScheduler",
    "RQStepScheduler",
    "InlineStepScheduler",
    "ThreadStepScheduler",
    "get_step_scheduler",
]
