"""
Batch Job Store
Durable record of batch jobs and the single source of truth for progress.

Every patch is a single-row transaction: the row is loaded (FOR UPDATE where
the database supports it), ownership and status are checked, the mutation is
applied, updated_at is refreshed, and the committed row is published to the
progress broker.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from studio.core.exceptions import (
    InvalidTransitionError,
    JobNotFoundError,
    NotAuthorizedError,
)
from studio.models.batch_job import (
    ACTIVE_STATUSES,
    BatchJob,
    BatchJobStatus,
)
from studio.models.generated_image import GeneratedImage
from studio.services.progress import ProgressBroker

logger = logging.getLogger(__name__)


def new_batch_job_id() -> str:
    return f"batch_{uuid.uuid4().hex[:12]}"


def new_image_id() -> str:
    return f"img_{uuid.uuid4().hex[:12]}"


def final_status(job: BatchJob) -> str:
    """Terminal status for a job whose items have all been attempted."""
    if job.failed_count >= job.total_count:
        return BatchJobStatus.FAILED.value
    return BatchJobStatus.COMPLETED.value


class BatchJobStore:
    """Guarded persistence operations over batch_jobs rows."""

    def __init__(self, session_factory: sessionmaker, broker: Optional[ProgressBroker] = None):
        self._session_factory = session_factory
        self._broker = broker

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(self, owner_id: str, total_count: int, generation_params: Dict[str, Any]) -> BatchJob:
        """Insert a new pending job."""
        now = datetime.utcnow()
        job = BatchJob(
            id=new_batch_job_id(),
            owner_id=owner_id,
            status=BatchJobStatus.PENDING.value,
            total_count=total_count,
            completed_count=0,
            failed_count=0,
            current_index=0,
            current_item_retry_count=0,
            step_outstanding=True,
            generation_params=dict(generation_params),
            item_artifact_ids=[],
            created_at=now,
            updated_at=now,
        )
        with self._session_factory() as db:
            db.add(job)
            db.commit()
        logger.info(f"Created batch job {job.id} ({total_count} items) for owner {owner_id}")
        self._publish(job)
        return job

    def get(self, job_id: str, owner_id: str) -> BatchJob:
        """Read the full row, scoped to the owner."""
        with self._session_factory() as db:
            job = db.get(BatchJob, job_id)
            self._check_owner(job, job_id, owner_id)
            return job

    def get_internal(self, job_id: str) -> Optional[BatchJob]:
        """Unscoped read for the driver, which acts on behalf of the row's owner."""
        with self._session_factory() as db:
            return db.get(BatchJob, job_id)

    def list_for_owner(
        self,
        owner_id: str,
        limit: Optional[int] = None,
        active_only: bool = False,
    ) -> List[BatchJob]:
        """Owner's jobs, newest first."""
        with self._session_factory() as db:
            query = db.query(BatchJob).filter(BatchJob.owner_id == owner_id)
            if active_only:
                query = query.filter(BatchJob.status.in_(ACTIVE_STATUSES))
            query = query.order_by(BatchJob.created_at.desc(), BatchJob.id.desc())
            if limit is not None:
                query = query.limit(limit)
            return query.all()

    def list_artifacts(self, job_id: str, owner_id: str) -> List[GeneratedImage]:
        """Artifacts of a job in append order."""
        with self._session_factory() as db:
            job = db.get(BatchJob, job_id)
            self._check_owner(job, job_id, owner_id)
            ids = list(job.item_artifact_ids or [])
            if not ids:
                return []
            images = db.query(GeneratedImage).filter(GeneratedImage.id.in_(ids)).all()
            by_id = {image.id: image for image in images}
            return [by_id[i] for i in ids if i in by_id]

    # ------------------------------------------------------------------
    # Guarded patches
    # ------------------------------------------------------------------

    def set_status(
        self,
        job_id: str,
        owner_id: str,
        status: str,
        allowed_from: Optional[frozenset] = None,
    ) -> BatchJob:
        """Change status. With allowed_from, the current status must be one of those."""
        status = BatchJobStatus(status).value

        def mutate(job: BatchJob, db: Session):
            if allowed_from is not None and job.status not in allowed_from:
                raise InvalidTransitionError(
                    f"Cannot move batch job from {job.status} to {status}",
                    job_id=job.id,
                    status=job.status,
                )
            job.status = status

        return self._patch(job_id, owner_id, mutate)

    def increment_completed(self, job_id: str, owner_id: str) -> BatchJob:
        def mutate(job: BatchJob, db: Session):
            self._ensure_room(job)
            job.completed_count += 1

        return self._patch(job_id, owner_id, mutate)

    def increment_failed(self, job_id: str, owner_id: str) -> BatchJob:
        def mutate(job: BatchJob, db: Session):
            self._ensure_room(job)
            job.failed_count += 1

        return self._patch(job_id, owner_id, mutate)

    def append_artifact(self, job_id: str, owner_id: str, artifact_id: str) -> BatchJob:
        def mutate(job: BatchJob, db: Session):
            job.item_artifact_ids = list(job.item_artifact_ids or []) + [artifact_id]

        return self._patch(job_id, owner_id, mutate)

    def advance_index(self, job_id: str, owner_id: str) -> BatchJob:
        def mutate(job: BatchJob, db: Session):
            if job.current_index >= job.total_count:
                raise InvalidTransitionError(
                    "All items have already been attempted", job_id=job.id, status=job.status
                )
            job.current_index += 1
            job.current_item_retry_count = 0

        return self._patch(job_id, owner_id, mutate)

    def note_retry(self, job_id: str, owner_id: str, index: int, error: str) -> Optional[BatchJob]:
        """Persist one more retry spent on item `index`. None if the item was already recorded."""

        def mutate(job: BatchJob, db: Session):
            if job.current_index != index:
                return False
            job.current_item_retry_count += 1
            job.last_error = error
            self._settle_step(job)

        return self._patch(job_id, owner_id, mutate)

    def record_success(
        self,
        job_id: str,
        owner_id: str,
        index: int,
        image: GeneratedImage,
    ) -> Optional[BatchJob]:
        """
        Store the artifact row and apply incrementCompleted, appendArtifact and
        advanceIndex in one transaction. Finalizes the job after its last item.

        Returns None when item `index` was already recorded (duplicate delivery).
        """

        def mutate(job: BatchJob, db: Session):
            if job.current_index != index:
                return False
            self._ensure_room(job)
            db.add(image)
            job.completed_count += 1
            job.item_artifact_ids = list(job.item_artifact_ids or []) + [image.id]
            self._advance(job)
            self._settle_step(job)

        return self._patch(job_id, owner_id, mutate)

    def record_failure(self, job_id: str, owner_id: str, index: int, error: str) -> Optional[BatchJob]:
        """incrementFailed + advanceIndex in one transaction; the item is skipped."""

        def mutate(job: BatchJob, db: Session):
            if job.current_index != index:
                return False
            self._ensure_room(job)
            job.failed_count += 1
            job.last_error = error
            self._advance(job)
            self._settle_step(job)

        return self._patch(job_id, owner_id, mutate)

    def claim_step(self, job_id: str, owner_id: str) -> BatchJob:
        """
        Entry point of every driver step.

        pending -> processing; processing is left as is. On a paused row the
        step ends the chain instead: step_outstanding is cleared so the next
        resume() schedules a fresh step. The caller runs an item only when the
        returned row is processing.
        """

        def mutate(job: BatchJob, db: Session):
            if job.status == BatchJobStatus.PENDING.value:
                job.status = BatchJobStatus.PROCESSING.value
            elif job.status == BatchJobStatus.PAUSED.value and job.step_outstanding:
                job.step_outstanding = False
            else:
                return False

        return self._patch(job_id, owner_id, mutate) or self.get(job_id, owner_id)

    def resume_processing(self, job_id: str, owner_id: str) -> Tuple[BatchJob, bool]:
        """
        paused -> processing, or straight to completed/failed when every item
        was recorded while paused.

        Returns the row and whether the caller must schedule a step. No step is
        needed when the chain that was live before the pause is still queued
        or in flight; it picks the job up again.
        """
        needs_step = {"value": False}

        def mutate(job: BatchJob, db: Session):
            if job.status != BatchJobStatus.PAUSED.value:
                raise InvalidTransitionError(
                    f"Cannot move batch job from {job.status} to processing",
                    job_id=job.id,
                    status=job.status,
                )
            if job.current_index >= job.total_count:
                job.status = final_status(job)
                job.step_outstanding = False
                return
            job.status = BatchJobStatus.PROCESSING.value
            if not job.step_outstanding:
                job.step_outstanding = True
                needs_step["value"] = True

        job = self._patch(job_id, owner_id, mutate)
        return job, needs_step["value"]

    def release_step(self, job_id: str, owner_id: str, status: Optional[str] = None) -> BatchJob:
        """Forget a step that could not be scheduled, optionally restoring `status`."""

        def mutate(job: BatchJob, db: Session):
            job.step_outstanding = False
            if status is not None:
                job.status = BatchJobStatus(status).value

        return self._patch(job_id, owner_id, mutate)

    def finalize(self, job_id: str, owner_id: str) -> BatchJob:
        """Mark a fully attempted job completed/failed."""

        def mutate(job: BatchJob, db: Session):
            if job.current_index < job.total_count:
                raise InvalidTransitionError(
                    f"Batch job still has {job.total_count - job.current_index} items left",
                    job_id=job.id,
                    status=job.status,
                )
            job.status = final_status(job)

        return self._patch(job_id, owner_id, mutate)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _advance(job: BatchJob):
        job.current_index += 1
        job.current_item_retry_count = 0
        # Paused jobs stay paused; resume() finalizes them
        if job.current_index >= job.total_count and job.status == BatchJobStatus.PROCESSING.value:
            job.status = final_status(job)

    @staticmethod
    def _settle_step(job: BatchJob):
        # The recording step schedules a successor only while this holds
        job.step_outstanding = (
            job.status == BatchJobStatus.PROCESSING.value and job.current_index < job.total_count
        )

    @staticmethod
    def _ensure_room(job: BatchJob):
        if job.completed_count + job.failed_count >= job.total_count:
            raise InvalidTransitionError(
                "Every item already has an outcome", job_id=job.id, status=job.status
            )

    @staticmethod
    def _check_owner(job: Optional[BatchJob], job_id: str, owner_id: str):
        if job is None:
            raise JobNotFoundError(f"Batch job not found: {job_id}", job_id=job_id)
        if job.owner_id != owner_id:
            raise NotAuthorizedError(f"Not authorized to access batch job {job_id}", job_id=job_id)

    def _patch(
        self,
        job_id: str,
        owner_id: str,
        mutate: Callable[[BatchJob, Session], Optional[bool]],
    ) -> Optional[BatchJob]:
        """
        Apply `mutate` to one row atomically.

        `mutate` may raise to abort (nothing is written) or return False to
        signal a no-op (nothing is written, None is returned).
        """
        with self._session_factory() as db:
            job = db.query(BatchJob).filter(BatchJob.id == job_id).with_for_update().first()
            self._check_owner(job, job_id, owner_id)
            if job.is_terminal:
                status = job.status
                db.rollback()
                raise InvalidTransitionError(
                    f"Batch job {job_id} is already {status}",
                    job_id=job_id,
                    status=status,
                )
            try:
                applied = mutate(job, db)
            except Exception:
                db.rollback()
                raise
            if applied is False:
                db.rollback()
                return None
            job.updated_at = datetime.utcnow()
            db.commit()
        self._publish(job)
        return job

    def _publish(self, job: BatchJob):
        if self._broker is not None:
            self._broker.publish_job(job.to_dict())


_store: Optional[BatchJobStore] = None


def get_job_store() -> BatchJobStore:
    """Get singleton BatchJobStore bound to the application database."""
    global _store
    if _store is None:
        from studio.core.database import SessionLocal
        from studio.services.progress import get_progress_broker

        _store = BatchJobStore(SessionLocal, broker=get_progress_broker())
    return _store


__all__ = ["BatchJobStore", "get_job_store", "final_status", "new_batch_job_id", "new_image_id"]
