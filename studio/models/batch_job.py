"""
Batch Job Model
Database model for batch generation jobs.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Boolean, Column, Index, Integer, String, Text, DateTime, JSON

from studio.core.database import Base


class BatchJobStatus(str, Enum):
    """Batch job lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    BatchJobStatus.COMPLETED.value,
    BatchJobStatus.CANCELLED.value,
    BatchJobStatus.FAILED.value,
})

ACTIVE_STATUSES = frozenset({
    BatchJobStatus.PENDING.value,
    BatchJobStatus.PROCESSING.value,
    BatchJobStatus.PAUSED.value,
})


class BatchJob(Base):
    """One row per batch request."""

    __tablename__ = "batch_jobs"

    id = Column(String, primary_key=True)  # batch_xxxx format
    owner_id = Column(String, nullable=False)

    # Status: pending, processing, paused, completed, cancelled, failed
    status = Column(String, nullable=False, default=BatchJobStatus.PENDING.value)

    # Progress
    total_count = Column(Integer, nullable=False)
    completed_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    current_index = Column(Integer, nullable=False, default=0)
    current_item_retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    # True while a driver step is queued or running for this job
    step_outstanding = Column(Boolean, nullable=False, default=False)

    # Request template shared by every item
    generation_params = Column(JSON, nullable=False, default=dict)

    # Ordered ids of generated_images rows, append-only
    item_artifact_ids = Column(JSON, nullable=False, default=list)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_batch_jobs_owner_created", "owner_id", "created_at"),
        Index("ix_batch_jobs_status_created", "status", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def processed_count(self) -> int:
        return self.completed_count + self.failed_count

    def to_dict(self) -> dict:
        """Serialize the full row (used for progress events)."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "status": self.status,
            "total_count": self.total_count,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "current_index": self.current_index,
            "current_item_retry_count": self.current_item_retry_count,
            "last_error": self.last_error,
            "generation_params": dict(self.generation_params or {}),
            "item_artifact_ids": list(self.item_artifact_ids or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<BatchJob {self.id} {self.status} "
            f"{self.processed_count}/{self.total_count}>"
        )
