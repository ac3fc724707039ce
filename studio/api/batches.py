"""
Batch API Routes
Start, control and observe batch generation jobs.
"""

import json
import logging
from typing import Any, Iterator, List

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from studio.api.deps import get_batch_control, get_current_owner, get_observer
from studio.core.exceptions import (
    BatchJobError,
    BatchValidationError,
    InvalidTransitionError,
    JobNotFoundError,
    NotAuthorizedError,
    SchedulingFailure,
)
from studio.schemas.batch import (
    BatchActionResponse,
    BatchJobResponse,
    BatchStartRequest,
    BatchStartResponse,
    GeneratedImageResponse,
)
from studio.services.batch_control import RECENT_JOBS_LIMIT, BatchControlService
from studio.services.progress import ProgressObserver

logger = logging.getLogger(__name__)

router = APIRouter()

_ERROR_STATUS = {
    BatchValidationError: status.HTTP_400_BAD_REQUEST,
    NotAuthorizedError: status.HTTP_403_FORBIDDEN,
    JobNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    SchedulingFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(e: BatchJobError) -> HTTPException:
    code = _ERROR_STATUS.get(type(e), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if code == status.HTTP_503_SERVICE_UNAVAILABLE:
        logger.error(f"Scheduling failed for {e.job_id}: {e.message}")
    return HTTPException(status_code=code, detail=e.message)


def _sse(events: Iterator[Any]) -> StreamingResponse:
    def encode():
        for event in events:
            yield f"data: {json.dumps(event, default=str)}\n\n"

    return StreamingResponse(
        encode(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("", response_model=BatchStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_batch(
    request: BatchStartRequest,
    owner_id: str = Depends(get_current_owner),
    control: BatchControlService = Depends(get_batch_control),
):
    """
    Start a batch generation job.

    Returns immediately; progress is available from GET /{job_id} or the
    event streams.
    """
    try:
        job_id = control.start(owner_id, request.generation_params, request.count)
    except BatchJobError as e:
        raise _http_error(e)

    return BatchStartResponse(
        job_id=job_id,
        status="pending",
        message=f"Batch of {request.count} queued",
    )


@router.get("", response_model=List[BatchJobResponse])
async def list_batches(
    limit: int = RECENT_JOBS_LIMIT,
    active: bool = False,
    owner_id: str = Depends(get_current_owner),
    control: BatchControlService = Depends(get_batch_control),
):
    """Recent batch jobs (newest first), or only the non-terminal ones."""
    if active:
        return control.list_active_jobs(owner_id)
    return control.list_jobs(owner_id, limit=max(1, min(limit, 100)))


@router.get("/events")
async def stream_active_batches(
    owner_id: str = Depends(get_current_owner),
    observer: ProgressObserver = Depends(get_observer),
):
    """Server-sent events: the caller's active jobs, pushed on every change."""
    return _sse(observer.subscribe_active_jobs(owner_id))


@router.get("/{job_id}", response_model=BatchJobResponse)
async def get_batch(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    control: BatchControlService = Depends(get_batch_control),
):
    """Get the full batch job row."""
    try:
        return control.get_job(owner_id, job_id)
    except BatchJobError as e:
        raise _http_error(e)


@router.get("/{job_id}/images", response_model=List[GeneratedImageResponse])
async def get_batch_images(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    control: BatchControlService = Depends(get_batch_control),
):
    """Artifacts produced so far, in completion order."""
    try:
        return control.get_job_items(owner_id, job_id)
    except BatchJobError as e:
        raise _http_error(e)


@router.get("/{job_id}/events")
async def stream_batch(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    observer: ProgressObserver = Depends(get_observer),
):
    """Server-sent events: the job row on every change, closing after a terminal status."""
    try:
        events = observer.subscribe_job(owner_id, job_id)
    except BatchJobError as e:
        raise _http_error(e)
    return _sse(events)


@router.get("/{job_id}/images/events")
async def stream_batch_images(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    observer: ProgressObserver = Depends(get_observer),
):
    """Server-sent events: the job's artifact list as items complete."""
    try:
        events = observer.subscribe_job_items(owner_id, job_id)
    except BatchJobError as e:
        raise _http_error(e)
    return _sse(events)


@router.post("/{job_id}/pause", response_model=BatchActionResponse)
async def pause_batch(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    control: BatchControlService = Depends(get_batch_control),
):
    """Pause after the in-flight item finishes."""
    try:
        job = control.pause(owner_id, job_id)
    except BatchJobError as e:
        raise _http_error(e)
    return BatchActionResponse(job_id=job.id, status=job.status)


@router.post("/{job_id}/resume", response_model=BatchActionResponse)
async def resume_batch(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    control: BatchControlService = Depends(get_batch_control),
):
    """Resume a paused batch at its next unattempted item."""
    try:
        job = control.resume(owner_id, job_id)
    except BatchJobError as e:
        raise _http_error(e)
    return BatchActionResponse(job_id=job.id, status=job.status)


@router.post("/{job_id}/cancel", response_model=BatchActionResponse)
async def cancel_batch(
    job_id: str,
    owner_id: str = Depends(get_current_owner),
    control: BatchControlService = Depends(get_batch_control),
):
    """Cancel a batch. Terminal; the in-flight item's outcome is discarded."""
    try:
        job = control.cancel(owner_id, job_id)
    except BatchJobError as e:
        raise _http_error(e)
    return BatchActionResponse(job_id=job.id, status=job.status)
