"""
API Dependencies
Common dependencies for FastAPI routes (caller identity, services).
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from studio.services.batch_control import BatchControlService, get_control_service
from studio.services.progress import ProgressObserver, get_progress_observer


def get_current_owner(x_owner_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity, supplied by the fronting auth layer as X-Owner-Id."""
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Owner-Id header"
        )
    return x_owner_id.strip()


def get_batch_control() -> BatchControlService:
    return get_control_service()


def get_observer() -> ProgressObserver:
    return get_progress_observer()
