"""
Batch Schemas
Pydantic models for batch generation requests and responses.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator

from studio.models.batch_job import BatchJobStatus


class GenerationParams(BaseModel):
    """Template shared by every item in a batch."""
    prompt: str
    negative_prompt: Optional[str] = None
    model: Optional[str] = None
    width: Optional[int] = Field(default=None, gt=0, le=4096)
    height: Optional[int] = Field(default=None, gt=0, le=4096)
    seed: Optional[int] = None  # None or negative = fresh random seed per item
    enhance: bool = False
    private: bool = False
    safe: bool = False
    image: Optional[str] = None  # Reference image URL

    # Video-specific options
    duration: Optional[int] = Field(default=None, gt=0)
    audio: Optional[bool] = None
    aspect_ratio: Optional[str] = None

    class Config:
        extra = "forbid"

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("prompt must not be empty")
        return v


class BatchStartRequest(BaseModel):
    """Schema for starting a batch job."""
    count: int
    generation_params: GenerationParams


class BatchStartResponse(BaseModel):
    """Schema for batch start response."""
    job_id: str
    status: str
    message: str


class BatchActionResponse(BaseModel):
    """Schema for pause/resume/cancel responses."""
    job_id: str
    status: str
    success: bool = True


class BatchJobResponse(BaseModel):
    """Full batch job row."""
    id: str
    owner_id: str
    status: BatchJobStatus
    total_count: int
    completed_count: int
    failed_count: int
    current_index: int
    current_item_retry_count: int = 0
    last_error: Optional[str] = None
    generation_params: Dict[str, Any] = {}
    item_artifact_ids: List[str] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class GeneratedImageResponse(BaseModel):
    """Stored artifact metadata."""
    id: str
    batch_job_id: Optional[str]
    item_index: Optional[int]
    url: str
    content_type: str
    size_bytes: int
    prompt: str
    model: Optional[str]
    width: Optional[int]
    height: Optional[int]
    seed: Optional[int]
    visibility: str
    created_at: datetime

    class Config:
        from_attributes = True
