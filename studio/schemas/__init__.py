# Pydantic schemas package
from studio.schemas.batch import (
    GenerationParams,
    BatchStartRequest,
    BatchStartResponse,
    BatchActionResponse,
    BatchJobResponse,
    GeneratedImageResponse,
)

__all__ = [
    "GenerationParams",
    "BatchStartRequest",
    "BatchStartResponse",
    "BatchActionResponse",
    "BatchJobResponse",
    "GeneratedImageResponse",
]
