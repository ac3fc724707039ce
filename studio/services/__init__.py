# Services package - batch lifecycle and external integrations
from studio.services.storage import StorageService
from studio.services.providers import GenerationProvider, PollinationsClient, GeminiImageClient
from studio.services.generation import GenerationExecutor
from studio.services.job_store import BatchJobStore
from studio.services.batch_control import BatchControlService
from studio.services.progress import ProgressObserver

__all__ = [
    "StorageService",
    "GenerationProvider",
    "PollinationsClient",
    "GeminiImageClient",
    "GenerationExecutor",
    "BatchJobStore",
    "BatchControlService",
    "ProgressObserver",
]
