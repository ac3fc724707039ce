"""
Generation Executor
Performs one generation for a batch item and persists the output before returning.
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from studio.services.providers import GenerationProvider, get_provider
from studio.services.storage import StorageService, generate_artifact_key, get_storage_service
from studio.workers.base import GenerationError, NonRetryableGenerationError

logger = logging.getLogger(__name__)

# Upstream APIs only accept 32-bit signed seeds
INT32_MAX = 2_147_483_647

DEFAULT_DIMENSION = 1024


@dataclass
class GenerationItem:
    """One attempt's unit of work: an index plus fully-resolved params."""
    job_id: str
    owner_id: str
    index: int
    params: Dict[str, Any]

    @property
    def seed(self) -> Optional[int]:
        return self.params.get("seed")


@dataclass
class Artifact:
    """Reference to a durably stored generation output."""
    storage_key: str
    url: str
    content_type: str
    size_bytes: int
    model: str
    width: int
    height: int
    seed: Optional[int]
    params: Dict[str, Any] = field(default_factory=dict)


def resolve_item(
    job_id: str,
    owner_id: str,
    index: int,
    template: Dict[str, Any],
    rng: Callable[[int, int], int] = random.randint,
) -> GenerationItem:
    """
    Resolve the batch template for one item.

    A missing or negative seed means "random": every item gets a fresh seed so
    a batch produces variety. Explicit seeds are capped to the int32 range.
    """
    params = dict(template)
    seed = params.get("seed")
    if seed is None or seed < 0:
        params["seed"] = rng(0, INT32_MAX)
    else:
        params["seed"] = min(int(seed), INT32_MAX)
    return GenerationItem(job_id=job_id, owner_id=owner_id, index=index, params=params)


class GenerationExecutor:
    """execute(item) -> Artifact, or raises GenerationError."""

    def __init__(
        self,
        provider: Optional[GenerationProvider] = None,
        storage: Optional[StorageService] = None,
    ):
        self.provider = provider or get_provider()
        self.storage = storage or get_storage_service()

    async def execute(self, item: GenerationItem) -> Artifact:
        result = await self.provider.generate(item.params)

        key = generate_artifact_key(item.owner_id, result.content_type)
        try:
            url = await self.storage.upload_bytes(result.data, key, result.content_type)
        except Exception as e:
            # Storage failures are retried like upstream failures
            raise GenerationError(f"Failed to store artifact: {e}", retryable=True, reason="storage_error")

        logger.info(
            f"Stored artifact for {item.job_id}[{item.index}]: {key} ({len(result.data)} bytes)"
        )
        return Artifact(
            storage_key=key,
            url=url,
            content_type=result.content_type,
            size_bytes=len(result.data),
            model=result.model,
            width=item.params.get("width") or DEFAULT_DIMENSION,
            height=item.params.get("height") or DEFAULT_DIMENSION,
            seed=item.seed,
            params=dict(item.params),
        )


async def execute_generation(executor: GenerationExecutor, item: GenerationItem) -> Artifact:
    """
    Run the executor and normalize any unexpected exception into a
    non-retryable GenerationError so the driver can always classify it.
    """
    try:
        return await executor.execute(item)
    except GenerationError:
        raise
    except Exception as e:
        logger.exception(f"Unexpected error generating {item.job_id}[{item.index}]")
        raise NonRetryableGenerationError(str(e) or type(e).__name__, reason="unexpected_error")


__all__ = [
    "INT32_MAX",
    "GenerationItem",
    "Artifact",
    "resolve_item",
    "GenerationExecutor",
    "execute_generation",
]
