"""
RQ Task Definitions
Entry points executed by RQ workers. Each task runs exactly one driver step.
"""

import asyncio
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


def _run_async(coro):
    """Helper to run async code in sync context (for RQ)."""
    try:
        loop = asyncio.get_event_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop.run_until_complete(coro)


def run_batch_step_task(batch_job_id: str) -> Dict[str, Any]:
    """
    RQ task for one batch step.

    Retries are not handled here: the driver persists the retry count on the
    job row and schedules the next attempt itself, so a failed item never
    blocks the worker.

    Args:
        batch_job_id: Batch job to advance

    Returns:
        Step report as a dict
    """
    from studio.workers.driver import get_batch_driver

    logger.info(f"[Task] Batch step: {batch_job_id}")
    report = _run_async(get_batch_driver().step(batch_job_id))
    return report.to_dict()


__all__ = ["run_batch_step_task"]
