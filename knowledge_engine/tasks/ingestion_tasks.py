"""Celery tasks for document ingestion."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Dict, List, TypeVar

from ..celery_app import celery_app
from ..core.config import settings
from ..services.engine_builder import worker_components
from ..services.ingestion_service import IngestionDocument

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a synchronous Celery task without leaking loops."""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        try:
            loop.run_until_complete(loop.shutdown_asyncgens())
        except (RuntimeError, ValueError):
            # Loop might already be closed or not started; ignore to keep cleanup robust
            pass
        finally:
            asyncio.set_event_loop(None)
            loop.close()


async def _run_ingestion(job_id: str, documents: List[Dict[str, Any]]) -> Dict[str, Any]:
    async with worker_components() as components:
        job = await components.ingestion.run_job(
            job_id, [IngestionDocument.from_dict(document) for document in documents]
        )
        return job.to_dict()


async def _reap_stalled() -> List[str]:
    async with worker_components() as components:
        return await components.tracker.reap_stalled(settings.JOB_HEARTBEAT_TIMEOUT_SECONDS)


# No autoretry: a job that reached a terminal state is never restarted
@celery_app.task(name="knowledge_engine.tasks.ingestion_tasks.process_ingestion_job", acks_late=True)
def process_ingestion_job(job_id: str, documents: List[Dict[str, Any]]) -> Dict[str, Any]:
    logger.info("Starting ingestion job", extra={"job_id": job_id})
    result = _run_sync(_run_ingestion(job_id, documents))
    logger.info(f"Ingestion job finished with status {result['status']}", extra={"job_id": job_id})
    return result


@celery_app.task(name="knowledge_engine.tasks.ingestion_tasks.reap_stalled_jobs")
def reap_stalled_jobs() -> Dict[str, Any]:
    reaped = _run_sync(_reap_stalled())
    if reaped:
        logger.warning(f"Reaped {len(reaped)} stalled ingestion jobs")
    return {"reaped": reaped}
