"""
Ingestion job tracking.

Jobs move queued -> processing -> {completed | failed} and never leave a
terminal state. Every transition is a single conditional UPDATE so two
workers (or a worker and the reaper) cannot both win the same transition.
Progress and counters only move forward.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.exceptions import JobNotFoundError, JobStateError
from ..models.job import IngestionJob, JobStatus
from ..utils.time import utcnow

logger = logging.getLogger(__name__)

HEARTBEAT_TIMEOUT_ERROR = "Job heartbeat timed out"

MONOTONIC_FIELDS = (
    "progress",
    "chunks_processed",
    "total_chunks",
    "success_count",
    "error_count",
    "skipped_count",
)


@dataclass
class JobSnapshot:
    job_id: str
    agent_id: int
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    file_names: List[str] = field(default_factory=list)
    chunks_processed: int = 0
    total_chunks: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    task_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_model(cls, job: IngestionJob) -> "JobSnapshot":
        return cls(
            job_id=job.id,
            agent_id=job.agent_id,
            status=JobStatus(job.status),
            progress=job.progress or 0,
            file_names=list(job.file_names or []),
            chunks_processed=job.chunks_processed or 0,
            total_chunks=job.total_chunks or 0,
            success_count=job.success_count or 0,
            error_count=job.error_count or 0,
            skipped_count=job.skipped_count or 0,
            error=job.error,
            result=job.result,
            task_id=job.task_id,
            created_at=job.created_at,
            updated_at=job.updated_at,
            heartbeat_at=job.heartbeat_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "agent_id": self.agent_id,
            "status": self.status.value,
            "progress": self.progress,
            "file_names": self.file_names,
            "chunks_processed": self.chunks_processed,
            "total_chunks": self.total_chunks,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
            "error": self.error,
            "result": self.result,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class JobStore(ABC):
    """Persistence contract for ingestion jobs"""

    @abstractmethod
    async def create(self, job: JobSnapshot) -> str:
        pass

    @abstractmethod
    async def update(
        self,
        job_id: str,
        patch: Dict[str, Any],
        allowed_from: Optional[Iterable[JobStatus]] = None,
        heartbeat_before: Optional[datetime] = None,
    ) -> bool:
        """
        Apply a patch atomically.

        Returns False (and changes nothing) when the job's current status is
        not in allowed_from, or its heartbeat is not older than heartbeat_before.
        Monotonic fields never decrease.
        """

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobSnapshot]:
        pass

    @abstractmethod
    async def list_stalled(self, cutoff: datetime) -> List[str]:
        """Ids of processing jobs whose last heartbeat is older than cutoff"""


class SqlJobStore(JobStore):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(self, job: JobSnapshot) -> str:
        now = utcnow()
        async with self.session_factory() as session:
            session.add(IngestionJob(
                id=job.job_id,
                agent_id=job.agent_id,
                status=job.status.value,
                progress=job.progress,
                file_names=list(job.file_names),
                chunks_processed=job.chunks_processed,
                total_chunks=job.total_chunks,
                success_count=job.success_count,
                error_count=job.error_count,
                skipped_count=job.skipped_count,
                error=job.error,
                result=job.result,
                task_id=job.task_id,
                created_at=now,
                updated_at=now,
            ))
            await session.commit()
        return job.job_id

    async def update(
        self,
        job_id: str,
        patch: Dict[str, Any],
        allowed_from: Optional[Iterable[JobStatus]] = None,
        heartbeat_before: Optional[datetime] = None,
    ) -> bool:
        values: Dict[str, Any] = {}
        for name, value in patch.items():
            if isinstance(value, JobStatus):
                value = value.value
            column = getattr(IngestionJob, name)
            if name in MONOTONIC_FIELDS:
                values[name] = case((column < value, value), else_=column)
            else:
                values[name] = value
        values.setdefault("updated_at", utcnow())

        statement = update(IngestionJob).where(IngestionJob.id == job_id)
        if allowed_from is not None:
            statement = statement.where(IngestionJob.status.in_([status.value for status in allowed_from]))
        if heartbeat_before is not None:
            statement = statement.where(IngestionJob.heartbeat_at < heartbeat_before)

        async with self.session_factory() as session:
            result = await session.execute(
                statement.values(**values).execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount > 0

    async def get(self, job_id: str) -> Optional[JobSnapshot]:
        async with self.session_factory() as session:
            job = await session.scalar(select(IngestionJob).where(IngestionJob.id == job_id))
            return JobSnapshot.from_model(job) if job is not None else None

    async def list_stalled(self, cutoff: datetime) -> List[str]:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(IngestionJob.id).where(
                    IngestionJob.status == JobStatus.PROCESSING.value,
                    IngestionJob.heartbeat_at < cutoff,
                )
            )
            return [row.id for row in rows]


def compute_progress(processed: int, total: int) -> int:
    """Percent of chunks processed, held at 99 until the job completes."""
    if total <= 0:
        return 0
    return min(99, (processed * 100) // total)


class JobTracker:
    """State machine over a JobStore"""

    def __init__(self, store: JobStore):
        self.store = store

    async def create_job(self, agent_id: int, file_names: Optional[List[str]] = None) -> JobSnapshot:
        job = JobSnapshot(job_id=str(uuid.uuid4()), agent_id=agent_id, file_names=list(file_names or []))
        await self.store.create(job)
        logger.info("Created ingestion job", extra={"job_id": job.job_id, "agent_id": agent_id})
        return await self.get_or_raise(job.job_id)

    async def get(self, job_id: str) -> Optional[JobSnapshot]:
        return await self.store.get(job_id)

    async def get_or_raise(self, job_id: str) -> JobSnapshot:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _transition(
        self,
        job_id: str,
        target: JobStatus,
        patch: Dict[str, Any],
        allowed_from: List[JobStatus],
    ) -> None:
        patch = dict(patch, status=target)
        if await self.store.update(job_id, patch, allowed_from=allowed_from):
            return
        current = await self.get_or_raise(job_id)
        raise JobStateError(job_id, current.status.value, target.value)

    async def set_task_id(self, job_id: str, task_id: str) -> bool:
        return await self.store.update(job_id, {"task_id": task_id})

    async def claim(self, job_id: str) -> JobSnapshot:
        """queued -> processing; only one caller can win the claim."""
        await self._transition(
            job_id,
            JobStatus.PROCESSING,
            {"heartbeat_at": utcnow()},
            allowed_from=[JobStatus.QUEUED],
        )
        logger.info("Claimed ingestion job", extra={"job_id": job_id})
        return await self.get_or_raise(job_id)

    async def record_progress(
        self,
        job_id: str,
        processed: int,
        total: int,
        success: int,
        errors: int,
        skipped: int,
    ) -> None:
        """Record counters for a processing job; refreshes its heartbeat."""
        patch = {
            "progress": compute_progress(processed, total),
            "chunks_processed": processed,
            "total_chunks": total,
            "success_count": success,
            "error_count": errors,
            "skipped_count": skipped,
            "heartbeat_at": utcnow(),
        }
        if not await self.store.update(job_id, patch, allowed_from=[JobStatus.PROCESSING]):
            current = await self.get_or_raise(job_id)
            raise JobStateError(job_id, current.status.value, "progress")

    async def heartbeat(self, job_id: str) -> bool:
        return await self.store.update(job_id, {"heartbeat_at": utcnow()}, allowed_from=[JobStatus.PROCESSING])

    async def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> JobSnapshot:
        await self._transition(
            job_id,
            JobStatus.COMPLETED,
            {"progress": 100, "result": result or {}},
            allowed_from=[JobStatus.PROCESSING],
        )
        logger.info("Ingestion job completed", extra={"job_id": job_id})
        return await self.get_or_raise(job_id)

    async def fail(self, job_id: str, error: str, result: Optional[Dict[str, Any]] = None) -> bool:
        """Move a live job to failed; returns False when it was already terminal."""
        patch: Dict[str, Any] = {"status": JobStatus.FAILED, "error": error}
        if result is not None:
            patch["result"] = result
        failed = await self.store.update(
            job_id,
            patch,
            allowed_from=[JobStatus.QUEUED, JobStatus.PROCESSING],
        )
        if failed:
            logger.warning(f"Ingestion job failed: {error}", extra={"job_id": job_id})
        return failed

    async def reap_stalled(self, timeout_seconds: float) -> List[str]:
        """Fail processing jobs whose heartbeat is older than the timeout."""
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        reaped = []
        for job_id in await self.store.list_stalled(cutoff):
            # Re-check staleness in the UPDATE itself so a late heartbeat wins
            if await self.store.update(
                job_id,
                {"status": JobStatus.FAILED, "error": HEARTBEAT_TIMEOUT_ERROR},
                allowed_from=[JobStatus.PROCESSING],
                heartbeat_before=cutoff,
            ):
                reaped.append(job_id)
                logger.warning("Reaped stalled ingestion job", extra={"job_id": job_id})
        return reaped
