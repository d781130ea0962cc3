from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from ..core.database import Base
from ..utils.time import utcnow


class JobStatus(str, PyEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class IngestionJob(Base):
    __tablename__ = "ingestion_jobs"

    id = Column(String(36), primary_key=True)  # UUID
    agent_id = Column(Integer, nullable=False, index=True)
    status = Column(String(16), nullable=False, default=JobStatus.QUEUED.value, index=True)
    progress = Column(Integer, nullable=False, default=0)  # 0-100
    file_names = Column(JSON, default=list)

    # Counters (monotonic)
    chunks_processed = Column(Integer, nullable=False, default=0)
    total_chunks = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)

    error = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    task_id = Column(String(64), nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    heartbeat_at = Column(DateTime, nullable=True)
