"""Ingestion job status endpoint."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ...services.engine_builder import get_job_tracker
from ...services.job_tracker import JobTracker

router = APIRouter()


class JobStatusResponse(BaseModel):
    job_id: str
    agent_id: int
    status: str
    progress: int
    file_names: List[str] = []
    chunks_processed: int = 0
    total_chunks: int = 0
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    tracker: JobTracker = Depends(get_job_tracker),
) -> Dict[str, Any]:
    job = await tracker.get_or_raise(job_id)
    return job.to_dict()
