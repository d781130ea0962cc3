"""Document ingestion endpoint. Work happens in the background worker."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, status
from pydantic import BaseModel, Field

from ...models.chunk import ContentSource
from ...services.engine_builder import get_ingestion_service
from ...services.ingestion_service import IngestionDocument, IngestionService

logger = logging.getLogger(__name__)

router = APIRouter()


class DocumentPayload(BaseModel):
    text: str = Field(..., min_length=1)
    file_name: Optional[str] = None
    source: ContentSource = ContentSource.DOCUMENT
    source_url: Optional[str] = None
    page_number: Optional[int] = Field(None, ge=1)
    section: Optional[str] = None
    source_metadata: Optional[Dict[str, Any]] = None


class IngestRequest(BaseModel):
    documents: List[DocumentPayload] = Field(..., min_length=1)


class IngestResponse(BaseModel):
    job_id: str
    status: str


@router.post(
    "/{agent_id}/ingest",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_documents(
    request: IngestRequest,
    agent_id: int = Path(..., gt=0),
    ingestion_service: IngestionService = Depends(get_ingestion_service),
) -> Dict[str, Any]:
    documents = [
        IngestionDocument(
            text=document.text,
            file_name=document.file_name,
            source=document.source.value,
            source_url=document.source_url,
            page_number=document.page_number,
            section=document.section,
            source_metadata=document.source_metadata,
        )
        for document in request.documents
    ]
    job = await ingestion_service.submit(agent_id, documents)
    return {"job_id": job.job_id, "status": job.status.value}
