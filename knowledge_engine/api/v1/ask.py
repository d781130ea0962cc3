"""Question answering endpoint."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel, Field

from ...services.engine_builder import get_rag_service
from ...services.rag_service import RAGService

logger = logging.getLogger(__name__)

router = APIRouter()


class RetrievalOverrides(BaseModel):
    vector_k: Optional[int] = Field(None, ge=1, le=50)
    keyword_k: Optional[int] = Field(None, ge=0, le=50)
    similarity_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    confidence_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_chunks: Optional[int] = Field(None, ge=1, le=50)
    max_context_length: Optional[int] = Field(None, ge=1)


class AskRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=4000)
    config: Optional[RetrievalOverrides] = None


class AskResponse(BaseModel):
    answer: str
    confidence: float
    fallback_used: bool
    cache_hit: bool = False
    sources: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    audit: Optional[Dict[str, Any]] = None


@router.post("/{agent_id}/ask", response_model=AskResponse)
async def ask_agent(
    request: AskRequest,
    agent_id: int = Path(..., gt=0),
    rag_service: RAGService = Depends(get_rag_service),
) -> Dict[str, Any]:
    overrides = request.config.model_dump(exclude_none=True) if request.config else None
    result = await rag_service.ask(agent_id, request.question, overrides)
    return result.to_dict()
