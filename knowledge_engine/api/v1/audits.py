"""Answer audit lookup and human review endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ...core.exceptions import raise_not_found
from ...services.audit_service import AuditStore
from ...services.engine_builder import get_audit_store

logger = logging.getLogger(__name__)

router = APIRouter()


class ReviewRequest(BaseModel):
    requires_human_review: bool


@router.get("/{audit_id}")
async def get_audit(
    audit_id: str,
    audit_store: AuditStore = Depends(get_audit_store),
) -> Dict[str, Any]:
    record = await audit_store.get(audit_id)
    if record is None:
        raise_not_found(f"Audit {audit_id} not found", "audit", audit_id)
    return record.to_dict()


@router.post("/{audit_id}/review")
async def set_human_review(
    audit_id: str,
    request: ReviewRequest,
    audit_store: AuditStore = Depends(get_audit_store),
) -> Dict[str, Any]:
    record = await audit_store.set_human_review(audit_id, request.requires_human_review)
    return record.to_dict()
