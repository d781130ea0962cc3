"""
Persistence for answer audits.

Audits are written once; the human-review flag is the only field that
changes afterwards.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..context_engine.answer_auditor import AuditResult, RiskLevel
from ..core.exceptions import NotFoundException
from ..models.audit import AnswerAudit
from ..utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    audit_id: str
    agent_id: int
    question: str
    result: AuditResult
    created_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, row: AnswerAudit) -> "AuditRecord":
        result = AuditResult(
            hallucination_risk_score=row.hallucination_risk_score,
            risk_level=RiskLevel(row.risk_level),
            factual_accuracy=row.factual_accuracy,
            source_alignment=row.source_alignment,
            completeness=row.completeness,
            relevance=row.relevance,
            compliance_flags=list(row.compliance_flags or []),
            reasoning=row.reasoning or "",
            requires_human_review=bool(row.requires_human_review),
            audit_id=row.id,
        )
        return cls(
            audit_id=row.id,
            agent_id=row.agent_id,
            question=row.question,
            result=result,
            created_at=row.created_at,
            reviewed_at=row.reviewed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data.update({
            "audit_id": self.audit_id,
            "agent_id": self.agent_id,
            "question": self.question,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        })
        return data


class AuditStore:
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def save(self, result: AuditResult, agent_id: int, question: str) -> str:
        audit_id = result.audit_id or str(uuid.uuid4())
        async with self.session_factory() as session:
            session.add(AnswerAudit(
                id=audit_id,
                agent_id=agent_id,
                question=question,
                hallucination_risk_score=result.hallucination_risk_score,
                risk_level=result.risk_level.value,
                factual_accuracy=result.factual_accuracy,
                source_alignment=result.source_alignment,
                completeness=result.completeness,
                relevance=result.relevance,
                compliance_flags=list(result.compliance_flags),
                reasoning=result.reasoning,
                requires_human_review=result.requires_human_review,
                created_at=utcnow(),
            ))
            await session.commit()

        result.audit_id = audit_id
        logger.info(
            f"Stored answer audit ({result.risk_level.value} risk)",
            extra={"audit_id": audit_id, "agent_id": agent_id},
        )
        return audit_id

    async def get(self, audit_id: str) -> Optional[AuditRecord]:
        async with self.session_factory() as session:
            row = await session.scalar(select(AnswerAudit).where(AnswerAudit.id == audit_id))
            return AuditRecord.from_model(row) if row is not None else None

    async def set_human_review(self, audit_id: str, requires_human_review: bool) -> AuditRecord:
        async with self.session_factory() as session:
            row = await session.scalar(select(AnswerAudit).where(AnswerAudit.id == audit_id))
            if row is None:
                raise NotFoundException(f"Audit {audit_id} not found", resource_type="audit", resource_id=audit_id)
            row.requires_human_review = requires_human_review
            row.reviewed_at = utcnow()
            await session.commit()
            await session.refresh(row)
            logger.info("Updated human review flag", extra={"audit_id": audit_id})
            return AuditRecord.from_model(row)
