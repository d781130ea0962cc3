from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Float, Boolean

from ..core.database import Base
from ..utils.time import utcnow


class AnswerAudit(Base):
    __tablename__ = "answer_audits"

    id = Column(String(36), primary_key=True)  # audit_id
    agent_id = Column(Integer, nullable=False, index=True)
    question = Column(Text, nullable=False)

    hallucination_risk_score = Column(Float, nullable=False)
    risk_level = Column(String(8), nullable=False)
    factual_accuracy = Column(Float, nullable=False)
    source_alignment = Column(Float, nullable=False)
    completeness = Column(Float, nullable=False)
    relevance = Column(Float, nullable=False)
    compliance_flags = Column(JSON, default=list)
    reasoning = Column(Text, nullable=True)

    # The only field that changes after creation
    requires_human_review = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    reviewed_at = Column(DateTime, nullable=True)
