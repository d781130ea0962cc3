from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text

from ..core.database import Base
from ..utils.time import utcnow


class Agent(Base):
    __tablename__ = "agents"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    role = Column(String, nullable=True)
    tone = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    do_not_answer_from_general_knowledge = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
