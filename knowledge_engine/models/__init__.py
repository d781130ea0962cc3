from ..core.database import Base, async_engine
from .agent import Agent
from .chunk import KnowledgeChunk, AgentContentVersion, ContentSource
from .job import IngestionJob, JobStatus
from .audit import AnswerAudit

__all__ = [
    "Base",
    "async_engine",
    "Agent",
    "KnowledgeChunk",
    "AgentContentVersion",
    "ContentSource",
    "IngestionJob",
    "JobStatus",
    "AnswerAudit",
]
