from enum import Enum as PyEnum

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, UniqueConstraint, Index

from ..core.database import Base
from ..utils.time import utcnow


class ContentSource(str, PyEnum):
    """Where a chunk's text was extracted from"""
    DOCUMENT = "document"
    WEBSITE = "website"
    YOUTUBE = "youtube"
    AUDIO = "audio"
    VIDEO = "video"


class KnowledgeChunk(Base):
    __tablename__ = "knowledge_chunks"

    id = Column(Integer, primary_key=True, index=True)
    agent_id = Column(Integer, nullable=False, index=True)
    text = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=False)  # 768 floats

    # Provenance
    source = Column(String(16), nullable=False, default=ContentSource.DOCUMENT.value)
    source_url = Column(String, nullable=True)
    chunk_index = Column(Integer, nullable=False, default=0)

    # Deduplication and versioning
    content_hash = Column(String(64), nullable=False)
    content_version = Column(Integer, nullable=False)

    # Metadata
    chunk_metadata = Column(JSON, default=dict)  # total_chunks, chunk_size, positions, file_name, ...
    source_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("agent_id", "content_hash", name="uq_chunk_agent_hash"),
        UniqueConstraint("agent_id", "content_version", name="uq_chunk_agent_version"),
        Index("ix_chunk_agent_source", "agent_id", "source"),
    )


class AgentContentVersion(Base):
    """Per-agent content version counter, incremented atomically."""
    __tablename__ = "agent_content_versions"

    agent_id = Column(Integer, primary_key=True)
    highest_version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
