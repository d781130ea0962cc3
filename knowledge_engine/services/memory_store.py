"""
Memory Store Abstraction Layer

Persists knowledge chunks (text + embedding + provenance) per agent and exposes
the two query primitives the hybrid retriever consumes: vector similarity and
keyword matching. Version bookkeeping for deduplication lives here too because
it must be atomic with respect to the stored chunks.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..context_engine.hybrid_retriever import BM25, MatchType, RetrievalResult
from ..core.exceptions import DuplicateContentError, VersionConflictError
from ..models.chunk import AgentContentVersion, KnowledgeChunk
from ..utils.time import utcnow

logger = logging.getLogger(__name__)

KEYWORD_CANDIDATE_LIMIT = 200


@dataclass
class ChunkRecord:
    """Detached view of a stored (or about to be stored) chunk"""
    agent_id: int
    text: str
    content_hash: str
    content_version: int
    chunk_index: int
    source: str = "document"
    source_url: Optional[str] = None
    embedding: List[float] = field(default_factory=list)
    chunk_metadata: Dict[str, Any] = field(default_factory=dict)
    source_metadata: Optional[Dict[str, Any]] = None
    id: Optional[int] = None

    @classmethod
    def from_model(cls, row: KnowledgeChunk, include_embedding: bool = False) -> "ChunkRecord":
        return cls(
            id=row.id,
            agent_id=row.agent_id,
            text=row.text,
            content_hash=row.content_hash,
            content_version=row.content_version,
            chunk_index=row.chunk_index,
            source=row.source,
            source_url=row.source_url,
            embedding=list(row.embedding or []) if include_embedding else [],
            chunk_metadata=dict(row.chunk_metadata or {}),
            source_metadata=row.source_metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "text": self.text,
            "content_hash": self.content_hash,
            "content_version": self.content_version,
            "chunk_index": self.chunk_index,
            "source": self.source,
            "source_url": self.source_url,
            "chunk_metadata": self.chunk_metadata,
            "source_metadata": self.source_metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkRecord":
        return cls(
            id=data.get("id"),
            agent_id=data["agent_id"],
            text=data["text"],
            content_hash=data["content_hash"],
            content_version=data["content_version"],
            chunk_index=data.get("chunk_index", 0),
            source=data.get("source", "document"),
            source_url=data.get("source_url"),
            chunk_metadata=data.get("chunk_metadata") or {},
            source_metadata=data.get("source_metadata"),
        )


class MemoryStoreInterface(ABC):
    """Abstract base class for chunk store implementations"""

    @abstractmethod
    async def insert_chunk(self, chunk: ChunkRecord) -> int:
        """Persist a chunk; rejects version collisions and duplicate content"""

    @abstractmethod
    async def vector_query(self, agent_id: int, query_vector: Sequence[float], k: int) -> List[RetrievalResult]:
        """Top-k chunks by cosine similarity, scoped to the agent"""

    @abstractmethod
    async def keyword_query(self, agent_id: int, terms: Sequence[str], k: int) -> List[RetrievalResult]:
        """Top-k chunks by keyword relevance, scoped to the agent"""

    @abstractmethod
    async def highest_version(self, agent_id: int) -> int:
        """Highest content version assigned for the agent (0 when none)"""

    @abstractmethod
    async def allocate_version(self, agent_id: int) -> int:
        """Atomically increment and return the agent's version counter"""

    @abstractmethod
    async def insert_versioned_chunk(self, chunk: ChunkRecord) -> int:
        """
        Persist a chunk under the agent's next version.

        The counter increment and the insert commit together: a chunk rejected
        as duplicate content leaves the counter untouched.
        """

    @abstractmethod
    async def find_by_hash(self, agent_id: int, content_hash: str) -> Optional[ChunkRecord]:
        """Existing chunk with this fingerprint for the agent, if any"""

    @abstractmethod
    async def count_chunks(self, agent_id: int) -> int:
        """Number of chunks stored for the agent"""

    async def health_check(self) -> bool:
        return True


class SqlMemoryStore(MemoryStoreInterface):
    """SQLAlchemy-backed store; similarity is ranked in-process with numpy"""

    def __init__(self, session_factory: async_sessionmaker, dimension: int = 768):
        self.session_factory = session_factory
        self.dimension = dimension

    async def insert_chunk(self, chunk: ChunkRecord) -> int:
        self._check_dimension(chunk)

        async with self.session_factory() as session:
            await self._guard_version_slot(session, chunk)

            row = self._to_row(chunk, chunk.content_version)
            session.add(row)
            await self._commit_chunk(session, chunk, chunk.content_version)

            chunk.id = row.id
            return row.id

    async def insert_versioned_chunk(self, chunk: ChunkRecord) -> int:
        self._check_dimension(chunk)
        await self._ensure_version_counter(chunk.agent_id)

        async with self.session_factory() as session:
            version = await self._increment_version(session, chunk.agent_id)
            row = self._to_row(chunk, version)
            session.add(row)
            # Rolls the increment back along with the rejected insert
            await self._commit_chunk(session, chunk, version)

        chunk.id = row.id
        chunk.content_version = version
        logger.debug(
            "Stored chunk under new content version",
            extra={"agent_id": chunk.agent_id, "version": version},
        )
        return row.id

    def _check_dimension(self, chunk: ChunkRecord) -> None:
        if len(chunk.embedding) != self.dimension:
            raise ValueError(
                f"Embedding has {len(chunk.embedding)} dimensions, expected {self.dimension}"
            )

    @staticmethod
    def _to_row(chunk: ChunkRecord, version: int) -> KnowledgeChunk:
        return KnowledgeChunk(
            agent_id=chunk.agent_id,
            text=chunk.text,
            embedding=list(chunk.embedding),
            source=chunk.source,
            source_url=chunk.source_url,
            chunk_index=chunk.chunk_index,
            content_hash=chunk.content_hash,
            content_version=version,
            chunk_metadata=chunk.chunk_metadata,
            source_metadata=chunk.source_metadata,
        )

    async def _commit_chunk(self, session: AsyncSession, chunk: ChunkRecord, version: int) -> None:
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            # A concurrent writer got there first; report which constraint lost
            if await self._hash_exists(session, chunk.agent_id, chunk.content_hash):
                raise DuplicateContentError(chunk.agent_id, chunk.content_hash)
            raise VersionConflictError(chunk.agent_id, version, chunk.content_hash)

    async def _guard_version_slot(self, session: AsyncSession, chunk: ChunkRecord) -> None:
        holder = await session.scalar(
            select(KnowledgeChunk.content_hash).where(
                KnowledgeChunk.agent_id == chunk.agent_id,
                KnowledgeChunk.content_version == chunk.content_version,
            )
        )
        if holder is None:
            return
        if holder == chunk.content_hash:
            raise DuplicateContentError(chunk.agent_id, chunk.content_hash)

        logger.error(
            "Rejected chunk write: version already held by different content",
            extra={"agent_id": chunk.agent_id, "version": chunk.content_version},
        )
        raise VersionConflictError(chunk.agent_id, chunk.content_version, chunk.content_hash)

    async def _hash_exists(self, session: AsyncSession, agent_id: int, content_hash: str) -> bool:
        found = await session.scalar(
            select(KnowledgeChunk.id).where(
                KnowledgeChunk.agent_id == agent_id,
                KnowledgeChunk.content_hash == content_hash,
            )
        )
        return found is not None

    async def vector_query(self, agent_id: int, query_vector: Sequence[float], k: int) -> List[RetrievalResult]:
        if k <= 0 or not query_vector:
            return []

        start_time = time.time()
        async with self.session_factory() as session:
            rows = (await session.execute(
                select(KnowledgeChunk.id, KnowledgeChunk.embedding).where(
                    KnowledgeChunk.agent_id == agent_id
                )
            )).all()

            ids = [row.id for row in rows if row.embedding and len(row.embedding) == len(query_vector)]
            if not ids:
                return []
            matrix = np.asarray(
                [row.embedding for row in rows if row.embedding and len(row.embedding) == len(query_vector)],
                dtype=float,
            )

            query = np.asarray(query_vector, dtype=float)
            query_norm = np.linalg.norm(query)
            doc_norms = np.linalg.norm(matrix, axis=1)
            if query_norm == 0:
                return []

            # Avoid division by zero
            safe_norms = np.where(doc_norms == 0, 1.0, doc_norms)
            similarities = (matrix @ query) / (safe_norms * query_norm)
            similarities = np.where(doc_norms == 0, 0.0, similarities)

            # Stable ordering: similarity desc, then insertion order
            order = np.argsort(-similarities, kind="stable")[:k]
            top = [(ids[int(i)], float(similarities[int(i)])) for i in order if similarities[int(i)] > 0]
            if not top:
                return []

            chunks = await self._load_chunks(session, [chunk_id for chunk_id, _ in top])

        logger.debug(
            "Vector query complete",
            extra={"agent_id": agent_id, "duration_ms": round((time.time() - start_time) * 1000, 2)},
        )
        return [
            RetrievalResult(
                chunk=chunks[chunk_id],
                similarity=min(1.0, max(0.0, score)),
                confidence=0.0,
                match_type=MatchType.VECTOR,
            )
            for chunk_id, score in top
            if chunk_id in chunks
        ]

    async def keyword_query(self, agent_id: int, terms: Sequence[str], k: int) -> List[RetrievalResult]:
        terms = [term.lower() for term in terms if term]
        if k <= 0 or not terms:
            return []

        async with self.session_factory() as session:
            conditions = [func.lower(KnowledgeChunk.text).like(f"%{term}%") for term in terms]
            rows = (await session.execute(
                select(KnowledgeChunk)
                .where(KnowledgeChunk.agent_id == agent_id, or_(*conditions))
                .order_by(KnowledgeChunk.id)
                .limit(KEYWORD_CANDIDATE_LIMIT)
            )).scalars().all()
            candidates = [ChunkRecord.from_model(row) for row in rows]

        if not candidates:
            return []

        bm25 = BM25()
        bm25.fit([chunk.text for chunk in candidates])
        ranked = bm25.search(" ".join(terms), top_k=k)

        return [
            RetrievalResult(
                chunk=candidates[doc_id],
                similarity=BM25.normalize(score),
                confidence=0.0,
                match_type=MatchType.KEYWORD,
            )
            for doc_id, score in ranked
        ]

    async def _load_chunks(self, session: AsyncSession, chunk_ids: List[int]) -> Dict[int, ChunkRecord]:
        rows = (await session.execute(
            select(KnowledgeChunk).where(KnowledgeChunk.id.in_(chunk_ids))
        )).scalars().all()
        return {row.id: ChunkRecord.from_model(row) for row in rows}

    async def highest_version(self, agent_id: int) -> int:
        async with self.session_factory() as session:
            value = await session.scalar(
                select(AgentContentVersion.highest_version).where(
                    AgentContentVersion.agent_id == agent_id
                )
            )
            return int(value or 0)

    async def allocate_version(self, agent_id: int) -> int:
        await self._ensure_version_counter(agent_id)
        async with self.session_factory() as session:
            version = await self._increment_version(session, agent_id)
            await session.commit()
            return version

    async def _ensure_version_counter(self, agent_id: int) -> None:
        """Create the agent's counter row, seeded from any chunks already stored."""
        async with self.session_factory() as session:
            exists = await session.scalar(
                select(AgentContentVersion.agent_id).where(AgentContentVersion.agent_id == agent_id)
            )
            if exists is not None:
                return

            seed = await session.scalar(
                select(func.max(KnowledgeChunk.content_version)).where(
                    KnowledgeChunk.agent_id == agent_id
                )
            )
            session.add(AgentContentVersion(agent_id=agent_id, highest_version=int(seed or 0)))
            try:
                await session.commit()
            except IntegrityError:
                # Another writer created the counter row first
                await session.rollback()

    async def _increment_version(self, session: AsyncSession, agent_id: int) -> int:
        """UPDATE ... RETURNING inside the caller's transaction; not committed here."""
        result = await session.execute(
            update(AgentContentVersion)
            .where(AgentContentVersion.agent_id == agent_id)
            .values(
                highest_version=AgentContentVersion.highest_version + 1,
                updated_at=utcnow(),
            )
            .returning(AgentContentVersion.highest_version)
            .execution_options(synchronize_session=False)
        )
        version = result.scalar_one_or_none()
        if version is None:
            raise RuntimeError(f"Could not allocate a content version for agent {agent_id}")
        return int(version)

    async def find_by_hash(self, agent_id: int, content_hash: str) -> Optional[ChunkRecord]:
        async with self.session_factory() as session:
            row = await session.scalar(
                select(KnowledgeChunk).where(
                    KnowledgeChunk.agent_id == agent_id,
                    KnowledgeChunk.content_hash == content_hash,
                )
            )
            return ChunkRecord.from_model(row) if row is not None else None

    async def count_chunks(self, agent_id: int) -> int:
        async with self.session_factory() as session:
            value = await session.scalar(
                select(func.count(KnowledgeChunk.id)).where(KnowledgeChunk.agent_id == agent_id)
            )
            return int(value or 0)

    async def health_check(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(select(1))
            return True
        except Exception as exc:  # noqa: BLE001 - health probe reports, never raises
            logger.warning(f"Memory store health check failed: {exc}")
            return False
