"""
Wiring for the knowledge engine: settings -> backends -> services.

The API process builds one set of components (lru_cache). Celery tasks run
each job on a fresh event loop, so they build short-lived components bound
to that loop via worker_components().
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ..context_engine.answer_auditor import AnswerAuditor
from ..context_engine.chunker import ContentChunker
from ..context_engine.content_versioner import ContentVersioner
from ..context_engine.hybrid_retriever import HybridRetriever, RetrievalConfig
from ..core.config import Settings, settings
from ..core.database import AsyncSessionLocal
from .agent_service import AgentMetadataSource
from .audit_service import AuditStore
from .cache_service import CacheBackend, CacheLayer, InMemoryCacheBackend, RedisCacheBackend
from .embedding_service import EmbeddingService
from .ingestion_service import Enqueue, IngestionService
from .job_tracker import JobTracker, SqlJobStore
from .llm_provider import LLMProvider, create_provider
from .memory_store import SqlMemoryStore
from .rag_service import RAGService

logger = logging.getLogger(__name__)


@dataclass
class EngineComponents:
    store: SqlMemoryStore
    cache: CacheLayer
    provider: LLMProvider
    embeddings: EmbeddingService
    versioner: ContentVersioner
    retriever: HybridRetriever
    auditor: AnswerAuditor
    audit_store: AuditStore
    tracker: JobTracker
    agents: AgentMetadataSource
    rag: RAGService
    ingestion: IngestionService


def build_cache_backend(config: Settings = settings) -> CacheBackend:
    if config.REDIS_URL:
        return RedisCacheBackend.from_url(config.REDIS_URL)
    logger.warning("REDIS_URL not set, using in-process cache")
    return InMemoryCacheBackend()


def build_components(
    session_factory: async_sessionmaker,
    cache_backend: CacheBackend,
    provider: LLMProvider,
    enqueue: Optional[Enqueue] = None,
    config: Settings = settings,
) -> EngineComponents:
    store = SqlMemoryStore(session_factory, dimension=config.EMBEDDING_DIMENSION)
    cache = CacheLayer(
        cache_backend,
        similarity_threshold=config.CACHE_SIMILARITY_THRESHOLD,
        max_cache_size=config.MAX_CACHE_SIZE,
        embedding_ttl=config.EMBEDDING_CACHE_TTL,
        answer_ttl=config.ANSWER_CACHE_TTL,
        context_ttl=config.CONTEXT_CACHE_TTL,
        enabled=config.CACHE_ENABLED,
    )
    embeddings = EmbeddingService(provider, cache, dimension=config.EMBEDDING_DIMENSION)
    versioner = ContentVersioner(store)
    retriever = HybridRetriever(store)
    auditor = AnswerAuditor()
    audit_store = AuditStore(session_factory)
    tracker = JobTracker(SqlJobStore(session_factory))
    agents = AgentMetadataSource(session_factory)

    rag = RAGService(
        agents=agents,
        embeddings=embeddings,
        retriever=retriever,
        provider=provider,
        auditor=auditor,
        audit_store=audit_store,
        cache=cache,
        default_config=RetrievalConfig.from_settings(config),
    )
    ingestion = IngestionService(
        tracker=tracker,
        store=store,
        embeddings=embeddings,
        versioner=versioner,
        chunker=ContentChunker(max_length=config.CHUNK_MAX_LENGTH, overlap=config.CHUNK_OVERLAP),
        cache=cache,
        enqueue=enqueue,
    )

    return EngineComponents(
        store=store,
        cache=cache,
        provider=provider,
        embeddings=embeddings,
        versioner=versioner,
        retriever=retriever,
        auditor=auditor,
        audit_store=audit_store,
        tracker=tracker,
        agents=agents,
        rag=rag,
        ingestion=ingestion,
    )


def enqueue_ingestion(job_id: str, agent_id: int, documents: List[Dict[str, Any]]) -> str:
    """Send a job to the Celery worker; returns the Celery task id."""
    from ..tasks.ingestion_tasks import process_ingestion_job

    task = process_ingestion_job.delay(job_id, documents)
    logger.info("Enqueued ingestion job", extra={"job_id": job_id, "agent_id": agent_id})
    return task.id


@lru_cache()
def get_engine() -> EngineComponents:
    return build_components(
        session_factory=AsyncSessionLocal,
        cache_backend=build_cache_backend(settings),
        provider=create_provider(settings),
        enqueue=enqueue_ingestion,
    )


@asynccontextmanager
async def worker_components(config: Settings = settings) -> AsyncIterator[EngineComponents]:
    """Components bound to the current event loop, disposed on exit."""
    engine = create_async_engine(config.DATABASE_URL, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    cache_backend = build_cache_backend(config)
    try:
        yield build_components(session_factory, cache_backend, create_provider(config), config=config)
    finally:
        await cache_backend.close()
        await engine.dispose()


# FastAPI dependencies

def get_rag_service() -> RAGService:
    return get_engine().rag


def get_ingestion_service() -> IngestionService:
    return get_engine().ingestion


def get_job_tracker() -> JobTracker:
    return get_engine().tracker


def get_audit_store() -> AuditStore:
    return get_engine().audit_store
