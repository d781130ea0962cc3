"""
Document ingestion pipeline.

submit() records a queued job and hands it to a background worker;
run_job() executes it: chunk -> fingerprint -> embed -> version -> store.

Per-chunk failures are counted and processing continues; the job ends
failed if any chunk failed, keeping every chunk already written.
"""

import inspect
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..context_engine.chunker import ContentChunker, TextChunk
from ..context_engine.content_versioner import ContentVersioner
from ..core.exceptions import JobStateError, ValidationException
from ..models.chunk import ContentSource
from ..utils.text_processing import fingerprint
from .cache_service import CacheLayer
from .embedding_service import EmbeddingService
from .job_tracker import JobSnapshot, JobTracker
from .memory_store import ChunkRecord, MemoryStoreInterface

logger = logging.getLogger(__name__)

# enqueue(job_id, agent_id, documents) -> optional task id
Enqueue = Callable[[str, int, List[Dict[str, Any]]], Union[Optional[str], Awaitable[Optional[str]]]]

CHUNK_STORED = "stored"
CHUNK_SKIPPED = "skipped"


@dataclass
class IngestionDocument:
    """Extracted text of one document plus its provenance"""
    text: str
    file_name: Optional[str] = None
    source: str = ContentSource.DOCUMENT.value
    source_url: Optional[str] = None
    page_number: Optional[int] = None
    section: Optional[str] = None
    source_metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestionDocument":
        return cls(**{key: data.get(key) for key in cls.__dataclass_fields__ if key in data})

    def base_metadata(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {}
        if self.file_name:
            metadata["file_name"] = self.file_name
        if self.page_number is not None:
            metadata["page_number"] = self.page_number
        if self.section:
            metadata["section"] = self.section
        return metadata


@dataclass
class _RunCounters:
    processed: int = 0
    success: int = 0
    errors: int = 0
    skipped: int = 0
    first_error: Optional[str] = None


class IngestionService:
    def __init__(
        self,
        tracker: JobTracker,
        store: MemoryStoreInterface,
        embeddings: EmbeddingService,
        versioner: ContentVersioner,
        chunker: ContentChunker,
        cache: Optional[CacheLayer] = None,
        enqueue: Optional[Enqueue] = None,
    ):
        self.tracker = tracker
        self.store = store
        self.embeddings = embeddings
        self.versioner = versioner
        self.chunker = chunker
        self.cache = cache
        self.enqueue = enqueue

    async def submit(self, agent_id: int, documents: List[IngestionDocument]) -> JobSnapshot:
        """Create a queued job and hand it to the background worker; never waits for it."""
        if not documents:
            raise ValidationException("At least one document is required", ["documents"])
        for document in documents:
            if document.source not in {source.value for source in ContentSource}:
                raise ValidationException(f"Unsupported source type: {document.source}", ["source"])

        file_names = [document.file_name or f"document-{index + 1}" for index, document in enumerate(documents)]
        job = await self.tracker.create_job(agent_id, file_names)

        if self.enqueue is None:
            return job

        try:
            task_id = self.enqueue(job.job_id, agent_id, [document.to_dict() for document in documents])
            if inspect.isawaitable(task_id):
                task_id = await task_id
        except Exception as exc:
            await self.tracker.fail(job.job_id, f"Failed to enqueue ingestion: {exc}")
            raise

        if task_id:
            await self.tracker.set_task_id(job.job_id, str(task_id))
        return await self.tracker.get_or_raise(job.job_id)

    async def run_job(self, job_id: str, documents: List[IngestionDocument]) -> JobSnapshot:
        """Execute a queued job to a terminal state."""
        job = await self.tracker.claim(job_id)
        agent_id = job.agent_id
        start_time = time.time()

        try:
            planned = self._plan_chunks(documents)
        except Exception as exc:
            logger.error(f"Chunking failed: {exc}", extra={"job_id": job_id, "agent_id": agent_id})
            await self.tracker.fail(job_id, f"Chunking failed: {exc}")
            return await self.tracker.get_or_raise(job_id)

        # Blank documents yield no chunks; the job still completes
        counters = _RunCounters()
        total = len(planned)

        try:
            for document, chunk in planned:
                try:
                    outcome = await self._ingest_chunk(agent_id, document, chunk)
                except Exception as exc:  # noqa: BLE001 - recorded on the job, processing continues
                    counters.errors += 1
                    message = f"Chunk {chunk.chunk_index} of {document.file_name or 'document'}: {exc}"
                    if counters.first_error is None:
                        counters.first_error = message
                    logger.warning(
                        f"Chunk ingestion failed: {message}",
                        extra={"job_id": job_id, "agent_id": agent_id},
                    )
                else:
                    if outcome == CHUNK_SKIPPED:
                        counters.skipped += 1
                    else:
                        counters.success += 1

                counters.processed += 1
                await self.tracker.record_progress(
                    job_id,
                    processed=counters.processed,
                    total=total,
                    success=counters.success,
                    errors=counters.errors,
                    skipped=counters.skipped,
                )
        except JobStateError as exc:
            # Reaped or otherwise finalised elsewhere; its terminal state stands
            logger.warning(f"Stopped ingestion: {exc.message}", extra={"job_id": job_id})
            await self._invalidate_if_written(agent_id, counters)
            return await self.tracker.get_or_raise(job_id)
        except Exception as exc:
            await self.tracker.fail(job_id, f"Ingestion aborted: {exc}")
            await self._invalidate_if_written(agent_id, counters)
            raise

        summary = {
            "total_chunks": total,
            "chunks_processed": counters.processed,
            "success_count": counters.success,
            "error_count": counters.errors,
            "skipped_count": counters.skipped,
            "highest_version": await self.versioner.highest_version(agent_id),
            "duration_ms": round((time.time() - start_time) * 1000, 2),
        }

        await self._invalidate_if_written(agent_id, counters)

        if counters.errors:
            await self.tracker.fail(job_id, counters.first_error, result=summary)
            return await self.tracker.get_or_raise(job_id)

        return await self.tracker.complete(job_id, summary)

    def _plan_chunks(self, documents: List[IngestionDocument]) -> List[Tuple[IngestionDocument, TextChunk]]:
        planned = []
        for document in documents:
            for chunk in self.chunker.chunk_text(document.text or "", base_metadata=document.base_metadata()):
                planned.append((document, chunk))
        return planned

    async def _ingest_chunk(self, agent_id: int, document: IngestionDocument, chunk: TextChunk) -> str:
        content_hash = fingerprint(chunk.text)
        if await self.store.find_by_hash(agent_id, content_hash) is not None:
            return CHUNK_SKIPPED

        vector = await self.embeddings.embed_document(agent_id, chunk.text)

        record = ChunkRecord(
            agent_id=agent_id,
            text=chunk.text,
            content_hash=content_hash,
            content_version=0,  # assigned by the store on insert
            chunk_index=chunk.chunk_index,
            source=document.source,
            source_url=document.source_url,
            embedding=vector,
            chunk_metadata=chunk.to_metadata(),
            source_metadata=document.source_metadata,
        )
        async with self.versioner.agent_lock(agent_id):
            resolution = await self.versioner.store_new_content(record)
        return CHUNK_STORED if resolution.is_new else CHUNK_SKIPPED

    async def _invalidate_if_written(self, agent_id: int, counters: _RunCounters) -> None:
        if counters.success > 0 and self.cache is not None:
            await self.cache.invalidate_agent(agent_id)
