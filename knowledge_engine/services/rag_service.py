"""
Question answering over an agent's knowledge.

Flow for ask():
    1. Resolve the agent (unknown agents are a 404)
    2. Embed the question (agent-scoped embedding cache)
    3. Reuse a cached answer for a near-identical question
    4. Retrieve context (context cache, else hybrid retrieval)
    5. Generate a grounded answer, or fall back when nothing relevant was found
    6. Audit the answer (fails open) and persist the audit (best effort)
    7. Cache the answer for reuse (grounded answers only)
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from ..context_engine.answer_auditor import AnswerAuditor, AuditResult
from ..context_engine.hybrid_retriever import HybridRetriever, RetrievalConfig, RetrievalOutcome
from ..core.exceptions import NotFoundException, ValidationException
from ..utils.text_processing import text_hash
from .agent_service import AgentMetadata, AgentMetadataSource
from .audit_service import AuditStore
from .cache_service import CacheLayer
from .embedding_service import EmbeddingService
from .llm_provider import LLMProvider

logger = logging.getLogger(__name__)

REFUSAL_ANSWER = (
    "I'm sorry, I don't have information about that in my knowledge base, "
    "so I can't answer this question."
)

GROUNDED_INSTRUCTIONS = (
    "Answer using only the context provided. "
    "If the context does not contain the answer, say that you don't know."
)

GENERAL_KNOWLEDGE_INSTRUCTIONS = (
    "No relevant information was found in your knowledge base. "
    "Answer from general knowledge and make clear the answer is not based on your documents."
)


@dataclass
class AskResult:
    answer: str
    confidence: float
    fallback_used: bool
    cache_hit: bool = False
    sources: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    audit: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_cached(cls, payload: Dict[str, Any], similarity: float) -> "AskResult":
        metadata = dict(payload.get("metadata") or {})
        metadata["cache_similarity"] = round(similarity, 4)
        return cls(
            answer=payload["answer"],
            confidence=payload.get("confidence", 0.0),
            fallback_used=payload.get("fallback_used", False),
            cache_hit=True,
            sources=payload.get("sources") or [],
            metadata=metadata,
            audit=payload.get("audit"),
        )


class RAGService:
    def __init__(
        self,
        agents: AgentMetadataSource,
        embeddings: EmbeddingService,
        retriever: HybridRetriever,
        provider: LLMProvider,
        auditor: AnswerAuditor,
        audit_store: Optional[AuditStore] = None,
        cache: Optional[CacheLayer] = None,
        default_config: Optional[RetrievalConfig] = None,
    ):
        self.agents = agents
        self.embeddings = embeddings
        self.retriever = retriever
        self.provider = provider
        self.auditor = auditor
        self.audit_store = audit_store
        self.cache = cache
        self.default_config = default_config or RetrievalConfig()

    async def ask(
        self,
        agent_id: int,
        question: str,
        config: Optional[Dict[str, Any]] = None,
    ) -> AskResult:
        """Answer a question for an agent using its knowledge chunks"""
        question = (question or "").strip()
        if not question:
            raise ValidationException("Question must not be empty", ["question"])

        agent = await self.agents.get(agent_id)
        if agent is None:
            raise NotFoundException(f"Agent {agent_id} not found", resource_type="agent", resource_id=agent_id)

        retrieval_config = self.default_config.merged_with(config)
        variant = self._config_variant(retrieval_config)
        question_embedding = await self.embeddings.embed_query(agent_id, question)

        if self.cache is not None:
            cached = await self.cache.lookup_answer(agent_id, question_embedding, variant)
            if cached is not None:
                return AskResult.from_cached(cached.payload, cached.similarity)

        outcome = await self._retrieve(agent_id, question, question_embedding, retrieval_config, variant)

        if outcome.has_relevant_content:
            context = self._format_context(outcome)
            answer = await self.provider.generate(
                question,
                context=context,
                system_prompt=f"{agent.system_prompt()} {GROUNDED_INSTRUCTIONS}",
            )
            confidence = round(outcome.average_confidence, 4)
            fallback_used = False
        else:
            answer = await self._fallback_answer(agent, question)
            confidence = 0.0
            fallback_used = True

        sources = self._extract_sources(outcome)
        audit = await self._audit(agent_id, question, answer, outcome, confidence)

        result = AskResult(
            answer=answer,
            confidence=confidence,
            fallback_used=fallback_used,
            sources=sources,
            metadata=self._build_metadata(outcome, sources, fallback_used),
            audit=audit.to_dict(),
        )

        if not fallback_used and self.cache is not None:
            await self.cache.store_answer(agent_id, question, question_embedding, result.to_dict(), variant)

        logger.info(
            f"Answered question (fallback={fallback_used}, confidence={confidence})",
            extra={"agent_id": agent_id, "audit_id": audit.audit_id},
        )
        return result

    async def _retrieve(
        self,
        agent_id: int,
        question: str,
        question_embedding: List[float],
        config: RetrievalConfig,
        variant: str,
    ) -> RetrievalOutcome:
        if self.cache is not None:
            cached = await self.cache.lookup_context(agent_id, question, variant)
            if cached is not None:
                try:
                    return RetrievalOutcome.from_dict(cached)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning(f"Discarding unreadable cached context: {exc}", extra={"agent_id": agent_id})

        outcome = await self.retriever.retrieve(agent_id, question, question_embedding, config)
        if self.cache is not None:
            await self.cache.store_context(agent_id, question, outcome.to_dict(), variant)
        return outcome

    @staticmethod
    def _config_variant(config: RetrievalConfig) -> str:
        """Cache variant for the effective retrieval settings"""
        return text_hash(json.dumps(asdict(config), sort_keys=True))

    async def _fallback_answer(self, agent: AgentMetadata, question: str) -> str:
        if agent.do_not_answer_from_general_knowledge:
            return REFUSAL_ANSWER
        return await self.provider.generate(
            question,
            system_prompt=f"{agent.system_prompt()} {GENERAL_KNOWLEDGE_INSTRUCTIONS}",
        )

    async def _audit(
        self,
        agent_id: int,
        question: str,
        answer: str,
        outcome: RetrievalOutcome,
        confidence: float,
    ) -> AuditResult:
        try:
            audit = self.auditor.audit(
                question,
                answer,
                [result.chunk.text for result in outcome.results],
                confidence,
            )
        except Exception as exc:  # noqa: BLE001 - the answer is delivered regardless
            logger.error(f"Answer audit failed: {exc}", extra={"agent_id": agent_id})
            audit = self.auditor.fail_open(str(exc))

        if self.audit_store is not None:
            try:
                await self.audit_store.save(audit, agent_id, question)
            except Exception as exc:  # noqa: BLE001 - audit persistence is best effort
                logger.warning(f"Failed to persist answer audit: {exc}", extra={"agent_id": agent_id})

        return audit

    @staticmethod
    def _format_context(outcome: RetrievalOutcome) -> str:
        formatted_context = "Relevant information from knowledge base:\n\n"
        for index, result in enumerate(outcome.results, start=1):
            source = result.chunk.source_url or result.chunk.chunk_metadata.get("file_name") or result.chunk.source
            formatted_context += (
                f"[Context {index}] (Relevance: {result.confidence:.2f}) from {source}:\n"
                f"{result.chunk.text}\n\n"
            )
        return formatted_context

    @staticmethod
    def _extract_sources(outcome: RetrievalOutcome) -> List[Dict[str, Any]]:
        return [
            {
                "source": result.chunk.source,
                "source_url": result.chunk.source_url,
                "chunk_index": result.chunk.chunk_index,
                "confidence": round(result.confidence, 4),
                "similarity": round(result.similarity, 4),
                "match_type": result.match_type.value,
            }
            for result in outcome.results
        ]

    @staticmethod
    def _build_metadata(
        outcome: RetrievalOutcome,
        sources: List[Dict[str, Any]],
        fallback_used: bool,
    ) -> Dict[str, Any]:
        distinct_sources = {
            (result.chunk.source, result.chunk.source_url, result.chunk.chunk_metadata.get("file_name"))
            for result in outcome.results
        }
        return {
            "retrieval_strategy": "fallback" if fallback_used else "hybrid",
            "chunks_used": len(outcome.results),
            "chunks_searched": outcome.chunks_searched,
            "chunks_filtered": outcome.chunks_filtered,
            "context_length": outcome.context_length,
            "sources_count": len(distinct_sources),
            "average_similarity": outcome.average_similarity,
            "retrieval_time_ms": outcome.retrieval_time_ms,
            "retrieval_config": outcome.config.to_metadata(),
            "sources": sources,
        }
