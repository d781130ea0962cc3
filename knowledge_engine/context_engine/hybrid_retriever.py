"""
Hybrid Retriever - Dense + Sparse Retrieval

Combines vector similarity search (dense) with keyword search (sparse)
to ground answers in an agent's own knowledge chunks.

Key Features:
- Dense and sparse queries run concurrently against the memory store
- Chunks found by both signals get a confidence boost over single-signal matches
- Threshold filtering, deterministic ranking and a hard context budget
- An explicit "no relevant content" outcome so callers can fall back
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

import numpy as np

from ..core.exceptions import RetrievalError
from ..utils.text_processing import extract_keywords

if TYPE_CHECKING:
    from ..services.memory_store import ChunkRecord, MemoryStoreInterface

logger = logging.getLogger(__name__)

KEYWORD_ONLY_WEIGHT = 0.85
DUAL_MATCH_BOOST = 0.25


class MatchType(str, Enum):
    VECTOR = "vector"
    KEYWORD = "keyword"
    BOTH = "both"


@dataclass
class RetrievalConfig:
    """Per-request retrieval knobs"""
    vector_k: int = 8
    keyword_k: int = 3
    min_similarity: float = 0.3
    confidence_threshold: float = 0.4
    max_chunks: int = 5
    max_context_length: int = 4000

    @classmethod
    def from_settings(cls, settings) -> "RetrievalConfig":
        return cls(
            vector_k=settings.RETRIEVAL_VECTOR_K,
            keyword_k=settings.RETRIEVAL_KEYWORD_K,
            min_similarity=settings.RETRIEVAL_MIN_SIMILARITY,
            confidence_threshold=settings.RETRIEVAL_CONFIDENCE_THRESHOLD,
            max_chunks=settings.RETRIEVAL_MAX_CHUNKS,
            max_context_length=settings.RETRIEVAL_MAX_CONTEXT_LENGTH,
        )

    def merged_with(self, overrides: Optional[Dict[str, Any]]) -> "RetrievalConfig":
        """
        Apply request overrides on top of this config.

        Accepts both the field names and the public aliases
        (similarity_threshold for min_similarity).
        """
        if not overrides:
            return self
        values = asdict(self)
        for key, value in overrides.items():
            if value is None:
                continue
            if key == "similarity_threshold":
                key = "min_similarity"
            if key in values:
                values[key] = value
        return RetrievalConfig(**values)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "vector_k": self.vector_k,
            "keyword_k": self.keyword_k,
            "similarity_threshold": self.min_similarity,
            "confidence_threshold": self.confidence_threshold,
            "max_chunks": self.max_chunks,
        }


@dataclass
class RetrievalResult:
    """A single retrieval result with scoring"""
    chunk: "ChunkRecord"
    similarity: float
    confidence: float = 0.0
    match_type: MatchType = MatchType.VECTOR

    @property
    def chunk_id(self) -> Optional[int]:
        return self.chunk.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk": self.chunk.to_dict(),
            "similarity": self.similarity,
            "confidence": self.confidence,
            "match_type": self.match_type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetrievalResult":
        from ..services.memory_store import ChunkRecord

        return cls(
            chunk=ChunkRecord.from_dict(data["chunk"]),
            similarity=float(data["similarity"]),
            confidence=float(data["confidence"]),
            match_type=MatchType(data["match_type"]),
        )


@dataclass
class RetrievalOutcome:
    """Selected chunks plus the aggregate numbers reported with an answer"""
    results: List[RetrievalResult] = field(default_factory=list)
    chunks_searched: int = 0
    chunks_filtered: int = 0
    average_similarity: float = 0.0
    context_length: int = 0
    retrieval_time_ms: float = 0.0
    config: RetrievalConfig = field(default_factory=RetrievalConfig)

    @property
    def has_relevant_content(self) -> bool:
        return bool(self.results)

    @property
    def average_confidence(self) -> float:
        if not self.results:
            return 0.0
        return sum(result.confidence for result in self.results) / len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [result.to_dict() for result in self.results],
            "chunks_searched": self.chunks_searched,
            "chunks_filtered": self.chunks_filtered,
            "average_similarity": self.average_similarity,
            "context_length": self.context_length,
            "retrieval_time_ms": self.retrieval_time_ms,
            "config": asdict(self.config),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetrievalOutcome":
        return cls(
            results=[RetrievalResult.from_dict(item) for item in data.get("results", [])],
            chunks_searched=data.get("chunks_searched", 0),
            chunks_filtered=data.get("chunks_filtered", 0),
            average_similarity=data.get("average_similarity", 0.0),
            context_length=data.get("context_length", 0),
            retrieval_time_ms=data.get("retrieval_time_ms", 0.0),
            config=RetrievalConfig(**data.get("config", {})),
        )


def fuse_confidence(similarity: float, match_type: MatchType) -> float:
    """
    Combine a similarity score and its match type into a confidence in [0, 1].

    Monotonic in similarity for every match type; a dual match is never
    below either single-signal match at the same similarity.
    """
    s = min(1.0, max(0.0, float(similarity)))
    if match_type == MatchType.BOTH:
        confidence = s + DUAL_MATCH_BOOST * (1.0 - s)
    elif match_type == MatchType.KEYWORD:
        confidence = KEYWORD_ONLY_WEIGHT * s
    else:
        confidence = s
    return min(1.0, max(0.0, confidence))


class BM25:
    """
    BM25 (Best Matching 25) - Sparse keyword retrieval.

    Industry standard for keyword matching, better than TF-IDF for retrieval.
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        """
        Args:
            k1: Term frequency saturation parameter (1.2-2.0 typical)
            b: Length normalization parameter (0.75 typical)
        """
        self.k1 = k1
        self.b = b
        self.corpus_size = 0
        self.avgdl = 0.0
        self.doc_freqs: List[Counter] = []
        self.idf: Dict[str, float] = {}
        self.doc_lengths: List[int] = []

    def fit(self, corpus: List[str]) -> None:
        """Build the index from a list of documents."""
        self.corpus_size = len(corpus)
        self.doc_lengths = []
        self.doc_freqs = []
        document_frequency: Counter = Counter()

        for doc in corpus:
            tokens = self._tokenize(doc)
            self.doc_lengths.append(len(tokens))
            self.doc_freqs.append(Counter(tokens))
            document_frequency.update(set(tokens))

        self.avgdl = sum(self.doc_lengths) / self.corpus_size if self.corpus_size > 0 else 0.0

        # IDF = log((N - df + 0.5) / (df + 0.5) + 1)
        self.idf = {
            term: math.log((self.corpus_size - df + 0.5) / (df + 0.5) + 1.0)
            for term, df in document_frequency.items()
        }

    def search(self, query: str, top_k: int = 10) -> List[Tuple[int, float]]:
        """
        Returns:
            List of (doc_index, score) tuples, sorted by score desc
        """
        if self.corpus_size == 0 or self.avgdl == 0:
            return []

        query_tokens = self._tokenize(query)
        scores = np.zeros(self.corpus_size)

        for doc_id in range(self.corpus_size):
            score = 0.0
            doc_len = self.doc_lengths[doc_id]
            term_freqs = self.doc_freqs[doc_id]

            for token in query_tokens:
                if token not in self.idf:
                    continue
                tf = term_freqs.get(token, 0)
                numerator = tf * (self.k1 + 1)
                denominator = tf + self.k1 * (1 - self.b + self.b * (doc_len / self.avgdl))
                score += self.idf[token] * (numerator / denominator)

            scores[doc_id] = score

        top_indices = np.argsort(-scores, kind="stable")[:top_k]
        return [(int(idx), float(scores[idx])) for idx in top_indices if scores[idx] > 0]

    @staticmethod
    def normalize(score: float) -> float:
        """Map an unbounded BM25 score into [0, 1)."""
        if score <= 0:
            return 0.0
        return score / (score + 1.0)

    def _tokenize(self, text: str) -> List[str]:
        tokens = text.lower().split()
        tokens = [''.join(c for c in token if c.isalnum()) for token in tokens]
        return [t for t in tokens if t]


class HybridRetriever:
    """
    Hybrid retrieval combining dense vector search and sparse keyword search.

    Strategy:
    1. Dense + sparse queries, concurrently
    2. Merge by chunk id (vector similarity wins for dual matches)
    3. Fuse confidence, filter, rank, truncate, apply context budget
    """

    def __init__(self, store: "MemoryStoreInterface"):
        self.store = store

    async def retrieve(
        self,
        agent_id: int,
        question: str,
        query_embedding: List[float],
        config: Optional[RetrievalConfig] = None,
    ) -> RetrievalOutcome:
        config = config or RetrievalConfig()
        start_time = time.time()

        terms = extract_keywords(question)
        vector_hits, keyword_hits = await self._query_both(agent_id, query_embedding, terms, config)

        merged = self._merge(vector_hits, keyword_hits)
        for result in merged:
            result.confidence = fuse_confidence(result.similarity, result.match_type)

        survivors = [
            result for result in merged
            if result.similarity >= config.min_similarity
            and result.confidence >= config.confidence_threshold
        ]
        survivors.sort(key=lambda r: (-r.confidence, -r.similarity, r.chunk.chunk_index))

        selected: List[RetrievalResult] = []
        context_length = 0
        for result in survivors[:config.max_chunks]:
            length = len(result.chunk.text)
            if context_length + length > config.max_context_length:
                continue
            selected.append(result)
            context_length += length

        average_similarity = (
            sum(result.similarity for result in selected) / len(selected) if selected else 0.0
        )
        outcome = RetrievalOutcome(
            results=selected,
            chunks_searched=len(merged),
            chunks_filtered=len(survivors),
            average_similarity=round(average_similarity, 4),
            context_length=context_length,
            retrieval_time_ms=round((time.time() - start_time) * 1000, 2),
            config=config,
        )

        logger.info(
            "Hybrid retrieval complete",
            extra={
                "agent_id": agent_id,
                "duration_ms": outcome.retrieval_time_ms,
                "chunks_searched": outcome.chunks_searched,
                "chunks_used": len(selected),
            },
        )
        return outcome

    async def _query_both(
        self,
        agent_id: int,
        query_embedding: List[float],
        terms: List[str],
        config: RetrievalConfig,
    ) -> Tuple[List[RetrievalResult], List[RetrievalResult]]:
        vector_result, keyword_result = await asyncio.gather(
            self.store.vector_query(agent_id, query_embedding, config.vector_k),
            self.store.keyword_query(agent_id, terms, config.keyword_k),
            return_exceptions=True,
        )

        vector_failed = isinstance(vector_result, BaseException)
        keyword_failed = isinstance(keyword_result, BaseException)

        if vector_failed and keyword_failed:
            logger.error(
                f"Both retrieval branches failed: {vector_result}; {keyword_result}",
                extra={"agent_id": agent_id},
            )
            raise RetrievalError(f"Retrieval failed for agent {agent_id}: {vector_result}")

        if vector_failed:
            logger.warning(
                f"Vector search failed, continuing with keyword results only: {vector_result}",
                extra={"agent_id": agent_id},
            )
            vector_result = []
        if keyword_failed:
            logger.warning(
                f"Keyword search failed, continuing with vector results only: {keyword_result}",
                extra={"agent_id": agent_id},
            )
            keyword_result = []

        return list(vector_result), list(keyword_result)

    @staticmethod
    def _merge(
        vector_hits: List[RetrievalResult],
        keyword_hits: List[RetrievalResult],
    ) -> List[RetrievalResult]:
        merged: Dict[Any, RetrievalResult] = {}

        for hit in vector_hits:
            merged[hit.chunk_id] = RetrievalResult(
                chunk=hit.chunk,
                similarity=hit.similarity,
                match_type=MatchType.VECTOR,
            )

        for hit in keyword_hits:
            existing = merged.get(hit.chunk_id)
            if existing is not None:
                existing.match_type = MatchType.BOTH
                continue
            merged[hit.chunk_id] = RetrievalResult(
                chunk=hit.chunk,
                similarity=hit.similarity,
                match_type=MatchType.KEYWORD,
            )

        return list(merged.values())
