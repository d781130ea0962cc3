"""
Tests for Hybrid Retriever

Validates BM25, confidence fusion, filtering, ranking and the context budget.
"""

import pytest

from conftest import hashed_embedding
from knowledge_engine.context_engine.hybrid_retriever import (
    BM25,
    HybridRetriever,
    MatchType,
    RetrievalConfig,
    RetrievalOutcome,
    RetrievalResult,
    fuse_confidence,
)
from knowledge_engine.core.exceptions import RetrievalError
from knowledge_engine.services.memory_store import ChunkRecord, SqlMemoryStore
from knowledge_engine.utils.text_processing import fingerprint


def make_chunk(chunk_id: int, text: str = None, chunk_index: int = 0) -> ChunkRecord:
    text = text or f"chunk number {chunk_id}"
    return ChunkRecord(
        id=chunk_id,
        agent_id=1,
        text=text,
        content_hash=fingerprint(text),
        content_version=chunk_id,
        chunk_index=chunk_index,
    )


def hit(chunk: ChunkRecord, similarity: float, match_type: MatchType) -> RetrievalResult:
    return RetrievalResult(chunk=chunk, similarity=similarity, match_type=match_type)


class StubStore:
    """Returns canned branch results, or raises when given an exception."""

    def __init__(self, vector=None, keyword=None):
        self.vector = vector if vector is not None else []
        self.keyword = keyword if keyword is not None else []
        self.keyword_terms = None

    async def vector_query(self, agent_id, query_vector, k):
        if isinstance(self.vector, Exception):
            raise self.vector
        return self.vector[:k]

    async def keyword_query(self, agent_id, terms, k):
        self.keyword_terms = list(terms)
        if isinstance(self.keyword, Exception):
            raise self.keyword
        return self.keyword[:k]


def test_bm25_basic():
    """Test basic BM25 functionality"""
    corpus = [
        "AI agents are intelligent systems that automate tasks",
        "Machine learning models require training data",
        "Natural language processing helps computers understand text",
        "AI agents use machine learning for intelligent automation",
    ]

    bm25 = BM25()
    bm25.fit(corpus)
    results = bm25.search("AI agents", top_k=2)

    assert len(results) > 0
    assert results[0][0] in [0, 3]
    assert results[0][1] > 0


def test_bm25_refit_resets_index():
    bm25 = BM25()
    bm25.fit(["alpha beta", "gamma delta"])
    bm25.fit(["epsilon"])

    assert bm25.corpus_size == 1
    assert bm25.doc_lengths == [1]
    assert bm25.search("alpha", top_k=5) == []


def test_bm25_normalize_bounds():
    assert BM25.normalize(0.0) == 0.0
    assert BM25.normalize(-1.0) == 0.0
    assert BM25.normalize(1.0) == pytest.approx(0.5)
    assert 0.0 < BM25.normalize(50.0) < 1.0


def test_dual_match_never_below_single_match():
    for step in range(0, 101):
        s = step / 100
        both = fuse_confidence(s, MatchType.BOTH)
        vector = fuse_confidence(s, MatchType.VECTOR)
        keyword = fuse_confidence(s, MatchType.KEYWORD)
        assert both >= vector >= keyword
        for value in (both, vector, keyword):
            assert 0.0 <= value <= 1.0


def test_fusion_is_monotonic_and_clamped():
    for match_type in MatchType:
        previous = -1.0
        for step in range(-10, 121):
            value = fuse_confidence(step / 100, match_type)
            assert value >= previous
            assert 0.0 <= value <= 1.0
            previous = value
    assert fuse_confidence(0.6, MatchType.BOTH) == pytest.approx(0.7)
    assert fuse_confidence(0.6, MatchType.KEYWORD) == pytest.approx(0.51)


def test_config_overrides_accept_public_names():
    config = RetrievalConfig().merged_with({"similarity_threshold": 0.5, "max_chunks": 2, "vector_k": None})

    assert config.min_similarity == 0.5
    assert config.max_chunks == 2
    assert config.vector_k == 8
    assert config.to_metadata() == {
        "vector_k": 8,
        "keyword_k": 3,
        "similarity_threshold": 0.5,
        "confidence_threshold": 0.4,
        "max_chunks": 2,
    }


@pytest.mark.asyncio
async def test_chunk_in_both_results_is_tagged_both_with_vector_similarity():
    shared = make_chunk(1)
    store = StubStore(
        vector=[hit(shared, 0.6, MatchType.VECTOR)],
        keyword=[hit(shared, 0.9, MatchType.KEYWORD)],
    )

    outcome = await HybridRetriever(store).retrieve(1, "chunk number", [0.1], RetrievalConfig())

    assert len(outcome.results) == 1
    result = outcome.results[0]
    assert result.match_type == MatchType.BOTH
    assert result.similarity == 0.6
    assert result.confidence == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_keyword_terms_are_stop_word_filtered():
    store = StubStore()

    await HybridRetriever(store).retrieve(1, "What is the refund policy for the store?", [0.1])

    assert store.keyword_terms == ["refund", "policy", "store"]


@pytest.mark.asyncio
async def test_thresholds_filter_low_similarity_and_low_confidence():
    store = StubStore(
        vector=[
            hit(make_chunk(1), 0.9, MatchType.VECTOR),
            hit(make_chunk(2), 0.2, MatchType.VECTOR),
        ],
        keyword=[hit(make_chunk(3), 0.45, MatchType.KEYWORD)],
    )
    config = RetrievalConfig(min_similarity=0.3, confidence_threshold=0.4)

    outcome = await HybridRetriever(store).retrieve(1, "anything", [0.1], config)

    assert [result.chunk_id for result in outcome.results] == [1]
    assert outcome.chunks_searched == 3
    assert outcome.chunks_filtered == 1
    for result in outcome.results:
        assert result.similarity >= config.min_similarity
        assert result.confidence >= config.confidence_threshold


@pytest.mark.asyncio
async def test_ranking_is_deterministic_on_ties():
    store = StubStore(vector=[
        hit(make_chunk(1, chunk_index=4), 0.7, MatchType.VECTOR),
        hit(make_chunk(2, chunk_index=1), 0.7, MatchType.VECTOR),
        hit(make_chunk(3, chunk_index=0), 0.8, MatchType.VECTOR),
    ])

    outcome = await HybridRetriever(store).retrieve(1, "anything", [0.1])

    assert [result.chunk_id for result in outcome.results] == [3, 2, 1]


@pytest.mark.asyncio
async def test_max_chunks_truncates():
    store = StubStore(vector=[hit(make_chunk(i), 0.9 - i / 100, MatchType.VECTOR) for i in range(1, 8)])

    outcome = await HybridRetriever(store).retrieve(1, "anything", [0.1], RetrievalConfig(max_chunks=3))

    assert len(outcome.results) == 3
    assert outcome.chunks_filtered == 7


@pytest.mark.asyncio
async def test_overflowing_chunk_is_skipped_not_truncated():
    store = StubStore(vector=[
        hit(make_chunk(1, "a" * 30), 0.9, MatchType.VECTOR),
        hit(make_chunk(2, "b" * 50), 0.8, MatchType.VECTOR),
        hit(make_chunk(3, "c" * 10), 0.7, MatchType.VECTOR),
    ])

    outcome = await HybridRetriever(store).retrieve(1, "anything", [0.1], RetrievalConfig(max_context_length=45))

    assert [result.chunk_id for result in outcome.results] == [1, 3]
    assert outcome.context_length == 40
    assert all(len(result.chunk.text) in (30, 10) for result in outcome.results)


@pytest.mark.asyncio
async def test_nothing_relevant_is_explicit():
    store = StubStore(vector=[hit(make_chunk(1), 0.1, MatchType.VECTOR)])

    outcome = await HybridRetriever(store).retrieve(1, "anything", [0.1])

    assert outcome.has_relevant_content is False
    assert outcome.results == []
    assert outcome.average_similarity == 0.0
    assert outcome.average_confidence == 0.0


@pytest.mark.asyncio
async def test_one_failed_branch_degrades_to_other_signal():
    store = StubStore(
        vector=RuntimeError("vector index offline"),
        keyword=[hit(make_chunk(1), 0.8, MatchType.KEYWORD)],
    )

    outcome = await HybridRetriever(store).retrieve(1, "chunk", [0.1])

    assert [result.match_type for result in outcome.results] == [MatchType.KEYWORD]
    assert outcome.results[0].confidence == pytest.approx(0.68)


@pytest.mark.asyncio
async def test_both_branches_failing_raises():
    store = StubStore(vector=RuntimeError("down"), keyword=RuntimeError("also down"))

    with pytest.raises(RetrievalError):
        await HybridRetriever(store).retrieve(1, "chunk", [0.1])


@pytest.mark.asyncio
async def test_outcome_survives_cache_serialisation():
    store = StubStore(vector=[hit(make_chunk(1), 0.9, MatchType.VECTOR)])
    outcome = await HybridRetriever(store).retrieve(1, "anything", [0.1], RetrievalConfig(max_chunks=2))

    restored = RetrievalOutcome.from_dict(outcome.to_dict())

    assert restored.results[0].chunk.text == outcome.results[0].chunk.text
    assert restored.results[0].match_type == MatchType.VECTOR
    assert restored.config == outcome.config
    assert restored.has_relevant_content


@pytest.mark.asyncio
async def test_retrieval_against_sql_store(session_factory):
    store = SqlMemoryStore(session_factory)
    text = "Our support team is available Monday through Friday from nine to five."
    await store.insert_chunk(ChunkRecord(
        agent_id=1,
        text=text,
        content_hash=fingerprint(text),
        content_version=1,
        chunk_index=0,
        embedding=hashed_embedding(text),
    ))
    question = "When is the support team available on Monday?"

    outcome = await HybridRetriever(store).retrieve(1, question, hashed_embedding(question))

    assert len(outcome.results) == 1
    assert outcome.results[0].match_type == MatchType.BOTH
    assert outcome.results[0].confidence > 0.4
    assert outcome.retrieval_time_ms >= 0
