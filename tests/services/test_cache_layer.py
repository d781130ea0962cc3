"""
Tests for the agent-scoped CacheLayer over in-memory and Redis backends.
"""

import fakeredis
import numpy as np
import pytest
import pytest_asyncio

from knowledge_engine.services.cache_service import (
    CacheBackend,
    CacheLayer,
    InMemoryCacheBackend,
    RedisCacheBackend,
    agent_namespace,
)


def unit(*values):
    vector = np.array(values, dtype=float)
    return (vector / np.linalg.norm(vector)).tolist()


class BrokenBackend(CacheBackend):
    """Every operation fails the way an unreachable Redis would."""

    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, value, ttl):
        raise ConnectionError("cache down")

    async def delete(self, key):
        raise ConnectionError("cache down")

    async def delete_pattern(self, prefix):
        raise ConnectionError("cache down")

    async def append_bounded(self, list_key, value, max_size, ttl):
        raise ConnectionError("cache down")

    async def get_list(self, list_key):
        raise ConnectionError("cache down")

    async def ping(self):
        raise ConnectionError("cache down")


@pytest.fixture
def cache():
    return CacheLayer(InMemoryCacheBackend(), similarity_threshold=0.85, max_cache_size=3)


@pytest_asyncio.fixture
async def redis_backend():
    backend = RedisCacheBackend(fakeredis.FakeAsyncRedis(decode_responses=True))
    yield backend
    await backend.close()


def test_agent_namespace_validation():
    assert agent_namespace(7) == 7
    assert agent_namespace("12") == 12
    for bad in (0, -3, "abc", None, "1*", True, "01"):
        with pytest.raises(ValueError):
            agent_namespace(bad)


def test_keys_carry_agent_id():
    assert CacheLayer.answers_key(4) == "answers:4"
    assert CacheLayer.contexts_key(4) == "contexts:4"
    assert CacheLayer.embedding_key(4, "hello").startswith("embedding:4:")
    assert CacheLayer.embedding_key(4, "hello") != CacheLayer.embedding_key(5, "hello")


@pytest.mark.asyncio
async def test_invalid_agent_id_is_rejected_before_touching_backend(cache):
    with pytest.raises(ValueError):
        await cache.get_embedding("1:*", "hello")


@pytest.mark.asyncio
async def test_embeddings_are_isolated_per_agent(cache):
    await cache.set_embedding(1, "refund policy", [0.1, 0.2, 0.3])

    assert await cache.get_embedding(1, "refund policy") == [0.1, 0.2, 0.3]
    assert await cache.get_embedding(2, "refund policy") is None
    assert await cache.get_embedding(1, "shipping policy") is None


@pytest.mark.asyncio
async def test_similar_question_reuses_answer(cache):
    await cache.store_answer(1, "What is the refund window?", unit(1.0, 0.0, 0.0), {"answer": "30 days"})

    hit = await cache.lookup_answer(1, unit(0.95, 0.1, 0.0))

    assert hit is not None
    assert hit.payload == {"answer": "30 days"}
    assert hit.question == "What is the refund window?"
    assert hit.similarity >= 0.85


@pytest.mark.asyncio
async def test_dissimilar_question_misses(cache):
    await cache.store_answer(1, "What is the refund window?", unit(1.0, 0.0, 0.0), {"answer": "30 days"})

    assert await cache.lookup_answer(1, unit(0.5, 0.8, 0.0)) is None


@pytest.mark.asyncio
async def test_answers_never_cross_agents(cache):
    await cache.store_answer(1, "What is the refund window?", unit(1.0, 0.0, 0.0), {"answer": "30 days"})

    assert await cache.lookup_answer(2, unit(1.0, 0.0, 0.0)) is None


@pytest.mark.asyncio
async def test_answers_are_scoped_to_retrieval_variant(cache):
    await cache.store_answer(1, "What is the refund window?", unit(1.0, 0.0, 0.0), {"answer": "30 days"}, "defaults")

    assert await cache.lookup_answer(1, unit(1.0, 0.0, 0.0), "strict") is None
    assert await cache.lookup_answer(1, unit(1.0, 0.0, 0.0)) is None
    hit = await cache.lookup_answer(1, unit(1.0, 0.0, 0.0), "defaults")
    assert hit.payload == {"answer": "30 days"}


@pytest.mark.asyncio
async def test_best_match_wins(cache):
    await cache.store_answer(1, "first", unit(1.0, 0.3, 0.0), {"answer": "first"})
    await cache.store_answer(1, "second", unit(1.0, 0.0, 0.0), {"answer": "second"})

    hit = await cache.lookup_answer(1, unit(1.0, 0.0, 0.0))

    assert hit.payload["answer"] == "second"


@pytest.mark.asyncio
async def test_answer_list_is_bounded(cache):
    for index in range(5):
        await cache.store_answer(1, f"question {index}", unit(1.0, float(index), 0.0), {"answer": index})

    entries = await cache.backend.get_list(CacheLayer.answers_key(1))

    assert [entry["payload"]["answer"] for entry in entries] == [2, 3, 4]


@pytest.mark.asyncio
async def test_context_lookup_respects_variant(cache):
    await cache.store_context(1, "refund window", {"results": []}, variant="a")

    assert await cache.lookup_context(1, "refund window", variant="a") == {"results": []}
    assert await cache.lookup_context(1, "refund window", variant="b") is None
    assert await cache.lookup_context(2, "refund window", variant="a") is None


@pytest.mark.asyncio
async def test_invalidation_clears_only_that_agent(cache):
    for agent_id in (1, 2):
        await cache.set_embedding(agent_id, "text", [1.0])
        await cache.store_answer(agent_id, "q", unit(1.0, 0.0), {"answer": "a"})
        await cache.store_context(agent_id, "q", {"results": []})

    await cache.invalidate_agent(1)

    assert await cache.get_embedding(1, "text") is None
    assert await cache.lookup_answer(1, unit(1.0, 0.0)) is None
    assert await cache.lookup_context(1, "q") is None
    assert await cache.get_embedding(2, "text") == [1.0]
    assert await cache.lookup_answer(2, unit(1.0, 0.0)) is not None
    assert await cache.lookup_context(2, "q") == {"results": []}


@pytest.mark.asyncio
async def test_backend_outage_degrades_to_miss():
    cache = CacheLayer(BrokenBackend())

    assert await cache.get_embedding(1, "text") is None
    await cache.set_embedding(1, "text", [1.0])
    await cache.store_answer(1, "q", [1.0], {"answer": "a"})
    assert await cache.lookup_answer(1, [1.0]) is None
    assert await cache.lookup_context(1, "q") is None
    await cache.invalidate_agent(1)
    assert await cache.health_check() is False


@pytest.mark.asyncio
async def test_disabled_cache_never_stores():
    cache = CacheLayer(InMemoryCacheBackend(), enabled=False)

    await cache.set_embedding(1, "text", [1.0])

    assert await cache.get_embedding(1, "text") is None
    assert await cache.backend.get(CacheLayer.embedding_key(1, "text")) is None


@pytest.mark.asyncio
async def test_redis_backend_bounded_list(redis_backend):
    for index in range(4):
        await redis_backend.append_bounded("answers:1", {"n": index}, max_size=2, ttl=60)

    assert await redis_backend.get_list("answers:1") == [{"n": 2}, {"n": 3}]
    assert 0 < await redis_backend.client.ttl("answers:1") <= 60


@pytest.mark.asyncio
async def test_redis_backend_prefix_delete(redis_backend):
    await redis_backend.set("embedding:1:aaa", [1.0], ttl=60)
    await redis_backend.set("embedding:1:bbb", [2.0], ttl=60)
    await redis_backend.set("embedding:11:ccc", [3.0], ttl=60)

    removed = await redis_backend.delete_pattern("embedding:1:")

    assert removed == 2
    assert await redis_backend.get("embedding:1:aaa") is None
    assert await redis_backend.get("embedding:11:ccc") == [3.0]
    assert await redis_backend.ping() is True


@pytest.mark.asyncio
async def test_cache_layer_over_redis(redis_backend):
    cache = CacheLayer(redis_backend)
    await cache.store_answer(3, "Where is the office?", unit(0.0, 1.0), {"answer": "Downtown"})

    hit = await cache.lookup_answer(3, unit(0.0, 1.0))

    assert hit.payload == {"answer": "Downtown"}
    await cache.invalidate_agent(3)
    assert await cache.lookup_answer(3, unit(0.0, 1.0)) is None
