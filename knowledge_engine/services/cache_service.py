"""
Agent-scoped caching for embeddings, answers and retrieval contexts.

Every key carries the agent id:
    embedding:{agent_id}:{sha256(text)}   single vector, 24h
    answers:{agent_id}                    bounded list of answered questions, 1h
    contexts:{agent_id}                   bounded list of retrieval outcomes, 30m

Backend failures never fail a request; they are logged and treated as misses.
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Deque, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as redis

from ..utils.text_processing import cosine_similarity, text_hash
from ..utils.time import utcnow

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Minimal key/value + bounded list contract used by the cache layer"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def delete_pattern(self, prefix: str) -> int:
        """Delete every key starting with prefix; returns the number removed"""

    @abstractmethod
    async def append_bounded(self, list_key: str, value: Any, max_size: int, ttl: int) -> None:
        """Append and trim to the newest max_size entries, atomically per key"""

    @abstractmethod
    async def get_list(self, list_key: str) -> List[Any]:
        pass

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class RedisCacheBackend(CacheBackend):
    """redis.asyncio backend; values are stored as JSON strings"""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheBackend":
        return cls(redis.from_url(url, encoding="utf-8", decode_responses=True))

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int) -> None:
        await self.client.setex(key, ttl, json.dumps(value))

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_pattern(self, prefix: str) -> int:
        removed = 0
        batch: List[str] = []
        async for key in self.client.scan_iter(match=f"{prefix}*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += await self.client.delete(*batch)
                batch = []
        if batch:
            removed += await self.client.delete(*batch)
        return removed

    async def append_bounded(self, list_key: str, value: Any, max_size: int, ttl: int) -> None:
        # MULTI/EXEC keeps push + trim + expire atomic against concurrent writers
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.rpush(list_key, json.dumps(value))
            pipe.ltrim(list_key, -max_size, -1)
            pipe.expire(list_key, ttl)
            await pipe.execute()

    async def get_list(self, list_key: str) -> List[Any]:
        return [json.loads(item) for item in await self.client.lrange(list_key, 0, -1)]

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class InMemoryCacheBackend(CacheBackend):
    """Process-local backend used in development and tests"""

    def __init__(self):
        self._values: Dict[str, Tuple[Any, float]] = {}
        self._lists: Dict[str, Tuple[Deque[Any], float]] = {}
        self._lock = asyncio.Lock()

    def _expired(self, expires_at: float) -> bool:
        return expires_at <= time.monotonic()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at):
                del self._values[key]
                return None
            return json.loads(value)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        async with self._lock:
            self._values[key] = (json.dumps(value), time.monotonic() + ttl)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)
            self._lists.pop(key, None)

    async def delete_pattern(self, prefix: str) -> int:
        async with self._lock:
            keys = [key for key in list(self._values) + list(self._lists) if key.startswith(prefix)]
            for key in keys:
                self._values.pop(key, None)
                self._lists.pop(key, None)
            return len(keys)

    async def append_bounded(self, list_key: str, value: Any, max_size: int, ttl: int) -> None:
        async with self._lock:
            entry = self._lists.get(list_key)
            current = entry[0] if entry is not None and not self._expired(entry[1]) else ()
            items = deque(current, maxlen=max_size)  # oldest entries fall off the left
            items.append(json.dumps(value))
            self._lists[list_key] = (items, time.monotonic() + ttl)

    async def get_list(self, list_key: str) -> List[Any]:
        async with self._lock:
            entry = self._lists.get(list_key)
            if entry is None:
                return []
            items, expires_at = entry
            if self._expired(expires_at):
                del self._lists[list_key]
                return []
            return [json.loads(item) for item in items]


@dataclass
class CachedAnswer:
    question: str
    payload: Dict[str, Any]
    similarity: float


def agent_namespace(agent_id: Any) -> int:
    """Validate an agent id before it is used in a cache key."""
    if isinstance(agent_id, bool):
        raise ValueError(f"Invalid agent id for cache namespace: {agent_id!r}")
    try:
        namespace = int(agent_id)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid agent id for cache namespace: {agent_id!r}")
    if namespace <= 0 or str(namespace) != str(agent_id).strip():
        raise ValueError(f"Invalid agent id for cache namespace: {agent_id!r}")
    return namespace


class CacheLayer:
    """Agent-isolated embedding, answer and context caches over a CacheBackend"""

    def __init__(
        self,
        backend: CacheBackend,
        similarity_threshold: float = 0.85,
        max_cache_size: int = 100,
        embedding_ttl: int = 60 * 60 * 24,
        answer_ttl: int = 60 * 60,
        context_ttl: int = 60 * 30,
        enabled: bool = True,
    ):
        self.backend = backend
        self.similarity_threshold = similarity_threshold
        self.max_cache_size = max_cache_size
        self.embedding_ttl = embedding_ttl
        self.answer_ttl = answer_ttl
        self.context_ttl = context_ttl
        self.enabled = enabled

    # Keys

    @staticmethod
    def embedding_key(agent_id: Any, text: str) -> str:
        return f"embedding:{agent_namespace(agent_id)}:{text_hash(text)}"

    @staticmethod
    def answers_key(agent_id: Any) -> str:
        return f"answers:{agent_namespace(agent_id)}"

    @staticmethod
    def contexts_key(agent_id: Any) -> str:
        return f"contexts:{agent_namespace(agent_id)}"

    async def _safe(self, operation: str, awaitable: Awaitable, default: Any = None) -> Any:
        try:
            return await awaitable
        except Exception as exc:  # noqa: BLE001 - cache outages degrade to a miss
            logger.warning(f"Cache {operation} failed, bypassing cache: {exc}")
            return default

    # Embeddings

    async def get_embedding(self, agent_id: Any, text: str) -> Optional[List[float]]:
        if not self.enabled:
            return None
        key = self.embedding_key(agent_id, text)
        return await self._safe("get_embedding", self.backend.get(key))

    async def set_embedding(self, agent_id: Any, text: str, vector: Sequence[float]) -> None:
        if not self.enabled:
            return
        key = self.embedding_key(agent_id, text)
        await self._safe("set_embedding", self.backend.set(key, list(vector), self.embedding_ttl))

    # Answers

    async def lookup_answer(
        self,
        agent_id: Any,
        question_embedding: Sequence[float],
        variant: str = "",
    ) -> Optional[CachedAnswer]:
        """Most similar cached answer for the agent and variant, if it clears the threshold."""
        if not self.enabled:
            return None
        entries = await self._safe("lookup_answer", self.backend.get_list(self.answers_key(agent_id)), default=[])

        best: Optional[CachedAnswer] = None
        for entry in entries:
            if entry.get("variant", "") != variant:
                continue
            similarity = cosine_similarity(question_embedding, entry.get("embedding") or [])
            if similarity >= self.similarity_threshold and (best is None or similarity > best.similarity):
                best = CachedAnswer(
                    question=entry.get("question", ""),
                    payload=entry.get("payload") or {},
                    similarity=similarity,
                )

        if best is not None:
            logger.info("Answer cache hit", extra={"agent_id": agent_id})
        return best

    async def store_answer(
        self,
        agent_id: Any,
        question: str,
        question_embedding: Sequence[float],
        payload: Dict[str, Any],
        variant: str = "",
    ) -> None:
        if not self.enabled:
            return
        entry = {
            "variant": variant,
            "question": question,
            "embedding": list(question_embedding),
            "payload": payload,
            "cached_at": utcnow().isoformat(),
        }
        await self._safe(
            "store_answer",
            self.backend.append_bounded(self.answers_key(agent_id), entry, self.max_cache_size, self.answer_ttl),
        )

    # Retrieval contexts

    async def lookup_context(self, agent_id: Any, question: str, variant: str = "") -> Optional[Dict[str, Any]]:
        if not self.enabled:
            return None
        entries = await self._safe("lookup_context", self.backend.get_list(self.contexts_key(agent_id)), default=[])
        wanted = text_hash(f"{question}|{variant}")
        for entry in reversed(entries):
            if entry.get("key") == wanted:
                return entry.get("outcome")
        return None

    async def store_context(self, agent_id: Any, question: str, outcome: Dict[str, Any], variant: str = "") -> None:
        if not self.enabled:
            return
        entry = {"key": text_hash(f"{question}|{variant}"), "question": question, "outcome": outcome}
        await self._safe(
            "store_context",
            self.backend.append_bounded(self.contexts_key(agent_id), entry, self.max_cache_size, self.context_ttl),
        )

    # Invalidation

    async def invalidate_agent(self, agent_id: Any) -> None:
        """Drop every cache entry in the agent's namespace."""
        namespace = agent_namespace(agent_id)
        await self._safe("invalidate_embeddings", self.backend.delete_pattern(f"embedding:{namespace}:"))
        await self._safe("invalidate_answers", self.backend.delete(self.answers_key(namespace)))
        await self._safe("invalidate_contexts", self.backend.delete(self.contexts_key(namespace)))
        logger.info("Invalidated agent cache", extra={"agent_id": namespace})

    async def health_check(self) -> bool:
        return bool(await self._safe("ping", self.backend.ping(), default=False))
