import logging
from typing import List, Optional

from ..core.exceptions import ProviderTerminalError
from .cache_service import CacheLayer
from .llm_provider import LLMProvider

logger = logging.getLogger(__name__)


class EmbeddingService:
    """Agent-scoped get-or-embed on top of the provider and the embedding cache"""

    def __init__(self, provider: LLMProvider, cache: Optional[CacheLayer] = None, dimension: int = 768):
        self.provider = provider
        self.cache = cache
        self.dimension = dimension

    async def embed_query(self, agent_id: int, text: str) -> List[float]:
        return await self._get_or_embed(agent_id, text, "retrieval_query")

    async def embed_document(self, agent_id: int, text: str) -> List[float]:
        return await self._get_or_embed(agent_id, text, "retrieval_document")

    async def _get_or_embed(self, agent_id: int, text: str, task_type: str) -> List[float]:
        # Queries and documents embed differently, so they never share a cache entry
        cache_text = f"{task_type}:{text}"

        if self.cache is not None:
            cached = await self.cache.get_embedding(agent_id, cache_text)
            if cached is not None and len(cached) == self.dimension:
                return cached

        vector = await self.provider.embed(text, task_type=task_type)
        if len(vector) != self.dimension:
            raise ProviderTerminalError(
                f"Embedding has {len(vector)} dimensions, expected {self.dimension}",
                provider=self.provider.name,
            )

        if self.cache is not None:
            await self.cache.set_embedding(agent_id, cache_text, vector)
        return vector
