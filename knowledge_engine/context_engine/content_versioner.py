"""
Content Versioner - Fingerprint-based deduplication and per-agent versioning

Every distinct chunk text gets a SHA-256 fingerprint. The first time a
fingerprint is seen for an agent it receives the next version number
(1, 2, 3, ...); seeing it again resolves to the version it already has.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, TYPE_CHECKING

from ..core.exceptions import DuplicateContentError
from ..utils.text_processing import fingerprint

if TYPE_CHECKING:
    from ..services.memory_store import ChunkRecord, MemoryStoreInterface

logger = logging.getLogger(__name__)

__all__ = ["ContentVersioner", "VersionResolution", "fingerprint"]


@dataclass(frozen=True)
class VersionResolution:
    version: int
    is_new: bool


class ContentVersioner:
    """Resolve content versions against the memory store."""

    def __init__(self, store: "MemoryStoreInterface") -> None:
        self.store = store
        self._locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def agent_lock(self, agent_id: int) -> AsyncIterator[None]:
        """Serialise resolve-then-write sequences for one agent within this process."""
        lock = self._locks[agent_id]
        async with lock:
            yield

    async def resolve_version(self, agent_id: int, content_hash: str) -> VersionResolution:
        """
        Return the existing version for (agent_id, content_hash), or allocate the next one.

        Allocation goes through the store's atomic counter so concurrent
        ingestion workers never hand out the same version twice.
        """
        existing = await self.store.find_by_hash(agent_id, content_hash)
        if existing is not None:
            return VersionResolution(version=existing.content_version, is_new=False)

        version = await self.store.allocate_version(agent_id)
        logger.debug(
            "Allocated content version",
            extra={"agent_id": agent_id, "version": version},
        )
        return VersionResolution(version=version, is_new=True)

    async def highest_version(self, agent_id: int) -> int:
        return await self.store.highest_version(agent_id)

    async def store_new_content(self, record: "ChunkRecord") -> VersionResolution:
        """
        Store a chunk under the next version unless its content is already known.

        The version is allocated in the same transaction as the insert, so a
        writer that loses a race on the same content never consumes a version.
        """
        existing = await self.store.find_by_hash(record.agent_id, record.content_hash)
        if existing is not None:
            return VersionResolution(version=existing.content_version, is_new=False)

        try:
            await self.store.insert_versioned_chunk(record)
        except DuplicateContentError:
            existing = await self.store.find_by_hash(record.agent_id, record.content_hash)
            logger.info(
                "Content stored concurrently by another writer",
                extra={"agent_id": record.agent_id},
            )
            return VersionResolution(
                version=existing.content_version if existing is not None else 0,
                is_new=False,
            )

        return VersionResolution(version=record.content_version, is_new=True)
