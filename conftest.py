"""
Global pytest configuration and fixtures.
"""

import hashlib
import os
import sys
from pathlib import Path
from typing import AsyncGenerator, List

import numpy as np
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

# Set test environment before any application import reads settings
os.environ["TESTING"] = "1"
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REDIS_URL"] = ""

from knowledge_engine.core.database import create_tables  # noqa: E402
from knowledge_engine.core.exceptions import ProviderError, ProviderTerminalError  # noqa: E402
from knowledge_engine.services.credential_pool import CredentialPool  # noqa: E402
from knowledge_engine.services.llm_provider import LLMProvider  # noqa: E402
from knowledge_engine.utils.text_processing import content_words  # noqa: E402

EMBEDDING_DIMENSION = 768


def hashed_embedding(text: str, dimension: int = EMBEDDING_DIMENSION) -> List[float]:
    """Deterministic bag-of-words vector over content words: shared words mean shared dimensions."""
    vector = np.zeros(dimension)
    for token in content_words(text):
        index = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % dimension
        vector[index] += 1.0
    norm = np.linalg.norm(vector)
    if norm > 0:
        vector = vector / norm
    return vector.tolist()


class FakeProvider(LLMProvider):
    """Offline provider: hashed embeddings and an echoing generator."""

    name = "fake"

    def __init__(self, answer: str = None, **kwargs):
        kwargs.setdefault("sleep", self._no_sleep)
        super().__init__(CredentialPool(["test-key-1", "test-key-2"], cooldown_seconds=60), **kwargs)
        self.answer = answer
        self.embed_calls = 0
        self.generate_calls = []

    @staticmethod
    async def _no_sleep(_delay: float) -> None:
        return None

    async def _embed_with(self, credential: str, text: str, task_type: str) -> List[float]:
        self.embed_calls += 1
        return hashed_embedding(text, self.dimension)

    async def _generate_with(self, credential: str, prompt: str, system_prompt: str) -> str:
        self.generate_calls.append({"prompt": prompt, "system_prompt": system_prompt})
        if self.answer is not None:
            return self.answer
        # Echo the first context block so grounded answers overlap their sources
        if "[Context 1]" in prompt:
            block = prompt.split("[Context 1]", 1)[1].split(":\n", 1)[1]
            return block.split("\n\n", 1)[0].strip()
        return "General knowledge answer."

    def classify_error(self, exc: Exception) -> ProviderError:
        return ProviderTerminalError(str(exc), provider=self.name)


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """Fresh file-backed SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}", echo=False)
    await create_tables(engine)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
