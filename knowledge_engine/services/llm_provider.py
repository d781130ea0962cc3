"""
LLM Provider - Embedding and generation behind a rotating credential pool

Supported Implementations:
    - GeminiProvider (google-genai, text-embedding-004 + gemini-2.0-flash)
    - OpenAIProvider (text-embedding-3-small at 768 dims + gpt-4o-mini)

Rate-limit and transient failures rotate to the next credential with
bounded exponential backoff. Terminal failures surface immediately.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import openai
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from ..core.exceptions import (
    ProviderError,
    ProviderExhaustedError,
    ProviderRateLimitError,
    ProviderTerminalError,
    ProviderTransientError,
)
from ..core.logging_config import mask_credential
from .credential_pool import CredentialPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer using only the provided context. "
    "If the context does not contain the answer, say so."
)


class LLMProvider(ABC):
    """Standard interface that embedding/generation providers implement"""

    name = "llm"

    def __init__(
        self,
        pool: CredentialPool,
        dimension: int = 768,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pool = pool
        self.dimension = dimension
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep

    async def embed(self, text: str, task_type: str = "retrieval_document") -> List[float]:
        """
        Embed a single text.

        Args:
            text: Text to embed
            task_type: "retrieval_document" for stored chunks, "retrieval_query" for questions

        Returns:
            Vector of exactly `dimension` floats
        """
        vector = await self._call_with_failover(
            "embed", lambda credential: self._embed_with(credential, text, task_type)
        )
        if len(vector) != self.dimension:
            raise ProviderTerminalError(
                f"{self.name} returned a {len(vector)}-dimension embedding, expected {self.dimension}",
                provider=self.name,
            )
        return [float(value) for value in vector]

    async def generate(
        self,
        prompt: str,
        context: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> str:
        full_prompt = prompt
        if context:
            full_prompt = f"Context:\n{context}\n\nQuestion: {prompt}\n\nAnswer:"
        return await self._call_with_failover(
            "generate",
            lambda credential: self._generate_with(credential, full_prompt, system_prompt or DEFAULT_SYSTEM_PROMPT),
        )

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the given zero-based attempt, capped and jittered."""
        delay = min(self.backoff_max, self.backoff_base * (2 ** attempt))
        return delay * (0.5 + random.random() / 2)

    async def _call_with_failover(self, operation: str, call: Callable[[str], Awaitable[T]]) -> T:
        last_error: Optional[ProviderError] = None
        attempts = 0

        while attempts < self.max_attempts:
            # With every credential cooling down, retry the one that frees up first
            credential = self.pool.acquire() or self.pool.acquire_soonest()
            if credential is None:
                break
            attempts += 1

            try:
                try:
                    result = await call(credential)
                except ProviderError:
                    raise
                except Exception as exc:  # noqa: BLE001 - SDK errors are classified below
                    raise self.classify_error(exc) from exc
            except (ProviderRateLimitError, ProviderTransientError) as exc:
                last_error = exc
                self.pool.report_failure(credential)
                logger.warning(
                    f"{self.name} {operation} failed, rotating credential: {exc.message}",
                    extra={"credential": mask_credential(credential), "attempt": attempts},
                )
                if attempts < self.max_attempts:
                    await self._sleep(self.backoff_delay(attempts - 1))
                continue

            self.pool.release(credential)
            return result

        reason = last_error.message if last_error else "no credential available"
        logger.error(
            f"{self.name} {operation} exhausted after {attempts} attempts: {reason}",
            extra={"attempt": attempts},
        )
        raise ProviderExhaustedError(
            f"{self.name} {operation} failed after {attempts} attempts: {reason}",
            provider=self.name,
            attempts=attempts,
        )

    @abstractmethod
    async def _embed_with(self, credential: str, text: str, task_type: str) -> List[float]:
        pass

    @abstractmethod
    async def _generate_with(self, credential: str, prompt: str, system_prompt: str) -> str:
        pass

    @abstractmethod
    def classify_error(self, exc: Exception) -> ProviderError:
        """Map an SDK exception onto the provider error taxonomy"""


class GeminiProvider(LLMProvider):
    """Google Gemini through the google-genai SDK; one client per credential"""

    name = "gemini"

    def __init__(
        self,
        pool: CredentialPool,
        generation_model: str = "gemini-2.0-flash",
        embedding_model: str = "text-embedding-004",
        temperature: float = 0.3,
        max_output_tokens: int = 2048,
        **kwargs,
    ):
        super().__init__(pool, **kwargs)
        self.generation_model = generation_model
        self.embedding_model = embedding_model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._clients: Dict[str, genai.Client] = {}

    def _client(self, credential: str) -> genai.Client:
        client = self._clients.get(credential)
        if client is None:
            client = genai.Client(api_key=credential)
            self._clients[credential] = client
        return client

    async def _embed_with(self, credential: str, text: str, task_type: str) -> List[float]:
        response = await self._client(credential).aio.models.embed_content(
            model=self.embedding_model,
            contents=text,
            config=genai_types.EmbedContentConfig(
                task_type=task_type.upper(),
                output_dimensionality=self.dimension,
            ),
        )
        if not response.embeddings:
            raise ProviderTerminalError("Gemini returned no embedding", provider=self.name)
        return list(response.embeddings[0].values or [])

    async def _generate_with(self, credential: str, prompt: str, system_prompt: str) -> str:
        response = await self._client(credential).aio.models.generate_content(
            model=self.generation_model,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                system_instruction=system_prompt,
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            ),
        )
        if not response.text:
            raise ProviderTerminalError("Gemini returned an empty response", provider=self.name)
        return response.text

    def classify_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, genai_errors.APIError) and exc.code == 429:
            return ProviderRateLimitError(str(exc), provider=self.name)
        if isinstance(exc, (genai_errors.ServerError, asyncio.TimeoutError, ConnectionError)):
            return ProviderTransientError(str(exc), provider=self.name)
        return ProviderTerminalError(str(exc), provider=self.name)


class OpenAIProvider(LLMProvider):
    """OpenAI embeddings and chat completions; one async client per credential"""

    name = "openai"

    def __init__(
        self,
        pool: CredentialPool,
        generation_model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        temperature: float = 0.3,
        max_output_tokens: int = 2048,
        **kwargs,
    ):
        super().__init__(pool, **kwargs)
        self.generation_model = generation_model
        self.embedding_model = embedding_model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._clients: Dict[str, openai.AsyncOpenAI] = {}

    def _client(self, credential: str) -> openai.AsyncOpenAI:
        client = self._clients.get(credential)
        if client is None:
            # Retries are handled by the credential rotation above
            client = openai.AsyncOpenAI(api_key=credential, max_retries=0)
            self._clients[credential] = client
        return client

    async def _embed_with(self, credential: str, text: str, task_type: str) -> List[float]:
        response = await self._client(credential).embeddings.create(
            model=self.embedding_model,
            input=text,
            dimensions=self.dimension,
        )
        return list(response.data[0].embedding)

    async def _generate_with(self, credential: str, prompt: str, system_prompt: str) -> str:
        response = await self._client(credential).chat.completions.create(
            model=self.generation_model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_output_tokens,
        )
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise ProviderTerminalError("OpenAI returned an empty response", provider=self.name)
        return content

    def classify_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, openai.RateLimitError):
            return ProviderRateLimitError(str(exc), provider=self.name)
        if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError)):
            return ProviderTransientError(str(exc), provider=self.name)
        return ProviderTerminalError(str(exc), provider=self.name)


def create_provider(settings) -> LLMProvider:
    """Build the configured provider with its own credential pool."""
    pool = CredentialPool(settings.provider_credentials, cooldown_seconds=settings.CREDENTIAL_COOLDOWN_SECONDS)
    common = {
        "dimension": settings.EMBEDDING_DIMENSION,
        "max_attempts": settings.LLM_MAX_ATTEMPTS,
        "backoff_base": settings.LLM_BACKOFF_BASE_SECONDS,
        "backoff_max": settings.LLM_BACKOFF_MAX_SECONDS,
    }
    if settings.LLM_PROVIDER == "openai":
        return OpenAIProvider(
            pool,
            generation_model=settings.GENERATION_MODEL or "gpt-4o-mini",
            embedding_model=settings.EMBEDDING_MODEL or "text-embedding-3-small",
            **common,
        )
    return GeminiProvider(
        pool,
        generation_model=settings.GENERATION_MODEL or "gemini-2.0-flash",
        embedding_model=settings.EMBEDDING_MODEL or "text-embedding-004",
        **common,
    )
