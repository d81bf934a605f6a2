"""
RAG Embedder
============

Embedding providers behind a single async interface.

- OpenAIEmbedder: text-embedding-3-small, 1536 dimensions, optimized for cost/latency
- HashEmbedder: deterministic offline provider (feature hashing), used for
  tests and air-gapped setups
"""

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np

from .errors import ConfigurationError, InvalidArgument, ProviderError

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """
    Produces fixed-dimension vectors for text.

    ``embed_batch`` returns exactly one vector per input, in input order.
    """

    model: str
    dimension: int

    @abstractmethod
    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed several texts in one provider round-trip."""

    async def embed(self, text: str) -> np.ndarray:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def close(self):
        """Release provider resources."""
        return None


class OpenAIEmbedder(EmbeddingProvider):
    """
    Generates embeddings using OpenAI text-embedding-3-small.

    Cost: ~$0.00002 per 1K tokens (very cheap)
    Dimensions: 1536
    Max tokens: 8191

    Retries are owned by the ingestion pipeline, so the client is built with
    ``max_retries=0`` and every failure surfaces as a classified ProviderError.
    """

    MODEL = "text-embedding-3-small"
    DIMENSIONS = 1536
    MAX_TOKENS = 8191
    COST_PER_1K_TOKENS = 0.00002

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = MODEL,
        dimension: int = DIMENSIONS,
        timeout: float = 30.0,
        max_tokens: int = MAX_TOKENS,
    ):
        if not api_key:
            raise ConfigurationError("OpenAI API key required for embeddings")

        self.api_key = api_key
        self.model = model
        self.dimension = dimension
        self.timeout = timeout
        self.max_tokens = max_tokens

        self._client = None
        self._total_tokens = 0
        self._total_requests = 0

    @property
    def client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    def truncate(self, text: str) -> str:
        """Cut text to the provider's input limit (~4 chars per token)."""
        max_chars = self.max_tokens * 4
        if len(text) <= max_chars:
            return text
        return text[:max_chars]

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        """
        Generate embeddings for multiple texts.

        Args:
            texts: Texts to embed (blank texts are rejected)

        Returns:
            One float32 vector per text, in input order

        Raises:
            ProviderError: retryable for rate limits, timeouts, network and
                5xx failures; terminal otherwise
        """
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise InvalidArgument("Cannot embed empty text")

        batch = [self.truncate(t) for t in texts]

        try:
            response = await self.client.embeddings.create(
                model=self.model,
                input=batch,
                dimensions=self.dimension,
            )
        except Exception as e:
            raise self._classify(e) from e

        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(batch):
            raise ProviderError(
                f"Provider returned {len(data)} embeddings for {len(batch)} inputs"
            )

        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", 0) or 0
        self._total_tokens += tokens
        self._total_requests += 1

        logger.debug(f"Embedded batch of {len(batch)} texts ({tokens} tokens)")

        return [np.asarray(d.embedding, dtype=np.float32) for d in data]

    @staticmethod
    def _classify(error: Exception) -> ProviderError:
        """Map an openai exception onto the ProviderError taxonomy."""
        import openai

        status = getattr(error, "status_code", None)

        if isinstance(error, openai.APITimeoutError):
            return ProviderError(f"Embedding request timed out: {error}", retryable=True)
        if isinstance(error, openai.APIConnectionError):
            return ProviderError(f"Embedding provider unreachable: {error}", retryable=True)
        if isinstance(error, openai.RateLimitError):
            return ProviderError(f"Embedding rate limited: {error}", retryable=True, status_code=status)
        if isinstance(error, openai.InternalServerError):
            return ProviderError(f"Embedding provider error: {error}", retryable=True, status_code=status)
        if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return ProviderError(f"Embedding authentication failed: {error}", status_code=status)
        if isinstance(error, openai.APIStatusError):
            return ProviderError(f"Embedding request rejected: {error}", status_code=status)
        return ProviderError(f"Embedding failed: {error}")

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def estimated_cost(self) -> float:
        """Estimated cost in USD."""
        return (self._total_tokens / 1000) * self.COST_PER_1K_TOKENS


_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class HashEmbedder(EmbeddingProvider):
    """
    Deterministic embeddings by signed feature hashing.

    Each lowercase token (and each adjacent token pair) is hashed to a bucket
    and a sign; the bucket counts are L2-normalised. Texts that share words
    get a higher cosine score, which is enough for offline retrieval.
    """

    def __init__(self, dimension: int = 256, model: str = "hash-embedding-v1"):
        if dimension <= 0:
            raise ConfigurationError("dimension must be positive")
        self.dimension = dimension
        self.model = model
        self._total_requests = 0

    def _features(self, text: str) -> List[str]:
        tokens = [t.lower() for t in _TOKEN_RE.findall(text)]
        pairs = [f"{a}_{b}" for a, b in zip(tokens, tokens[1:])]
        return tokens + pairs

    def vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimension, dtype=np.float32)
        for feature in self._features(text):
            digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vec[bucket] += sign

        norm = float(np.linalg.norm(vec))
        if norm > 0:
            vec /= norm
        return vec

    async def embed_batch(self, texts: Sequence[str]) -> List[np.ndarray]:
        self._total_requests += 1
        return [self.vector(t) for t in texts]

    @property
    def total_requests(self) -> int:
        return self._total_requests


def build_embedder(config) -> EmbeddingProvider:
    """
    Create the provider selected by an EmbeddingConfig.

    Raises:
        ConfigurationError: Unknown provider or missing credentials
    """
    if config.provider == "hash":
        return HashEmbedder(dimension=config.dimension, model=config.model)
    if config.provider == "openai":
        return OpenAIEmbedder(
            api_key=config.api_key,
            model=config.model,
            dimension=config.dimension,
            timeout=config.timeout,
            max_tokens=config.max_tokens,
        )
    raise ConfigurationError(f"Unknown embedding provider: {config.provider}")
