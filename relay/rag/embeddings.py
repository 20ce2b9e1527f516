"""
Embedding generation for the semantic cache.

Uses OpenAI's text-embedding endpoints (1536 dimensions by default) or
Voyage AI. Vectors are validated before they leave this module: wrong
dimension, non-finite values or an all-zero vector raise EmbeddingError.
There is no zero-vector placeholder; callers decide what a failed
embedding means (the semantic cache treats it as a forced miss).
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import httpx
import numpy as np

from relay.exceptions import EmbeddingError

logger = logging.getLogger(__name__)

_PROVIDERS = {
    "openai": {
        "model": "text-embedding-ada-002",
        "api_key_env": "OPENAI_API_KEY",
        "base_url": "https://api.openai.com/v1/embeddings",
        "dimensions": 1536,
    },
    "voyage": {
        "model": "voyage-3-lite",
        "api_key_env": "VOYAGE_API_KEY",
        "base_url": "https://api.voyageai.com/v1/embeddings",
        "dimensions": 1024,
    },
}

# Most embedding models cap input length
MAX_INPUT_CHARS = 8000


def default_dimensions(provider: str) -> int:
    """Vector width the provider's default model returns."""
    if provider not in _PROVIDERS:
        raise ValueError(f"Unsupported embedding provider: {provider}")
    return _PROVIDERS[provider]["dimensions"]


class EmbeddingEngine:
    """
    Generates text embeddings for cache storage and lookup.

    The httpx.AsyncClient is injected so a service can share one
    connection pool (and tests can use httpx.MockTransport).
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        provider: str = "openai",
        model: Optional[str] = None,
        *,
        api_key: Optional[str] = None,
        api_key_env: Optional[str] = None,
        base_url: Optional[str] = None,
        dimensions: Optional[int] = None,
        timeout: float = 30.0,
    ):
        if provider not in _PROVIDERS:
            raise ValueError(f"Unsupported embedding provider: {provider}")
        defaults = _PROVIDERS[provider]

        self.provider = provider
        self.model = model or defaults["model"]
        self.base_url = base_url or defaults["base_url"]
        self.dimensions = dimensions or defaults["dimensions"]
        self.timeout = timeout
        self._http = http_client

        key_env = api_key_env or defaults["api_key_env"]
        self.api_key = api_key if api_key is not None else os.environ.get(key_env, "")
        if not self.api_key:
            raise EnvironmentError(
                f"API key not found for embedding provider '{provider}'. "
                f"Set {key_env} environment variable."
            )

    def get_dimensions(self) -> int:
        """Return the embedding dimension for the current model."""
        return self.dimensions

    def validate(self, vector: list[float]) -> list[float]:
        """Reject vectors that would poison similarity search."""
        arr = np.asarray(vector, dtype=float)
        if arr.ndim != 1 or arr.shape[0] != self.dimensions:
            raise EmbeddingError(
                f"Expected {self.dimensions}-dim embedding, got shape {arr.shape}",
                model=self.model,
            )
        if not np.all(np.isfinite(arr)):
            raise EmbeddingError("Embedding contains non-finite values", model=self.model)
        if not np.any(arr):
            raise EmbeddingError("Embedding is an all-zero vector", model=self.model)
        return arr.tolist()

    async def embed_text(self, text: str, *, timeout: Optional[float] = None) -> list[float]:
        """Generate an embedding for a single text string."""
        embeddings = await self.embed_batch([text], timeout=timeout)
        return embeddings[0]

    async def embed_batch(
        self,
        texts: list[str],
        *,
        timeout: Optional[float] = None,
    ) -> list[list[float]]:
        """
        Generate embeddings for a batch of texts.

        Args:
            texts: List of strings to embed. Max recommended batch: 100.
            timeout: Per-call timeout; defaults to the engine's timeout.

        Returns:
            List of embedding vectors, same order as input.

        Raises:
            EmbeddingError: on HTTP failure, timeout, malformed body or an
                invalid vector.
        """
        if not texts:
            return []

        processed = [t[:MAX_INPUT_CHARS] for t in texts]

        try:
            response = await self._http.post(
                self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "input": processed,
                    "model": self.model,
                },
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.HTTPError as e:
            raise EmbeddingError(
                f"Embedding request failed: {e.__class__.__name__}",
                model=self.model,
            ) from e

        if not response.is_success:
            raise EmbeddingError(
                f"Embedding service returned HTTP {response.status_code}",
                model=self.model,
                status_code=response.status_code,
            )

        try:
            data = response.json()
            # Both OpenAI and Voyage return the same format
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            embeddings = [item["embedding"] for item in items]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise EmbeddingError(
                "Malformed embedding response",
                model=self.model,
            ) from e

        if len(embeddings) != len(processed):
            raise EmbeddingError(
                f"Expected {len(processed)} embeddings, got {len(embeddings)}",
                model=self.model,
            )

        return [self.validate(vec) for vec in embeddings]
