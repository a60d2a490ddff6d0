"""
Embeddings
==========
Text-to-vector providers for the vector index.

- ``FallbackEmbedder``: deterministic bag-of-words counts, used when no
  embedding backend is configured. Not semantic; it exists so search is
  reproducible offline.
- ``OllamaEmbedder``: POSTs to an Ollama server's ``/api/embeddings``.

Similarity is plain cosine. Mismatched lengths and zero vectors score 0.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence

import aiohttp
import numpy as np
from loguru import logger

from .config import EmbeddingConfig, VectorConfig
from .exceptions import ConfigurationError, EmbeddingError

FALLBACK_DIMENSIONS = 100


def fallback_embedding(content: str, dimensions: int = FALLBACK_DIMENSIONS) -> np.ndarray:
    """
    Bag-of-words count vector over the content's own vocabulary.

    Each distinct lowercase whitespace token gets the next index in first-seen
    order. Tokens whose index is ``>= dimensions`` are dropped. The count
    vector is L2-normalized; an all-zero vector is returned as is.
    """
    vocabulary: Dict[str, int] = {}
    vec = np.zeros(dimensions, dtype=np.float64)
    for word in content.lower().split():
        index = vocabulary.setdefault(word, len(vocabulary))
        if index < dimensions:
            vec[index] += 1.0

    norm = np.linalg.norm(vec)
    if norm == 0:
        return vec
    return vec / norm


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``; 0.0 when undefined."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        return 0.0
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # Symmetric by construction: the dot product and norm product commute.
    sim = float(np.dot(va, vb) / (norm_a * norm_b))
    return max(-1.0, min(1.0, sim))


class Embedder:
    """Base embedder. ``dimensions`` is the length of every vector produced."""

    name = "embedder"
    dimensions: int = FALLBACK_DIMENSIONS

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]

    async def close(self) -> None:
        pass


class FallbackEmbedder(Embedder):
    name = "fallback"

    def __init__(self, dimensions: int = FALLBACK_DIMENSIONS):
        self.dimensions = dimensions

    async def embed(self, text: str) -> List[float]:
        return fallback_embedding(text, self.dimensions).tolist()


class OllamaEmbedder(Embedder):
    """
    Embeddings from an Ollama server.

    Failures are not retried and never fall back to bag-of-words silently;
    mixing the two vector spaces in one index would make scores meaningless.
    """

    name = "ollama"

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = "http://localhost:11434",
        dimensions: int = 768,
        timeout_seconds: int = 30,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.dimensions = dimensions
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def embed(self, text: str) -> List[float]:
        url = f"{self.base_url}/api/embeddings"
        session = await self._get_session()
        try:
            async with session.post(url, json={"model": self.model, "prompt": text}) as response:
                if response.status != 200:
                    body = await response.text()
                    raise EmbeddingError(self.name, f"HTTP {response.status}: {body[:200]}")
                result = await response.json()
        except EmbeddingError:
            raise
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"Ollama embedding request to {url} failed: {e}")
            raise EmbeddingError(self.name, str(e) or type(e).__name__) from e

        embedding = result.get("embedding")
        if not embedding:
            raise EmbeddingError(self.name, "response carried no embedding")
        if len(embedding) != self.dimensions:
            raise EmbeddingError(
                self.name,
                f"expected {self.dimensions} dimensions, got {len(embedding)}",
                {"model": self.model},
            )
        return [float(x) for x in embedding]

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


def create_embedder(config: Optional[EmbeddingConfig] = None,
                    vector: Optional[VectorConfig] = None) -> Embedder:
    config = config or EmbeddingConfig()
    vector = vector or VectorConfig()
    if config.provider == "none":
        return FallbackEmbedder(vector.fallback_dimensions)
    if config.provider == "ollama":
        logger.info(f"Using Ollama embeddings ({config.model} at {config.url})")
        return OllamaEmbedder(
            model=config.model,
            base_url=config.url,
            dimensions=config.dimensions,
            timeout_seconds=config.timeout_seconds,
        )
    raise ConfigurationError(config_key="embedding.provider", reason=f"unknown provider '{config.provider}'")
