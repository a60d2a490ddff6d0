"""
Vector Index
============
Stores note content with an embedding and answers similarity search.

The index owns embeddings: callers hand in ``VectorDocument`` values without
one and any embedding they carry is replaced. Text is embedded before the
store lock is taken, so a slow embedding backend never blocks readers.

Updates are delete-then-add; the embedding is always recomputed.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from loguru import logger

from .config import EmbeddingConfig, QdrantConfig, VectorConfig
from .embeddings import Embedder, FallbackEmbedder, create_embedder
from .exceptions import ValidationError
from .locking import AsyncRWLock
from .models import SearchResult, VectorDocument
from .vector_backends import InMemoryVectorBackend, QdrantVectorBackend, VectorBackend


def _check_document(doc: VectorDocument) -> None:
    if not isinstance(doc, VectorDocument):
        raise ValidationError(field="document", reason="expected a VectorDocument", value=type(doc).__name__)
    if not doc.id or not str(doc.id).strip():
        raise ValidationError(field="document.id", reason="document id cannot be empty")
    if not isinstance(doc.content, str):
        raise ValidationError(field="document.content", reason="content must be a string", value=doc.content)


class VectorIndex:
    """
    Similarity index over ``VectorDocument`` values.

    Args:
        backend: Document storage. Defaults to in-memory.
        embedder: Text embedder. Defaults to the bag-of-words fallback.
        config: ``VectorConfig`` (default search limit).
    """

    def __init__(
        self,
        backend: Optional[VectorBackend] = None,
        embedder: Optional[Embedder] = None,
        config: Optional[VectorConfig] = None,
    ):
        self.config = config or VectorConfig()
        self.backend = backend or InMemoryVectorBackend()
        self.embedder = embedder or FallbackEmbedder(self.config.fallback_dimensions)
        self._lock = AsyncRWLock()
        logger.info(f"[VectorIndex] backend={self.backend.name} embedder={self.embedder.name}")

    async def _embed(self, docs: Sequence[VectorDocument]) -> List[VectorDocument]:
        for doc in docs:
            _check_document(doc)
        vectors = await self.embedder.embed_many([d.content for d in docs])
        return [
            replace(doc, metadata=dict(doc.metadata), embedding=vec)
            for doc, vec in zip(docs, vectors)
        ]

    async def add_document(self, doc: VectorDocument) -> None:
        await self.add_documents([doc])

    async def add_documents(self, docs: Sequence[VectorDocument]) -> None:
        """Index a batch; an existing id is overwritten."""
        if not docs:
            return
        embedded = await self._embed(docs)
        async with self._lock.write():
            await self.backend.upsert(embedded)
        logger.debug(f"Indexed {len(embedded)} document(s)")

    async def search(self, query: str, limit: Optional[int] = None) -> List[SearchResult]:
        """
        Documents ranked by descending cosine similarity to ``query``.

        Equal scores keep insertion order on the in-memory backend.
        """
        if limit is None:
            limit = self.config.default_limit
        if limit <= 0:
            return []
        query_vector = await self.embedder.embed(query)
        async with self._lock.read():
            return await self.backend.search(query_vector, limit)

    async def delete_document(self, doc_id: str) -> None:
        """Idempotent delete by id."""
        async with self._lock.write():
            await self.backend.delete(doc_id)

    async def update_document(self, doc: VectorDocument) -> None:
        """Delete-then-add under one write lock, re-embedding the content."""
        embedded = await self._embed([doc])
        async with self._lock.write():
            await self.backend.delete(doc.id)
            await self.backend.upsert(embedded)

    async def get_document(self, doc_id: str) -> Optional[VectorDocument]:
        async with self._lock.read():
            return await self.backend.get(doc_id)

    async def list_documents(self) -> List[VectorDocument]:
        async with self._lock.read():
            return await self.backend.list_documents()

    async def get_stats(self) -> Dict[str, int]:
        async with self._lock.read():
            return {"document_count": await self.backend.count()}

    async def close(self) -> None:
        async with self._lock.write():
            await self.backend.close()
        await self.embedder.close()


def create_vector_index(
    config: Optional[VectorConfig] = None,
    qdrant: Optional[QdrantConfig] = None,
    embedding: Optional[EmbeddingConfig] = None,
) -> VectorIndex:
    """Build an index on Qdrant when a URL is configured, else in memory."""
    config = config or VectorConfig()
    embedder = create_embedder(embedding, config)
    backend: VectorBackend
    if qdrant is not None and qdrant.enabled:
        backend = QdrantVectorBackend(
            url=qdrant.url,
            api_key=qdrant.api_key,
            collection=qdrant.collection,
            dimensions=embedder.dimensions,
        )
    else:
        logger.info("[VectorIndex] Qdrant URL not configured, using in-memory index")
        backend = InMemoryVectorBackend()
    return VectorIndex(backend=backend, embedder=embedder, config=config)
