"""
Vector Backends
===============
Storage behind ``VectorIndex``: an insertion-ordered in-memory map (default)
and Qdrant. Backends receive documents that already carry their embedding;
they never embed text themselves.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from qdrant_client import AsyncQdrantClient, models

from .embeddings import cosine_similarity
from .exceptions import StorageConnectionError, wrap_storage_exception
from .models import SearchResult, VectorDocument

# Fixed namespace so a document id always maps to the same Qdrant point id.
_POINT_NAMESPACE = uuid.UUID("6f1c3c7e-2b7a-5d0e-9a41-3e5b8f2d9c10")


def point_id_for(doc_id: str) -> str:
    return str(uuid.uuid5(_POINT_NAMESPACE, doc_id))


class VectorBackend(ABC):
    name: str = "vector"

    @abstractmethod
    async def upsert(self, docs: Sequence[VectorDocument]) -> None:
        ...

    @abstractmethod
    async def delete(self, doc_id: str) -> None:
        """Remove a document; unknown ids are ignored."""

    @abstractmethod
    async def get(self, doc_id: str) -> Optional[VectorDocument]:
        ...

    @abstractmethod
    async def search(self, query_vector: List[float], limit: int) -> List[SearchResult]:
        """Best ``limit`` documents by descending cosine similarity."""

    @abstractmethod
    async def list_documents(self) -> List[VectorDocument]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...

    async def close(self) -> None:
        ...


class InMemoryVectorBackend(VectorBackend):
    """Linear scan over every stored embedding. Ties keep insertion order."""

    name = "memory"

    def __init__(self) -> None:
        self._docs: Dict[str, VectorDocument] = {}

    async def upsert(self, docs: Sequence[VectorDocument]) -> None:
        for doc in docs:
            self._docs[doc.id] = doc

    async def delete(self, doc_id: str) -> None:
        self._docs.pop(doc_id, None)

    async def get(self, doc_id: str) -> Optional[VectorDocument]:
        return self._docs.get(doc_id)

    async def search(self, query_vector: List[float], limit: int) -> List[SearchResult]:
        scored = [
            SearchResult(
                id=doc.id,
                content=doc.content,
                metadata=doc.metadata,
                similarity=cosine_similarity(query_vector, doc.embedding or []),
            )
            for doc in self._docs.values()
        ]
        # sorted() is stable, so equal scores stay in insertion order
        scored = sorted(scored, key=lambda r: r.similarity, reverse=True)
        return scored[:limit]

    async def list_documents(self) -> List[VectorDocument]:
        return list(self._docs.values())

    async def count(self) -> int:
        return len(self._docs)


class QdrantVectorBackend(VectorBackend):
    """
    Qdrant collection with cosine distance.

    Point ids are uuid5 values derived from the document id; the original id,
    content and metadata live in the point payload. The collection is created
    on first write with the embedder's dimensionality.
    """

    name = "qdrant"

    def __init__(
        self,
        url: str,
        api_key: Optional[str],
        collection: str,
        dimensions: int,
        client: Optional[AsyncQdrantClient] = None,
    ):
        self.url = url
        self.collection = collection
        self.dim = dimensions
        self.client = client or AsyncQdrantClient(url=url, api_key=api_key)
        self._collection_ready = False
        logger.info(f"[VectorIndex] Using Qdrant collection '{collection}' at {url}")

    async def ensure_collection(self) -> None:
        if self._collection_ready:
            return
        try:
            await self.client.get_collections()
        except Exception as e:
            msg = f"cannot reach Qdrant at '{self.url}': {e}"
            logger.error(msg)
            raise StorageConnectionError(self.name, msg) from e

        try:
            if not await self.client.collection_exists(self.collection):
                logger.info(f"Creating collection: {self.collection} (COSINE, dim={self.dim})")
                await self.client.create_collection(
                    collection_name=self.collection,
                    vectors_config=models.VectorParams(size=self.dim, distance=models.Distance.COSINE),
                )
        except Exception as e:
            logger.error(f"Qdrant ensure_collection failed: {e}")
            raise wrap_storage_exception(self.name, "ensure_collection", e) from e
        self._collection_ready = True

    @staticmethod
    def _to_point(doc: VectorDocument) -> models.PointStruct:
        return models.PointStruct(
            id=point_id_for(doc.id),
            vector=list(doc.embedding or []),
            payload={"doc_id": doc.id, "content": doc.content, "metadata": doc.metadata},
        )

    @staticmethod
    def _from_payload(payload: Optional[Dict[str, Any]], vector: Any = None) -> VectorDocument:
        payload = payload or {}
        return VectorDocument(
            id=payload.get("doc_id", ""),
            content=payload.get("content", ""),
            metadata=payload.get("metadata") or {},
            embedding=list(vector) if isinstance(vector, list) else None,
        )

    async def upsert(self, docs: Sequence[VectorDocument]) -> None:
        if not docs:
            return
        await self.ensure_collection()
        try:
            await self.client.upsert(
                collection_name=self.collection,
                points=[self._to_point(d) for d in docs],
            )
        except Exception as e:
            logger.exception(f"Qdrant upsert failed for {self.collection}")
            raise wrap_storage_exception(self.name, "upsert", e) from e

    async def delete(self, doc_id: str) -> None:
        await self.ensure_collection()
        try:
            await self.client.delete(
                collection_name=self.collection,
                points_selector=models.PointIdsList(points=[point_id_for(doc_id)]),
            )
        except Exception as e:
            logger.error(f"Qdrant delete failed for {doc_id}: {e}")
            raise wrap_storage_exception(self.name, "delete", e) from e

    async def get(self, doc_id: str) -> Optional[VectorDocument]:
        await self.ensure_collection()
        try:
            records = await self.client.retrieve(
                collection_name=self.collection,
                ids=[point_id_for(doc_id)],
                with_payload=True,
                with_vectors=True,
            )
        except Exception as e:
            logger.error(f"Qdrant retrieve failed for {doc_id}: {e}")
            raise wrap_storage_exception(self.name, "retrieve", e) from e
        if not records:
            return None
        return self._from_payload(records[0].payload, records[0].vector)

    async def search(self, query_vector: List[float], limit: int) -> List[SearchResult]:
        await self.ensure_collection()
        try:
            response = await self.client.query_points(
                collection_name=self.collection,
                query=list(query_vector),
                limit=limit,
                with_payload=True,
            )
        except Exception as e:
            logger.error(f"Qdrant search failed for {self.collection}: {e}")
            raise wrap_storage_exception(self.name, "search", e) from e

        results = []
        for hit in response.points:
            doc = self._from_payload(hit.payload)
            results.append(
                SearchResult(
                    id=doc.id,
                    content=doc.content,
                    metadata=doc.metadata,
                    similarity=max(-1.0, min(1.0, float(hit.score))),
                )
            )
        return results

    async def list_documents(self) -> List[VectorDocument]:
        await self.ensure_collection()
        docs: List[VectorDocument] = []
        offset = None
        try:
            while True:
                points, offset = await self.client.scroll(
                    collection_name=self.collection,
                    limit=256,
                    offset=offset,
                    with_payload=True,
                    with_vectors=False,
                )
                docs.extend(self._from_payload(p.payload) for p in points)
                if offset is None:
                    break
        except Exception as e:
            logger.error(f"Qdrant scroll failed for {self.collection}: {e}")
            raise wrap_storage_exception(self.name, "scroll", e) from e
        return docs

    async def count(self) -> int:
        await self.ensure_collection()
        try:
            result = await self.client.count(collection_name=self.collection, exact=True)
        except Exception as e:
            raise wrap_storage_exception(self.name, "count", e) from e
        return result.count

    async def close(self) -> None:
        await self.client.close()
