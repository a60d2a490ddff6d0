"""
Sodian Knowledge Core
=====================
Graph store, vector index, update reconciliation and memory consolidation
for a personal "second brain".

Graph:
    - KnowledgeGraphStore: typed nodes and weighted links, written only via
      KnowledgeGraphUpdate batches
    - InMemoryGraphBackend / Neo4jGraphBackend

Vectors:
    - VectorIndex: similarity search over note content
    - FallbackEmbedder (bag-of-words) / OllamaEmbedder
    - InMemoryVectorBackend / QdrantVectorBackend

Pipelines:
    - UpdateReconciler: dedup / merge specialist output before it is applied
    - ConsolidationEngine: co-access mining, link strengthening, insights
    - StoreReconciler: graph / vector drift check and repair

Example:
    from sodian.core import build_container

    core = build_container()
    await core.graph_store.apply_updates(core.reconciler.reconcile(updates))
    result = await core.graph_store.query("python")
"""

from .config import SodianConfig, get_config, load_config, reset_config
from .consolidation import (
    ActivityRecord,
    ConsolidationEngine,
    ConsolidationResult,
    PatternMatch,
)
from .container import Container, build_container
from .embeddings import (
    Embedder,
    FallbackEmbedder,
    OllamaEmbedder,
    cosine_similarity,
    fallback_embedding,
)
from .exceptions import (
    ConfigurationError,
    ConsolidationError,
    DataCorruptionError,
    EmbeddingError,
    SodianError,
    StorageConnectionError,
    StorageError,
    StorageTimeoutError,
    UnsupportedOperationError,
    UpdateApplicationError,
    ValidationError,
    VectorError,
)
from .graph_backends import GraphBackend, InMemoryGraphBackend
from .graph_store import KnowledgeGraphStore, create_graph_store
from .logging_config import configure_logging
from .models import (
    GraphLink,
    GraphNode,
    KnowledgeGraphUpdate,
    NodeType,
    QueryResult,
    SearchResult,
    UpdateAction,
    UpdateType,
    VectorDocument,
)
from .neo4j_backend import Neo4jGraphBackend
from .reconciler import UpdateReconciler, summarize_updates
from .store_sync import ReconciliationReport, StoreReconciler
from .vector_backends import InMemoryVectorBackend, QdrantVectorBackend, VectorBackend
from .vector_index import VectorIndex, create_vector_index

__all__ = [
    # Config
    "SodianConfig",
    "get_config",
    "load_config",
    "reset_config",
    "configure_logging",
    "Container",
    "build_container",
    # Models
    "GraphNode",
    "GraphLink",
    "KnowledgeGraphUpdate",
    "NodeType",
    "UpdateType",
    "UpdateAction",
    "QueryResult",
    "VectorDocument",
    "SearchResult",
    # Graph
    "KnowledgeGraphStore",
    "create_graph_store",
    "GraphBackend",
    "InMemoryGraphBackend",
    "Neo4jGraphBackend",
    # Vectors
    "VectorIndex",
    "create_vector_index",
    "VectorBackend",
    "InMemoryVectorBackend",
    "QdrantVectorBackend",
    "Embedder",
    "FallbackEmbedder",
    "OllamaEmbedder",
    "fallback_embedding",
    "cosine_similarity",
    # Pipelines
    "UpdateReconciler",
    "summarize_updates",
    "ConsolidationEngine",
    "ConsolidationResult",
    "ActivityRecord",
    "PatternMatch",
    "StoreReconciler",
    "ReconciliationReport",
    # Exceptions
    "SodianError",
    "StorageError",
    "StorageConnectionError",
    "StorageTimeoutError",
    "DataCorruptionError",
    "VectorError",
    "EmbeddingError",
    "ConfigurationError",
    "ValidationError",
    "UnsupportedOperationError",
    "UpdateApplicationError",
    "ConsolidationError",
]
