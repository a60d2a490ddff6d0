"""
Dependency Injection Container
==============================
Builds one knowledge core from a ``SodianConfig``. There are no module-level
stores: every collaborator receives the instances held here.
"""

from dataclasses import dataclass
from typing import Optional

from .config import SodianConfig
from .consolidation import ConsolidationEngine
from .graph_store import KnowledgeGraphStore, create_graph_store
from .reconciler import UpdateReconciler
from .store_sync import StoreReconciler
from .vector_index import VectorIndex, create_vector_index


@dataclass
class Container:
    """All wired knowledge core components."""
    config: SodianConfig
    graph_store: KnowledgeGraphStore
    vector_index: VectorIndex
    reconciler: UpdateReconciler
    consolidation: ConsolidationEngine
    store_sync: StoreReconciler

    async def close(self) -> None:
        await self.graph_store.close()
        await self.vector_index.close()


def build_container(config: Optional[SodianConfig] = None) -> Container:
    """
    Wire a knowledge core.

    Args:
        config: Validated config. Defaults to ``SodianConfig()``, which is the
            fully in-memory, offline setup.
    """
    config = config or SodianConfig()
    graph_store = create_graph_store(config.graph, config.neo4j)
    vector_index = create_vector_index(config.vector, config.qdrant, config.embedding)
    return Container(
        config=config,
        graph_store=graph_store,
        vector_index=vector_index,
        reconciler=UpdateReconciler(config.graph),
        consolidation=ConsolidationEngine(graph_store, config.consolidation),
        store_sync=StoreReconciler(graph_store, vector_index),
    )
