"""
Graph Backends
==============
Storage contract behind ``KnowledgeGraphStore`` plus the in-memory default.

The store owns locking, id generation and update dispatch; a backend only
stores and retrieves nodes and links. Backends are not thread-safe on their own
and must only be called while the store's lock is held.

The in-memory backend keeps insertion order for nodes and links, and can
snapshot itself to a JSON file so that a restart does not lose the graph.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from loguru import logger

from .exceptions import DataCorruptionError, StorageError
from .models import GraphLink, GraphNode, NodeType


def properties_text(node: GraphNode) -> str:
    """Lowercased JSON rendering of a node's properties, used for topic search."""
    return json.dumps(node.properties, default=str, ensure_ascii=False).lower()


class GraphBackend(ABC):
    """Persistence contract for nodes and links."""

    name: str = "graph"

    # ---- Nodes ---------------------------------------------------------

    @abstractmethod
    async def add_node(self, node: GraphNode) -> None:
        ...

    @abstractmethod
    async def save_node(self, node: GraphNode) -> None:
        """Persist property changes to an existing node."""

    @abstractmethod
    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        ...

    async def has_node(self, node_id: str) -> bool:
        return await self.get_node(node_id) is not None

    @abstractmethod
    async def list_nodes(self, node_type: Optional[NodeType] = None) -> List[GraphNode]:
        ...

    async def search_nodes(self, topic: str) -> List[GraphNode]:
        """Case-insensitive substring match against serialized properties."""
        needle = topic.lower()
        return [n for n in await self.list_nodes() if needle in properties_text(n)]

    # ---- Links ---------------------------------------------------------

    @abstractmethod
    async def add_link(self, link: GraphLink) -> None:
        ...

    @abstractmethod
    async def save_link(self, link: GraphLink) -> None:
        """Persist strength / relationship / last_touched changes."""

    @abstractmethod
    async def get_link(self, link_id: str) -> Optional[GraphLink]:
        ...

    @abstractmethod
    async def find_links(self, source: str, target: str) -> List[GraphLink]:
        """Links with exactly this (source, target), in store order."""

    @abstractmethod
    async def remove_link(self, link_id: str) -> bool:
        ...

    @abstractmethod
    async def list_links(self) -> List[GraphLink]:
        ...

    async def links_touching(self, node_ids: Set[str]) -> List[GraphLink]:
        return [l for l in await self.list_links() if l.source in node_ids or l.target in node_ids]

    # ---- Lifecycle -----------------------------------------------------

    @abstractmethod
    async def counts(self) -> Tuple[int, int]:
        """Return (node_count, link_count)."""

    async def flush(self) -> None:
        """Called by the store after each mutating operation."""

    async def close(self) -> None:
        ...


class InMemoryGraphBackend(GraphBackend):
    """
    Dict-backed graph, the full system of record when no database is configured.

    Args:
        persistence_path: Optional JSON snapshot file. Loaded on construction,
            rewritten on ``flush()`` when ``auto_persist`` is set.
        auto_persist: Whether ``flush()`` writes the snapshot.
    """

    name = "memory"

    def __init__(self, persistence_path: Optional[str] = None, auto_persist: bool = True):
        self._nodes: Dict[str, GraphNode] = {}
        self._links: Dict[str, GraphLink] = {}
        self._persistence_path = persistence_path
        self._auto_persist = auto_persist
        self._dirty = False

        if self._persistence_path:
            self._load_from_disk()

    # ---- Nodes ---------------------------------------------------------

    async def add_node(self, node: GraphNode) -> None:
        self._nodes[node.id] = node
        self._dirty = True

    async def save_node(self, node: GraphNode) -> None:
        self._nodes[node.id] = node
        self._dirty = True

    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    async def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    async def list_nodes(self, node_type: Optional[NodeType] = None) -> List[GraphNode]:
        if node_type is None:
            return list(self._nodes.values())
        return [n for n in self._nodes.values() if n.type == node_type]

    # ---- Links ---------------------------------------------------------

    async def add_link(self, link: GraphLink) -> None:
        self._links[link.id] = link
        self._dirty = True

    async def save_link(self, link: GraphLink) -> None:
        self._links[link.id] = link
        self._dirty = True

    async def get_link(self, link_id: str) -> Optional[GraphLink]:
        return self._links.get(link_id)

    async def find_links(self, source: str, target: str) -> List[GraphLink]:
        return [l for l in self._links.values() if l.source == source and l.target == target]

    async def remove_link(self, link_id: str) -> bool:
        removed = self._links.pop(link_id, None) is not None
        if removed:
            self._dirty = True
        return removed

    async def list_links(self) -> List[GraphLink]:
        return list(self._links.values())

    # ---- Lifecycle -----------------------------------------------------

    async def counts(self) -> Tuple[int, int]:
        return len(self._nodes), len(self._links)

    async def flush(self) -> None:
        if self._dirty and self._auto_persist and self._persistence_path:
            self._persist_to_disk()
            self._dirty = False

    async def close(self) -> None:
        if self._dirty and self._persistence_path:
            self._persist_to_disk()
            self._dirty = False

    # ---- Persistence ---------------------------------------------------

    def _persist_to_disk(self) -> None:
        """Atomically write the graph snapshot (temp file, then rename)."""
        path = Path(self._persistence_path)
        data = {
            "version": "1.0",
            "nodes": [n.to_dict() for n in self._nodes.values()],
            "links": [l.to_dict() for l in self._links.values()],
        }
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StorageError(
                f"[memory] failed to persist graph to {path}: {e}",
                {"backend": self.name, "path": str(path)},
            ) from e
        logger.debug(f"Persisted knowledge graph to {path}")

    def _load_from_disk(self) -> None:
        path = Path(self._persistence_path)
        if not path.exists():
            return
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            for nd in raw.get("nodes", []):
                node = GraphNode.from_dict(nd)
                self._nodes[node.id] = node
            for ld in raw.get("links", []):
                link = GraphLink.from_dict(ld)
                self._links[link.id] = link
        except (ValueError, KeyError, TypeError) as e:
            raise DataCorruptionError(str(path), reason=f"Unreadable graph snapshot ({e})") from e
        logger.info(
            f"Loaded knowledge graph: {len(self._nodes)} nodes, "
            f"{len(self._links)} links from {path}"
        )
