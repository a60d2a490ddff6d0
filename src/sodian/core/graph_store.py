"""
Knowledge Graph Store
=====================
Owns typed nodes (Note, Tag, LearningPath, MetaPattern) and weighted links,
applies ``KnowledgeGraphUpdate`` batches and answers topic / weak-link queries.

Write path vs read path
~~~~~~~~~~~~~~~~~~~~~~~
Updates are coarse, type-tagged events validated at this boundary and applied
in order. Queries are read-only best-effort substring searches over the
materialized nodes; there is no ranking.

Concurrency
~~~~~~~~~~~
One store-wide ``AsyncRWLock``:

- ``apply_updates`` holds the write lock for the whole batch, so concurrent
  readers see all of a batch or none of it.
- ``increment_link_weight`` / ``remove_link`` take the write lock.
- ``query`` / ``query_weak_links`` / ``get_stats`` share the read lock.
- ``strengthen_links`` applies many increments under a single write lock.

Failure model
~~~~~~~~~~~~~
An update that fails aborts the rest of its batch and surfaces as
``UpdateApplicationError``. Updates applied before the failure stay applied.

Backends
~~~~~~~~
``InMemoryGraphBackend`` is the default and the system of record when nothing
is configured. ``Neo4jGraphBackend`` is used when Neo4j credentials are set.
"""

from __future__ import annotations

import re
import uuid
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger

from .config import GraphConfig, Neo4jConfig
from .exceptions import SodianError, UnsupportedOperationError, UpdateApplicationError, ValidationError
from .graph_backends import GraphBackend, InMemoryGraphBackend
from .locking import AsyncRWLock
from .models import (
    GraphLink,
    GraphNode,
    KnowledgeGraphUpdate,
    NodeType,
    QueryResult,
    UpdateAction,
    UpdateType,
    clamp_strength,
    utcnow,
)
from .payloads import (
    LearningPathPayload,
    LinkPayload,
    MetaPatternPayload,
    NotePayload,
    TagPayload,
    TagProperties,
    parse_payload,
    typed_properties,
)

UpdateLike = Union[KnowledgeGraphUpdate, Mapping[str, Any]]

_ID_PREFIXES = {
    NodeType.NOTE: "note",
    NodeType.LEARNING_PATH: "learning",
    NodeType.META_PATTERN: "pattern",
}


def _detached(items: Iterable[Any]) -> List[Any]:
    """Copies of backend-owned nodes or links for handing to callers."""
    return [item.copy() for item in items]


def normalize_tag(tag: str) -> str:
    """Stable tag key: lowercased, leading '#' dropped, whitespace as '-'."""
    key = tag.strip().lstrip("#").strip().lower()
    return re.sub(r"\s+", "-", key)


def tag_node_id(tag: str) -> str:
    return f"tag_{normalize_tag(tag)}"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class KnowledgeGraphStore:
    """
    Graph of typed nodes and weighted, optionally bidirectional links.

    Construct one per process (or per test) and pass it to collaborators;
    there is no module-level instance.

    Args:
        backend: Storage backend. Defaults to a fresh in-memory graph.
        config: ``GraphConfig`` (link increment, default strength, thresholds).
    """

    def __init__(self, backend: Optional[GraphBackend] = None, config: Optional[GraphConfig] = None):
        self.config = config or GraphConfig()
        self.backend = backend or InMemoryGraphBackend(
            persistence_path=self.config.persistence_path,
            auto_persist=self.config.auto_persist,
        )
        self._lock = AsyncRWLock()
        if self.backend.name == "memory":
            logger.info("[KnowledgeGraph] Using in-memory store")

    @property
    def lock(self) -> AsyncRWLock:
        return self._lock

    # ══════════════════════════════════════════════════════════════════
    # Write path
    # ══════════════════════════════════════════════════════════════════

    async def apply_updates(self, updates: Sequence[UpdateLike]) -> None:
        """
        Apply a batch of updates in order under one write lock.

        Raises:
            UpdateApplicationError: The first failing update; earlier updates
                remain applied and later ones are not attempted. When every
                update applied but the backend could not persist them, ``index``
                equals the batch size.
        """
        total = len(updates)
        applied = 0
        async with self._lock.write():
            try:
                for index, raw in enumerate(updates):
                    try:
                        update = raw if isinstance(raw, KnowledgeGraphUpdate) else KnowledgeGraphUpdate.from_dict(raw)
                        await self._apply_one(update)
                    except SodianError as e:
                        logger.error(f"Knowledge graph update {index}/{total} failed: {e}")
                        raise UpdateApplicationError(index, applied, total, e.message) from e
                    except Exception as e:
                        logger.exception(f"Knowledge graph update {index}/{total} failed")
                        raise UpdateApplicationError(index, applied, total, str(e)) from e
                    applied += 1
            except UpdateApplicationError:
                if applied:
                    await self._flush_after_failure(applied)
                raise

            if applied:
                try:
                    await self.backend.flush()
                except Exception as e:
                    reason = e.message if isinstance(e, SodianError) else str(e)
                    logger.error(f"Persisting {applied} knowledge graph update(s) failed: {reason}")
                    raise UpdateApplicationError(total, applied, total, reason) from e
        logger.debug(f"Applied {applied} knowledge graph update(s)")

    async def _flush_after_failure(self, applied: int) -> None:
        # The update failure is what the caller sees; a flush failure here is only logged.
        try:
            await self.backend.flush()
        except Exception as e:
            logger.error(f"Persisting {applied} update(s) applied before the failure also failed: {e}")

    async def _apply_one(self, update: KnowledgeGraphUpdate) -> None:
        payload = parse_payload(update.type, update.data)
        if update.type == UpdateType.NOTE:
            await self._handle_note(update.action, payload)
        elif update.type == UpdateType.LINK:
            await self._handle_link(update.action, payload)
        elif update.type == UpdateType.TAG:
            await self._handle_tags(update.action, payload)
        elif update.type in (UpdateType.LEARNING_PATH, UpdateType.LEARNING_PROGRESS):
            await self._handle_learning(update.type, update.action, payload)
        elif update.type == UpdateType.META_PATTERN:
            await self._handle_pattern(update.action, payload)

    async def _create_node(self, node_type: NodeType, properties: Dict[str, Any],
                           node_id: Optional[str] = None) -> GraphNode:
        node = GraphNode(
            id=node_id or new_id(_ID_PREFIXES[node_type]),
            type=node_type,
            properties=properties,
        )
        await self.backend.add_node(node)
        return node

    async def _handle_note(self, action: UpdateAction, payload: NotePayload) -> None:
        if action != UpdateAction.CREATE:
            raise UnsupportedOperationError(UpdateType.NOTE.value, action.value)
        properties = payload.to_properties()
        properties["path"] = payload.path
        # Not content-addressed: identical notes become distinct nodes.
        await self._create_node(NodeType.NOTE, properties)

    async def _handle_link(self, action: UpdateAction, payload: LinkPayload) -> None:
        strength = payload.strength
        if action == UpdateAction.CREATE:
            await self._create_link(payload)
        elif action == UpdateAction.UPDATE:
            for link in await self._matching_links(payload):
                link.touch(strength if strength is not None else link.strength)
                if "relationship" in payload.model_fields_set:
                    link.relationship = payload.relationship
                await self.backend.save_link(link)
        elif action == UpdateAction.MERGE:
            existing = await self._matching_links(payload)
            if not existing:
                await self._create_link(payload)
            incoming = self._effective_strength(strength)
            for link in existing:
                link.touch(max(link.strength, incoming))
                await self.backend.save_link(link)
        elif action == UpdateAction.DELETE:
            for link in await self._matching_links(payload):
                await self.backend.remove_link(link.id)

    async def _matching_links(self, payload: LinkPayload) -> List[GraphLink]:
        if payload.id:
            link = await self.backend.get_link(payload.id)
            return [link] if link else []
        return await self.backend.find_links(payload.source, payload.target)

    def _effective_strength(self, strength: Optional[float]) -> float:
        if strength is None:
            return self.config.default_link_strength
        return clamp_strength(strength)

    async def _create_link(self, payload: LinkPayload) -> GraphLink:
        if not payload.has_endpoints:
            raise ValidationError(
                field="link.source",
                reason="creating a link needs both source and target",
                value=payload.id,
            )
        if payload.id and await self.backend.get_link(payload.id) is not None:
            raise ValidationError(field="link.id", reason="link id already exists", value=payload.id)
        link = GraphLink(
            id=payload.id or new_id("link"),
            source=payload.source,
            target=payload.target,
            relationship=payload.relationship,
            strength=self._effective_strength(payload.strength),
            bidirectional=payload.bidirectional,
        )
        await self.backend.add_link(link)
        return link

    async def _handle_tags(self, action: UpdateAction, payload: TagPayload) -> None:
        if action != UpdateAction.CREATE:
            raise UnsupportedOperationError(UpdateType.TAG.value, action.value)
        for tag in payload.tags:
            node_id = tag_node_id(tag)
            if await self.backend.has_node(node_id):
                continue
            await self._create_node(
                NodeType.TAG,
                TagProperties(name=tag.strip(), key=normalize_tag(tag)).to_properties(),
                node_id=node_id,
            )

    async def _handle_learning(self, update_type: UpdateType, action: UpdateAction,
                               payload: LearningPathPayload) -> None:
        if action == UpdateAction.DELETE:
            raise UnsupportedOperationError(update_type.value, action.value)
        properties = payload.to_properties()
        node = await self.backend.get_node(payload.id) if payload.id else None
        if node is None:
            await self._create_node(NodeType.LEARNING_PATH, properties, node_id=payload.id)
            return
        if node.type != NodeType.LEARNING_PATH:
            raise ValidationError(
                field=f"{update_type.value}.id",
                reason=f"id belongs to a {node.type.value} node",
                value=payload.id,
            )
        # Create, update and merge all converge on the same node when the id is known.
        node.properties = {**node.properties, **properties}
        node.updated_at = utcnow()
        await self.backend.save_node(node)

    async def _handle_pattern(self, action: UpdateAction, payload: MetaPatternPayload) -> None:
        if action != UpdateAction.CREATE:
            raise UnsupportedOperationError(UpdateType.META_PATTERN.value, action.value)
        await self._create_node(NodeType.META_PATTERN, payload.to_properties())

    # ══════════════════════════════════════════════════════════════════
    # Link maintenance
    # ══════════════════════════════════════════════════════════════════

    async def increment_link_weight(self, source: str, target: str) -> bool:
        """
        Add ``link_increment`` to the (source, target) link, clamped at 1.0.

        Direction-sensitive; the reverse pair is not searched. Returns False
        (no error) when no such link exists.
        """
        async with self._lock.write():
            touched = await self._increment_unlocked(source, target)
            if touched:
                await self.backend.flush()
        return touched

    async def strengthen_links(self, pairs: Iterable[Tuple[str, str]]) -> int:
        """
        Increment several links under one write lock; returns links touched.

        Each pair is direction-sensitive, as in ``increment_link_weight``.
        """
        touched = 0
        async with self._lock.write():
            for source, target in pairs:
                if await self._increment_unlocked(source, target):
                    touched += 1
            if touched:
                await self.backend.flush()
        return touched

    async def _increment_unlocked(self, source: str, target: str) -> bool:
        links = await self.backend.find_links(source, target)
        if not links:
            return False
        link = links[0]
        link.touch(link.strength + self.config.link_increment)
        await self.backend.save_link(link)
        return True

    async def remove_link(self, link_id: str) -> None:
        """Idempotent delete by id."""
        async with self._lock.write():
            if await self.backend.remove_link(link_id):
                await self.backend.flush()
                logger.debug(f"Removed link {link_id}")

    # ══════════════════════════════════════════════════════════════════
    # Read path
    # ══════════════════════════════════════════════════════════════════

    async def query(self, topic: str) -> QueryResult:
        """
        Nodes whose serialized properties contain ``topic`` (case-insensitive),
        plus every link with either endpoint in that set. Store order.
        """
        async with self._lock.read():
            nodes = await self.backend.search_nodes(topic)
            ids = {n.id for n in nodes}
            links = await self.backend.links_touching(ids) if ids else []
        return QueryResult(nodes=_detached(nodes), links=_detached(links))

    async def query_weak_links(self, days: Optional[float] = None,
                               threshold: Optional[float] = None) -> List[GraphLink]:
        """
        Links with ``strength < threshold`` whose ``last_touched`` falls within
        the last ``days`` days. ``days=None`` disables the recency filter.
        """
        limit = self.config.weak_link_threshold if threshold is None else threshold
        async with self._lock.read():
            links = await self.backend.list_links()
        weak = [l for l in links if l.strength < limit]
        if days is not None:
            cutoff = utcnow() - timedelta(days=days)
            weak = [l for l in weak if l.last_touched >= cutoff]
        return _detached(weak)

    async def query_by_folder(self, fragment: str) -> List[GraphNode]:
        """Note nodes whose folder contains ``fragment``."""
        async with self._lock.read():
            notes = await self.backend.list_nodes(NodeType.NOTE)
        return _detached(n for n in notes if fragment in typed_properties(NodeType.NOTE, n.properties).folder)

    async def query_solutions(self) -> List[GraphNode]:
        return await self.query_by_folder("Solutions")

    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        async with self._lock.read():
            node = await self.backend.get_node(node_id)
        return node.copy() if node is not None else None

    async def get_nodes(self, node_type: Optional[NodeType] = None) -> List[GraphNode]:
        async with self._lock.read():
            nodes = await self.backend.list_nodes(node_type)
        return _detached(nodes)

    async def get_links(self) -> List[GraphLink]:
        async with self._lock.read():
            links = await self.backend.list_links()
        return _detached(links)

    async def get_stats(self) -> Dict[str, int]:
        async with self._lock.read():
            nodes, links = await self.backend.counts()
        return {"node_count": nodes, "link_count": links}

    async def close(self) -> None:
        async with self._lock.write():
            await self.backend.close()


def create_graph_store(config: Optional[GraphConfig] = None,
                       neo4j: Optional[Neo4jConfig] = None) -> KnowledgeGraphStore:
    """Build a store on Neo4j when credentials are configured, else in memory."""
    config = config or GraphConfig()
    if neo4j is not None and neo4j.enabled:
        from .neo4j_backend import Neo4jGraphBackend

        backend: GraphBackend = Neo4jGraphBackend(
            uri=neo4j.uri, user=neo4j.user, password=neo4j.password, database=neo4j.database
        )
        return KnowledgeGraphStore(backend=backend, config=config)
    logger.info("[KnowledgeGraph] Neo4j credentials not configured, using in-memory store")
    return KnowledgeGraphStore(config=config)
