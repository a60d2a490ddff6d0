"""
Neo4j Graph Backend
===================
Durable graph storage through the official async ``neo4j`` driver.

Mapping:
    - Each node is a Neo4j node labelled with its ``NodeType`` value, holding
      ``id``, ``properties_json`` (the full property map), ``search_text``
      (lowercased JSON used for topic search) and ISO timestamps.
    - Each link is a ``:LINK`` relationship carrying ``link_id``,
      ``relationship``, ``strength``, ``bidirectional`` and ``direction``.
      A bidirectional link is materialized as a ``forward`` and a ``reverse``
      relationship sharing one ``link_id``; only the forward edge is reported
      back, so the store still sees one logical link.

Links whose endpoints do not exist are rejected with ``ValidationError``.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from neo4j import AsyncGraphDatabase

from .exceptions import ValidationError, wrap_storage_exception
from .graph_backends import GraphBackend, properties_text
from .models import GraphLink, GraphNode, NodeType

_LINK_FIELDS = (
    "r.link_id AS id, a.id AS source, b.id AS target, r.relationship AS relationship, "
    "r.strength AS strength, r.bidirectional AS bidirectional, "
    "r.created_at AS created_at, r.last_touched AS last_touched"
)
_NODE_FIELDS = (
    "n.id AS id, n.node_type AS type, n.properties_json AS properties_json, "
    "n.created_at AS created_at, n.updated_at AS updated_at"
)


def _row_to_node(row: Dict[str, Any]) -> GraphNode:
    return GraphNode.from_dict({
        "id": row["id"],
        "type": row["type"],
        "properties": json.loads(row.get("properties_json") or "{}"),
        "created_at": row.get("created_at"),
        "updated_at": row.get("updated_at"),
    })


class Neo4jGraphBackend(GraphBackend):
    """Graph backend persisting into a Neo4j database."""

    name = "neo4j"

    def __init__(
        self,
        uri: str,
        user: str,
        password: str,
        database: Optional[str] = None,
        driver: Any = None,
    ):
        self.uri = uri
        self.database = database
        self._driver = driver or AsyncGraphDatabase.driver(uri, auth=(user, password))
        logger.info(f"[KnowledgeGraph] Using Neo4j at {uri}")

    async def _run(self, operation: str, query: str, **params) -> Tuple[List[Dict[str, Any]], Any]:
        try:
            records, summary, _keys = await self._driver.execute_query(
                query, parameters_=params, database_=self.database
            )
        except Exception as e:
            logger.error(f"Neo4j {operation} failed: {e}")
            raise wrap_storage_exception(self.name, operation, e) from e
        return [r.data() for r in records], summary

    # ---- Nodes ---------------------------------------------------------

    async def add_node(self, node: GraphNode) -> None:
        await self._run(
            "add_node",
            f"CREATE (n:{node.type.value} {{id: $id, node_type: $type, properties_json: $props, "
            "search_text: $text, created_at: $created_at, updated_at: $updated_at})",
            id=node.id,
            type=node.type.value,
            props=json.dumps(node.properties, default=str),
            text=properties_text(node),
            created_at=node.created_at.isoformat(),
            updated_at=node.updated_at.isoformat(),
        )

    async def save_node(self, node: GraphNode) -> None:
        await self._run(
            "save_node",
            "MATCH (n {id: $id}) SET n.properties_json = $props, n.search_text = $text, "
            "n.updated_at = $updated_at",
            id=node.id,
            props=json.dumps(node.properties, default=str),
            text=properties_text(node),
            updated_at=node.updated_at.isoformat(),
        )

    async def get_node(self, node_id: str) -> Optional[GraphNode]:
        rows, _ = await self._run(
            "get_node", f"MATCH (n {{id: $id}}) RETURN {_NODE_FIELDS} LIMIT 1", id=node_id
        )
        return _row_to_node(rows[0]) if rows else None

    async def list_nodes(self, node_type: Optional[NodeType] = None) -> List[GraphNode]:
        if node_type is None:
            rows, _ = await self._run(
                "list_nodes",
                f"MATCH (n) WHERE n.node_type IS NOT NULL RETURN {_NODE_FIELDS} ORDER BY n.created_at",
            )
        else:
            rows, _ = await self._run(
                "list_nodes",
                f"MATCH (n:{node_type.value}) RETURN {_NODE_FIELDS} ORDER BY n.created_at",
            )
        return [_row_to_node(r) for r in rows]

    async def search_nodes(self, topic: str) -> List[GraphNode]:
        rows, _ = await self._run(
            "search_nodes",
            f"MATCH (n) WHERE n.search_text CONTAINS $topic RETURN {_NODE_FIELDS} ORDER BY n.created_at",
            topic=topic.lower(),
        )
        return [_row_to_node(r) for r in rows]

    # ---- Links ---------------------------------------------------------

    async def add_link(self, link: GraphLink) -> None:
        params = dict(
            source=link.source,
            target=link.target,
            link_id=link.id,
            relationship=link.relationship,
            strength=link.strength,
            bidirectional=link.bidirectional,
            created_at=link.created_at.isoformat(),
            last_touched=link.last_touched.isoformat(),
        )
        _, summary = await self._run(
            "add_link",
            "MATCH (a {id: $source}), (b {id: $target}) "
            "CREATE (a)-[:LINK {link_id: $link_id, relationship: $relationship, strength: $strength, "
            "bidirectional: $bidirectional, direction: 'forward', created_at: $created_at, "
            "last_touched: $last_touched}]->(b)",
            **params,
        )
        if summary is not None and summary.counters.relationships_created == 0:
            raise ValidationError(
                field="link",
                reason="source or target node does not exist",
                value=f"{link.source}->{link.target}",
            )
        if link.bidirectional:
            await self._run(
                "add_link",
                "MATCH (a {id: $source}), (b {id: $target}) "
                "CREATE (b)-[:LINK {link_id: $link_id, relationship: $relationship, strength: $strength, "
                "bidirectional: $bidirectional, direction: 'reverse', created_at: $created_at, "
                "last_touched: $last_touched}]->(a)",
                **params,
            )

    async def save_link(self, link: GraphLink) -> None:
        await self._run(
            "save_link",
            "MATCH ()-[r:LINK {link_id: $link_id}]->() "
            "SET r.strength = $strength, r.relationship = $relationship, r.last_touched = $last_touched",
            link_id=link.id,
            strength=link.strength,
            relationship=link.relationship,
            last_touched=link.last_touched.isoformat(),
        )

    async def get_link(self, link_id: str) -> Optional[GraphLink]:
        rows, _ = await self._run(
            "get_link",
            f"MATCH (a)-[r:LINK {{link_id: $link_id, direction: 'forward'}}]->(b) RETURN {_LINK_FIELDS} LIMIT 1",
            link_id=link_id,
        )
        return GraphLink.from_dict(rows[0]) if rows else None

    async def find_links(self, source: str, target: str) -> List[GraphLink]:
        rows, _ = await self._run(
            "find_links",
            f"MATCH (a {{id: $source}})-[r:LINK {{direction: 'forward'}}]->(b {{id: $target}}) "
            f"RETURN {_LINK_FIELDS} ORDER BY r.created_at",
            source=source,
            target=target,
        )
        return [GraphLink.from_dict(r) for r in rows]

    async def remove_link(self, link_id: str) -> bool:
        _, summary = await self._run(
            "remove_link",
            "MATCH ()-[r:LINK {link_id: $link_id}]->() DELETE r",
            link_id=link_id,
        )
        return summary is None or summary.counters.relationships_deleted > 0

    async def list_links(self) -> List[GraphLink]:
        rows, _ = await self._run(
            "list_links",
            f"MATCH (a)-[r:LINK {{direction: 'forward'}}]->(b) RETURN {_LINK_FIELDS} ORDER BY r.created_at",
        )
        return [GraphLink.from_dict(r) for r in rows]

    async def links_touching(self, node_ids) -> List[GraphLink]:
        rows, _ = await self._run(
            "links_touching",
            f"MATCH (a)-[r:LINK {{direction: 'forward'}}]->(b) WHERE a.id IN $ids OR b.id IN $ids "
            f"RETURN {_LINK_FIELDS} ORDER BY r.created_at",
            ids=list(node_ids),
        )
        return [GraphLink.from_dict(r) for r in rows]

    # ---- Lifecycle -----------------------------------------------------

    async def counts(self) -> Tuple[int, int]:
        node_rows, _ = await self._run(
            "counts", "MATCH (n) WHERE n.node_type IS NOT NULL RETURN count(n) AS c"
        )
        link_rows, _ = await self._run(
            "counts", "MATCH ()-[r:LINK {direction: 'forward'}]->() RETURN count(r) AS c"
        )
        return node_rows[0]["c"], link_rows[0]["c"]

    async def close(self) -> None:
        await self._driver.close()
