"""
Knowledge Core Data Models
==========================
Nodes, links, updates and documents shared by the graph store, the vector
index and the consolidation engine.

A ``GraphLink`` is one logical link even when ``bidirectional`` is set; backends
without an undirected edge concept materialize it as two directed edges.
"""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_strength(value: float) -> float:
    """Clamp a link strength into [0, 1]."""
    return max(0.0, min(1.0, float(value)))


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    return utcnow()


class NodeType(str, Enum):
    NOTE = "Note"
    TAG = "Tag"
    LEARNING_PATH = "LearningPath"
    META_PATTERN = "MetaPattern"


class UpdateType(str, Enum):
    NOTE = "note"
    LINK = "link"
    TAG = "tag"
    LEARNING_PATH = "learning_path"
    LEARNING_PROGRESS = "learning_progress"
    META_PATTERN = "meta_pattern"


class UpdateAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MERGE = "merge"


# ═══════════════════════════════════════════════════════════════════════
# Graph entities
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class GraphNode:
    """
    A typed entity in the knowledge graph.

    ``type`` is fixed at creation. ``properties`` holds the validated payload
    for the node's type (see ``payloads.typed_properties``).
    """
    id: str
    type: NodeType
    properties: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "type" and "type" in self.__dict__ and self.__dict__["type"] != value:
            raise ValidationError(field="type", reason="node type is immutable", value=value)
        super().__setattr__(name, value)

    def copy(self) -> "GraphNode":
        """Detached copy; edits to it never reach the store."""
        return replace(self, properties=deepcopy(self.properties))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "properties": self.properties,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "GraphNode":
        return cls(
            id=d["id"],
            type=NodeType(d["type"]),
            properties=d.get("properties", {}),
            created_at=_parse_dt(d.get("created_at")),
            updated_at=_parse_dt(d.get("updated_at")),
        )


@dataclass
class GraphLink:
    """
    A weighted, typed relationship between two node ids.

    Fields:
        source / target: Node ids. They may be forward references; the
            in-memory backend does not require the nodes to exist.
        relationship: Free-form label ("extends", "supports", ...).
        strength: Always clamped to [0, 1].
        bidirectional: Logical flag; one link in this API.
        last_touched: Refreshed on creation, strengthening and explicit updates.
    """
    id: str
    source: str
    target: str
    relationship: str = "related"
    strength: float = 1.0
    bidirectional: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_touched: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.strength = clamp_strength(self.strength)

    def touch(self, strength: Optional[float] = None) -> None:
        if strength is not None:
            self.strength = clamp_strength(strength)
        self.last_touched = utcnow()

    def copy(self) -> "GraphLink":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "relationship": self.relationship,
            "strength": self.strength,
            "bidirectional": self.bidirectional,
            "created_at": self.created_at.isoformat(),
            "last_touched": self.last_touched.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "GraphLink":
        return cls(
            id=d["id"],
            source=d["source"],
            target=d["target"],
            relationship=d.get("relationship", "related"),
            strength=d.get("strength", 1.0),
            bidirectional=d.get("bidirectional", False),
            created_at=_parse_dt(d.get("created_at")),
            last_touched=_parse_dt(d.get("last_touched")),
        )


@dataclass
class QueryResult:
    nodes: List[GraphNode] = field(default_factory=list)
    links: List[GraphLink] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "links": [l.to_dict() for l in self.links],
        }


# ═══════════════════════════════════════════════════════════════════════
# Updates
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class KnowledgeGraphUpdate:
    """
    An external write event, the only way into the graph store.

    ``data`` is type-specific and validated when the update is applied.
    """
    type: UpdateType
    action: UpdateAction
    data: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "type", UpdateType(self.type))
        except ValueError as e:
            raise ValidationError(field="type", reason="unknown update type", value=self.type) from e
        try:
            object.__setattr__(self, "action", UpdateAction(self.action))
        except ValueError as e:
            raise ValidationError(field="action", reason="unknown update action", value=self.action) from e

    @classmethod
    def from_dict(cls, d: dict) -> "KnowledgeGraphUpdate":
        if not isinstance(d, dict) or "type" not in d:
            raise ValidationError(field="update", reason="missing 'type'", value=d)
        return cls(type=d["type"], action=d.get("action", "create"), data=d.get("data") or {})

    def to_dict(self) -> dict:
        return {"type": self.type.value, "action": self.action.value, "data": self.data}


# ═══════════════════════════════════════════════════════════════════════
# Vector documents
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class VectorDocument:
    """Content plus metadata. ``embedding`` is owned by the vector index."""
    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = field(default=None, repr=False)

    @property
    def path(self) -> str:
        return str(self.metadata.get("path") or self.id)


@dataclass
class SearchResult:
    id: str
    content: str
    metadata: Dict[str, Any]
    similarity: float

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "metadata": self.metadata,
            "similarity": self.similarity,
        }
