"""
Graph / vector consistency check
================================
The graph store and the vector index are written independently, often by
different collaborators, and there is no cross-store transaction. They are
eventually consistent at best.

``StoreReconciler`` is the explicit hook for callers: ``check()`` reports the
drift, ``repair()`` indexes notes the vector index is missing. Orphaned
documents are only reported, never deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from loguru import logger

from .graph_store import KnowledgeGraphStore
from .models import GraphNode, NodeType, VectorDocument
from .payloads import NotePayload, typed_properties
from .vector_index import VectorIndex


def note_fields(node: GraphNode) -> NotePayload:
    return typed_properties(NodeType.NOTE, node.properties)


def note_path(node: GraphNode) -> str:
    return note_fields(node).path


@dataclass
class ReconciliationReport:
    missing_documents: List[str] = field(default_factory=list)
    orphaned_documents: List[str] = field(default_factory=list)
    repaired: int = 0

    @property
    def consistent(self) -> bool:
        return not self.missing_documents and not self.orphaned_documents

    def to_dict(self) -> dict:
        return {
            "missing_documents": self.missing_documents,
            "orphaned_documents": self.orphaned_documents,
            "repaired": self.repaired,
        }


class StoreReconciler:
    """Compare Note nodes against indexed documents by vault path."""

    def __init__(self, graph_store: KnowledgeGraphStore, vector_index: VectorIndex):
        self.graph_store = graph_store
        self.vector_index = vector_index

    async def _snapshot(self):
        notes = await self.graph_store.get_nodes(NodeType.NOTE)
        docs = await self.vector_index.list_documents()
        return notes, docs

    @staticmethod
    def _diff(notes: List[GraphNode], docs: List[VectorDocument]) -> ReconciliationReport:
        doc_paths = {d.path for d in docs}
        note_paths = {note_path(n) for n in notes}
        return ReconciliationReport(
            missing_documents=[n.id for n in notes if note_path(n) not in doc_paths],
            orphaned_documents=[d.id for d in docs if d.path not in note_paths],
        )

    async def check(self) -> ReconciliationReport:
        notes, docs = await self._snapshot()
        report = self._diff(notes, docs)
        if not report.consistent:
            logger.warning(
                f"Graph/vector drift: {len(report.missing_documents)} note(s) not indexed, "
                f"{len(report.orphaned_documents)} orphaned document(s)"
            )
        return report

    async def repair(self) -> ReconciliationReport:
        """Index every note missing from the vector index (document id = note path)."""
        notes, docs = await self._snapshot()
        report = self._diff(notes, docs)
        missing = set(report.missing_documents)

        to_index = []
        seen_paths = set()
        for note in notes:
            path = note_path(note)
            if note.id not in missing or not path or path in seen_paths:
                continue
            seen_paths.add(path)
            fields = note_fields(note)
            to_index.append(
                VectorDocument(
                    id=path,
                    content=fields.content,
                    metadata={
                        "path": path,
                        "note_id": note.id,
                        "folder": fields.folder,
                        "filename": fields.filename,
                    },
                )
            )

        if to_index:
            await self.vector_index.add_documents(to_index)
            logger.info(f"Indexed {len(to_index)} note(s) missing from the vector index")
        report.repaired = len(to_index)
        return report
