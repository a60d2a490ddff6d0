"""
Tests for KnowledgeGraphStore (graph_store.py)
==============================================
Covers update application, topic / weak-link queries, link maintenance,
batch failure semantics and snapshot persistence.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from factories import link_update, note_update, tag_update
from sodian.core.config import GraphConfig
from sodian.core.exceptions import (
    StorageError,
    UnsupportedOperationError,
    UpdateApplicationError,
    ValidationError,
)
from sodian.core.graph_backends import InMemoryGraphBackend
from sodian.core.graph_store import KnowledgeGraphStore, normalize_tag, tag_node_id
from sodian.core.models import KnowledgeGraphUpdate, NodeType, utcnow
from sodian.core.payloads import NotePayload, TagProperties, typed_properties


async def _only_link(store):
    links = await store.get_links()
    assert len(links) == 1
    return links[0]


# ═══════════════════════════════════════════════════════════════════════
# apply_updates: create
# ═══════════════════════════════════════════════════════════════════════

class TestApplyCreate:

    @pytest.mark.asyncio
    async def test_end_to_end_note_query(self, graph_store):
        await graph_store.apply_updates([note_update(folder="/X/", filename="a", content="hello world")])
        result = await graph_store.query("hello")
        assert len(result.nodes) == 1
        assert result.nodes[0].properties["content"] == "hello world"
        assert result.nodes[0].type is NodeType.NOTE

    @pytest.mark.asyncio
    async def test_note_path_property(self, graph_store):
        await graph_store.apply_updates([note_update(folder="/X/", filename="a")])
        nodes = await graph_store.get_nodes(NodeType.NOTE)
        assert nodes[0].properties["path"] == "/X/a"

    @pytest.mark.asyncio
    async def test_duplicate_notes_are_distinct_nodes(self, graph_store):
        update = note_update(content="same")
        await graph_store.apply_updates([update, update])
        notes = await graph_store.get_nodes(NodeType.NOTE)
        assert len(notes) == 2
        assert notes[0].id != notes[1].id
        assert all(n.id.startswith("note_") for n in notes)

    @pytest.mark.asyncio
    async def test_accepts_update_objects(self, graph_store):
        update = KnowledgeGraphUpdate(type="meta_pattern", action="create", data={"pattern": "x"})
        await graph_store.apply_updates([update])
        nodes = await graph_store.get_nodes(NodeType.META_PATTERN)
        assert nodes[0].properties == {"pattern": "x"}

    @pytest.mark.asyncio
    async def test_tag_idempotence_within_batch(self, graph_store):
        await graph_store.apply_updates([tag_update("python", "ml"), tag_update("python", "ml")])
        tags = await graph_store.get_nodes(NodeType.TAG)
        assert sorted(t.id for t in tags) == ["tag_ml", "tag_python"]

    @pytest.mark.asyncio
    async def test_tag_dedup_by_normalized_key(self, graph_store):
        await graph_store.apply_updates([tag_update("Python", "#python", " PYTHON ")])
        tags = await graph_store.get_nodes(NodeType.TAG)
        assert len(tags) == 1
        assert tags[0].properties == {"name": "Python", "key": "python"}

    @pytest.mark.asyncio
    async def test_nodes_read_back_as_typed_variants(self, graph_store):
        await graph_store.apply_updates([
            note_update(folder="Inbox/", filename="a.md", content="alpha"),
            tag_update("Rust"),
        ])
        note = (await graph_store.get_nodes(NodeType.NOTE))[0]
        tag = (await graph_store.get_nodes(NodeType.TAG))[0]

        fields = typed_properties(NodeType.NOTE, note.properties)
        assert isinstance(fields, NotePayload)
        assert (fields.path, fields.content) == ("Inbox/a.md", "alpha")
        assert typed_properties(NodeType.TAG, tag.properties) == TagProperties(name="Rust", key="rust")

    def test_normalize_tag(self):
        assert normalize_tag("#Machine Learning") == "machine-learning"
        assert tag_node_id("Rust") == "tag_rust"

    @pytest.mark.asyncio
    async def test_link_default_strength(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b")])
        link = await _only_link(graph_store)
        assert link.strength == 1.0
        assert link.relationship == "related"

    @pytest.mark.asyncio
    async def test_link_strength_clamped(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=4.2)])
        assert (await _only_link(graph_store)).strength == 1.0

    @pytest.mark.asyncio
    async def test_bidirectional_link_is_one_logical_link(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", bidirectional=True)])
        link = await _only_link(graph_store)
        assert link.bidirectional is True
        assert (await graph_store.get_stats())["link_count"] == 1

    @pytest.mark.asyncio
    async def test_learning_path_created_and_merged(self, graph_store):
        await graph_store.apply_updates([
            {"type": "learning_path", "action": "create", "data": {"id": "lp_rust", "topic": "rust", "step": 1}},
            {"type": "learning_progress", "action": "update", "data": {"id": "lp_rust", "step": 2}},
        ])
        node = await graph_store.get_node("lp_rust")
        assert node.type is NodeType.LEARNING_PATH
        assert node.properties["topic"] == "rust"
        assert node.properties["step"] == 2
        assert (await graph_store.get_stats())["node_count"] == 1

    @pytest.mark.asyncio
    async def test_learning_progress_without_id_creates(self, graph_store):
        await graph_store.apply_updates([{"type": "learning_progress", "action": "merge", "data": {"step": 1}}])
        nodes = await graph_store.get_nodes(NodeType.LEARNING_PATH)
        assert len(nodes) == 1
        assert nodes[0].id.startswith("learning_")

    @pytest.mark.asyncio
    async def test_learning_id_owned_by_other_type_rejected(self, graph_store):
        await graph_store.apply_updates([tag_update("rust")])
        with pytest.raises(UpdateApplicationError) as exc:
            await graph_store.apply_updates([
                {"type": "learning_path", "action": "create", "data": {"id": "tag_rust", "step": 1}},
            ])
        assert isinstance(exc.value.__cause__, ValidationError)


# ═══════════════════════════════════════════════════════════════════════
# apply_updates: update / merge / delete
# ═══════════════════════════════════════════════════════════════════════

class TestApplyMutations:

    @pytest.mark.asyncio
    async def test_duplicate_link_id_rejected(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", id="link_fixed")])
        with pytest.raises(UpdateApplicationError) as exc:
            await graph_store.apply_updates([link_update("c", "d", id="link_fixed")])
        assert isinstance(exc.value.__cause__, ValidationError)
        assert (await _only_link(graph_store)).source == "a"

    @pytest.mark.asyncio
    async def test_link_update_sets_strength(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.9)])
        await graph_store.apply_updates([link_update("a", "b", strength=0.2, action="update", relationship="extends")])
        link = await _only_link(graph_store)
        assert link.strength == pytest.approx(0.2)
        assert link.relationship == "extends"

    @pytest.mark.asyncio
    async def test_link_update_missing_is_noop(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.2, action="update")])
        assert await graph_store.get_links() == []

    @pytest.mark.asyncio
    async def test_link_merge_takes_max(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.6)])
        await graph_store.apply_updates([link_update("a", "b", strength=0.3, action="merge")])
        assert (await _only_link(graph_store)).strength == pytest.approx(0.6)
        await graph_store.apply_updates([link_update("a", "b", strength=0.8, action="merge")])
        assert (await _only_link(graph_store)).strength == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_link_merge_creates_when_missing(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.4, action="merge")])
        assert (await _only_link(graph_store)).strength == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_link_delete_by_pair(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b"), link_update("b", "a")])
        await graph_store.apply_updates([link_update("a", "b", action="delete")])
        link = await _only_link(graph_store)
        assert (link.source, link.target) == ("b", "a")

    @pytest.mark.asyncio
    async def test_link_delete_by_id(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", id="link_fixed")])
        await graph_store.apply_updates([{"type": "link", "action": "delete", "data": {"id": "link_fixed"}}])
        assert await graph_store.get_links() == []

    @pytest.mark.asyncio
    async def test_link_update_by_id(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.2, id="link_fixed")])
        await graph_store.apply_updates([
            {"type": "link", "action": "update", "data": {"id": "link_fixed", "strength": 0.7}},
        ])
        assert (await _only_link(graph_store)).strength == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_link_merge_by_unknown_id_needs_endpoints(self, graph_store):
        with pytest.raises(UpdateApplicationError) as exc:
            await graph_store.apply_updates([{"type": "link", "action": "merge", "data": {"id": "ghost"}}])
        assert isinstance(exc.value.__cause__, ValidationError)
        assert await graph_store.get_links() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("update", [
        {"type": "note", "action": "update", "data": {"content": "x"}},
        {"type": "tag", "action": "delete", "data": {"tags": ["x"]}},
        {"type": "meta_pattern", "action": "merge", "data": {}},
        {"type": "learning_path", "action": "delete", "data": {"id": "lp"}},
    ])
    async def test_unsupported_pairs_rejected(self, graph_store, update):
        with pytest.raises(UpdateApplicationError) as exc:
            await graph_store.apply_updates([update])
        assert isinstance(exc.value.__cause__, UnsupportedOperationError)
        assert exc.value.recoverable is False


# ═══════════════════════════════════════════════════════════════════════
# Batch failure semantics
# ═══════════════════════════════════════════════════════════════════════

class TestBatchFailure:

    @pytest.mark.asyncio
    async def test_failure_aborts_rest_without_rollback(self, graph_store):
        batch = [
            note_update(content="first"),
            {"type": "link", "action": "create", "data": {"source": "a"}},
            note_update(content="never applied"),
        ]
        with pytest.raises(UpdateApplicationError) as exc:
            await graph_store.apply_updates(batch)

        err = exc.value
        assert err.index == 1
        assert err.applied == 1
        assert err.total == 3
        assert isinstance(err.__cause__, ValidationError)

        notes = await graph_store.get_nodes(NodeType.NOTE)
        assert [n.properties["content"] for n in notes] == ["first"]

    @pytest.mark.asyncio
    async def test_malformed_update_envelope(self, graph_store):
        with pytest.raises(UpdateApplicationError) as exc:
            await graph_store.apply_updates([{"type": "bogus", "data": {}}])
        assert isinstance(exc.value.__cause__, ValidationError)

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, graph_store):
        with pytest.raises(UpdateApplicationError):
            await graph_store.apply_updates([{"type": "tag", "data": {"tags": 5}}])
        assert graph_store.lock.write_locked is False
        assert (await graph_store.get_stats())["node_count"] == 0

    @pytest.mark.asyncio
    async def test_persist_failure_after_full_batch_is_wrapped(self, graph_store):
        graph_store.backend.flush = AsyncMock(side_effect=StorageError("disk full"))
        with pytest.raises(UpdateApplicationError) as exc:
            await graph_store.apply_updates([note_update(), tag_update("x")])
        err = exc.value
        assert (err.index, err.applied, err.total) == (2, 2, 2)
        assert isinstance(err.__cause__, StorageError)
        assert graph_store.lock.write_locked is False

    @pytest.mark.asyncio
    async def test_persist_failure_does_not_mask_update_failure(self, graph_store):
        graph_store.backend.flush = AsyncMock(side_effect=StorageError("disk full"))
        with pytest.raises(UpdateApplicationError) as exc:
            await graph_store.apply_updates([note_update(), {"type": "tag", "data": {"tags": 5}}])
        assert exc.value.index == 1
        assert isinstance(exc.value.__cause__, ValidationError)
        graph_store.backend.flush.assert_awaited_once()


# ═══════════════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════════════

class TestQueries:

    @pytest.mark.asyncio
    async def test_query_is_case_insensitive_and_includes_links(self, graph_store):
        await graph_store.apply_updates([
            note_update(content="Graph Theory basics", filename="g.md"),
            note_update(content="cooking", filename="c.md"),
        ])
        notes = await graph_store.get_nodes(NodeType.NOTE)
        graph_id, cooking_id = notes[0].id, notes[1].id
        await graph_store.apply_updates([
            link_update(graph_id, "elsewhere"),
            link_update("x", "y"),
        ])

        result = await graph_store.query("graph theory")
        assert [n.id for n in result.nodes] == [graph_id]
        assert [(l.source, l.target) for l in result.links] == [(graph_id, "elsewhere")]
        assert cooking_id not in {n.id for n in result.nodes}

    @pytest.mark.asyncio
    async def test_query_without_match(self, graph_store):
        await graph_store.apply_updates([note_update(content="alpha")])
        result = await graph_store.query("omega")
        assert result.nodes == [] and result.links == []

    @pytest.mark.asyncio
    async def test_weak_links_by_threshold(self, graph_store):
        await graph_store.apply_updates([
            link_update("a", "b", strength=0.1),
            link_update("c", "d", strength=0.5),
            link_update("e", "f", strength=0.9),
        ])
        weak = await graph_store.query_weak_links(threshold=0.4)
        assert [l.strength for l in weak] == [pytest.approx(0.1)]

    @pytest.mark.asyncio
    async def test_weak_links_default_threshold(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.2), link_update("c", "d", strength=0.3)])
        weak = await graph_store.query_weak_links()
        assert len(weak) == 1

    @pytest.mark.asyncio
    async def test_weak_links_by_recency_and_threshold(self, graph_store):
        await graph_store.apply_updates([
            link_update("old", "x", strength=0.1),
            link_update("new", "x", strength=0.1),
            link_update("strong", "x", strength=0.9),
        ])
        stale = (await graph_store.backend.find_links("old", "x"))[0]
        stale.last_touched = utcnow() - timedelta(days=10)

        recent = await graph_store.query_weak_links(days=7, threshold=0.4)
        assert [l.source for l in recent] == ["new"]

        everything = await graph_store.query_weak_links(days=None, threshold=0.4)
        assert {l.source for l in everything} == {"old", "new"}

    @pytest.mark.asyncio
    async def test_returned_objects_are_detached(self, graph_store):
        await graph_store.apply_updates([
            link_update("a", "b", strength=0.5),
            note_update(folder="Inbox", filename="a.md", content="alpha"),
        ])
        (await graph_store.get_links())[0].strength = 7.0
        (await graph_store.query_weak_links(threshold=100))[0].strength = 7.0
        note = (await graph_store.query("alpha")).nodes[0]
        note.properties["content"] = "edited"
        (await graph_store.get_node(note.id)).properties["content"] = "edited"

        assert (await _only_link(graph_store)).strength == pytest.approx(0.5)
        assert (await graph_store.get_node(note.id)).properties["content"] == "alpha"

    @pytest.mark.asyncio
    async def test_query_solutions(self, graph_store):
        await graph_store.apply_updates([
            note_update(folder="Projects/Solutions", filename="fix.md"),
            note_update(folder="Inbox", filename="todo.md"),
        ])
        solutions = await graph_store.query_solutions()
        assert [n.properties["filename"] for n in solutions] == ["fix.md"]

    @pytest.mark.asyncio
    async def test_stats(self, graph_store):
        await graph_store.apply_updates([note_update(), tag_update("a"), link_update("a", "b")])
        assert await graph_store.get_stats() == {"node_count": 2, "link_count": 1}


# ═══════════════════════════════════════════════════════════════════════
# Link maintenance
# ═══════════════════════════════════════════════════════════════════════

class TestLinkMaintenance:

    @pytest.mark.asyncio
    async def test_increment_clamps_and_is_monotonic(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.75)])
        previous = 0.75
        for _ in range(5):
            assert await graph_store.increment_link_weight("a", "b") is True
            current = (await _only_link(graph_store)).strength
            assert previous <= current <= 1.0
            previous = current
        assert previous == 1.0

    @pytest.mark.asyncio
    async def test_increment_adds_configured_step(self):
        store = KnowledgeGraphStore(config=GraphConfig(link_increment=0.1))
        await store.apply_updates([link_update("a", "b", strength=0.3)])
        await store.increment_link_weight("a", "b")
        assert (await _only_link(store)).strength == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_increment_is_direction_sensitive(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.5)])
        assert await graph_store.increment_link_weight("b", "a") is False
        assert (await _only_link(graph_store)).strength == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_increment_missing_link_is_noop(self, graph_store):
        assert await graph_store.increment_link_weight("nope", "none") is False

    @pytest.mark.asyncio
    async def test_strengthen_links_is_direction_sensitive(self, graph_store):
        await graph_store.apply_updates([link_update("b", "a", strength=0.5)])
        assert await graph_store.strengthen_links([("a", "b")]) == 0
        assert await graph_store.strengthen_links([("b", "a"), ("x", "y")]) == 1
        assert (await _only_link(graph_store)).strength == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_remove_link_idempotent(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", id="link_1")])
        await graph_store.remove_link("link_1")
        await graph_store.remove_link("link_1")
        assert (await graph_store.get_stats())["link_count"] == 0


# ═══════════════════════════════════════════════════════════════════════
# Concurrency
# ═══════════════════════════════════════════════════════════════════════

class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_serialized(self, graph_store):
        await graph_store.apply_updates([link_update("a", "b", strength=0.0)])
        await asyncio.gather(*(graph_store.increment_link_weight("a", "b") for _ in range(5)))
        assert (await _only_link(graph_store)).strength == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_reader_sees_whole_batch(self, graph_store):
        batch = [note_update(filename=f"{i}.md") for i in range(20)]
        apply_task = asyncio.create_task(graph_store.apply_updates(batch))
        await asyncio.sleep(0)
        stats = await graph_store.get_stats()
        await apply_task
        assert stats["node_count"] in (0, 20)


# ═══════════════════════════════════════════════════════════════════════
# Persistence
# ═══════════════════════════════════════════════════════════════════════

class TestPersistence:

    @pytest.mark.asyncio
    async def test_snapshot_survives_restart(self, tmp_path):
        path = tmp_path / "graph.json"
        config = GraphConfig(persistence_path=str(path))
        store = KnowledgeGraphStore(config=config)
        await store.apply_updates([note_update(content="persist me"), link_update("a", "b", strength=0.4)])
        await store.close()
        assert path.exists()

        reloaded = KnowledgeGraphStore(config=config)
        assert await reloaded.get_stats() == {"node_count": 1, "link_count": 1}
        result = await reloaded.query("persist")
        assert result.nodes[0].properties["content"] == "persist me"

    @pytest.mark.asyncio
    async def test_no_auto_persist_writes_on_close(self, tmp_path):
        path = tmp_path / "graph.json"
        backend = InMemoryGraphBackend(persistence_path=str(path), auto_persist=False)
        store = KnowledgeGraphStore(backend=backend)
        await store.apply_updates([note_update()])
        assert not path.exists()
        await store.close()
        assert path.exists()

    def test_corrupt_snapshot_raises(self, tmp_path):
        from sodian.core.exceptions import DataCorruptionError

        path = tmp_path / "graph.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(DataCorruptionError):
            InMemoryGraphBackend(persistence_path=str(path))
