"""
Tests for Neo4jGraphBackend with a mocked async driver.

Cypher is not executed here; the tests pin the parameters sent to the
driver and the mapping of returned rows back into nodes and links.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from sodian.core.config import GraphConfig, Neo4jConfig
from sodian.core.exceptions import StorageConnectionError, UpdateApplicationError, ValidationError
from sodian.core.graph_store import KnowledgeGraphStore, create_graph_store
from sodian.core.graph_backends import InMemoryGraphBackend
from sodian.core.models import GraphLink, GraphNode, NodeType
from sodian.core.neo4j_backend import Neo4jGraphBackend


def _record(row):
    record = MagicMock()
    record.data.return_value = row
    return record


def _result(rows=(), relationships_created=0, relationships_deleted=0):
    summary = MagicMock()
    summary.counters.relationships_created = relationships_created
    summary.counters.relationships_deleted = relationships_deleted
    return ([_record(r) for r in rows], summary, [])


def _driver(*results):
    driver = MagicMock()
    driver.execute_query = AsyncMock(side_effect=list(results))
    driver.close = AsyncMock()
    return driver


def _backend(driver):
    return Neo4jGraphBackend("bolt://test", "neo4j", "pw", database="sodian", driver=driver)


class TestNodes:

    @pytest.mark.asyncio
    async def test_add_node_sends_label_and_search_text(self):
        driver = _driver(_result())
        backend = _backend(driver)
        node = GraphNode(id="note_1", type=NodeType.NOTE, properties={"content": "Hello World"})

        await backend.add_node(node)

        query = driver.execute_query.await_args.args[0]
        params = driver.execute_query.await_args.kwargs["parameters_"]
        assert query.startswith("CREATE (n:Note")
        assert params["id"] == "note_1"
        assert params["text"] == '{"content": "hello world"}'
        assert json.loads(params["props"]) == {"content": "Hello World"}
        assert driver.execute_query.await_args.kwargs["database_"] == "sodian"

    @pytest.mark.asyncio
    async def test_get_node_maps_row(self):
        node = GraphNode(id="tag_x", type=NodeType.TAG, properties={"name": "x", "key": "x"})
        row = {
            "id": node.id,
            "type": "Tag",
            "properties_json": json.dumps(node.properties),
            "created_at": node.created_at.isoformat(),
            "updated_at": node.updated_at.isoformat(),
        }
        backend = _backend(_driver(_result([row]), _result([])))

        fetched = await backend.get_node("tag_x")
        assert fetched.type is NodeType.TAG
        assert fetched.properties == {"name": "x", "key": "x"}
        assert await backend.has_node("missing") is False

    @pytest.mark.asyncio
    async def test_search_lowercases_topic(self):
        driver = _driver(_result([]))
        await _backend(driver).search_nodes("PyThOn")
        assert driver.execute_query.await_args.kwargs["parameters_"]["topic"] == "python"


class TestLinks:

    @pytest.mark.asyncio
    async def test_bidirectional_link_creates_reverse_edge(self):
        driver = _driver(_result(relationships_created=1), _result(relationships_created=1))
        link = GraphLink(id="link_1", source="a", target="b", bidirectional=True)

        await _backend(driver).add_link(link)

        assert driver.execute_query.await_count == 2
        reverse_query = driver.execute_query.await_args_list[1].args[0]
        assert "direction: 'reverse'" in reverse_query

    @pytest.mark.asyncio
    async def test_directed_link_single_edge(self):
        driver = _driver(_result(relationships_created=1))
        await _backend(driver).add_link(GraphLink(id="link_1", source="a", target="b"))
        assert driver.execute_query.await_count == 1

    @pytest.mark.asyncio
    async def test_dangling_link_rejected(self):
        driver = _driver(_result(relationships_created=0))
        with pytest.raises(ValidationError):
            await _backend(driver).add_link(GraphLink(id="link_1", source="a", target="ghost"))

    @pytest.mark.asyncio
    async def test_find_links_maps_rows(self):
        link = GraphLink(id="link_1", source="a", target="b", strength=0.4)
        driver = _driver(_result([link.to_dict()]))
        found = await _backend(driver).find_links("a", "b")
        assert found == [link]

    @pytest.mark.asyncio
    async def test_remove_link_reports_deletion(self):
        driver = _driver(_result(relationships_deleted=2), _result(relationships_deleted=0))
        backend = _backend(driver)
        assert await backend.remove_link("link_1") is True
        assert await backend.remove_link("link_1") is False

    @pytest.mark.asyncio
    async def test_counts(self):
        driver = _driver(_result([{"c": 3}]), _result([{"c": 1}]))
        assert await _backend(driver).counts() == (3, 1)


class TestStoreOnNeo4j:

    @pytest.mark.asyncio
    async def test_dangling_link_fails_batch(self):
        driver = _driver(_result(relationships_created=0))
        store = KnowledgeGraphStore(backend=_backend(driver))
        with pytest.raises(UpdateApplicationError) as exc:
            await store.apply_updates([{"type": "link", "action": "create", "data": {"source": "a", "target": "b"}}])
        assert isinstance(exc.value.__cause__, ValidationError)

    @pytest.mark.asyncio
    async def test_driver_connection_error_is_recoverable(self):
        class ServiceUnavailable(Exception):
            pass

        driver = MagicMock()
        driver.execute_query = AsyncMock(side_effect=ServiceUnavailable("no route to host"))
        store = KnowledgeGraphStore(backend=_backend(driver))
        with pytest.raises(UpdateApplicationError) as exc:
            await store.apply_updates([{"type": "meta_pattern", "data": {"p": 1}}])
        assert isinstance(exc.value.__cause__, StorageConnectionError)
        assert exc.value.recoverable is True

    @pytest.mark.asyncio
    async def test_close_closes_driver(self):
        driver = _driver()
        store = KnowledgeGraphStore(backend=_backend(driver))
        await store.close()
        driver.close.assert_awaited_once()


class TestFactory:

    def test_in_memory_without_credentials(self):
        store = create_graph_store(GraphConfig(), Neo4jConfig(uri="bolt://x"))
        assert isinstance(store.backend, InMemoryGraphBackend)

    def test_neo4j_with_credentials(self, monkeypatch):
        fake_db = MagicMock()
        monkeypatch.setattr("sodian.core.neo4j_backend.AsyncGraphDatabase", fake_db)
        store = create_graph_store(GraphConfig(), Neo4jConfig(uri="bolt://x", user="u", password="p"))
        assert isinstance(store.backend, Neo4jGraphBackend)
        fake_db.driver.assert_called_once_with("bolt://x", auth=("u", "p"))
