import sys
from pathlib import Path

import pytest


# Ensure local src/ package imports work without editable install.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires external services)"
    )
    config.addinivalue_line(
        "markers",
        "requires_neo4j: mark test as requiring a running Neo4j instance"
    )
    config.addinivalue_line(
        "markers",
        "requires_qdrant: mark test as requiring a running Qdrant instance"
    )


def pytest_collection_modifyitems(config, items):
    """Skip service-backed tests unless --run-integration is passed."""
    if config.getoption("--run-integration", default=False):
        return

    skip_integration = pytest.mark.skip(
        reason="Integration test skipped. Use --run-integration to run."
    )
    for item in items:
        if (
            "integration" in item.keywords
            or "requires_neo4j" in item.keywords
            or "requires_qdrant" in item.keywords
        ):
            item.add_marker(skip_integration)


def pytest_addoption(parser):
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires Neo4j / Qdrant services)"
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def clean_config():
    """Reset the cached process config between tests."""
    from sodian.core.config import reset_config

    reset_config()
    yield
    reset_config()


@pytest.fixture
def graph_store():
    """A fresh in-memory knowledge graph per test."""
    from sodian.core.graph_store import KnowledgeGraphStore

    return KnowledgeGraphStore()


@pytest.fixture
def vector_index():
    """A fresh in-memory vector index with the fallback embedder."""
    from sodian.core.vector_index import VectorIndex

    return VectorIndex()
