"""
Sodian Test Suite: Configuration Tests
"""

import dataclasses

import pytest
import yaml

from sodian.core.config import (
    SodianConfig,
    get_config,
    load_config,
    reset_config,
)
from sodian.core.exceptions import ConfigurationError


@pytest.fixture
def sample_config_path(tmp_path):
    """Create a temporary config.yaml."""
    config_data = {
        "sodian": {
            "version": "1.0-test",
            "graph": {"link_increment": 0.2, "weak_link_threshold": 0.25},
            "neo4j": {"uri": "bolt://localhost:7687", "user": "neo4j", "password": "secret"},
            "vector": {"default_limit": 5},
            "qdrant": {"url": "http://localhost:6333", "collection": "test_notes"},
            "embedding": {"provider": "ollama", "dimensions": 384},
            "consolidation": {"window_seconds": 120},
            "observability": {"log_level": "DEBUG"},
        }
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(config_data))
    return path


class TestLoadConfig:

    def test_defaults_without_file(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")
        assert config == SodianConfig()
        assert config.neo4j.enabled is False
        assert config.qdrant.enabled is False
        assert config.graph.link_increment == 0.1
        assert config.consolidation.window_seconds == 300

    def test_yaml_values(self, sample_config_path):
        config = load_config(sample_config_path)
        assert config.version == "1.0-test"
        assert config.graph.link_increment == 0.2
        assert config.graph.default_link_strength == 1.0
        assert config.neo4j.enabled is True
        assert config.qdrant.collection == "test_notes"
        assert config.embedding.provider == "ollama"
        assert config.embedding.dimensions == 384
        assert config.vector.default_limit == 5
        assert config.observability.log_level == "DEBUG"

    def test_env_overrides_yaml(self, sample_config_path, monkeypatch):
        monkeypatch.setenv("SODIAN_GRAPH_LINK_INCREMENT", "0.05")
        monkeypatch.setenv("SODIAN_QDRANT_COLLECTION", "from_env")
        monkeypatch.setenv("SODIAN_GRAPH_AUTO_PERSIST", "false")
        config = load_config(sample_config_path)
        assert config.graph.link_increment == 0.05
        assert config.qdrant.collection == "from_env"
        assert config.graph.auto_persist is False

    def test_env_enables_neo4j(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SODIAN_NEO4J_URI", "bolt://db:7687")
        monkeypatch.setenv("SODIAN_NEO4J_USER", "neo4j")
        monkeypatch.setenv("SODIAN_NEO4J_PASSWORD", "pw")
        assert load_config(tmp_path / "none.yaml").neo4j.enabled is True

    def test_unparseable_env_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SODIAN_VECTOR_DEFAULT_LIMIT", "ten")
        with pytest.raises(ConfigurationError) as exc:
            load_config(tmp_path / "none.yaml")
        assert exc.value.config_key == "SODIAN_VECTOR_DEFAULT_LIMIT"


class TestValidation:

    @pytest.mark.parametrize("section,values,key", [
        ("graph", {"link_increment": 0}, "graph.link_increment"),
        ("graph", {"link_increment": 1.5}, "graph.link_increment"),
        ("graph", {"default_link_strength": 2.0}, "graph.default_link_strength"),
        ("graph", {"weak_link_threshold": -0.1}, "graph.weak_link_threshold"),
        ("vector", {"fallback_dimensions": 0}, "vector.fallback_dimensions"),
        ("embedding", {"provider": "openai"}, "embedding.provider"),
        ("consolidation", {"window_seconds": 0}, "consolidation.window_seconds"),
    ])
    def test_invalid_values_rejected(self, tmp_path, section, values, key):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"sodian": {section: values}}))
        with pytest.raises(ConfigurationError) as exc:
            load_config(path)
        assert exc.value.config_key == key


class TestConfigCache:

    def test_get_config_is_cached_until_reset(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first

    def test_config_is_frozen(self):
        config = SodianConfig()
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.graph.link_increment = 0.5
