"""
Sodian Configuration System
===========================
Centralized, validated configuration with environment variable overrides.

Every backend is optional. When no Neo4j credentials, Qdrant URL or embedding
provider are configured, the in-memory stores and the fallback embedding are the
full system of record.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from .exceptions import ConfigurationError

EMBEDDING_PROVIDERS = ("none", "ollama")


@dataclass(frozen=True)
class GraphConfig:
    link_increment: float = 0.1
    default_link_strength: float = 1.0
    weak_link_threshold: float = 0.3
    persistence_path: Optional[str] = None
    auto_persist: bool = True


@dataclass(frozen=True)
class Neo4jConfig:
    uri: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.uri and self.user and self.password)


@dataclass(frozen=True)
class VectorConfig:
    fallback_dimensions: int = 100
    default_limit: int = 10


@dataclass(frozen=True)
class QdrantConfig:
    url: Optional[str] = None
    api_key: Optional[str] = None
    collection: str = "sodian_knowledge"

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class EmbeddingConfig:
    provider: str = "none"
    model: str = "nomic-embed-text"
    url: str = "http://localhost:11434"
    dimensions: int = 768
    timeout_seconds: int = 30


@dataclass(frozen=True)
class ConsolidationConfig:
    """Co-access mining over the activity log."""
    window_seconds: int = 300  # 5 minutes
    min_frequency: int = 3
    top_concepts: int = 3
    emerging_window_hours: int = 24


@dataclass(frozen=True)
class ObservabilityConfig:
    log_level: str = "INFO"


@dataclass(frozen=True)
class SodianConfig:
    """Root configuration for the knowledge core."""

    version: str = "1.0"
    graph: GraphConfig = field(default_factory=GraphConfig)
    neo4j: Neo4jConfig = field(default_factory=Neo4jConfig)
    vector: VectorConfig = field(default_factory=VectorConfig)
    qdrant: QdrantConfig = field(default_factory=QdrantConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)


def _env_override(key: str, default):
    """Check for SODIAN_<KEY> environment variable override."""
    env_key = f"SODIAN_{key.upper()}"
    val = os.environ.get(env_key)
    if val is None:
        return default
    # Type coercion based on the default's type
    try:
        if isinstance(default, bool):
            return val.lower() in ("true", "1", "yes")
        if isinstance(default, int):
            return int(val)
        if isinstance(default, float):
            return float(val)
    except ValueError as e:
        raise ConfigurationError(config_key=env_key, reason=f"cannot parse '{val}': {e}") from e
    return val


def _validate(config: SodianConfig) -> SodianConfig:
    graph = config.graph
    if not 0.0 < graph.link_increment <= 1.0:
        raise ConfigurationError(
            config_key="graph.link_increment",
            reason=f"must be in (0, 1], got {graph.link_increment}",
        )
    if not 0.0 <= graph.default_link_strength <= 1.0:
        raise ConfigurationError(
            config_key="graph.default_link_strength",
            reason=f"must be in [0, 1], got {graph.default_link_strength}",
        )
    if graph.weak_link_threshold < 0.0:
        raise ConfigurationError(
            config_key="graph.weak_link_threshold",
            reason=f"must be non-negative, got {graph.weak_link_threshold}",
        )
    if config.vector.fallback_dimensions < 1:
        raise ConfigurationError(
            config_key="vector.fallback_dimensions",
            reason=f"must be at least 1, got {config.vector.fallback_dimensions}",
        )
    if config.embedding.provider not in EMBEDDING_PROVIDERS:
        raise ConfigurationError(
            config_key="embedding.provider",
            reason=f"unknown provider '{config.embedding.provider}', expected one of {EMBEDDING_PROVIDERS}",
        )
    if config.consolidation.window_seconds <= 0:
        raise ConfigurationError(
            config_key="consolidation.window_seconds",
            reason=f"must be positive, got {config.consolidation.window_seconds}",
        )
    return config


def load_config(path: Optional[Path] = None) -> SodianConfig:
    """
    Load configuration from YAML file with environment variable overrides.

    Priority: ENV > YAML > defaults.

    Args:
        path: Path to config.yaml. If None, searches ./config.yaml.

    Returns:
        Validated SodianConfig instance.

    Raises:
        ConfigurationError: If a value is out of range or cannot be parsed.
    """
    if path is None:
        candidate = Path("config.yaml")
        if candidate.exists():
            path = candidate

    raw = {}
    if path is not None and path.exists():
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
            raw = loaded.get("sodian") or {}

    graph_raw = raw.get("graph") or {}
    graph = GraphConfig(
        link_increment=_env_override("GRAPH_LINK_INCREMENT", graph_raw.get("link_increment", 0.1)),
        default_link_strength=_env_override(
            "GRAPH_DEFAULT_LINK_STRENGTH", graph_raw.get("default_link_strength", 1.0)
        ),
        weak_link_threshold=_env_override(
            "GRAPH_WEAK_LINK_THRESHOLD", graph_raw.get("weak_link_threshold", 0.3)
        ),
        persistence_path=_env_override("GRAPH_PERSISTENCE_PATH", graph_raw.get("persistence_path")),
        auto_persist=_env_override("GRAPH_AUTO_PERSIST", graph_raw.get("auto_persist", True)),
    )

    neo4j_raw = raw.get("neo4j") or {}
    neo4j = Neo4jConfig(
        uri=_env_override("NEO4J_URI", neo4j_raw.get("uri")),
        user=_env_override("NEO4J_USER", neo4j_raw.get("user")),
        password=_env_override("NEO4J_PASSWORD", neo4j_raw.get("password")),
        database=_env_override("NEO4J_DATABASE", neo4j_raw.get("database")),
    )

    vector_raw = raw.get("vector") or {}
    vector = VectorConfig(
        fallback_dimensions=_env_override(
            "VECTOR_FALLBACK_DIMENSIONS", vector_raw.get("fallback_dimensions", 100)
        ),
        default_limit=_env_override("VECTOR_DEFAULT_LIMIT", vector_raw.get("default_limit", 10)),
    )

    qdrant_raw = raw.get("qdrant") or {}
    qdrant = QdrantConfig(
        url=_env_override("QDRANT_URL", qdrant_raw.get("url")),
        api_key=_env_override("QDRANT_API_KEY", qdrant_raw.get("api_key")),
        collection=_env_override("QDRANT_COLLECTION", qdrant_raw.get("collection", "sodian_knowledge")),
    )

    emb_raw = raw.get("embedding") or {}
    embedding = EmbeddingConfig(
        provider=_env_override("EMBEDDING_PROVIDER", emb_raw.get("provider", "none")),
        model=_env_override("EMBEDDING_MODEL", emb_raw.get("model", "nomic-embed-text")),
        url=_env_override("EMBEDDING_URL", emb_raw.get("url", "http://localhost:11434")),
        dimensions=_env_override("EMBEDDING_DIMENSIONS", emb_raw.get("dimensions", 768)),
        timeout_seconds=_env_override("EMBEDDING_TIMEOUT_SECONDS", emb_raw.get("timeout_seconds", 30)),
    )

    cons_raw = raw.get("consolidation") or {}
    consolidation = ConsolidationConfig(
        window_seconds=_env_override("CONSOLIDATION_WINDOW_SECONDS", cons_raw.get("window_seconds", 300)),
        min_frequency=_env_override("CONSOLIDATION_MIN_FREQUENCY", cons_raw.get("min_frequency", 3)),
        top_concepts=_env_override("CONSOLIDATION_TOP_CONCEPTS", cons_raw.get("top_concepts", 3)),
        emerging_window_hours=_env_override(
            "CONSOLIDATION_EMERGING_WINDOW_HOURS", cons_raw.get("emerging_window_hours", 24)
        ),
    )

    obs_raw = raw.get("observability") or {}
    observability = ObservabilityConfig(
        log_level=_env_override("LOG_LEVEL", obs_raw.get("log_level", "INFO")),
    )

    return _validate(
        SodianConfig(
            version=raw.get("version", "1.0"),
            graph=graph,
            neo4j=neo4j,
            vector=vector,
            qdrant=qdrant,
            embedding=embedding,
            consolidation=consolidation,
            observability=observability,
        )
    )


# Module-level singleton (lazy-loaded)
_CONFIG: Optional[SodianConfig] = None


def get_config() -> SodianConfig:
    """Get or initialize the process configuration."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def reset_config():
    """Reset the cached configuration (useful for testing)."""
    global _CONFIG
    _CONFIG = None
