"""
Sodian - Knowledge core for a personal second brain
====================================================

Stores notes, tags, learning paths and meta patterns as a typed graph,
indexes note content for similarity search and consolidates daily
co-access patterns into stronger links.

Main Packages:
    - core: Graph store, vector index, reconcilers, consolidation, config

Every backend is optional. Unconfigured, the core runs fully in memory with
a deterministic bag-of-words embedding.

Quick Start:
    from sodian.core import build_container

    core = build_container()
    await core.graph_store.apply_updates([
        {"type": "note", "action": "create",
         "data": {"folder": "Inbox", "filename": "a.md", "content": "hello world"}},
    ])
    result = await core.graph_store.query("hello")

Version: 0.1.0
"""

__version__ = "0.1.0"
