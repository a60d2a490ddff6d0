"""
Update Reconciler
=================
Normalizes a batch of ``KnowledgeGraphUpdate`` values produced by several
specialists before it reaches the graph store:

1. Tag dedup: ``tag`` updates whose tag lists are set-equal collapse to the
   first one seen.
2. Link merge: among ``link`` create updates aimed at the same target, only the one
   with the highest strength survives (first seen wins a tie).

Output order is every non-link update in its original relative order,
followed by the merged links in first-seen target order.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger

from .config import GraphConfig
from .models import KnowledgeGraphUpdate, UpdateAction, UpdateType

UpdateLike = Union[KnowledgeGraphUpdate, Mapping[str, Any]]


def _fields(update: UpdateLike) -> Tuple[str, str, Any]:
    """(type, action, data) for either an update object or a raw mapping."""
    if isinstance(update, KnowledgeGraphUpdate):
        return update.type.value, update.action.value, update.data
    kind = update.get("type")
    kind = kind.value if isinstance(kind, UpdateType) else str(kind)
    action = update.get("action", UpdateAction.CREATE.value)
    action = action.value if isinstance(action, UpdateAction) else str(action)
    return kind, action, update.get("data")


class UpdateReconciler:
    """
    Args:
        config: ``GraphConfig``; a link without a strength competes with
            ``default_link_strength``, the value the store would give it.
    """

    def __init__(self, config: Optional[GraphConfig] = None):
        self.config = config or GraphConfig()

    def _tag_key(self, data: Any) -> Optional[Tuple[str, ...]]:
        if not isinstance(data, Mapping):
            return None
        tags = data.get("tags")
        if not isinstance(tags, (list, tuple)) or not all(isinstance(t, str) for t in tags):
            return None
        return tuple(sorted(set(tags)))

    def _strength(self, data: Mapping[str, Any]) -> float:
        value = data.get("strength")
        if value is None:
            return self.config.default_link_strength
        try:
            return float(value)
        except (TypeError, ValueError):
            return float("-inf")

    def reconcile(self, updates: Sequence[UpdateLike]) -> List[UpdateLike]:
        seen_tags = set()
        passthrough: List[UpdateLike] = []
        links: Dict[str, UpdateLike] = {}

        for update in updates:
            kind, action, data = _fields(update)

            if kind == UpdateType.TAG.value:
                key = self._tag_key(data)
                if key is not None:
                    if key in seen_tags:
                        continue
                    seen_tags.add(key)
                passthrough.append(update)
                continue

            # Only link creates are merge candidates; update, merge, delete and
            # malformed links pass through.
            if (
                kind != UpdateType.LINK.value
                or action != UpdateAction.CREATE.value
                or not isinstance(data, Mapping)
                or not data.get("target")
            ):
                passthrough.append(update)
                continue

            target = str(data["target"])
            current = links.get(target)
            if current is None or self._strength(data) > self._strength(_fields(current)[2]):
                links[target] = update

        result = passthrough + list(links.values())
        if len(result) != len(updates):
            logger.debug(f"Reconciled {len(updates)} update(s) down to {len(result)}")
        return result


def summarize_updates(updates: Sequence[UpdateLike]) -> str:
    """One-line report such as ``Knowledge updates: 2 note(s), 1 tag(s)``."""
    if not updates:
        return "Processed without changes"
    counts = Counter(_fields(u)[0] for u in updates)
    parts = ", ".join(f"{count} {kind}(s)" for kind, count in counts.items())
    return f"Knowledge updates: {parts}"
