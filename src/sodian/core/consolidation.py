"""
Memory Consolidation
====================
Mines temporal co-access patterns from a day's activity log, strengthens the
graph links between notes that keep being opened together and reports a few
human-readable insights.

Algorithm:
    - Every pair of activities less than ``window_seconds`` apart counts as
      one co-access of the two notes. Pairs are keyed by the sorted note ids,
      so (A, B) and (B, A) collapse. This is O(n^2) over the log, fine for a
      single day.
    - Patterns seen at least ``min_frequency`` times strengthen the existing
      (first, second) link in sorted-id order. Consolidation never creates
      links and does not look for the reverse link.
    - Insights name the most connected notes and count brand-new connections.

Only the strengthening step touches the graph store, and it does so under a
single write lock.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from loguru import logger

from .config import ConsolidationConfig
from .exceptions import ConsolidationError, SodianError, ValidationError
from .graph_store import KnowledgeGraphStore
from .models import utcnow


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string (trailing 'Z' allowed) or datetime; naive means UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(field="timestamp", reason="not an ISO-8601 timestamp", value=value) from e
    else:
        raise ValidationError(field="timestamp", reason="expected ISO-8601 string or datetime", value=value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class ActivityRecord:
    note_id: str
    timestamp: datetime

    @classmethod
    def from_value(cls, value: Union["ActivityRecord", Mapping[str, Any]]) -> "ActivityRecord":
        if isinstance(value, ActivityRecord):
            return value
        if not isinstance(value, Mapping):
            raise ValidationError(field="activity", reason="expected a mapping", value=value)
        note_id = value.get("noteId", value.get("note_id"))
        if not isinstance(note_id, str) or not note_id:
            raise ValidationError(field="activity.noteId", reason="missing note id", value=value)
        if "timestamp" not in value:
            raise ValidationError(field="activity.timestamp", reason="missing timestamp", value=value)
        return cls(note_id=note_id, timestamp=parse_timestamp(value["timestamp"]))


@dataclass
class PatternMatch:
    """Co-access of two notes. Derived per run, never stored."""
    source_note: str
    target_note: str
    frequency: int
    last_accessed: datetime

    def to_dict(self) -> dict:
        return {
            "sourceNote": self.source_note,
            "targetNote": self.target_note,
            "frequency": self.frequency,
            "lastAccessed": self.last_accessed.isoformat(),
        }


@dataclass
class ConsolidationResult:
    patterns_found: int
    links_strengthened: int
    insights_generated: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "patternsFound": self.patterns_found,
            "linksStrengthened": self.links_strengthened,
            "insightsGenerated": list(self.insights_generated),
        }


class ConsolidationEngine:
    """
    Args:
        graph_store: Store whose links get strengthened.
        config: ``ConsolidationConfig`` (window, frequency threshold, insight sizes).
    """

    def __init__(self, graph_store: KnowledgeGraphStore, config: Optional[ConsolidationConfig] = None):
        self.graph_store = graph_store
        self.config = config or ConsolidationConfig()

    def extract_patterns(self, activities: Sequence[Any]) -> List[PatternMatch]:
        """
        Count co-accesses within the time window.

        Every pair of activities counts, including two opens of the same note
        (keyed as ``(a, a)``). Patterns come back in first-seen pair order.
        """
        records = [ActivityRecord.from_value(a) for a in activities]
        window = timedelta(seconds=self.config.window_seconds)

        pairs: Dict[Tuple[str, str], List[Any]] = {}
        for i in range(len(records)):
            first = records[i]
            for j in range(i + 1, len(records)):
                second = records[j]
                if abs(first.timestamp - second.timestamp) >= window:
                    continue
                key = tuple(sorted((first.note_id, second.note_id)))
                latest = max(first.timestamp, second.timestamp)
                entry = pairs.get(key)
                if entry is None:
                    pairs[key] = [1, latest]
                else:
                    entry[0] += 1
                    entry[1] = max(entry[1], latest)

        return [
            PatternMatch(source_note=a, target_note=b, frequency=count, last_accessed=last)
            for (a, b), (count, last) in pairs.items()
        ]

    async def strengthen_links(self, patterns: Sequence[PatternMatch]) -> int:
        """
        Bump the link behind every frequent pattern; returns links touched.

        Pairs are matched as stored ``(source, target)`` links; a pattern with
        no link in that direction is skipped.
        """
        frequent = [
            (p.source_note, p.target_note)
            for p in patterns
            if p.frequency >= self.config.min_frequency
        ]
        if not frequent:
            return 0
        return await self.graph_store.strengthen_links(frequent)

    def generate_insights(self, patterns: Sequence[PatternMatch],
                          now: Optional[datetime] = None) -> List[str]:
        now = now or utcnow()
        insights: List[str] = []

        totals: Dict[str, int] = defaultdict(int)
        for p in patterns:
            totals[p.source_note] += p.frequency
            totals[p.target_note] += p.frequency

        top_n = self.config.top_concepts
        if len(totals) >= top_n:
            # sorted() is stable: equal totals keep first-seen order
            ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
            names = ", ".join(note for note, _ in ranked[:top_n])
            insights.append(f"Your most connected concepts today: {names}")

        horizon = timedelta(hours=self.config.emerging_window_hours)
        emerging = [p for p in patterns if p.frequency == 1 and now - p.last_accessed < horizon]
        if emerging:
            insights.append(f"{len(emerging)} new connection(s) emerged today")

        return insights

    async def consolidate(self, activities: Sequence[Any],
                          now: Optional[datetime] = None) -> ConsolidationResult:
        """
        Extract, strengthen, report. Any failing step aborts the run.

        Raises:
            ValidationError: A malformed activity record.
            ConsolidationError: Strengthening or insight generation failed.
        """
        patterns = self.extract_patterns(activities)

        try:
            strengthened = await self.strengthen_links(patterns)
        except Exception as e:
            reason = e.message if isinstance(e, SodianError) else str(e)
            logger.error(f"Consolidation aborted while strengthening links: {reason}")
            raise ConsolidationError("strengthen_links", reason) from e

        try:
            insights = self.generate_insights(patterns, now=now)
        except Exception as e:
            logger.error(f"Consolidation aborted while generating insights: {e}")
            raise ConsolidationError("generate_insights", str(e)) from e

        result = ConsolidationResult(
            patterns_found=len(patterns),
            links_strengthened=strengthened,
            insights_generated=insights,
        )
        logger.info(
            f"Consolidation: {result.patterns_found} pattern(s) from {len(activities)} activities, "
            f"{result.links_strengthened} link(s) strengthened, {len(insights)} insight(s)"
        )
        return result
