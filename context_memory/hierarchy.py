"""
Hierarchical Summarization Cascade.

This module provides:
- HierarchyMap: parent contextId -> ordered child contextIds, with the
  reverse child -> parent lookup
- build_hierarchical_summary / build_meta_summary: the aggregation rules
  for summaries over summaries
- HierarchicalCascade: refreshes a parent's hierarchical summary when a
  child changes, and writes a meta-summary once enough hierarchical
  summaries exist
"""

import logging
import time
from statistics import mean
from typing import Dict, List, Optional, Sequence

from .config import Settings
from .lifecycle import KeyedLocks
from .models import (
    CodeBlock,
    ContextSummary,
    HierarchicalSummary,
    MetaSummary,
    utcnow,
)
from .store import SummaryStore
from .summarizer import Summarizer, SummarizerCapabilities

logger = logging.getLogger(__name__)

# Child code blocks at or above this importance are lifted into the parent
HIERARCHY_CODE_IMPORTANCE = 0.7
META_CODE_BLOCK_LIMIT = 10


class HierarchyMap:
    """
    In-memory parent/child index.

    A child has at most one parent; adding it under a new parent moves it.
    """

    def __init__(self):
        self._children: Dict[str, List[str]] = {}
        self._parent: Dict[str, str] = {}

    def add_child(self, parent_id: str, child_id: str) -> None:
        if parent_id == child_id:
            return

        previous = self._parent.get(child_id)
        if previous is not None and previous != parent_id:
            self._detach(previous, child_id)

        children = self._children.setdefault(parent_id, [])
        if child_id not in children:
            children.append(child_id)
        self._parent[child_id] = parent_id

    def _detach(self, parent_id: str, child_id: str) -> None:
        children = self._children.get(parent_id)
        if children and child_id in children:
            children.remove(child_id)
            if not children:
                del self._children[parent_id]

    def children(self, parent_id: str) -> List[str]:
        return list(self._children.get(parent_id, []))

    def parent_of(self, child_id: str) -> Optional[str]:
        return self._parent.get(child_id)

    def siblings(self, child_id: str) -> List[str]:
        parent_id = self._parent.get(child_id)
        if parent_id is None:
            return []
        return [c for c in self._children.get(parent_id, []) if c != child_id]

    def parents(self) -> List[str]:
        return list(self._children)

    def remove(self, context_id: str) -> None:
        """Drop a context both as a parent and as a child."""
        for child_id in self._children.pop(context_id, []):
            if self._parent.get(child_id) == context_id:
                del self._parent[child_id]

        parent_id = self._parent.pop(context_id, None)
        if parent_id is not None:
            self._detach(parent_id, context_id)

    def __contains__(self, context_id: str) -> bool:
        return context_id in self._children or context_id in self._parent

    def __len__(self) -> int:
        return len(self._children)


def build_hierarchical_summary(
    parent_id: str,
    text: str,
    summaries: Sequence[ContextSummary],
    child_ids: Optional[Sequence[str]] = None,
    level: int = 0,
    parent_context_id: Optional[str] = None,
    version: int = 1
) -> HierarchicalSummary:
    """
    Aggregate child summaries under a parent.

    Args:
        parent_id: Context ID of the hierarchical summary
        text: Summary text (from the summarizer)
        summaries: Loaded child summaries
        child_ids: Child IDs from the hierarchy (defaults to the summaries' IDs)
        level: Hierarchy level, 0 directly above leaf summaries
        parent_context_id: The parent's own parent, if any
        version: Version of the new hierarchical summary

    Returns:
        HierarchicalSummary with children, counts, lifted code blocks,
        merged insights and mean importance.
    """
    code_blocks: List[CodeBlock] = []
    insights: List[str] = []
    for summary in summaries:
        for block in summary.code_blocks:
            if block.importance >= HIERARCHY_CODE_IMPORTANCE:
                code_blocks.append(block.model_copy(update={"source_context_id": summary.context_id}))
        insights.extend(summary.key_insights)

    return HierarchicalSummary(
        context_id=parent_id,
        updated_at=utcnow(),
        summary=text,
        code_blocks=code_blocks,
        message_count=sum(s.message_count for s in summaries),
        version=version,
        key_insights=insights,
        importance_score=mean(s.importance_score for s in summaries) if summaries else 0.5,
        parent_context_id=parent_context_id,
        child_context_ids=list(child_ids) if child_ids is not None else [s.context_id for s in summaries],
        hierarchy_level=level
    )


def build_meta_summary(meta_id: str, text: str, summaries: Sequence[HierarchicalSummary]) -> MetaSummary:
    """Aggregate hierarchical summaries into a meta-summary."""
    blocks = [block for summary in summaries for block in summary.code_blocks]
    # sorted() is stable: equal importance keeps input order
    shared = sorted(blocks, key=lambda b: b.importance, reverse=True)[:META_CODE_BLOCK_LIMIT]
    now = utcnow()

    return MetaSummary(
        id=meta_id,
        created_at=now,
        updated_at=now,
        summary=text,
        context_ids=[s.context_id for s in summaries],
        shared_code_blocks=shared,
        hierarchy_level=1 + max((s.hierarchy_level for s in summaries), default=0)
    )


def generate_meta_id() -> str:
    return f"meta_{int(time.time() * 1000)}"


class HierarchicalCascade:
    """
    Propagates summary changes up the hierarchy.

    Steps whose summarizer capability is absent are skipped. Failures are
    logged; a cascade never fails the summarization that triggered it.
    """

    def __init__(
        self,
        store: SummaryStore,
        summarizer: Summarizer,
        hierarchy: HierarchyMap,
        settings: Settings,
        capabilities: Optional[SummarizerCapabilities] = None
    ):
        self.store = store
        self.summarizer = summarizer
        self.hierarchy = hierarchy
        self.settings = settings
        self.capabilities = capabilities or summarizer.capabilities
        self._locks = KeyedLocks()

    async def _level_for(self, child_ids: Sequence[str]) -> int:
        child_levels = []
        for child_id in child_ids:
            existing = await self.store.load_hierarchical_summary(child_id)
            if existing is not None:
                child_levels.append(existing.hierarchy_level)

        if not child_levels:
            return 0
        return min(1 + max(child_levels), self.settings.max_hierarchy_depth)

    async def update_hierarchical_summary(self, parent_id: str) -> Optional[HierarchicalSummary]:
        """
        Rebuild the hierarchical summary for `parent_id` from its children.

        Returns:
            The saved summary, or None if skipped or failed.
        """
        if not self.settings.hierarchical_context or not self.capabilities.hierarchical:
            return None

        async with self._locks.lock(parent_id):
            # Children may change while an earlier update holds the lock
            child_ids = self.hierarchy.children(parent_id)
            if not child_ids:
                return None

            try:
                summaries = []
                for child_id in child_ids:
                    summary = await self.store.load_summary(child_id)
                    if summary is not None:
                        summaries.append(summary)

                if not summaries:
                    return None

                generated = await self.summarizer.create_hierarchical_summary(summaries, parent_id)
                previous = await self.store.load_hierarchical_summary(parent_id)

                hierarchical = build_hierarchical_summary(
                    parent_id,
                    generated.summary,
                    summaries,
                    child_ids=child_ids,
                    level=await self._level_for(child_ids),
                    parent_context_id=self.hierarchy.parent_of(parent_id),
                    version=previous.version + 1 if previous else 1
                )
                await self.store.save_hierarchical_summary(hierarchical)
                logger.info(
                    f"Updated hierarchical summary for {parent_id} "
                    f"({len(summaries)} children, level {hierarchical.hierarchy_level})"
                )
            except Exception as e:
                logger.error(f"Error updating hierarchical summary for {parent_id}: {e}")
                return None

        await self.check_for_meta_summary()
        return hierarchical

    async def check_for_meta_summary(self, meta_id: Optional[str] = None) -> Optional[MetaSummary]:
        """
        Write a meta-summary once enough hierarchical summaries exist.

        Args:
            meta_id: ID to use instead of a generated meta_<timestamp>

        Returns:
            The saved meta-summary, or None if below threshold, skipped or failed.
        """
        if not self.settings.hierarchical_context or not self.capabilities.meta:
            return None

        try:
            hierarchical_ids = await self.store.get_all_hierarchical_context_ids()
            if len(hierarchical_ids) < self.settings.meta_summary_threshold:
                return None

            summaries = []
            for context_id in hierarchical_ids:
                summary = await self.store.load_hierarchical_summary(context_id)
                if summary is not None:
                    summaries.append(summary)

            generated = await self.summarizer.create_meta_summary(hierarchical_ids, summaries)
            meta = build_meta_summary(meta_id or generated.id or generate_meta_id(), generated.summary, summaries)
            await self.store.save_meta_summary(meta)
            logger.info(f"Created meta-summary {meta.id} over {len(summaries)} hierarchical summaries")
            return meta
        except Exception as e:
            logger.error(f"Error creating meta-summary: {e}")
            return None
