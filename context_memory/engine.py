"""
Context Memory Engine - Orchestrates summaries, similarity and relationships.

This module provides:
- Per-context working state, created lazily and hydrated from disk
- The summarization policy (importance, message count, token budget)
- Summary persistence, vector indexing and the hierarchical cascade
- Inferred SIMILAR relationships between contexts
- Relevance-based eviction anchored at the active context

Optional side effects of add_message never prevent the message from being
recorded; they are logged and skipped.
"""

import fnmatch
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from .config import Settings, settings as default_settings
from .exceptions import IgnoredContext, SummarizationFailed
from .graph import GraphRepository
from .hierarchy import HierarchicalCascade, HierarchyMap
from .lifecycle import KeyedLocks, OneShotInitializer
from .logging_config import with_request_id
from .models import (
    ContextEdge,
    ContextImportance,
    ContextSummary,
    ContextWorkingState,
    Direction,
    HierarchicalSummary,
    Message,
    MetaSummary,
    RelationshipType,
    RetainEntry,
    SimilarContext,
    utcnow,
)
from .store import FileSystemStore, SummaryStore
from .summarizer import SimpleTextSummarizer, Summarizer
from .vector_repository import EmbedderFactory, VectorRepository

logger = logging.getLogger(__name__)

TOKENS_PER_WORD = 1.3
HIGH_IMPORTANCE_TRIGGER = 2
MIN_MESSAGES_FOR_SIMILARITY = 3
EVICTION_SIMILAR_LIMIT = 20

# Retain-set importance per signal
RETAIN_ANCHOR = 1.0
RETAIN_OUTGOING = 0.7
RETAIN_INCOMING = 0.6
RETAIN_PARENT = 0.8
RETAIN_SIBLING = 0.5
RETAIN_CHILD = 0.7
RETAIN_RECENT = 0.5
RETAIN_BOOST = 0.2


def estimate_tokens(content: str) -> int:
    """Rough token estimate: 1.3 tokens per whitespace-separated word."""
    return math.ceil(len(content.split()) * TOKENS_PER_WORD)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ContextMemoryEngine:
    """
    Main entry point for recording and recalling context.

    Usage:
        engine = ContextMemoryEngine(settings)
        await engine.add_message("parser-refactor", Message(role="user", content="..."))
        similar = await engine.find_similar_contexts("tokenizer bug")
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        summarizer: Optional[Summarizer] = None,
        store: Optional[SummaryStore] = None,
        vector_repository: Optional[VectorRepository] = None,
        graph_repository: Optional[GraphRepository] = None,
        embedder_factory: Optional[EmbedderFactory] = None
    ):
        self.settings = settings or default_settings
        self.summarizer = summarizer or SimpleTextSummarizer()
        # Capabilities are fixed for the engine's lifetime
        self.capabilities = self.summarizer.capabilities
        self.store = store or FileSystemStore(
            str(self.settings.get_context_dir()),
            hierarchical=self.settings.hierarchical_context
        )

        self.vector_repository: Optional[VectorRepository] = None
        if self.settings.use_vector_db:
            self.vector_repository = vector_repository or VectorRepository(
                self.settings, embedder_factory, store=self.store
            )
            if self.vector_repository.store is None:
                self.vector_repository.store = self.store

        self.graph_repository: Optional[GraphRepository] = None
        if self.settings.use_graph_db:
            self.graph_repository = graph_repository or GraphRepository(self.settings)

        self.contexts: Dict[str, ContextWorkingState] = {}
        self._summary_locks = KeyedLocks()
        self.hierarchy = HierarchyMap()
        self.cascade = HierarchicalCascade(
            self.store, self.summarizer, self.hierarchy, self.settings, self.capabilities
        )
        self._startup = OneShotInitializer("hierarchy", self._rebuild_hierarchy)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def _rebuild_hierarchy(self) -> None:
        """Rebuild the hierarchy map from hierarchical summaries and graph edges."""
        if self.settings.hierarchical_context:
            for context_id in await self.store.get_all_hierarchical_context_ids():
                summary = await self.store.load_hierarchical_summary(context_id)
                if summary is None:
                    continue
                for child_id in summary.child_context_ids:
                    self.hierarchy.add_child(context_id, child_id)
                if summary.parent_context_id:
                    self.hierarchy.add_child(summary.parent_context_id, context_id)

        if self.graph_repository and await self.graph_repository.initialize():
            for edge in self.graph_repository.edges:
                if edge.type is RelationshipType.PARENT:
                    self.hierarchy.add_child(edge.source, edge.target)
                elif edge.type is RelationshipType.CHILD:
                    self.hierarchy.add_child(edge.target, edge.source)

        logger.info(f"Hierarchy loaded with {len(self.hierarchy)} parent contexts")

    async def initialize(self) -> None:
        """Load persisted structure. Safe to call more than once."""
        await self._startup.ensure()

    async def close(self) -> None:
        """Release backend resources."""
        if self.vector_repository:
            await self.vector_repository.close()

    # ------------------------------------------------------------------
    # Working state
    # ------------------------------------------------------------------

    def _matching_ignore_pattern(self, context_id: str) -> Optional[str]:
        for pattern in self.settings.ignore_patterns:
            if fnmatch.fnmatchcase(context_id, pattern):
                return pattern
        return None

    async def _get_context(self, context_id: str, create: bool = True) -> Optional[ContextWorkingState]:
        state = self.contexts.get(context_id)
        if state is not None or not create:
            return state

        saved = await self.store.load_summary(context_id)
        hierarchical = None
        if self.settings.hierarchical_context:
            hierarchical = await self.store.load_hierarchical_summary(context_id)

        # Another caller may have created it while we were loading
        state = self.contexts.get(context_id)
        if state is not None:
            return state

        parent_id = self.hierarchy.parent_of(context_id)
        if parent_id is None and hierarchical is not None:
            parent_id = hierarchical.parent_context_id

        state = ContextWorkingState(
            context_id=context_id,
            has_summary=saved is not None,
            last_summarized_at=saved.updated_at if saved else None,
            importance_score=saved.importance_score if saved else 0.5,
            related_contexts=list(saved.related_contexts) if saved else [],
            parent_context_id=parent_id
        )
        self.contexts[context_id] = state
        return state

    def get_context(self, context_id: str) -> Optional[ContextWorkingState]:
        """In-memory working state, if the context is loaded."""
        return self.contexts.get(context_id)

    # ------------------------------------------------------------------
    # Messages and summarization
    # ------------------------------------------------------------------

    @with_request_id
    async def add_message(self, context_id: str, message: Message) -> ContextWorkingState:
        """
        Record a message and run the optional follow-up steps.

        Args:
            context_id: Context to append to
            message: Message to record

        Returns:
            The context's working state after the message was added.

        Raises:
            IgnoredContext: context_id matches a configured ignore pattern.
        """
        pattern = self._matching_ignore_pattern(context_id)
        if pattern is not None:
            raise IgnoredContext(context_id, pattern)

        await self.initialize()
        state = await self._get_context(context_id)

        if message.importance is None and self.capabilities.importance_analysis:
            try:
                importance = await self.summarizer.analyze_message_importance(message, context_id)
            except Exception as e:
                logger.warning(f"Importance analysis failed for {context_id}: {e}")
                importance = ContextImportance.MEDIUM
            message = message.model_copy(update={"importance": ContextImportance(importance)})

        tokens = estimate_tokens(message.content)
        state.messages.append(message)
        state.token_count += tokens
        state.tokens_since_last_summary += tokens
        state.messages_since_last_summary += 1
        state.touch()

        if self.settings.auto_summarize and self.should_summarize(state):
            try:
                await self.summarize_context(context_id)
            except Exception as e:
                logger.warning(f"Auto-summarization failed for {context_id}: {e}")

        if (
            self.vector_repository
            and state.has_summary
            and len(state.messages) >= MIN_MESSAGES_FOR_SIMILARITY
        ):
            try:
                await self._link_similar_contexts(context_id, message.content)
            except Exception as e:
                logger.warning(f"Similarity linking failed for {context_id}: {e}")

        if (
            self.settings.auto_cleanup_contexts
            and len(state.messages) % self.settings.cleanup_every_n_messages == 0
        ):
            try:
                await self.cleanup_irrelevant_contexts(context_id)
            except Exception as e:
                logger.warning(f"Context cleanup failed for {context_id}: {e}")

        return state

    def should_summarize(self, state: ContextWorkingState) -> bool:
        """
        Summarization policy.

        True when, since the last summary, at least two messages were HIGH or
        CRITICAL, the message count reached the limit, or the accumulated
        tokens reached the configured share of the model limit.
        """
        pending = state.messages[len(state.messages) - state.messages_since_last_summary:]
        high_count = sum(
            1 for m in pending
            if m.importance is not None and m.importance >= ContextImportance.HIGH
        )
        if high_count >= HIGH_IMPORTANCE_TRIGGER:
            return True

        if state.messages_since_last_summary >= self.settings.message_limit_threshold:
            return True

        return state.tokens_since_last_summary >= self.settings.summary_token_threshold

    @with_request_id
    async def summarize_context(self, context_id: str) -> bool:
        """
        Summarize a context's messages and persist the result.

        Returns:
            True on success; False if there is nothing to summarize or the
            summarizer failed (working state is left untouched).
        """
        state = self.contexts.get(context_id)
        if state is None or not state.messages:
            return False

        # One summarization per context at a time; each bumps the version once
        async with self._summary_locks.lock(context_id):
            snapshot = list(state.messages)
            previous = await self.store.load_summary(context_id)

            try:
                result = await self.summarizer.summarize(snapshot, context_id)
                if not result.success or result.summary is None or not result.summary.summary.strip():
                    raise SummarizationFailed(context_id, result.error or "summarizer returned no text")
            except Exception as e:
                logger.warning(f"Summarization failed for {context_id} ({type(e).__name__}): {e}")
                return False

            generated = result.summary
            summary = generated.model_copy(update={
                "context_id": context_id,
                "updated_at": utcnow(),
                "version": previous.version + 1 if previous else 1,
                "related_contexts": list(dict.fromkeys(
                    [c for c in [*generated.related_contexts, *state.related_contexts] if c != context_id]
                ))
            })
            await self.store.save_summary(summary)

            state.has_summary = True
            # Messages that arrived while the summarizer was running still count as pending
            pending = state.messages[len(snapshot):]
            state.messages_since_last_summary = len(pending)
            state.tokens_since_last_summary = sum(estimate_tokens(m.content) for m in pending)
            state.last_summarized_at = summary.updated_at
            state.importance_score = summary.importance_score
            state.related_contexts = list(summary.related_contexts)
            state.touch()

        logger.info(f"Summarized {context_id} (version {summary.version}, {summary.message_count} messages)")

        if self.vector_repository:
            try:
                await self.vector_repository.add_summary(summary)
            except Exception as e:
                logger.warning(f"Vector indexing failed for {context_id}: {e}")

        parent_id = state.parent_context_id or self.hierarchy.parent_of(context_id)
        if self.settings.hierarchical_context and parent_id:
            await self.cascade.update_hierarchical_summary(parent_id)

        return True

    @with_request_id
    async def summarize_all_contexts(self) -> int:
        """
        Summarize every loaded context, then refresh the hierarchy.

        Returns:
            Number of successful summarizations.
        """
        await self.initialize()
        success_count = 0
        for context_id in list(self.contexts):
            if await self.summarize_context(context_id):
                success_count += 1

        if self.settings.hierarchical_context and self.capabilities.hierarchical:
            for parent_id in self.hierarchy.parents():
                await self.cascade.update_hierarchical_summary(parent_id)
            await self.cascade.check_for_meta_summary()

        return success_count

    async def _link_similar_contexts(self, context_id: str, text: str) -> None:
        summary = await self.store.load_summary(context_id)
        if summary is None:
            return

        await self.vector_repository.add_summary(summary)
        for similar in await self.find_similar_contexts(text):
            if similar.context_id != context_id and similar.similarity >= self.settings.similarity_threshold:
                await self.add_relationship(
                    context_id, similar.context_id, RelationshipType.SIMILAR, similar.similarity
                )

    # ------------------------------------------------------------------
    # Relationships and similarity
    # ------------------------------------------------------------------

    @with_request_id
    async def add_relationship(
        self,
        source: str,
        target: str,
        rel_type: RelationshipType,
        weight: float,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Record a relationship and update the in-memory mirrors.

        Graph write failures propagate; the mirrors are only updated after
        the edge is stored.

        Returns:
            False for a self-loop, True otherwise.
        """
        if source == target:
            return False

        await self.initialize()
        rel_type = RelationshipType(rel_type)

        if self.graph_repository:
            await self.graph_repository.add_relationship(
                source, target, rel_type, weight,
                metadata if metadata is not None else {"createdAt": utcnow().isoformat()}
            )

        source_state = self.contexts.get(source)
        if source_state:
            source_state.add_related(target)

        if rel_type is RelationshipType.PARENT:
            self.hierarchy.add_child(source, target)
            target_state = self.contexts.get(target)
            if target_state:
                target_state.parent_context_id = source
        elif rel_type is RelationshipType.CHILD:
            self.hierarchy.add_child(target, source)
            if source_state:
                source_state.parent_context_id = target

        return True

    @with_request_id
    async def find_similar_contexts(self, text: str, limit: int = 5) -> List[SimilarContext]:
        """Contexts whose summaries resemble `text`; empty if vectors are disabled."""
        if not self.vector_repository:
            return []
        try:
            return await self.vector_repository.find_similar_contexts(text, limit)
        except Exception as e:
            logger.error(f"Error finding similar contexts: {e}")
            return []

    @with_request_id
    async def find_path(self, source: str, target: str) -> List[str]:
        if not self.graph_repository:
            return []
        try:
            return await self.graph_repository.find_path(source, target)
        except Exception as e:
            logger.error(f"Error finding path from {source} to {target}: {e}")
            return []

    @with_request_id
    async def get_related_contexts(
        self,
        context_id: str,
        rel_type: Optional[RelationshipType] = None,
        direction: Direction = Direction.BOTH
    ) -> List[str]:
        if not self.graph_repository:
            return []
        try:
            return await self.graph_repository.get_related_contexts(context_id, rel_type, direction)
        except Exception as e:
            logger.error(f"Error getting related contexts for {context_id}: {e}")
            return []

    async def get_relationships(self, context_id: str, direction: Direction = Direction.BOTH) -> List[ContextEdge]:
        if not self.graph_repository:
            return []
        return await self.graph_repository.get_relationships(context_id, direction)

    async def find_communities(self) -> List[List[str]]:
        if not self.graph_repository:
            return []
        return await self.graph_repository.find_communities()

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    @with_request_id
    async def cleanup_irrelevant_contexts(self, anchor_id: str) -> List[str]:
        """
        Remove contexts with no remaining relevance to `anchor_id`.

        A context is kept if it is similar to the anchor, related to it in
        the graph or hierarchy, important, or recently active. Nothing is
        removed while the store holds no more than the configured floor.

        Returns:
            IDs of removed contexts. Never includes the anchor.
        """
        all_ids = await self.store.get_all_context_ids()
        if len(all_ids) <= self.settings.cleanup_min_contexts:
            return []

        anchor_summary = await self.store.load_summary(anchor_id)
        if anchor_summary is None:
            return []

        retain: Dict[str, RetainEntry] = {anchor_id: RetainEntry(RETAIN_ANCHOR, "anchor")}

        def add(context_id: str, importance: float, reason: str) -> None:
            if context_id not in retain:
                retain[context_id] = RetainEntry(min(importance, 1.0), reason)

        def add_or_boost(context_id: str, importance: float, reason: str) -> None:
            entry = retain.get(context_id)
            if entry is None:
                retain[context_id] = RetainEntry(min(importance, 1.0), reason)
            else:
                entry.importance = min(entry.importance + RETAIN_BOOST, 1.0)

        # Similar by content
        if self.vector_repository:
            similar = await self.find_similar_contexts(anchor_summary.summary, EVICTION_SIMILAR_LIMIT)
            for match in similar:
                if match.similarity >= self.settings.similarity_threshold / 2:
                    add(match.context_id, match.similarity, "similar")

        # Related in the graph, plus the in-memory mirror
        anchor_state = self.contexts.get(anchor_id)
        outgoing = list(anchor_summary.related_contexts)
        if anchor_state:
            outgoing.extend(anchor_state.related_contexts)
        incoming: List[str] = []
        if self.graph_repository:
            outgoing.extend(await self.graph_repository.get_related_contexts(anchor_id, direction=Direction.OUTGOING))
            incoming = await self.graph_repository.get_related_contexts(anchor_id, direction=Direction.INCOMING)

        for context_id in dict.fromkeys(outgoing):
            add_or_boost(context_id, RETAIN_OUTGOING, "related")
        for context_id in dict.fromkeys(incoming):
            add_or_boost(context_id, RETAIN_INCOMING, "referenced")

        # Hierarchy
        if self.settings.hierarchical_context:
            parent_id = (anchor_state.parent_context_id if anchor_state else None) or self.hierarchy.parent_of(anchor_id)
            if parent_id:
                add(parent_id, RETAIN_PARENT, "parent")
                for sibling_id in self.hierarchy.siblings(anchor_id):
                    add(sibling_id, RETAIN_SIBLING, "sibling")
            for child_id in self.hierarchy.children(anchor_id):
                add(child_id, RETAIN_CHILD, "child")

        # Important, then recently active
        summaries: Dict[str, Optional[ContextSummary]] = {}
        for context_id in all_ids:
            if context_id in retain:
                continue
            summary = await self.store.load_summary(context_id)
            summaries[context_id] = summary
            if summary and summary.importance_score >= self.settings.retain_importance_threshold:
                add(context_id, summary.importance_score, "important")

        cutoff = utcnow() - timedelta(days=self.settings.recent_activity_days)
        for context_id in all_ids:
            if context_id in retain:
                continue
            last_activity = self._last_activity(context_id, summaries.get(context_id))
            if last_activity is not None and last_activity >= cutoff:
                add(context_id, RETAIN_RECENT, "recent")

        removed = []
        for context_id in all_ids:
            if context_id in retain:
                continue
            try:
                await self._remove_context(context_id)
            except Exception as e:
                logger.warning(f"Failed to remove context {context_id}: {e}")
                continue
            removed.append(context_id)

        if removed:
            logger.info(f"Cleanup anchored at {anchor_id} removed {len(removed)} contexts, kept {len(retain)}")
        return removed

    def _last_activity(self, context_id: str, summary: Optional[ContextSummary]) -> Optional[datetime]:
        candidates = []
        if summary is not None:
            candidates.append(_as_utc(summary.updated_at))
        state = self.contexts.get(context_id)
        if state is not None:
            candidates.append(_as_utc(state.last_activity_at))
        return max(candidates, default=None)

    async def _remove_context(self, context_id: str) -> None:
        # Persisted summary first; a failed delete leaves the context intact
        await self.store.delete_summary(context_id)
        if self.vector_repository:
            await self.vector_repository.delete_context(context_id)
        if self.graph_repository:
            await self.graph_repository.remove_context(context_id)
        self.hierarchy.remove(context_id)
        self.contexts.pop(context_id, None)
        self._summary_locks.discard(context_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_messages(self, context_id: str) -> Optional[List[Message]]:
        state = self.contexts.get(context_id)
        return list(state.messages) if state else None

    async def get_hierarchical_structure(self, context_id: str) -> Dict[str, Any]:
        """
        Parent and children of a context.

        Returns:
            {"parent": Optional[str], "children": List[str]}
        """
        if not self.settings.hierarchical_context:
            return {"parent": None, "children": []}

        await self.initialize()
        state = self.contexts.get(context_id)
        parent = (state.parent_context_id if state else None) or self.hierarchy.parent_of(context_id)
        return {"parent": parent, "children": self.hierarchy.children(context_id)}

    @with_request_id
    async def retrieve_context(self, context_id: str) -> Dict[str, Any]:
        """
        Everything known about a context.

        Returns:
            Dict with the summary, messages, related contexts and hierarchy
            position. Values are None/empty for an unknown context.
        """
        await self.initialize()
        summary = await self.store.load_summary(context_id)
        state = self.contexts.get(context_id)
        structure = await self.get_hierarchical_structure(context_id)

        related: Iterable[str] = state.related_contexts if state else (summary.related_contexts if summary else [])
        return {
            "context_id": context_id,
            "summary": summary,
            "messages": list(state.messages) if state else [],
            "related_contexts": list(related),
            "parent": structure["parent"],
            "children": structure["children"],
        }

    async def load_summary(self, context_id: str) -> Optional[ContextSummary]:
        return await self.store.load_summary(context_id)

    async def load_hierarchical_summary(self, context_id: str) -> Optional[HierarchicalSummary]:
        if not self.settings.hierarchical_context:
            return None
        return await self.store.load_hierarchical_summary(context_id)

    async def load_meta_summary(self, meta_id: str) -> Optional[MetaSummary]:
        if not self.settings.hierarchical_context:
            return None
        return await self.store.load_meta_summary(meta_id)

    async def get_meta_summary_ids(self) -> List[str]:
        if not self.settings.hierarchical_context:
            return []
        return await self.store.get_all_meta_summary_ids()

    async def get_all_context_ids(self) -> List[str]:
        return await self.store.get_all_context_ids()

    async def get_all_hierarchical_context_ids(self) -> List[str]:
        if not self.settings.hierarchical_context:
            return []
        return await self.store.get_all_hierarchical_context_ids()
