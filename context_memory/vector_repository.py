"""
Vector Similarity Repository - Nearest-neighbor search over context summaries.

This module provides:
- Embeddings through a pluggable Embedder, stored in Qdrant
- A persisted contextId <-> integer label map (labels are never reused)
- Fallback mode: if the embedder or index fails to initialize, every
  operation is answered by the keyword index for the instance lifetime
- A keyword mirror of every indexed summary, reloaded from the summary
  store at startup, so a failed vector search still returns results
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from .config import Settings
from .keyword_index import KeywordMatchIndex
from .lifecycle import OneShotInitializer
from .models import ContextSummary, SimilarContext
from .qdrant_store import QdrantVectorStore
from .store import SummaryStore, write_document
from .vectors import Embedder, SentenceTransformerEmbedder

logger = logging.getLogger(__name__)

CONTEXT_MAP_FILE = "context-map.json"
FALLBACK_STORAGE_FILE = "fallback-storage.json"

EmbedderFactory = Callable[[], Embedder]


async def _read_json(path: Path) -> Optional[dict]:
    if not await aiofiles.os.path.exists(path):
        return None
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return json.loads(await f.read())
    except (OSError, ValueError) as e:
        logger.error(f"Error loading {path.name}: {e}")
        return None


class VectorRepository:
    """
    Similarity search over summaries with keyword fallback.

    Usage:
        repo = VectorRepository(settings)
        await repo.add_summary(summary)
        matches = await repo.find_similar_contexts("refactor the parser", limit=5)
    """

    def __init__(
        self,
        settings: Settings,
        embedder_factory: Optional[EmbedderFactory] = None,
        keyword_index: Optional[KeywordMatchIndex] = None,
        store: Optional[SummaryStore] = None
    ):
        self.settings = settings
        self.store = store
        self.vector_dir = settings.get_vector_dir()
        self._embedder_factory = embedder_factory or (
            lambda: SentenceTransformerEmbedder(settings.embedding_model)
        )
        self.keyword_index = keyword_index or KeywordMatchIndex()

        self.fallback_mode = False
        self.context_to_label: Dict[str, int] = {}
        self.label_to_context: Dict[int, str] = {}
        self.next_label = 0

        self._embedder: Optional[Embedder] = None
        self._index: Optional[QdrantVectorStore] = None
        self._fallback_summaries: Dict[str, ContextSummary] = {}
        self._lock = asyncio.Lock()
        self._init = OneShotInitializer("vector", self._initialize)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        """Load the label map, probe the embedder and open the index."""
        await self._load_context_map()

        embedder = self._embedder_factory()
        probe = await asyncio.to_thread(embedder.embed, "initialization probe")
        dimensions = embedder.dimensions
        if len(probe) != dimensions or dimensions == 0:
            raise ValueError(f"Embedder returned {len(probe)} values, expected {dimensions}")

        self._index = await asyncio.to_thread(
            QdrantVectorStore, self.settings.get_qdrant_path(), dimensions
        )
        self._embedder = embedder
        await self._load_keyword_mirror()
        logger.info(
            f"Vector index ready with {len(self.context_to_label)} contexts "
            f"({dimensions} dimensions)"
        )

    async def _ensure_ready(self) -> bool:
        """
        Initialize on first use.

        Returns:
            True if the vector backend is usable, False when in fallback mode.
        """
        ready = await self._init.ensure()
        if not ready and not self.fallback_mode:
            self.fallback_mode = True
            logger.info("Vector repository running in keyword fallback mode")
            await self._load_fallback_storage()
        return ready

    async def initialize(self) -> bool:
        return await self._ensure_ready()

    async def close(self) -> None:
        """Release the index backend."""
        if self._index is not None:
            await asyncio.to_thread(self._index.close)
            self._index = None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _load_context_map(self) -> None:
        data = await _read_json(self.vector_dir / CONTEXT_MAP_FILE)
        if not data:
            return

        mapping = {str(k): int(v) for k, v in data.get("contextToLabel", {}).items()}
        self.context_to_label = mapping
        self.label_to_context = {label: cid for cid, label in mapping.items()}
        self.next_label = max(
            int(data.get("nextLabel", 0)),
            max(mapping.values(), default=-1) + 1
        )

    async def _save_context_map(self) -> None:
        payload = json.dumps({
            "contextToLabel": self.context_to_label,
            "nextLabel": self.next_label
        }, indent=2)
        await write_document(self.vector_dir / CONTEXT_MAP_FILE, payload)

    async def _load_keyword_mirror(self) -> None:
        """Re-index persisted summaries of labelled contexts by keyword."""
        if self.store is None:
            return

        loaded = 0
        for context_id in list(self.context_to_label):
            summary = await self.store.load_summary(context_id)
            if summary is not None:
                await self.keyword_index.add_summary(summary)
                loaded += 1

        logger.debug(f"Keyword mirror loaded with {loaded} summaries")

    async def _load_fallback_storage(self) -> None:
        data = await _read_json(self.vector_dir / FALLBACK_STORAGE_FILE)
        if not data:
            return

        for item in data.get("summaries", []):
            try:
                summary = ContextSummary.model_validate(item)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable fallback summary: {e}")
                continue
            self._fallback_summaries[summary.context_id] = summary
            await self.keyword_index.add_summary(summary)

        logger.info(f"Loaded {len(self._fallback_summaries)} summaries from fallback storage")

    async def _save_fallback_storage(self) -> None:
        payload = json.dumps({
            "summaries": [
                s.model_dump(mode="json", by_alias=True)
                for s in self._fallback_summaries.values()
            ]
        }, indent=2)
        await write_document(self.vector_dir / FALLBACK_STORAGE_FILE, payload)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def add_summary(self, summary: ContextSummary) -> None:
        """
        Embed a summary and upsert it under its context ID.

        Args:
            summary: Summary whose text is indexed
        """
        await self.keyword_index.add_summary(summary)

        if not await self._ensure_ready():
            async with self._lock:
                self._fallback_summaries[summary.context_id] = summary
                await self._save_fallback_storage()
            return

        embedding = await asyncio.to_thread(self._embedder.embed, summary.summary)

        async with self._lock:
            label = self.context_to_label.get(summary.context_id)
            if label is None:
                label = self.next_label
                self.next_label += 1
                self.context_to_label[summary.context_id] = label
                self.label_to_context[label] = summary.context_id

            await asyncio.to_thread(
                self._index.upsert,
                label,
                embedding,
                {"context_id": summary.context_id, "version": summary.version}
            )
            await self._save_context_map()

        logger.debug(f"Indexed summary for {summary.context_id} as label {label}")

    async def find_similar_contexts(self, text: str, limit: int = 5) -> List[SimilarContext]:
        """
        Find the contexts whose summaries are closest to `text`.

        Args:
            text: Query text
            limit: Maximum results

        Returns:
            Matches sorted by similarity descending, at most `limit` long.
        """
        if not text or limit <= 0:
            return []

        if not await self._ensure_ready():
            return await self.keyword_index.find_similar_contexts(text, limit)

        if not self.context_to_label:
            return []

        try:
            query = await asyncio.to_thread(self._embedder.embed, text)
            hits = await asyncio.to_thread(self._index.search, query, limit)
        except Exception as e:
            logger.warning(f"Vector search failed, using keyword index: {e}")
            return await self.keyword_index.find_similar_contexts(text, limit)

        results = [
            SimilarContext(context_id=self.label_to_context[label], similarity=score)
            for label, score in hits
            if label in self.label_to_context
        ]
        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[:limit]

    async def delete_context(self, context_id: str) -> bool:
        """
        Forget a context.

        Returns:
            True if the context was indexed.
        """
        await self.keyword_index.delete_context(context_id)

        if not await self._ensure_ready():
            async with self._lock:
                removed = self._fallback_summaries.pop(context_id, None) is not None
                if removed:
                    await self._save_fallback_storage()
            return removed

        async with self._lock:
            label = self.context_to_label.pop(context_id, None)
            if label is None:
                return False
            self.label_to_context.pop(label, None)
            await asyncio.to_thread(self._index.delete, label)
            await self._save_context_map()

        logger.debug(f"Removed {context_id} from vector index")
        return True

    async def has_context(self, context_id: str) -> bool:
        if not await self._ensure_ready():
            return await self.keyword_index.has_context(context_id)
        return context_id in self.context_to_label

    async def get_size(self) -> int:
        """Number of indexed contexts."""
        if not await self._ensure_ready():
            return self.keyword_index.get_size()
        return len(self.context_to_label)
