"""
Qdrant Vector Store - Persistent vector storage for context summaries.

This module provides:
- Persistent vector storage using Qdrant (local mode, no server required)
- One point per context, keyed by the integer label the repository assigns
- Cosine similarity search

Pass ":memory:" as the path for an in-process store.
"""

import logging
from typing import List, Tuple

from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams

logger = logging.getLogger(__name__)


class QdrantVectorStore:
    """
    Vector storage backend using Qdrant.

    Blocking; callers on the event loop should go through asyncio.to_thread.
    """

    COLLECTION_SUMMARIES = "cm_context_summaries"

    def __init__(self, path: str, dimensions: int = 384):
        """
        Initialize the Qdrant vector store.

        Args:
            path: Directory path for local Qdrant storage, or ":memory:".
            dimensions: Embedding vector size.
        """
        logger.info(f"Initializing Qdrant vector store at: {path}")
        self.dimensions = dimensions
        if path == ":memory:":
            self.client = QdrantClient(location=":memory:")
        else:
            self.client = QdrantClient(path=path)
        self._ensure_collection()

    def _ensure_collection(self) -> None:
        """Create the summaries collection if it does not exist."""
        collections = [c.name for c in self.client.get_collections().collections]

        if self.COLLECTION_SUMMARIES not in collections:
            logger.info(f"Creating collection: {self.COLLECTION_SUMMARIES}")
            self.client.create_collection(
                collection_name=self.COLLECTION_SUMMARIES,
                vectors_config=VectorParams(
                    size=self.dimensions,
                    distance=Distance.COSINE
                )
            )

    def upsert(self, label: int, embedding: List[float], payload: dict) -> None:
        """
        Store or replace a context's vector.

        Args:
            label: Integer point ID for the context.
            embedding: Vector embedding.
            payload: Stored alongside the vector (context_id, version).
        """
        self.client.upsert(
            collection_name=self.COLLECTION_SUMMARIES,
            points=[PointStruct(id=label, vector=embedding, payload=payload)]
        )

    def search(self, query_vector: List[float], limit: int = 5) -> List[Tuple[int, float]]:
        """
        Search for the nearest contexts.

        Returns:
            List of (label, similarity_score) tuples, sorted by score descending.
        """
        response = self.client.query_points(
            collection_name=self.COLLECTION_SUMMARIES,
            query=query_vector,
            limit=limit
        )
        return [(int(point.id), float(point.score)) for point in response.points]

    def delete(self, label: int) -> None:
        self.client.delete(
            collection_name=self.COLLECTION_SUMMARIES,
            points_selector=[label]
        )

    def get_count(self) -> int:
        """
        Get the number of stored vectors.

        Returns:
            Count of stored context vectors.
        """
        return self.client.count(collection_name=self.COLLECTION_SUMMARIES, exact=True).count

    def close(self) -> None:
        """Close the Qdrant client connection."""
        self.client.close()
