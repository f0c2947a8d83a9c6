"""
Vector Embeddings - Semantic understanding with sentence-transformers.

This module provides:
- Embedder: the interface the vector repository encodes text through
- SentenceTransformerEmbedder: local model, lazy loaded and shared per model name
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List

from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

# Longest text handed to the model
MAX_EMBED_CHARS = 8192

# Loaded models, shared across repositories (lazy loaded)
_models: Dict[str, SentenceTransformer] = {}


def _get_model(model_name: str) -> SentenceTransformer:
    """Get or create the embedding model (lazy loading, shared across repositories)."""
    model = _models.get(model_name)
    if model is None:
        logger.info(f"Loading embedding model ({model_name})...")
        model = SentenceTransformer(model_name)
        _models[model_name] = model
        logger.info("Embedding model loaded.")
    return model


class Embedder(ABC):
    """Turns text into fixed-size vectors. Calls may block."""

    @property
    @abstractmethod
    def dimensions(self) -> int: ...

    @abstractmethod
    def embed(self, text: str) -> List[float]: ...


class SentenceTransformerEmbedder(Embedder):
    """
    Embedder backed by a sentence-transformers model.

    Loading the model is deferred to load() so a missing model surfaces as an
    initialization failure rather than a constructor error.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None

    def load(self) -> None:
        if self._model is None:
            self._model = _get_model(self.model_name)

    @property
    def dimensions(self) -> int:
        self.load()
        return int(self._model.get_sentence_embedding_dimension())

    def embed(self, text: str) -> List[float]:
        self.load()
        embedding = self._model.encode(
            text[:MAX_EMBED_CHARS],
            convert_to_numpy=True,
            normalize_embeddings=True
        )
        return embedding.tolist()
