"""
Centralized configuration using Pydantic Settings.

All settings are loaded from environment variables with CONTEXT_MEMORY_ prefix.
Example: CONTEXT_MEMORY_MESSAGE_LIMIT_THRESHOLD=20
"""

import logging
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class PathStrategy(str, Enum):
    """How the graph repository answers find_path."""

    WEIGHTED = "weighted"
    BFS = "bfs"


class Settings(BaseSettings):
    """ContextMemory configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="CONTEXT_MEMORY_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Core paths
    context_dir: str = ".prompt-context"

    # Logging
    log_level: str = "INFO"

    # Summarization policy
    message_limit_threshold: int = Field(default=10, ge=1)
    token_limit_percentage: float = Field(default=80, ge=0, le=100)
    model_token_limit: int = 4096  # Typical model context window
    auto_summarize: bool = True

    # Context IDs matching any of these globs are rejected
    ignore_patterns: List[str] = []

    # Hierarchy
    hierarchical_context: bool = True
    meta_summary_threshold: int = Field(default=5, ge=1)
    max_hierarchy_depth: int = Field(default=3, ge=0)

    # Subsystems
    use_vector_db: bool = True
    use_graph_db: bool = True
    similarity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    graph_path_strategy: PathStrategy = PathStrategy.WEIGHTED

    # Eviction
    auto_cleanup_contexts: bool = True
    cleanup_min_contexts: int = 10  # No eviction at or below this many contexts
    cleanup_every_n_messages: int = Field(default=10, ge=1)
    retain_importance_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    recent_activity_days: int = 7

    # Embedding Model
    embedding_model: str = "all-MiniLM-L6-v2"

    # Qdrant vector storage
    qdrant_path: Optional[str] = None  # ":memory:" for in-process, auto-detect if not set

    def get_context_dir(self) -> Path:
        """Resolve the context directory, creating it if needed."""
        path = Path(self.context_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_vector_dir(self) -> Path:
        """
        Directory for the vector index files.

        Returns:
            Path to <context_dir>/vectors
        """
        path = self.get_context_dir() / "vectors"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_graph_path(self) -> Path:
        """
        Path of the persisted edge list.

        Returns:
            Path to <context_dir>/graph/context-graph.json
        """
        graph_dir = self.get_context_dir() / "graph"
        graph_dir.mkdir(parents=True, exist_ok=True)
        return graph_dir / "context-graph.json"

    def get_qdrant_path(self) -> str:
        """
        Determine Qdrant storage location.

        Priority:
        1. qdrant_path setting (explicit override, ":memory:" allowed)
        2. <context_dir>/vectors/qdrant
        """
        if self.qdrant_path:
            if self.qdrant_path != ":memory:":
                Path(self.qdrant_path).mkdir(parents=True, exist_ok=True)
            return self.qdrant_path

        qdrant_dir = self.get_vector_dir() / "qdrant"
        qdrant_dir.mkdir(parents=True, exist_ok=True)
        return str(qdrant_dir)

    @property
    def summary_token_threshold(self) -> float:
        """Token count at which a context is summarized."""
        return self.model_token_limit * (self.token_limit_percentage / 100)


# Singleton instance
settings = Settings()
