# tests/conftest.py
"""
Pytest configuration for ContextMemory tests.
"""

import hashlib
import math
import re
import shutil
import tempfile
from typing import List

import pytest

from context_memory.config import Settings
from context_memory.vectors import Embedder


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test."
    )


class HashingEmbedder(Embedder):
    """Deterministic bag-of-words embedder for tests."""

    def __init__(self, dimensions: int = 64):
        self._dimensions = dimensions
        self.calls = 0

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, text: str) -> List[float]:
        self.calls += 1
        vector = [0.0] * self._dimensions
        vector[0] = 0.01  # never a zero vector
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % (self._dimensions - 1)
            vector[bucket + 1] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]


def failing_embedder_factory() -> Embedder:
    raise RuntimeError("embedding model unavailable")


@pytest.fixture
def temp_storage():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def test_settings(temp_storage):
    """Settings rooted in the temporary directory, with an in-process vector index."""
    return Settings(
        context_dir=temp_storage,
        qdrant_path=":memory:",
        auto_cleanup_contexts=False
    )


@pytest.fixture
def embedder():
    return HashingEmbedder()
