"""Tests for the vector similarity repository and its keyword fallback."""

import asyncio
import json

import pytest
import pytest_asyncio

from context_memory.lifecycle import InitState
from context_memory.models import ContextSummary
from context_memory.store import FileSystemStore
from context_memory.vector_repository import (
    CONTEXT_MAP_FILE,
    FALLBACK_STORAGE_FILE,
    VectorRepository,
)

from conftest import HashingEmbedder, failing_embedder_factory


def make_summary(context_id: str, text: str) -> ContextSummary:
    return ContextSummary(context_id=context_id, summary=text, message_count=3)


@pytest_asyncio.fixture
async def vector_repo(test_settings, embedder):
    """Repository backed by an in-process qdrant index."""
    repo = VectorRepository(test_settings, embedder_factory=lambda: embedder)
    yield repo
    await repo.close()


@pytest_asyncio.fixture
async def fallback_repo(test_settings):
    """Repository whose embedder cannot be created."""
    repo = VectorRepository(test_settings, embedder_factory=failing_embedder_factory)
    yield repo
    await repo.close()


class TestVectorSearch:
    """Nearest-neighbour search through qdrant."""

    @pytest.mark.asyncio
    async def test_finds_closest_summary_first(self, vector_repo):
        await vector_repo.add_summary(make_summary("db", "postgres connection pooling and indexes"))
        await vector_repo.add_summary(make_summary("ui", "react component styling with css grid"))

        results = await vector_repo.find_similar_contexts("postgres connection pooling", limit=2)

        assert vector_repo.fallback_mode is False
        assert results[0].context_id == "db"
        assert len(results) <= 2
        scores = [r.similarity for r in results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_respects_limit(self, vector_repo):
        for i in range(4):
            await vector_repo.add_summary(make_summary(f"ctx-{i}", f"shared topic number {i}"))

        results = await vector_repo.find_similar_contexts("shared topic", limit=2)
        assert len(results) == 2

    @pytest.mark.asyncio
    async def test_empty_index_returns_empty(self, vector_repo):
        assert await vector_repo.find_similar_contexts("anything") == []

    @pytest.mark.asyncio
    async def test_search_error_uses_keyword_index(self, vector_repo):
        await vector_repo.add_summary(make_summary("db", "postgres connection pooling"))

        def broken_search(*args, **kwargs):
            raise RuntimeError("index corrupted")

        vector_repo._index.search = broken_search
        results = await vector_repo.find_similar_contexts("postgres pooling")

        assert [r.context_id for r in results] == ["db"]

    @pytest.mark.asyncio
    async def test_keyword_index_reloaded_after_restart(self, test_settings, embedder):
        store = FileSystemStore(str(test_settings.get_context_dir()))
        repo = VectorRepository(test_settings, embedder_factory=lambda: embedder, store=store)
        for summary in (
            make_summary("db", "postgres connection pooling"),
            make_summary("ui", "react component styling"),
        ):
            await store.save_summary(summary)
            await repo.add_summary(summary)
        await repo.close()

        restarted = VectorRepository(test_settings, embedder_factory=lambda: embedder, store=store)
        assert await restarted.initialize() is True
        assert restarted.keyword_index.get_size() == 2

        def broken_search(*args, **kwargs):
            raise RuntimeError("index corrupted")

        restarted._index.search = broken_search
        results = await restarted.find_similar_contexts("postgres pooling")

        assert [r.context_id for r in results] == ["db"]
        await restarted.close()


class TestLabelMap:
    """contextId <-> label bookkeeping."""

    @pytest.mark.asyncio
    async def test_upsert_keeps_one_label_per_context(self, vector_repo):
        await vector_repo.add_summary(make_summary("ctx", "first version"))
        await vector_repo.add_summary(make_summary("ctx", "second version"))

        assert vector_repo.context_to_label == {"ctx": 0}
        assert await vector_repo.get_size() == 1

    @pytest.mark.asyncio
    async def test_labels_are_not_reused(self, vector_repo):
        await vector_repo.add_summary(make_summary("a", "alpha text"))
        await vector_repo.delete_context("a")
        await vector_repo.add_summary(make_summary("b", "beta text"))

        assert vector_repo.context_to_label == {"b": 1}
        assert vector_repo.label_to_context == {1: "b"}

    @pytest.mark.asyncio
    async def test_delete_and_has_context(self, vector_repo):
        await vector_repo.add_summary(make_summary("a", "alpha text"))
        assert await vector_repo.has_context("a") is True

        assert await vector_repo.delete_context("a") is True
        assert await vector_repo.has_context("a") is False
        assert await vector_repo.delete_context("a") is False
        assert await vector_repo.find_similar_contexts("alpha text") == []

    @pytest.mark.asyncio
    async def test_map_is_persisted(self, vector_repo, test_settings, embedder):
        await vector_repo.add_summary(make_summary("a", "alpha text"))
        await vector_repo.add_summary(make_summary("b", "beta text"))

        data = json.loads((test_settings.get_vector_dir() / CONTEXT_MAP_FILE).read_text())
        assert data == {"contextToLabel": {"a": 0, "b": 1}, "nextLabel": 2}

        reloaded = VectorRepository(test_settings, embedder_factory=lambda: embedder)
        await reloaded.initialize()
        assert reloaded.context_to_label == {"a": 0, "b": 1}
        assert reloaded.next_label == 2
        await reloaded.close()


class TestInitialization:
    """One-shot initialization and fallback mode."""

    @pytest.mark.asyncio
    async def test_concurrent_first_use_initializes_once(self, test_settings):
        created = []

        def factory():
            created.append(1)
            return HashingEmbedder()

        repo = VectorRepository(test_settings, embedder_factory=factory)
        await asyncio.gather(*(repo.has_context("x") for _ in range(5)))

        assert len(created) == 1
        assert repo._init.state is InitState.READY
        assert repo._init.attempts == 1
        await repo.close()

    @pytest.mark.asyncio
    async def test_failed_init_enters_fallback_mode(self, fallback_repo):
        assert await fallback_repo.initialize() is False
        assert fallback_repo.fallback_mode is True
        assert fallback_repo._init.state is InitState.FAILED
        assert fallback_repo._init.error is not None

    @pytest.mark.asyncio
    async def test_fallback_is_never_retried(self, fallback_repo):
        await fallback_repo.initialize()
        await fallback_repo.find_similar_contexts("anything")
        await fallback_repo.add_summary(make_summary("a", "apples"))

        assert fallback_repo._init.attempts == 1

    @pytest.mark.asyncio
    async def test_fallback_answers_with_keyword_matching(self, fallback_repo):
        await fallback_repo.add_summary(make_summary("ctx-1", "apples and oranges"))
        await fallback_repo.add_summary(make_summary("ctx-2", "bananas and apples"))
        await fallback_repo.add_summary(make_summary("ctx-3", "grapes"))

        results = await fallback_repo.find_similar_contexts("apples", 2)
        assert {r.context_id for r in results} == {"ctx-1", "ctx-2"}
        assert await fallback_repo.find_similar_contexts("kiwi", 5) == []
        assert await fallback_repo.has_context("ctx-3") is True
        assert await fallback_repo.get_size() == 3

        assert await fallback_repo.delete_context("ctx-3") is True
        assert await fallback_repo.has_context("ctx-3") is False

    @pytest.mark.asyncio
    async def test_fallback_storage_survives_restart(self, fallback_repo, test_settings):
        await fallback_repo.add_summary(make_summary("ctx-1", "apples and oranges"))
        assert (test_settings.get_vector_dir() / FALLBACK_STORAGE_FILE).exists()

        restarted = VectorRepository(test_settings, embedder_factory=failing_embedder_factory)
        results = await restarted.find_similar_contexts("oranges")
        assert [r.context_id for r in results] == ["ctx-1"]
