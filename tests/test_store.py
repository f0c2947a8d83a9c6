"""Tests for the file-backed summary store."""

import asyncio
import json
from pathlib import Path

import pytest

from context_memory.exceptions import NotFound
from context_memory.models import CodeBlock, ContextSummary, HierarchicalSummary, MetaSummary
from context_memory.store import (
    HIERARCHICAL_DIR,
    META_DIR,
    FileSystemStore,
    sanitize_id,
    write_document,
)


@pytest.fixture
def store(temp_storage):
    return FileSystemStore(temp_storage)


def make_summary(context_id: str = "ctx-1", **kwargs) -> ContextSummary:
    kwargs.setdefault("summary", "a short summary")
    return ContextSummary(context_id=context_id, **kwargs)


class TestSummaries:
    """Leaf summary documents."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        summary = make_summary(
            code_blocks=[CodeBlock(code="print(1)", language="python", importance=0.8)],
            key_insights=["Why does it fail?"],
            version=3,
        )
        await store.save_summary(summary)

        loaded = await store.load_summary("ctx-1")
        assert loaded == summary

    @pytest.mark.asyncio
    async def test_file_uses_camel_case_keys(self, store, temp_storage):
        await store.save_summary(make_summary(message_count=4))

        path = store.context_dir / "ctx-1.summary.json"
        data = json.loads(path.read_text())
        assert data["contextId"] == "ctx-1"
        assert data["messageCount"] == 4
        assert "importanceScore" in data

    @pytest.mark.asyncio
    async def test_missing_summary_is_none(self, store):
        assert await store.load_summary("missing") is None

    @pytest.mark.asyncio
    async def test_corrupt_summary_is_none(self, store):
        (store.context_dir / "broken.summary.json").write_text("{not json")
        assert await store.load_summary("broken") is None

    @pytest.mark.asyncio
    async def test_require_summary_raises(self, store):
        with pytest.raises(NotFound) as exc_info:
            await store.require_summary("missing")
        assert exc_info.value.key == "missing"

    @pytest.mark.asyncio
    async def test_list_ids_sorted(self, store):
        for context_id in ("b", "a", "c"):
            await store.save_summary(make_summary(context_id))
        assert await store.get_all_context_ids() == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_unsafe_ids_are_sanitized(self, store):
        await store.save_summary(make_summary("feature/login:v2"))

        assert (store.context_dir / f"{sanitize_id('feature/login:v2')}.summary.json").exists()
        loaded = await store.load_summary("feature/login:v2")
        assert loaded.context_id == "feature/login:v2"

    @pytest.mark.asyncio
    async def test_delete_removes_hierarchical_too(self, store):
        await store.save_summary(make_summary("p"))
        await store.save_hierarchical_summary(HierarchicalSummary(context_id="p", summary="h"))

        assert await store.delete_summary("p") is True
        assert await store.load_summary("p") is None
        assert await store.load_hierarchical_summary("p") is None
        assert await store.delete_summary("p") is False

    @pytest.mark.asyncio
    async def test_concurrent_writes_to_one_document(self, store, temp_storage):
        versions = range(1, 11)
        await asyncio.gather(*(store.save_summary(make_summary("ctx", version=v)) for v in versions))

        loaded = await store.load_summary("ctx")
        assert loaded.version in versions
        assert not list(Path(temp_storage).glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_write_document_uses_distinct_temp_files(self, temp_storage):
        path = Path(temp_storage) / "doc.json"
        await asyncio.gather(write_document(path, '{"a": 1}'), write_document(path, '{"b": 2}'))

        assert json.loads(path.read_text()) in ({"a": 1}, {"b": 2})


class TestHierarchicalAndMeta:
    """Hierarchical and meta-summary documents."""

    @pytest.mark.asyncio
    async def test_layout(self, store):
        await store.save_hierarchical_summary(HierarchicalSummary(context_id="p", summary="h", child_context_ids=["a"]))
        await store.save_meta_summary(MetaSummary(id="meta_1", summary="m", context_ids=["p"]))

        assert (store.context_dir / HIERARCHICAL_DIR / "p.hierarchical.json").exists()
        assert (store.context_dir / META_DIR / "meta_1.meta.json").exists()
        assert await store.get_all_hierarchical_context_ids() == ["p"]
        assert await store.get_all_meta_summary_ids() == ["meta_1"]
        assert (await store.load_hierarchical_summary("p")).child_context_ids == ["a"]
        assert (await store.require_meta_summary("meta_1")).context_ids == ["p"]

    @pytest.mark.asyncio
    async def test_require_missing_meta_raises(self, store):
        with pytest.raises(NotFound):
            await store.require_meta_summary("meta_missing")

    @pytest.mark.asyncio
    async def test_hierarchy_disabled(self, temp_storage):
        store = FileSystemStore(temp_storage, hierarchical=False)
        await store.save_hierarchical_summary(HierarchicalSummary(context_id="p", summary="h"))

        assert await store.load_hierarchical_summary("p") is None
        assert await store.get_all_hierarchical_context_ids() == []
