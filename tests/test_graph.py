"""Tests for the relationship graph repository."""

import json

import pytest
import pytest_asyncio

from context_memory.config import PathStrategy
from context_memory.graph import GraphRepository
from context_memory.models import Direction, RelationshipType


@pytest_asyncio.fixture
async def graph(test_settings):
    """Graph repository using the weighted path strategy."""
    repo = GraphRepository(test_settings)
    await repo.initialize()
    return repo


async def build_chain(repo: GraphRepository, nodes, weight: float = 1.0):
    for source, target in zip(nodes, nodes[1:]):
        await repo.add_relationship(source, target, RelationshipType.CONTINUES, weight)


class TestAddRelationship:
    """Edge writes and their invariants."""

    @pytest.mark.asyncio
    async def test_weight_is_clamped(self, graph):
        await graph.add_relationship("a", "b", RelationshipType.REFERENCES, 1.7)
        await graph.add_relationship("a", "c", RelationshipType.REFERENCES, -0.4)

        weights = {e.target: e.weight for e in await graph.get_relationships("a")}
        assert weights == {"b": 1.0, "c": 0.0}

    @pytest.mark.asyncio
    async def test_parent_creates_reciprocal_child(self, graph):
        await graph.add_relationship("a", "b", RelationshipType.PARENT, 0.8)

        edges = await graph.get_relationships("b")
        reciprocal = [e for e in edges if e.source == "b"]
        assert len(reciprocal) == 1
        assert reciprocal[0].target == "a"
        assert reciprocal[0].type is RelationshipType.CHILD
        assert reciprocal[0].weight == 0.8

    @pytest.mark.asyncio
    async def test_child_creates_reciprocal_parent_once(self, graph):
        await graph.add_relationship("b", "a", RelationshipType.CHILD, 0.6)
        await graph.add_relationship("b", "a", RelationshipType.CHILD, 0.9)

        assert await graph.get_edge_count() == 2
        parent_edges = [e for e in graph.edges if e.type is RelationshipType.PARENT]
        assert [(e.source, e.target, e.weight) for e in parent_edges] == [("a", "b", 0.9)]

    @pytest.mark.asyncio
    async def test_readding_updates_in_place(self, graph):
        await graph.add_relationship("a", "b", RelationshipType.SIMILAR, 0.5, {"note": "first"})
        await graph.add_relationship("a", "b", RelationshipType.SIMILAR, 0.7, {"note": "second"})

        assert await graph.get_edge_count() == 1
        assert graph.edges[0].weight == 0.7
        assert graph.edges[0].metadata == {"note": "second"}

    @pytest.mark.asyncio
    async def test_different_types_are_distinct_edges(self, graph):
        await graph.add_relationship("a", "b", RelationshipType.SIMILAR, 0.5)
        await graph.add_relationship("a", "b", RelationshipType.REFERENCES, 0.5)

        assert await graph.get_edge_count() == 2

    @pytest.mark.asyncio
    async def test_self_loop_is_ignored(self, graph):
        assert await graph.add_relationship("a", "a", RelationshipType.SIMILAR, 1.0) is False
        assert await graph.get_relationships("a") == []
        assert await graph.get_edge_count() == 0

    @pytest.mark.asyncio
    async def test_similarity_relationship_threshold(self, graph):
        assert await graph.add_similarity_relationship("a", "b", 0.2) is False
        assert await graph.add_similarity_relationship("a", "c", 0.8) is True

        assert await graph.get_related_contexts("a") == ["c"]

    @pytest.mark.asyncio
    async def test_failed_save_restores_edges(self, graph):
        await graph.add_relationship("a", "b", RelationshipType.REFERENCES, 0.5)
        before = list(graph.edges)

        async def broken_save():
            raise OSError("disk full")

        graph._save = broken_save
        with pytest.raises(OSError):
            await graph.add_relationship("a", "c", RelationshipType.PARENT, 0.5)
        with pytest.raises(OSError):
            await graph.remove_context("a")

        assert graph.edges == before


class TestQueries:
    """Relationship lookups."""

    @pytest.mark.asyncio
    async def test_direction_filter(self, graph):
        await graph.add_relationship("a", "b", RelationshipType.REFERENCES, 0.5)
        await graph.add_relationship("c", "a", RelationshipType.REFERENCES, 0.5)

        assert await graph.get_related_contexts("a", direction=Direction.OUTGOING) == ["b"]
        assert await graph.get_related_contexts("a", direction=Direction.INCOMING) == ["c"]
        assert await graph.get_related_contexts("a") == ["b", "c"]

    @pytest.mark.asyncio
    async def test_type_filter_and_dedupe(self, graph):
        await graph.add_relationship("a", "b", RelationshipType.SIMILAR, 0.5)
        await graph.add_relationship("a", "b", RelationshipType.REFERENCES, 0.5)
        await graph.add_relationship("a", "c", RelationshipType.CONTINUES, 0.5)

        assert await graph.get_related_contexts("a") == ["b", "c"]
        assert await graph.get_related_contexts("a", RelationshipType.CONTINUES) == ["c"]
        assert await graph.get_related_contexts("a", RelationshipType.PARENT) == []

    @pytest.mark.asyncio
    async def test_remove_context_drops_all_references(self, graph):
        await graph.add_relationship("x", "a", RelationshipType.PARENT, 0.5)
        await graph.add_relationship("b", "x", RelationshipType.SIMILAR, 0.5)
        await graph.add_relationship("a", "b", RelationshipType.REFERENCES, 0.5)

        assert await graph.remove_context("x") == 3

        for node in ("a", "b"):
            for edge in await graph.get_relationships(node):
                assert "x" not in (edge.source, edge.target)
            assert "x" not in await graph.get_related_contexts(node)
        assert await graph.get_relationships("x") == []

    @pytest.mark.asyncio
    async def test_get_all_contexts(self, graph):
        await build_chain(graph, ["a", "b", "c"])
        assert await graph.get_all_contexts() == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_find_communities(self, graph):
        await build_chain(graph, ["a", "b", "c"])
        await graph.add_relationship("y", "x", RelationshipType.SIMILAR, 0.5)

        communities = await graph.find_communities()
        assert sorted(sorted(c) for c in communities) == [["a", "b", "c"], ["x", "y"]]


class TestFindPath:
    """Shortest paths."""

    @pytest.mark.asyncio
    async def test_same_node(self, graph):
        assert await graph.find_path("a", "a") == ["a"]

    @pytest.mark.asyncio
    async def test_empty_graph(self, graph):
        assert await graph.find_path("a", "b") == []

    @pytest.mark.asyncio
    async def test_chain(self, graph):
        await build_chain(graph, ["A", "B", "C", "D"])

        path = await graph.find_path("A", "D")
        assert path == ["A", "B", "C", "D"]

    @pytest.mark.asyncio
    async def test_unreachable(self, graph):
        await build_chain(graph, ["A", "B"])
        await build_chain(graph, ["C", "D"])

        assert await graph.find_path("A", "D") == []
        assert await graph.find_path("A", "missing") == []

    @pytest.mark.asyncio
    async def test_weighted_prefers_strong_edges(self, graph):
        await graph.add_relationship("A", "D", RelationshipType.REFERENCES, 0.1)
        await build_chain(graph, ["A", "B", "D"], weight=1.0)

        assert await graph.find_path("A", "D") == ["A", "B", "D"]

    @pytest.mark.asyncio
    async def test_bfs_prefers_fewest_hops(self, test_settings):
        repo = GraphRepository(test_settings, path_strategy=PathStrategy.BFS)
        await repo.add_relationship("A", "D", RelationshipType.REFERENCES, 0.1)
        await build_chain(repo, ["A", "B", "D"], weight=1.0)

        assert await repo.find_path("A", "D") == ["A", "D"]

    @pytest.mark.asyncio
    async def test_bfs_chain(self, test_settings):
        repo = GraphRepository(test_settings, path_strategy=PathStrategy.BFS)
        await build_chain(repo, ["A", "B", "C", "D"])

        assert await repo.find_path("A", "D") == ["A", "B", "C", "D"]


class TestPersistence:
    """Edge list on disk."""

    @pytest.mark.asyncio
    async def test_edges_survive_restart(self, graph, test_settings):
        await graph.add_relationship("a", "b", RelationshipType.PARENT, 0.7)

        reloaded = GraphRepository(test_settings)
        edges = await reloaded.get_relationships("a")
        assert {(e.source, e.target, e.type) for e in edges} == {
            ("a", "b", RelationshipType.PARENT),
            ("b", "a", RelationshipType.CHILD),
        }

    @pytest.mark.asyncio
    async def test_file_layout(self, graph, test_settings):
        await graph.add_relationship("a", "b", RelationshipType.SIMILAR, 0.5)

        data = json.loads(test_settings.get_graph_path().read_text())
        assert data == {"edges": [{"source": "a", "target": "b", "type": "similar", "weight": 0.5}]}

    @pytest.mark.asyncio
    async def test_corrupt_file_starts_empty(self, test_settings):
        test_settings.get_graph_path().write_text("{not json")

        repo = GraphRepository(test_settings)
        assert await repo.initialize() is True
        assert await repo.get_edge_count() == 0
