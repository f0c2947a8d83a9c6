"""
Relationship Graph Repository - Typed, weighted edges between contexts.

This module provides:
- A directed multigraph keyed by (source, target, type), persisted as one
  JSON document: {"edges": [...]}
- Reciprocal PARENT/CHILD edges, inserted exactly once per write
- Shortest paths (networkx Dijkstra with cost = 1/weight, or plain BFS)
- Connected components of the undirected view

Writes go through a single lock and are rolled back in memory if the
file rewrite fails.
"""

import asyncio
import json
import logging
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import aiofiles
import aiofiles.os
import networkx as nx
from pydantic import ValidationError

from .config import PathStrategy, Settings
from .lifecycle import OneShotInitializer
from .models import ContextEdge, Direction, RelationshipType
from .store import write_document

logger = logging.getLogger(__name__)

RECIPROCAL_TYPES = {
    RelationshipType.PARENT: RelationshipType.CHILD,
    RelationshipType.CHILD: RelationshipType.PARENT,
}

# Below this similarity an inferred SIMILAR edge is not worth keeping
MIN_SIMILARITY_EDGE = 0.3


class GraphRepository:
    """
    File-backed relationship graph.

    Usage:
        graph = GraphRepository(settings)
        await graph.add_relationship("ctx-a", "ctx-b", RelationshipType.PARENT, 0.9)
        path = await graph.find_path("ctx-a", "ctx-b")
    """

    def __init__(
        self,
        settings: Settings,
        graph_path: Optional[Union[str, Path]] = None,
        path_strategy: Optional[PathStrategy] = None
    ):
        self.settings = settings
        self.graph_path = Path(graph_path) if graph_path else settings.get_graph_path()
        self.path_strategy = PathStrategy(path_strategy or settings.graph_path_strategy)
        self.edges: List[ContextEdge] = []
        self._lock = asyncio.Lock()
        self._init = OneShotInitializer("graph", self._load)

    async def _load(self) -> None:
        """Read the edge list. A corrupt file yields an empty graph."""
        if not await aiofiles.os.path.exists(self.graph_path):
            self.edges = []
            return

        async with aiofiles.open(self.graph_path, "r", encoding="utf-8") as f:
            content = await f.read()

        try:
            data = json.loads(content)
            self.edges = [ContextEdge.model_validate(e) for e in data.get("edges", [])]
        except (ValueError, ValidationError, AttributeError) as e:
            logger.error(f"Corrupt graph file {self.graph_path}, starting empty: {e}")
            self.edges = []
            return

        logger.info(f"Loaded {len(self.edges)} graph edges")

    async def _save(self) -> None:
        payload = json.dumps({
            "edges": [
                e.model_dump(mode="json", by_alias=True, exclude_none=True)
                for e in self.edges
            ]
        }, indent=2)
        await write_document(self.graph_path, payload)

    async def initialize(self) -> bool:
        return await self._init.ensure()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _upsert_edge(
        self,
        source: str,
        target: str,
        rel_type: RelationshipType,
        weight: float,
        metadata: Optional[Dict[str, Any]]
    ) -> None:
        """Insert or replace one edge. Never creates a reciprocal."""
        edge = ContextEdge(source=source, target=target, type=rel_type, weight=weight, metadata=metadata)
        for i, existing in enumerate(self.edges):
            if existing.key == edge.key:
                self.edges[i] = edge
                return
        self.edges.append(edge)

    async def add_relationship(
        self,
        source: str,
        target: str,
        rel_type: RelationshipType,
        weight: float,
        metadata: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Add or update a typed edge.

        Self-loops are ignored. Weight is clamped to [0, 1]. PARENT and CHILD
        edges get their reciprocal with the same weight.

        Args:
            source: Source context ID
            target: Target context ID
            rel_type: Relationship type
            weight: Edge strength
            metadata: Optional extra data stored on the edge

        Returns:
            True if the graph changed, False for a self-loop or unavailable graph.
        """
        if source == target:
            return False
        if not await self._init.ensure():
            return False

        rel_type = RelationshipType(rel_type)

        async with self._lock:
            snapshot = list(self.edges)
            self._upsert_edge(source, target, rel_type, weight, metadata)

            reciprocal = RECIPROCAL_TYPES.get(rel_type)
            if reciprocal is not None:
                self._upsert_edge(target, source, reciprocal, weight, metadata)

            try:
                await self._save()
            except Exception:
                self.edges = snapshot
                raise

        logger.debug(f"Added {rel_type.value} relationship {source} -> {target}")
        return True

    async def add_similarity_relationship(self, context_a: str, context_b: str, similarity: float) -> bool:
        """Record a SIMILAR edge when the similarity is meaningful (> 0.3)."""
        if similarity <= MIN_SIMILARITY_EDGE:
            return False
        return await self.add_relationship(context_a, context_b, RelationshipType.SIMILAR, similarity)

    async def remove_context(self, context_id: str) -> int:
        """
        Delete every edge touching a context.

        Returns:
            Number of edges removed.
        """
        if not await self._init.ensure():
            return 0

        async with self._lock:
            snapshot = self.edges
            kept = [e for e in self.edges if e.source != context_id and e.target != context_id]
            removed = len(snapshot) - len(kept)
            if not removed:
                return 0

            self.edges = kept
            try:
                await self._save()
            except Exception:
                self.edges = snapshot
                raise

        logger.debug(f"Removed {removed} edges for {context_id}")
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_relationships(
        self,
        context_id: str,
        direction: Direction = Direction.BOTH
    ) -> List[ContextEdge]:
        if not await self._init.ensure():
            return []

        direction = Direction(direction)
        results = []
        for edge in self.edges:
            outgoing = edge.source == context_id
            incoming = edge.target == context_id
            if direction is Direction.OUTGOING and outgoing:
                results.append(edge)
            elif direction is Direction.INCOMING and incoming:
                results.append(edge)
            elif direction is Direction.BOTH and (outgoing or incoming):
                results.append(edge)
        return results

    async def get_related_contexts(
        self,
        context_id: str,
        rel_type: Optional[RelationshipType] = None,
        direction: Direction = Direction.BOTH
    ) -> List[str]:
        """
        Context IDs connected to `context_id`, de-duplicated in edge order.

        Args:
            context_id: Context to look around
            rel_type: Only edges of this type (all types if None)
            direction: Which side of the edge `context_id` must be on
        """
        edges = await self.get_relationships(context_id, direction)
        if rel_type is not None:
            rel_type = RelationshipType(rel_type)
            edges = [e for e in edges if e.type is rel_type]

        related: List[str] = []
        for edge in edges:
            other = edge.target if edge.source == context_id else edge.source
            if other != context_id and other not in related:
                related.append(other)
        return related

    async def get_all_contexts(self) -> List[str]:
        if not await self._init.ensure():
            return []

        contexts: List[str] = []
        seen: Set[str] = set()
        for edge in self.edges:
            for node in (edge.source, edge.target):
                if node not in seen:
                    seen.add(node)
                    contexts.append(node)
        return contexts

    async def get_edge_count(self) -> int:
        if not await self._init.ensure():
            return 0
        return len(self.edges)

    async def find_path(self, source: str, target: str) -> List[str]:
        """
        Shortest path from `source` to `target` following edge direction.

        Returns:
            Context IDs from source to target inclusive, [source] when equal,
            or [] when unreachable or the graph has no edges.
        """
        if source == target:
            return [source]
        if not await self._init.ensure() or not self.edges:
            return []

        if self.path_strategy is PathStrategy.WEIGHTED:
            try:
                return self._weighted_path(source, target)
            except nx.NetworkXException as e:
                logger.warning(f"Weighted path search failed, using BFS: {e}")

        return self._bfs_path(source, target)

    def _weighted_path(self, source: str, target: str) -> List[str]:
        graph = nx.DiGraph()
        for edge in self.edges:
            if edge.weight <= 0:
                continue
            cost = 1.0 / edge.weight
            # Parallel edges of different types collapse to the cheapest
            if graph.has_edge(edge.source, edge.target):
                cost = min(cost, graph[edge.source][edge.target]["cost"])
            graph.add_edge(edge.source, edge.target, cost=cost)

        if source not in graph or target not in graph:
            return []

        try:
            return nx.dijkstra_path(graph, source, target, weight="cost")
        except nx.NetworkXNoPath:
            return []

    def _bfs_path(self, source: str, target: str) -> List[str]:
        adjacency: Dict[str, List[str]] = {}
        for edge in self.edges:
            adjacency.setdefault(edge.source, []).append(edge.target)

        previous: Dict[str, Optional[str]] = {source: None}
        queue = deque([source])
        while queue:
            node = queue.popleft()
            if node == target:
                path = []
                current: Optional[str] = node
                while current is not None:
                    path.append(current)
                    current = previous[current]
                return list(reversed(path))

            for neighbor in adjacency.get(node, []):
                if neighbor not in previous:
                    previous[neighbor] = node
                    queue.append(neighbor)

        return []

    async def find_communities(self) -> List[List[str]]:
        """
        Connected components of the undirected view.

        Returns:
            Groups of context IDs, in order of first appearance.
        """
        if not await self._init.ensure():
            return []

        neighbors: Dict[str, List[str]] = {}
        for edge in self.edges:
            neighbors.setdefault(edge.source, []).append(edge.target)
            neighbors.setdefault(edge.target, []).append(edge.source)

        visited: Set[str] = set()
        communities = []
        for start in neighbors:
            if start in visited:
                continue

            component = []
            visited.add(start)
            queue = deque([start])
            while queue:
                node = queue.popleft()
                component.append(node)
                for neighbor in neighbors[node]:
                    if neighbor not in visited:
                        visited.add(neighbor)
                        queue.append(neighbor)
            communities.append(component)

        return communities
