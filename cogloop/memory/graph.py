"""
In-Memory Graph Store — the reference memory backend.

Three layers of nodes (veridical facts, semantic concepts, episodic events)
joined by undirected edges. Queries are scored with word-overlap similarity
plus a few layer-specific signals carried in each node's fields and
metadata:

- veridical: immediacy, verification status, confidence
- semantic:  confidence, abstraction level, how well connected the node is
- episodic:  participants named in the hint, vividness, time words

A node only scores if it shares at least one content word with the hint;
the layer signals rank matches, they never create them.

Depth controls the search breadth: each unit of depth widens the candidate
window, and every level beyond the first follows one more hop of edges from
the direct matches. Results are always sorted by relevance then node id, so
an unchanged store answers the same query identically.

The store can be loaded from JSON and supports per-layer failure injection
and artificial latency, which the test-suite uses to exercise partial
failure and cancellation.
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Any, Iterable, Optional, Union

import structlog

from cogloop._utils import clamp01, content_overlap, content_words
from cogloop.types import LAYER_ORDER, MemoryLayer, MemoryNode, MemoryState, NodeRef

logger = structlog.get_logger(__name__)

CANDIDATES_PER_DEPTH = 5
HOP_DECAY = 0.5

_TIME_WORDS = (
    "morning", "afternoon", "evening", "night", "today", "yesterday",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "spring", "summer", "autumn", "winter", "week", "month", "year",
)


class GraphStoreError(RuntimeError):
    """A layer query could not be served."""


class InMemoryGraphStore:
    """
    Layer-partitioned node store with similarity-ranked lookup.

    Satisfies the ``MemoryGraphStore`` protocol (``query_layer`` and
    ``get_node``) and the optional ``MemoryStateSource`` capability.
    """

    def __init__(self, capacity: int = 10_000, working_set_capacity: int = 64):
        self._nodes: dict[str, MemoryNode] = {}
        self._capacity = max(1, int(capacity))
        self._working_set_capacity = max(1, int(working_set_capacity))
        self._working_set: dict[str, float] = {}
        self._failing_layers: set[MemoryLayer] = set()
        self._latency_seconds = 0.0
        self.query_count = 0

    # -------------------------------------------------------------------------
    # Population
    # -------------------------------------------------------------------------

    def add_node(self, node: MemoryNode) -> MemoryNode:
        self._nodes[node.node_id] = node
        return node

    def add_nodes(self, nodes: Iterable[MemoryNode]) -> None:
        for node in nodes:
            self.add_node(node)

    def add_edge(self, source_id: str, target_id: str) -> bool:
        """Link two stored nodes in both directions. Returns False if either is missing."""
        source = self._nodes.get(source_id)
        target = self._nodes.get(target_id)
        if source is None or target is None or source_id == target_id:
            logger.warning(
                "graph_store.edge_rejected",
                source=source_id,
                target=target_id,
            )
            return False
        if target_id not in source.connections:
            source.connections.append(target_id)
        if source_id not in target.connections:
            target.connections.append(source_id)
        return True

    @classmethod
    def from_dict(cls, data: Union[dict[str, Any], list[Any]], **kwargs: Any) -> "InMemoryGraphStore":
        """
        Build a store from ``{"nodes": [...], "edges": [[a, b], ...]}``.

        A bare list is read as the node list. Connections listed on a node are
        kept and mirrored once every node is loaded.
        """
        store = cls(**kwargs)
        if isinstance(data, list):
            raw_nodes, raw_edges = data, []
        else:
            raw_nodes = data.get("nodes", [])
            raw_edges = data.get("edges", [])
        for raw in raw_nodes:
            store.add_node(MemoryNode.from_dict(raw))
        for node in list(store._nodes.values()):
            for other in list(node.connections):
                if other in store._nodes:
                    store.add_edge(node.node_id, other)
        for edge in raw_edges:
            if isinstance(edge, dict):
                store.add_edge(str(edge.get("source")), str(edge.get("target")))
            else:
                source, target = edge
                store.add_edge(str(source), str(target))
        logger.info("graph_store.loaded", nodes=len(store._nodes))
        return store

    @classmethod
    def load_json(cls, path: Union[str, Path], **kwargs: Any) -> "InMemoryGraphStore":
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
        return cls.from_dict(data, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {"nodes": [node.to_dict() for node in self.all_nodes()]}

    # -------------------------------------------------------------------------
    # Test hooks
    # -------------------------------------------------------------------------

    def fail_layer(self, layer: MemoryLayer, failing: bool = True) -> None:
        if failing:
            self._failing_layers.add(layer)
        else:
            self._failing_layers.discard(layer)

    def set_latency(self, seconds: float) -> None:
        self._latency_seconds = max(0.0, float(seconds))

    # -------------------------------------------------------------------------
    # MemoryGraphStore protocol
    # -------------------------------------------------------------------------

    async def query_layer(self, layer: MemoryLayer, hint: str, depth: int) -> list[NodeRef]:
        self.query_count += 1
        if self._latency_seconds:
            await asyncio.sleep(self._latency_seconds)
        if layer in self._failing_layers:
            raise GraphStoreError(f"layer {layer.value} is unavailable")

        depth = max(1, int(depth))
        scored: dict[str, float] = {}
        for node in self._nodes.values():
            if node.layer is not layer:
                continue
            relevance = self.score_node(node, hint)
            if relevance > 0.0:
                scored[node.node_id] = relevance

        window = depth * CANDIDATES_PER_DEPTH
        frontier = _ranked(scored)[:window]

        # Extra depth follows edges from the current matches, within the layer.
        for hop in range(1, depth):
            next_frontier: list[tuple[str, float]] = []
            for node_id, relevance in frontier:
                for neighbour_id in sorted(self._nodes[node_id].connections):
                    neighbour = self._nodes.get(neighbour_id)
                    if neighbour is None or neighbour.layer is not layer:
                        continue
                    inherited = relevance * (HOP_DECAY ** hop)
                    if inherited > scored.get(neighbour_id, 0.0):
                        scored[neighbour_id] = inherited
                        next_frontier.append((neighbour_id, inherited))
            if not next_frontier:
                break
            frontier = next_frontier

        ranked = _ranked(scored)[:window]
        return [NodeRef(node_id=node_id, layer=layer, relevance=rel) for node_id, rel in ranked]

    async def get_node(self, node_id: str) -> Optional[MemoryNode]:
        node = self._nodes.get(node_id)
        if node is not None:
            self._touch(node_id)
        return node

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def score_node(self, node: MemoryNode, hint: str) -> float:
        """Relevance of one node to a hint, in [0, 1]. Zero without word overlap."""
        similarity = content_overlap(node.content, hint)
        if similarity <= 0.0:
            return 0.0
        meta = node.metadata
        if node.layer is MemoryLayer.VERIDICAL:
            relevance = (
                similarity * 0.4
                + clamp01(meta.get("immediacy", node.importance)) * 0.2
                + (0.2 if meta.get("verified") else 0.0)
                + node.confidence * 0.2
            )
        elif node.layer is MemoryLayer.SEMANTIC:
            abstraction = clamp01(float(meta.get("abstraction_level", 5)) / 10.0)
            relevance = (
                similarity * 0.45
                + node.confidence * 0.25
                + abstraction * 0.1
                + min(0.1, len(node.connections) * 0.02)
                + node.importance * 0.1
            )
        else:
            hint_words = content_words(hint)
            participant_bonus = 0.15 if any(
                p.lower() in hint_words for p in node.participants
            ) else 0.0
            hint_lower = hint.lower()
            node_lower = node.content.lower()
            temporal_bonus = 0.1 if any(
                word in hint_lower and word in node_lower for word in _TIME_WORDS
            ) else 0.0
            relevance = (
                similarity * 0.45
                + participant_bonus
                + clamp01(meta.get("vividness", node.importance)) * 0.15
                + abs(float(meta.get("emotional_valence", 0.0))) * 0.05
                + temporal_bonus
                + node.confidence * 0.1
            )
        return clamp01(relevance, default=0.0)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def memory_state(self) -> MemoryState:
        counts = {layer.value: 0 for layer in LAYER_ORDER}
        for node in self._nodes.values():
            counts[node.layer.value] += 1
        return MemoryState(
            layer_counts=counts,
            working_set_size=len(self._working_set),
            load_factor=clamp01(len(self._nodes) / self._capacity, default=0.0),
        )

    def all_nodes(self) -> list[MemoryNode]:
        return sorted(self._nodes.values(), key=lambda n: (LAYER_ORDER.index(n.layer), n.node_id))

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def _touch(self, node_id: str) -> None:
        self._working_set[node_id] = time.monotonic()
        if len(self._working_set) > self._working_set_capacity:
            oldest = min(self._working_set, key=self._working_set.__getitem__)
            del self._working_set[oldest]


def _ranked(scored: dict[str, float]) -> list[tuple[str, float]]:
    return sorted(scored.items(), key=lambda item: (-item[1], item[0]))
