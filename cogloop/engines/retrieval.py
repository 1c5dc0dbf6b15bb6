"""
Retrieval Engine — ranks probe hits into a bounded retrieval set.

Hits below the relevance threshold are dropped. The rest are chosen greedily
by a composite score:

    relevance * 0.5
      + diversity  * diversity_weight   (new layer bonus, dissimilar content)
      + recency    * recency_weight     (linear decay over the horizon)
      + importance * importance_weight
      + strength   * 0.1                (connectedness and confidence)

Diversity is measured against what has already been picked, so each pick
is the best remaining candidate given the previous ones. Ties break on node
id, which keeps the selection reproducible for identical inputs.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

import structlog

from cogloop.config import RetrievalConfig
from cogloop._utils import clamp01, content_words
from cogloop.protocols import MemoryGraphStore
from cogloop.types import (
    LAYER_ORDER,
    MemoryLayer,
    MemoryNode,
    NodeRef,
    ProbeResult,
    RetrievalResult,
    RetrievedNode,
)

logger = structlog.get_logger(__name__)

RELEVANCE_WEIGHT = 0.5
STRENGTH_WEIGHT = 0.1
_DAY_SECONDS = 24 * 60 * 60


def _jaccard(words_a: frozenset[str], words_b: frozenset[str]) -> float:
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def node_strength(node: MemoryNode) -> float:
    return (min(1.0, len(node.connections) * 0.1) + node.confidence) / 2.0


class _Candidate:
    __slots__ = ("node", "relevance", "words", "static_score", "min_similarity")

    def __init__(self, node: MemoryNode, relevance: float, static_score: float):
        self.node = node
        self.relevance = relevance
        self.words = frozenset(content_words(node.content))
        self.static_score = static_score
        self.min_similarity = 1.0


class RetrievalEngine:
    """Composite-score ranking over probe hits."""

    def __init__(
        self,
        store: MemoryGraphStore,
        config: Optional[RetrievalConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._config = config or RetrievalConfig()
        self._clock = clock

    async def retrieve_from_probe_result(
        self,
        probe_result: ProbeResult,
        max_nodes: int,
    ) -> RetrievalResult:
        """Select at most ``max_nodes`` nodes. Empty input gives an empty result."""
        refs = self._dedupe(probe_result)
        if not refs or max_nodes < 1:
            return RetrievalResult.empty()

        nodes = await asyncio.gather(*(self._store.get_node(ref.node_id) for ref in refs))
        now = self._clock()
        candidates: list[_Candidate] = []
        for ref, node in zip(refs, nodes):
            if node is None:
                logger.debug("retrieval_engine.node_missing", node_id=ref.node_id)
                continue
            candidates.append(_Candidate(node, ref.relevance, self._static_score(node, ref, now)))

        selected = self._select(candidates, max_nodes)
        retrieved = tuple(RetrievedNode(node=c.node, relevance=c.relevance) for c in selected)

        distribution: dict[MemoryLayer, int] = {}
        for item in retrieved:
            distribution[item.node.layer] = distribution.get(item.node.layer, 0) + 1

        result = RetrievalResult(
            retrieved=retrieved,
            total_relevance=sum(item.relevance for item in retrieved),
            layer_distribution={layer: distribution[layer] for layer in LAYER_ORDER if layer in distribution},
            context=build_context(retrieved),
        )
        logger.debug(
            "retrieval_engine.completed",
            candidates=len(candidates),
            retrieved=len(retrieved),
            total_relevance=round(result.total_relevance, 4),
        )
        return result

    def _dedupe(self, probe_result: ProbeResult) -> list[NodeRef]:
        best: dict[str, NodeRef] = {}
        threshold = self._config.relevance_threshold
        for ref in probe_result.iter_refs():
            if ref.relevance < threshold:
                continue
            current = best.get(ref.node_id)
            if current is None or ref.relevance > current.relevance:
                best[ref.node_id] = ref
        return sorted(best.values(), key=lambda ref: ref.node_id)

    def _static_score(self, node: MemoryNode, ref: NodeRef, now: float) -> float:
        age_days = max(0.0, now - node.updated_at) / _DAY_SECONDS
        recency = max(0.0, 1.0 - age_days / self._config.recency_horizon_days)
        return (
            ref.relevance * RELEVANCE_WEIGHT
            + recency * self._config.recency_weight
            + clamp01(node.importance) * self._config.importance_weight
            + node_strength(node) * STRENGTH_WEIGHT
        )

    def _select(self, candidates: list[_Candidate], max_nodes: int) -> list[_Candidate]:
        selected: list[_Candidate] = []
        layers_seen: set[MemoryLayer] = set()
        remaining = list(candidates)
        weight = self._config.diversity_weight

        while remaining and len(selected) < max_nodes:
            best_index = -1
            best_key: tuple[float, str] | None = None
            for index, candidate in enumerate(remaining):
                if selected:
                    layer_bonus = 0.0 if candidate.node.layer in layers_seen else 0.3
                    diversity = layer_bonus + (1.0 - candidate.min_similarity) * 0.7
                else:
                    diversity = 1.0
                score = candidate.static_score + diversity * weight
                key = (-score, candidate.node.node_id)
                if best_key is None or key < best_key:
                    best_key = key
                    best_index = index

            chosen = remaining.pop(best_index)
            selected.append(chosen)
            layers_seen.add(chosen.node.layer)
            for candidate in remaining:
                similarity = _jaccard(candidate.words, chosen.words)
                if similarity < candidate.min_similarity:
                    candidate.min_similarity = similarity

        return selected


def build_context(retrieved: tuple[RetrievedNode, ...]) -> str:
    """Retrieved content grouped by layer, each line tagged with its relevance."""
    grouped: dict[MemoryLayer, list[str]] = {}
    for item in retrieved:
        grouped.setdefault(item.node.layer, []).append(
            f"{item.node.content} (relevance: {item.relevance:.2f})"
        )
    sections = [
        f"{layer.value.capitalize()} Layer:\n" + "\n".join(grouped[layer])
        for layer in LAYER_ORDER
        if layer in grouped
    ]
    return "\n\n".join(sections)
