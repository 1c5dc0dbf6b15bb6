"""
Fusion Engine — links retrieved nodes that belong together.

Five deterministic generators propose candidate pairs:

- cross-layer: nodes from different layers with similar content
- temporal:    episodic events sharing time context (or the same day)
- causal:      pairs whose text uses causal connectives
- analogical:  semantic concepts that overlap moderately, not almost fully
- conceptual:  pairs sharing graph neighbours as well as vocabulary

A ``FusionScorer`` turns each candidate into a score. Only candidates at or
above the fusion threshold become connections. When several generators
propose the same pair, the highest-scoring kind wins. The engine never draws
random numbers, so a fixed node set always produces the same connections.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from itertools import combinations
from typing import Iterator, Optional, Sequence

import structlog

from cogloop.config import FusionConfig
from cogloop._utils import clamp01, content_overlap
from cogloop.protocols import FusionScorer
from cogloop.types import (
    LAYER_ORDER,
    FusedConnection,
    FusionKind,
    FusionResult,
    MemoryLayer,
    MemoryNode,
    ReasoningTrajectory,
)

logger = structlog.get_logger(__name__)

CROSS_LAYER_SIMILARITY = 0.4
TEMPORAL_SIMILARITY = 0.5
CAUSAL_SCORE = 0.6
CONCEPTUAL_SCORE = 0.5

CAUSAL_KEYWORDS = ("because", "therefore", "causes", "leads to", "results in", "due to", "since")

# Kind order doubles as the tie-break when two kinds score a pair equally.
_KIND_ORDER = (
    FusionKind.CROSS_LAYER,
    FusionKind.TEMPORAL,
    FusionKind.CAUSAL,
    FusionKind.ANALOGICAL,
    FusionKind.CONCEPTUAL,
)

BASE_NOVELTY = {
    FusionKind.CROSS_LAYER: 1.0,
    FusionKind.TEMPORAL: 0.7,
    FusionKind.CAUSAL: 0.8,
    FusionKind.ANALOGICAL: 0.9,
    FusionKind.CONCEPTUAL: 0.6,
}


@dataclass(frozen=True)
class FusionCandidate:
    first: MemoryNode
    second: MemoryNode
    kind: FusionKind
    similarity: float

    @property
    def pair(self) -> tuple[str, str]:
        return (self.first.node_id, self.second.node_id)


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def connection_strength(first: MemoryNode, second: MemoryNode) -> float:
    total = len(first.connections) + len(second.connections)
    if not total:
        return 0.0
    shared = len(set(first.connections) & set(second.connections))
    return shared / total


class HeuristicFusionScorer:
    """
    coherence * 0.4 + novelty * 0.3 + importance * 0.3

    Coherence averages content similarity, layer compatibility (cross-layer
    pairs are worth more) and the share of graph neighbours the pair has in
    common.
    """

    def __init__(self, config: Optional[FusionConfig] = None):
        config = config or FusionConfig()
        self._coherence_weight = config.coherence_weight
        self._novelty_weight = config.novelty_weight
        self._importance_weight = config.importance_weight

    def score(
        self,
        first: MemoryNode,
        second: MemoryNode,
        kind: FusionKind,
        similarity: float,
    ) -> float:
        layer_compatibility = 0.8 if first.layer is not second.layer else 0.5
        coherence = (
            clamp01(similarity, default=0.0)
            + layer_compatibility
            + connection_strength(first, second)
        ) / 3.0
        if kind is FusionKind.CAUSAL:
            importance = max(first.importance, second.importance)
        else:
            importance = (first.importance + second.importance) / 2.0
        return clamp01(
            coherence * self._coherence_weight
            + BASE_NOVELTY[kind] * self._novelty_weight
            + clamp01(importance) * self._importance_weight,
            default=0.0,
        )


# ---------------------------------------------------------------------------
# Candidate generators
# ---------------------------------------------------------------------------

def _ordered(a: MemoryNode, b: MemoryNode) -> tuple[MemoryNode, MemoryNode]:
    return (a, b) if a.node_id <= b.node_id else (b, a)


def cross_layer_candidates(nodes: Sequence[MemoryNode], per_layer: int) -> Iterator[FusionCandidate]:
    by_layer: dict[MemoryLayer, list[MemoryNode]] = {}
    for node in nodes:
        by_layer.setdefault(node.layer, []).append(node)
    layers = [layer for layer in LAYER_ORDER if layer in by_layer]
    for layer_a, layer_b in combinations(layers, 2):
        for node_a in by_layer[layer_a][:per_layer]:
            for node_b in by_layer[layer_b][:per_layer]:
                similarity = content_overlap(node_a.content, node_b.content)
                if similarity > CROSS_LAYER_SIMILARITY:
                    first, second = _ordered(node_a, node_b)
                    yield FusionCandidate(first, second, FusionKind.CROSS_LAYER, similarity)


def temporal_similarity(first: MemoryNode, second: MemoryNode) -> float:
    meta_a, meta_b = first.metadata, second.metadata
    score = 0.0
    matched_any = False
    for key, weight in (("time_of_day", 0.3), ("day_of_week", 0.2), ("season", 0.1), ("relative_time", 0.4)):
        if key in meta_a and key in meta_b:
            matched_any = True
            if str(meta_a[key]).lower() == str(meta_b[key]).lower():
                score += weight
    if matched_any:
        return score
    day_a = dt.datetime.fromtimestamp(first.created_at, tz=dt.timezone.utc).date()
    day_b = dt.datetime.fromtimestamp(second.created_at, tz=dt.timezone.utc).date()
    return 0.6 if day_a == day_b else 0.0


def temporal_candidates(nodes: Sequence[MemoryNode]) -> Iterator[FusionCandidate]:
    episodic = [n for n in nodes if n.layer is MemoryLayer.EPISODIC]
    for node_a, node_b in combinations(episodic, 2):
        if temporal_similarity(node_a, node_b) > TEMPORAL_SIMILARITY:
            first, second = _ordered(node_a, node_b)
            yield FusionCandidate(
                first, second, FusionKind.TEMPORAL, content_overlap(first.content, second.content)
            )


def causal_score(text_a: str, text_b: str) -> float:
    lowered_a, lowered_b = text_a.lower(), text_b.lower()
    hits = sum(1 for kw in CAUSAL_KEYWORDS if kw in lowered_a or kw in lowered_b)
    return min(1.0, hits * 0.2)


def causal_candidates(nodes: Sequence[MemoryNode]) -> Iterator[FusionCandidate]:
    for node_a, node_b in combinations(nodes, 2):
        score = causal_score(node_a.content, node_b.content)
        if score > CAUSAL_SCORE:
            first, second = _ordered(node_a, node_b)
            yield FusionCandidate(first, second, FusionKind.CAUSAL, score)


def analogical_candidates(nodes: Sequence[MemoryNode]) -> Iterator[FusionCandidate]:
    semantic = [n for n in nodes if n.layer is MemoryLayer.SEMANTIC]
    for node_a, node_b in combinations(semantic, 2):
        kind_a = node_a.metadata.get("concept_type")
        kind_b = node_b.metadata.get("concept_type")
        if kind_a != kind_b:
            continue
        similarity = content_overlap(node_a.content, node_b.content)
        if 0.2 < similarity < 0.8:
            first, second = _ordered(node_a, node_b)
            yield FusionCandidate(first, second, FusionKind.ANALOGICAL, 0.6)


def conceptual_score(first: MemoryNode, second: MemoryNode) -> float:
    shared = len(set(first.connections) & set(second.connections))
    return (shared * 0.1 + content_overlap(first.content, second.content)) / 2.0


def conceptual_candidates(nodes: Sequence[MemoryNode]) -> Iterator[FusionCandidate]:
    for node_a, node_b in combinations(nodes, 2):
        score = conceptual_score(node_a, node_b)
        if score > CONCEPTUAL_SCORE:
            first, second = _ordered(node_a, node_b)
            yield FusionCandidate(first, second, FusionKind.CONCEPTUAL, clamp01(score, default=0.0))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class FusionEngine:
    """Threshold-gated fusion over a retrieval set."""

    def __init__(
        self,
        fusion_threshold: float = 0.7,
        config: Optional[FusionConfig] = None,
        scorer: Optional[FusionScorer] = None,
    ):
        self._threshold = fusion_threshold
        self._config = config or FusionConfig()
        self._scorer = scorer or HeuristicFusionScorer(self._config)

    @property
    def fusion_threshold(self) -> float:
        return self._threshold

    def generate_candidates(self, nodes: Sequence[MemoryNode]) -> list[FusionCandidate]:
        candidates: list[FusionCandidate] = []
        candidates.extend(cross_layer_candidates(nodes, self._config.max_nodes_per_layer_pairing))
        candidates.extend(temporal_candidates(nodes))
        candidates.extend(causal_candidates(nodes))
        candidates.extend(analogical_candidates(nodes))
        candidates.extend(conceptual_candidates(nodes))
        return candidates

    def identify_and_create_fusions(
        self,
        retrieved_nodes: Sequence[MemoryNode],
        trajectory: Optional[ReasoningTrajectory] = None,
    ) -> FusionResult:
        """Accept every candidate scoring at or above the threshold, best first, capped."""
        # Duplicate node ids would fuse a node with itself.
        unique: dict[str, MemoryNode] = {}
        for node in retrieved_nodes:
            unique.setdefault(node.node_id, node)
        nodes = list(unique.values())
        if len(nodes) < 2:
            return FusionResult()

        candidates = self.generate_candidates(nodes)
        best: dict[tuple[str, str], tuple[float, FusionCandidate]] = {}
        for candidate in candidates:
            score = self._scorer.score(
                candidate.first, candidate.second, candidate.kind, candidate.similarity
            )
            if score < self._threshold:
                continue
            current = best.get(candidate.pair)
            if current is None or score > current[0] or (
                score == current[0]
                and _KIND_ORDER.index(candidate.kind) < _KIND_ORDER.index(current[1].kind)
            ):
                best[candidate.pair] = (score, candidate)

        ranked = sorted(best.values(), key=lambda item: (-item[0], item[1].pair))
        accepted = tuple(
            FusedConnection(
                node_ids=candidate.pair,
                kind=candidate.kind,
                confidence=score,
                layers=(candidate.first.layer, candidate.second.layer),
            )
            for score, candidate in ranked[: self._config.max_fusions_per_operation]
        )

        logger.debug(
            "fusion_engine.completed",
            nodes=len(nodes),
            candidates=len(candidates),
            accepted=len(accepted),
            trajectory=trajectory.trajectory_id if trajectory else None,
        )
        return FusionResult(connections=accepted, candidates_considered=len(candidates))
