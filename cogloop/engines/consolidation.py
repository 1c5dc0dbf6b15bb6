"""
Consolidation Engine — one scored summary from reasoning, retrieval and fusion.

The retrieved nodes are sorted by layer into facts, concepts and
experiences. The knowledge text leads with the reasoning chain, then lists
the strongest evidence from each layer and the cross-layer links fusion
found. Insights are short observations about the shape of the evidence
(how many layers it spans, how trustworthy it is, whether it leans on facts
or concepts).

Confidence:

    0.3 * reasoning confidence
  + 0.4 * mean retrieval relevance
  + 0.2 * fusion density   (mean fusion confidence * accepted links per node, capped at 1)
  + insight bonus          (0.01 per supportive insight, at most 0.05)
  + layer diversity bonus  (0.05 / 3 per layer engaged)

clamped to [0, 1]. Every term is non-decreasing in the input it reads.
"""

from __future__ import annotations

from itertools import combinations
from typing import Optional, Sequence

import structlog

from cogloop.config import ConsolidationConfig
from cogloop._utils import clamp01, content_overlap
from cogloop.types import (
    LAYER_ORDER,
    ConsolidationResult,
    FusionResult,
    MemoryLayer,
    MemoryNode,
    ReasoningResult,
    RetrievalResult,
)

logger = structlog.get_logger(__name__)

REASONING_WEIGHT = 0.3
RETRIEVAL_WEIGHT = 0.4
FUSION_WEIGHT = 0.2
INSIGHT_BONUS_PER = 0.01
INSIGHT_BONUS_CAP = 0.05
LAYER_BONUS_CAP = 0.05
STRENGTHEN_OVERLAP = 0.5

LOW_CONFIDENCE_INSIGHT = "Low confidence memories suggest need for additional verification"
# Warnings about the evidence earn no insight bonus.
CAUTIONARY_INSIGHTS = frozenset({LOW_CONFIDENCE_INSIGHT})


def node_confidence(node: MemoryNode) -> float:
    if node.layer is MemoryLayer.VERIDICAL and node.metadata.get("verified"):
        return 1.0
    return clamp01(node.confidence)


def fusion_density(fusion: FusionResult, node_count: int) -> float:
    if not fusion.connections or node_count < 1:
        return 0.0
    return fusion.quality_score * min(1.0, fusion.fusion_count / node_count)


def consolidation_confidence(
    reasoning_confidence: float,
    retrieval: RetrievalResult,
    fusion: FusionResult,
    insight_count: int,
) -> float:
    layers_engaged = sum(1 for count in retrieval.layer_distribution.values() if count > 0)
    score = (
        clamp01(reasoning_confidence, default=0.0) * REASONING_WEIGHT
        + retrieval.mean_relevance * RETRIEVAL_WEIGHT
        + fusion_density(fusion, len(retrieval.retrieved)) * FUSION_WEIGHT
        + min(INSIGHT_BONUS_CAP, insight_count * INSIGHT_BONUS_PER)
        + min(LAYER_BONUS_CAP, layers_engaged * LAYER_BONUS_CAP / len(LAYER_ORDER))
    )
    return clamp01(score, default=0.0)


class ConsolidationEngine:
    """Merges the three phase outputs into a ``ConsolidationResult``."""

    def __init__(self, config: Optional[ConsolidationConfig] = None):
        self._config = config or ConsolidationConfig()

    def consolidate_knowledge(
        self,
        reasoning: ReasoningResult,
        retrieval: RetrievalResult,
        fusion_result: FusionResult,
    ) -> ConsolidationResult:
        nodes = retrieval.retrieved_nodes
        by_layer: dict[MemoryLayer, list[MemoryNode]] = {layer: [] for layer in LAYER_ORDER}
        for node in nodes:
            by_layer[node.layer].append(node)
        mean_node_confidence = (
            sum(node_confidence(n) for n in nodes) / len(nodes) if nodes else 0.0
        )

        knowledge = self._integrate(reasoning, by_layer, fusion_result, nodes, mean_node_confidence)
        insights: tuple[str, ...] = ()
        if self._config.insights_enabled:
            insights = self._insights(by_layer, fusion_result, nodes, mean_node_confidence)

        supportive = [insight for insight in insights if insight not in CAUTIONARY_INSIGHTS]
        confidence = consolidation_confidence(
            reasoning.confidence, retrieval, fusion_result, len(supportive)
        )
        result = ConsolidationResult(
            fused_connections=fusion_result.connections,
            consolidation_confidence=confidence,
            consolidated_knowledge=knowledge,
            insights=insights,
            strengthened_connections=strengthened_pairs(nodes),
        )
        logger.debug(
            "consolidation_engine.completed",
            nodes=len(nodes),
            fusions=fusion_result.fusion_count,
            insights=len(insights),
            confidence=round(confidence, 4),
        )
        return result

    def _integrate(
        self,
        reasoning: ReasoningResult,
        by_layer: dict[MemoryLayer, list[MemoryNode]],
        fusion: FusionResult,
        nodes: Sequence[MemoryNode],
        mean_node_confidence: float,
    ) -> str:
        parts = [f"Reasoning: {reasoning.reasoning}"]
        sections = (
            (MemoryLayer.VERIDICAL, "Supporting Facts", 3),
            (MemoryLayer.SEMANTIC, "Related Concepts", 3),
            (MemoryLayer.EPISODIC, "Relevant Experiences", 2),
        )
        for layer, title, limit in sections:
            contents = [node.content for node in by_layer[layer][:limit]]
            if contents:
                parts.append(f"{title}: " + "; ".join(contents))

        content_by_id = {node.node_id: node.content for node in nodes}
        links = [
            " <-> ".join(content_by_id.get(node_id, node_id) for node_id in connection.node_ids)
            for connection in fusion.connections
            if connection.is_cross_layer
        ][:2]
        if links:
            parts.append("Cross-layer Links: " + "; ".join(links))

        parts.append(f"Memory Confidence: {mean_node_confidence * 100:.1f}%")
        return "\n\n".join(parts)

    def _insights(
        self,
        by_layer: dict[MemoryLayer, list[MemoryNode]],
        fusion: FusionResult,
        nodes: Sequence[MemoryNode],
        mean_node_confidence: float,
    ) -> tuple[str, ...]:
        if not nodes:
            return ()
        insights: list[str] = []
        if all(by_layer[layer] for layer in LAYER_ORDER):
            insights.append(
                "Multi-layer pattern identified across veridical, semantic, and episodic memories"
            )
        if mean_node_confidence > 0.8:
            insights.append("High confidence knowledge base supports strong conclusions")
        elif mean_node_confidence < 0.5:
            insights.append(LOW_CONFIDENCE_INSIGHT)
        if sum(1 for c in fusion.connections if c.is_cross_layer) > 2:
            insights.append("Strong cross-layer connections indicate integrated understanding")

        facts = len(by_layer[MemoryLayer.VERIDICAL])
        concepts = len(by_layer[MemoryLayer.SEMANTIC])
        if facts > concepts * 2:
            insights.append("Fact-heavy recall pattern suggests concrete thinking mode")
        elif concepts > facts * 2:
            insights.append("Concept-heavy recall pattern suggests abstract thinking mode")
        if by_layer[MemoryLayer.EPISODIC]:
            insights.append("Personal experiences provide contextual grounding for abstract concepts")
        return tuple(insights[: self._config.max_insights])


def strengthened_pairs(nodes: Sequence[MemoryNode]) -> tuple[tuple[str, str], ...]:
    """Retrieved pairs whose content overlaps enough to reinforce their edge."""
    pairs = []
    for first, second in combinations(nodes, 2):
        if content_overlap(first.content, second.content) > STRENGTHEN_OVERLAP:
            pairs.append(tuple(sorted((first.node_id, second.node_id))))
    return tuple(sorted(set(pairs)))
