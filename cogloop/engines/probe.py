"""
Probe Engine — turns trajectories into per-layer memory lookups.

Every reasoning step becomes a probe query with a type derived from its
kind. Each memory layer is then queried once per trajectory, with a hint
assembled from the queries whose type suits that layer (integrative queries
suit every layer, so the user's question always reaches all three).

Hits from all trajectories are merged per layer, deduplicated by node id
keeping the highest relevance, filtered by the relevance threshold, capped,
and ordered by relevance then node id. A layer whose lookup raises
contributes no hits; if every layer that was queried raises, the probe
fails.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence

import structlog

from cogloop.config import ProbeConfig
from cogloop.errors import ProbeFailed
from cogloop.protocols import MemoryGraphStore
from cogloop.types import (
    LAYER_ORDER,
    MemoryLayer,
    NodeRef,
    ProbeResult,
    ReasoningStep,
    ReasoningTrajectory,
    StepKind,
)

logger = structlog.get_logger(__name__)

_EXPERIENCE_WORDS = ("remember", "experience", "happened", "felt", "event", "when i")
_STEP_PREFIXES = ("analyzing query:",)


class ProbeQueryType(str, Enum):
    FACTUAL = "factual"
    CONCEPTUAL = "conceptual"
    EXPERIENTIAL = "experiential"
    INTEGRATIVE = "integrative"


_KIND_TO_TYPE = {
    StepKind.INITIAL: ProbeQueryType.INTEGRATIVE,
    StepKind.INFERENCE: ProbeQueryType.CONCEPTUAL,
    StepKind.RETRIEVAL: ProbeQueryType.FACTUAL,
    StepKind.CONSOLIDATION: ProbeQueryType.INTEGRATIVE,
    StepKind.EXPLORATION: ProbeQueryType.INTEGRATIVE,
    StepKind.CORRECTION: ProbeQueryType.CONCEPTUAL,
    StepKind.FINAL: ProbeQueryType.INTEGRATIVE,
}

LAYER_AFFINITY: dict[MemoryLayer, frozenset[ProbeQueryType]] = {
    MemoryLayer.VERIDICAL: frozenset({ProbeQueryType.FACTUAL, ProbeQueryType.INTEGRATIVE}),
    MemoryLayer.SEMANTIC: frozenset({ProbeQueryType.CONCEPTUAL, ProbeQueryType.INTEGRATIVE}),
    MemoryLayer.EPISODIC: frozenset({ProbeQueryType.EXPERIENTIAL, ProbeQueryType.INTEGRATIVE}),
}


@dataclass(frozen=True)
class ProbeQuery:
    text: str
    query_type: ProbeQueryType


def probe_query_for(step: ReasoningStep) -> ProbeQuery:
    text = step.content.strip()
    lowered = text.lower()
    for prefix in _STEP_PREFIXES:
        if lowered.startswith(prefix):
            text = text[len(prefix):].strip()
            lowered = text.lower()
    query_type = _KIND_TO_TYPE.get(step.kind, ProbeQueryType.INTEGRATIVE)
    if query_type is not ProbeQueryType.INTEGRATIVE and any(w in lowered for w in _EXPERIENCE_WORDS):
        query_type = ProbeQueryType.EXPERIENTIAL
    return ProbeQuery(text=text, query_type=query_type)


def layer_hint(trajectory: ReasoningTrajectory, layer: MemoryLayer) -> str:
    """Hint text for one layer: the step queries whose type suits that layer."""
    wanted = LAYER_AFFINITY[layer]
    texts = []
    for step in trajectory.steps:
        query = probe_query_for(step)
        if query.text and query.query_type in wanted:
            texts.append(query.text)
    return " ".join(texts)


class ProbeEngine:
    """Read-only, partial-failure-tolerant lookups across all memory layers."""

    def __init__(
        self,
        store: MemoryGraphStore,
        config: Optional[ProbeConfig] = None,
        correction_depth: int = 3,
    ):
        self._store = store
        self._config = config or ProbeConfig()
        self._correction_depth = correction_depth

    async def probe_all_layers(
        self,
        trajectories: Iterable[ReasoningTrajectory],
        probe_depth: int,
    ) -> ProbeResult:
        """
        Probe every layer with every trajectory.

        Raises:
            ProbeFailed: every layer that was queried raised.
        """
        trajectories = list(trajectories)
        depth = max(1, int(probe_depth))
        if not trajectories:
            return ProbeResult(probe_depth=depth)

        outcomes = await asyncio.gather(
            *(self._probe_layer(layer, trajectories, depth) for layer in LAYER_ORDER),
            return_exceptions=True,
        )

        hits: dict[MemoryLayer, tuple[NodeRef, ...]] = {}
        failed: list[MemoryLayer] = []
        errors: dict[str, str] = {}
        for layer, outcome in zip(LAYER_ORDER, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failed.append(layer)
                errors[layer.value] = f"{type(outcome).__name__}: {outcome}"
                logger.warning(
                    "probe_engine.layer_failed",
                    layer=layer.value,
                    error_type=type(outcome).__name__,
                    error=str(outcome)[:200],
                )
                hits[layer] = ()
            else:
                hits[layer] = outcome

        # Layers with an empty hint for every trajectory never reach the store.
        queried = [
            layer for layer in LAYER_ORDER
            if any(layer_hint(t, layer) for t in trajectories)
        ]
        if queried and all(layer in failed for layer in queried):
            logger.error("probe_engine.all_layers_failed", errors=errors)
            raise ProbeFailed("Every memory layer failed during probe", errors)

        result = ProbeResult(hits=hits, probe_depth=depth, failed_layers=tuple(failed))
        logger.debug(
            "probe_engine.completed",
            trajectories=len(trajectories),
            depth=depth,
            total_hits=result.total_hits,
            failed_layers=[layer.value for layer in failed],
        )
        return result

    async def probe_with_trajectory(
        self,
        trajectory: ReasoningTrajectory,
        probe_depth: Optional[int] = None,
    ) -> ProbeResult:
        """Single-trajectory probe used during self-correction (deeper by default)."""
        depth = probe_depth if probe_depth is not None else self._correction_depth
        return await self.probe_all_layers([trajectory], depth)

    async def _probe_layer(
        self,
        layer: MemoryLayer,
        trajectories: Sequence[ReasoningTrajectory],
        depth: int,
    ) -> tuple[NodeRef, ...]:
        best: dict[str, NodeRef] = {}
        for trajectory in trajectories:
            hint = layer_hint(trajectory, layer)
            if not hint:
                continue
            for ref in await self._store.query_layer(layer, hint, depth):
                if ref.layer is not layer:
                    continue
                current = best.get(ref.node_id)
                if current is None or ref.relevance > current.relevance:
                    best[ref.node_id] = ref

        ranked = sorted(
            (ref for ref in best.values() if ref.relevance > self._config.relevance_threshold),
            key=lambda ref: (-ref.relevance, ref.node_id),
        )
        return tuple(ranked[: self._config.max_nodes_per_layer])
