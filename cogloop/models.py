"""
Control loop reporting models.

What the control loop publishes to the outside: the per-query metrics
record, the read-only status snapshot, and the final response. Metrics and
status are frozen Pydantic models so a snapshot handed to a status reader
can never change under it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from cogloop.types import (
    ConsolidationResult,
    ControlLoopPhase,
    ReasoningResult,
    ReasoningTrajectory,
    RetrievalResult,
)


class CognitiveMetrics(BaseModel):
    """Per-query observability record, produced once per completed query."""

    model_config = ConfigDict(frozen=True)

    processing_time_ms: float = 0.0
    memory_hits: int = 0
    layers_engaged: int = 0
    fusion_operations: int = 0
    confidence_score: float = 0.0
    exploration_paths: int = 0


class ControlLoopStatus(BaseModel):
    """Point-in-time view of the control loop, safe to hand to any reader."""

    model_config = ConfigDict(frozen=True)

    phase: ControlLoopPhase = ControlLoopPhase.IDLE
    is_processing: bool = False
    active_trajectory_count: int = 0
    last_metrics: Optional[CognitiveMetrics] = None
    timestamp: float = Field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


@dataclass(frozen=True)
class CognitiveResponse:
    """Everything a completed query produced. Never built for a failed one."""
    answer: str
    reasoning: ReasoningResult
    retrieval: RetrievalResult
    consolidation: ConsolidationResult
    confidence: float
    metrics: CognitiveMetrics
    trajectories: tuple[ReasoningTrajectory, ...] = ()

    @property
    def used_alternative(self) -> bool:
        return not self.reasoning.trajectory.original_policy

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "confidence": round(self.confidence, 4),
            "reasoning": self.reasoning.reasoning,
            "reasoning_confidence": round(self.reasoning.confidence, 4),
            "used_alternative": self.used_alternative,
            "retrieved": [
                {
                    "node_id": item.node.node_id,
                    "layer": item.node.layer.value,
                    "content": item.node.content,
                    "relevance": round(item.relevance, 4),
                }
                for item in self.retrieval.retrieved
            ],
            "layer_distribution": {
                layer.value: count for layer, count in self.retrieval.layer_distribution.items()
            },
            "fused_connections": [
                {
                    "node_ids": list(conn.node_ids),
                    "kind": conn.kind.value,
                    "confidence": round(conn.confidence, 4),
                }
                for conn in self.consolidation.fused_connections
            ],
            "insights": list(self.consolidation.insights),
            "metrics": self.metrics.model_dump(mode="json"),
        }
