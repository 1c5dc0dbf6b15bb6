"""
Core data types shared across the control loop and its engines.

These are lightweight value objects that cross engine boundaries. They live
here rather than in a specific engine to avoid circular imports. Everything
produced during a query is immutable once created; ``MemoryNode`` is the one
exception because it belongs to the graph store, and the core only reads it.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping, NamedTuple, Optional

from cogloop._utils import clamp01


class MemoryLayer(str, Enum):
    """The three memory partitions a probe can reach."""

    VERIDICAL = "veridical"
    SEMANTIC = "semantic"
    EPISODIC = "episodic"


# Probe and report order. Keeping it fixed keeps results deterministic.
LAYER_ORDER: tuple[MemoryLayer, ...] = (
    MemoryLayer.VERIDICAL,
    MemoryLayer.SEMANTIC,
    MemoryLayer.EPISODIC,
)


class StepKind(str, Enum):
    """What a reasoning step is doing inside its trajectory."""

    INITIAL = "initial"
    INFERENCE = "inference"
    RETRIEVAL = "retrieval"
    CONSOLIDATION = "consolidation"
    EXPLORATION = "exploration"
    CORRECTION = "correction"
    FINAL = "final"


class ControlLoopPhase(str, Enum):
    IDLE = "idle"
    REASONING = "reasoning"
    PROBING = "probing"
    RETRIEVING = "retrieving"
    CONSOLIDATING = "consolidating"
    RESOLVING = "resolving"
    EXPLORING = "exploring"


class FusionKind(str, Enum):
    CROSS_LAYER = "cross_layer"
    TEMPORAL = "temporal"
    CAUSAL = "causal"
    ANALOGICAL = "analogical"
    CONCEPTUAL = "conceptual"


# ---------------------------------------------------------------------------
# Memory graph records (owned by the store)
# ---------------------------------------------------------------------------

@dataclass
class MemoryNode:
    """
    A single node in the memory graph.

    The store owns these. Engines read them and refer to them by ``node_id``,
    but never write to them.
    """
    node_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    layer: MemoryLayer = MemoryLayer.SEMANTIC
    content: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    importance: float = 0.5             # 0.0 (trivial) to 1.0 (critical)
    confidence: float = 0.5             # How well-supported the content is
    tags: list[str] = field(default_factory=list)
    participants: list[str] = field(default_factory=list)
    connections: list[str] = field(default_factory=list)  # Neighbouring node IDs
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "layer": self.layer.value,
            "content": self.content,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "importance": self.importance,
            "confidence": self.confidence,
            "tags": list(self.tags),
            "participants": list(self.participants),
            "connections": list(self.connections),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MemoryNode:
        now = time.time()
        return cls(
            node_id=str(data.get("node_id") or uuid.uuid4()),
            layer=MemoryLayer(str(data.get("layer", "semantic")).lower()),
            content=str(data.get("content", "")),
            created_at=float(data.get("created_at", now)),
            updated_at=float(data.get("updated_at", data.get("created_at", now))),
            importance=clamp01(data.get("importance", 0.5)),
            confidence=clamp01(data.get("confidence", 0.5)),
            tags=[str(t) for t in data.get("tags", [])],
            participants=[str(p) for p in data.get("participants", [])],
            connections=[str(c) for c in data.get("connections", [])],
            metadata=dict(data.get("metadata", {})),
        )


@dataclass(frozen=True)
class NodeRef:
    """A probe hit: a node identifier plus the store's relevance score for it."""
    node_id: str
    layer: MemoryLayer
    relevance: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "relevance", clamp01(self.relevance, default=0.0))


@dataclass(frozen=True)
class MemoryState:
    """Aggregate memory-system state captured when a query starts."""
    layer_counts: Mapping[str, int] = field(default_factory=dict)
    working_set_size: int = 0
    load_factor: float = 0.0

    @property
    def total_nodes(self) -> int:
        return sum(self.layer_counts.values())


# ---------------------------------------------------------------------------
# Reasoning
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReasoningStep:
    content: str
    likelihood: float
    kind: StepKind = StepKind.INFERENCE

    def __post_init__(self) -> None:
        object.__setattr__(self, "likelihood", clamp01(self.likelihood, default=0.0))


@dataclass(frozen=True)
class ReasoningTrajectory:
    """
    One hypothesis about how to answer the query.

    ``likelihood`` is the aggregate of the step likelihoods, computed by the
    trajectory engine's aggregation strategy. ``original_policy`` marks the
    default (non-exploratory) trajectory; ``is_explored`` flips once the
    trajectory has been probed on its own during self-correction.
    """
    steps: tuple[ReasoningStep, ...]
    likelihood: float
    is_explored: bool = False
    original_policy: bool = False
    trajectory_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def __post_init__(self) -> None:
        steps = tuple(self.steps)
        if not steps:
            raise ValueError("A reasoning trajectory needs at least one step")
        object.__setattr__(self, "steps", steps)
        object.__setattr__(self, "likelihood", clamp01(self.likelihood, default=0.0))

    @property
    def reasoning_text(self) -> str:
        return " → ".join(step.content for step in self.steps)


@dataclass(frozen=True)
class ReasoningResult:
    reasoning: str
    confidence: float
    trajectory: ReasoningTrajectory

    @classmethod
    def from_trajectory(cls, trajectory: ReasoningTrajectory) -> ReasoningResult:
        return cls(
            reasoning=trajectory.reasoning_text,
            confidence=trajectory.likelihood,
            trajectory=trajectory,
        )


@dataclass(frozen=True)
class CognitiveContext:
    """Per-query input to reasoning. Built fresh for every query."""
    query: str
    memory_state: MemoryState = field(default_factory=MemoryState)
    reasoning_depth: int = 5
    exploration_enabled: bool = True


# ---------------------------------------------------------------------------
# Probe / retrieval
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProbeResult:
    """Per-layer probe hits, deduplicated by node identifier."""
    hits: Mapping[MemoryLayer, tuple[NodeRef, ...]] = field(default_factory=dict)
    probe_depth: int = 0
    failed_layers: tuple[MemoryLayer, ...] = ()

    def layer_hits(self, layer: MemoryLayer) -> tuple[NodeRef, ...]:
        return tuple(self.hits.get(layer, ()))

    def iter_refs(self) -> Iterator[NodeRef]:
        for layer in LAYER_ORDER:
            yield from self.hits.get(layer, ())

    @property
    def total_hits(self) -> int:
        return sum(len(refs) for refs in self.hits.values())

    @property
    def node_ids(self) -> list[str]:
        return [ref.node_id for ref in self.iter_refs()]


@dataclass(frozen=True)
class RetrievedNode:
    node: MemoryNode
    relevance: float


@dataclass(frozen=True)
class RetrievalResult:
    retrieved: tuple[RetrievedNode, ...] = ()
    total_relevance: float = 0.0
    layer_distribution: Mapping[MemoryLayer, int] = field(default_factory=dict)
    context: str = ""

    @property
    def retrieved_nodes(self) -> tuple[MemoryNode, ...]:
        return tuple(item.node for item in self.retrieved)

    @property
    def mean_relevance(self) -> float:
        if not self.retrieved:
            return 0.0
        return clamp01(self.total_relevance / len(self.retrieved), default=0.0)

    @classmethod
    def empty(cls) -> RetrievalResult:
        return cls()


# ---------------------------------------------------------------------------
# Fusion / consolidation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FusedConnection:
    """An accepted link between two or more retrieved nodes."""
    node_ids: tuple[str, ...]
    kind: FusionKind
    confidence: float
    layers: tuple[MemoryLayer, ...] = ()

    @property
    def is_cross_layer(self) -> bool:
        return len(set(self.layers)) > 1


@dataclass(frozen=True)
class FusionResult:
    connections: tuple[FusedConnection, ...] = ()
    candidates_considered: int = 0

    @property
    def fusion_count(self) -> int:
        return len(self.connections)

    @property
    def quality_score(self) -> float:
        if not self.connections:
            return 0.0
        return sum(c.confidence for c in self.connections) / len(self.connections)


@dataclass(frozen=True)
class ConsolidationResult:
    fused_connections: tuple[FusedConnection, ...] = ()
    consolidation_confidence: float = 0.0
    consolidated_knowledge: str = ""
    insights: tuple[str, ...] = ()
    strengthened_connections: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "consolidation_confidence",
            clamp01(self.consolidation_confidence, default=0.0),
        )


class Candidate(NamedTuple):
    """
    A scored continuation returned by the reasoning oracle.

    A plain ``(content, likelihood)`` tuple is accepted anywhere a Candidate
    is; ``kind`` is an optional hint about what the step does.
    """
    content: str
    likelihood: float
    kind: Optional[StepKind] = None
