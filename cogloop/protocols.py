"""
Collaborator and engine interfaces.

The control loop is composed from these by injection. Each engine is a small
explicit interface so alternative implementations (a vector-backed probe, a
model-backed fusion scorer) can be swapped in without subclassing.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, Sequence, Union, runtime_checkable

from cogloop.types import (
    Candidate,
    CognitiveContext,
    ConsolidationResult,
    FusionKind,
    FusionResult,
    MemoryLayer,
    MemoryNode,
    MemoryState,
    NodeRef,
    ProbeResult,
    ReasoningResult,
    ReasoningStep,
    ReasoningTrajectory,
    RetrievalResult,
)

CandidateLike = Union[Candidate, tuple[str, float]]


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------

@runtime_checkable
class ReasoningOracle(Protocol):
    """Maps a prompt plus prior steps to scored continuations."""

    async def propose_continuation(
        self,
        prompt: str,
        prior_steps: Sequence[ReasoningStep],
        max_alternatives: int,
    ) -> list[CandidateLike]:
        ...


@runtime_checkable
class MemoryGraphStore(Protocol):
    """Similarity-ranked, layer-partitioned node lookup."""

    async def query_layer(self, layer: MemoryLayer, hint: str, depth: int) -> list[NodeRef]:
        ...

    async def get_node(self, node_id: str) -> Optional[MemoryNode]:
        ...


@runtime_checkable
class MemoryStateSource(Protocol):
    """Optional store capability: report aggregate state for a new context."""

    def memory_state(self) -> MemoryState:
        ...


class LikelihoodAggregator(Protocol):
    """Folds per-step likelihoods into one trajectory likelihood."""

    def __call__(self, likelihoods: Sequence[float]) -> float:
        ...


class FusionScorer(Protocol):
    """Scores one fusion candidate pair. Must be deterministic."""

    def score(
        self,
        first: MemoryNode,
        second: MemoryNode,
        kind: FusionKind,
        similarity: float,
    ) -> float:
        ...


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

class TrajectoryGenerator(Protocol):
    async def generate_initial_trajectory(
        self, query: str, context: CognitiveContext, max_depth: int
    ) -> ReasoningTrajectory:
        ...

    async def generate_exploration_trajectories(
        self,
        base: ReasoningTrajectory,
        context: CognitiveContext,
        max_alternatives: int,
    ) -> list[ReasoningTrajectory]:
        ...

    async def generate_final_response(
        self,
        query: str,
        consolidation: ConsolidationResult,
        trajectory: ReasoningTrajectory,
    ) -> str:
        ...


class Prober(Protocol):
    async def probe_all_layers(
        self, trajectories: Iterable[ReasoningTrajectory], probe_depth: int
    ) -> ProbeResult:
        ...

    async def probe_with_trajectory(
        self, trajectory: ReasoningTrajectory, probe_depth: Optional[int] = None
    ) -> ProbeResult:
        ...


class Retriever(Protocol):
    async def retrieve_from_probe_result(
        self, probe_result: ProbeResult, max_nodes: int
    ) -> RetrievalResult:
        ...


class Fuser(Protocol):
    def identify_and_create_fusions(
        self,
        retrieved_nodes: Sequence[MemoryNode],
        trajectory: Optional[ReasoningTrajectory] = None,
    ) -> FusionResult:
        ...


class Consolidator(Protocol):
    def consolidate_knowledge(
        self,
        reasoning: ReasoningResult,
        retrieval: RetrievalResult,
        fusion_result: FusionResult,
    ) -> ConsolidationResult:
        ...
