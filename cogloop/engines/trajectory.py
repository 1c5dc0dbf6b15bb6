"""
Trajectory Engine — builds reasoning hypotheses from the oracle.

The default trajectory is grown one step at a time: the oracle is asked for
the best next step given the steps so far, until it has nothing more to add
or the depth limit is reached. Alternatives (exploration) branch from the
default trajectory's opening step, one per divergent continuation the
oracle proposes.

Aggregate likelihood is a pluggable strategy. The default is the product of
step likelihoods, so longer or shakier chains score lower; ``max_likelihood``
scores a chain by its single strongest step instead. Either way, two
trajectories' likelihoods are comparable with ``<``.
"""

from __future__ import annotations

import math
from typing import Iterable, Sequence

import structlog

from cogloop.errors import InvalidConfiguration, ReasoningUnavailable
from cogloop.prompts import (
    build_answer_prompt,
    build_exploration_prompt,
    build_reasoning_prompt,
)
from cogloop.protocols import CandidateLike, LikelihoodAggregator, ReasoningOracle
from cogloop.types import (
    Candidate,
    CognitiveContext,
    ConsolidationResult,
    ReasoningStep,
    ReasoningTrajectory,
    StepKind,
)

logger = structlog.get_logger(__name__)


def product_likelihood(likelihoods: Sequence[float]) -> float:
    if not likelihoods:
        return 0.0
    return math.prod(likelihoods)


def max_likelihood(likelihoods: Sequence[float]) -> float:
    if not likelihoods:
        return 0.0
    return max(likelihoods)


AGGREGATORS: dict[str, LikelihoodAggregator] = {
    "product": product_likelihood,
    "max": max_likelihood,
}


def get_aggregator(name: str) -> LikelihoodAggregator:
    try:
        return AGGREGATORS[name]
    except KeyError:
        raise InvalidConfiguration(f"Unknown likelihood aggregation {name!r}") from None


def _as_candidate(raw: CandidateLike) -> Candidate:
    if isinstance(raw, Candidate):
        return raw
    content, likelihood = raw[0], raw[1]
    return Candidate(str(content), float(likelihood))


def _best(candidates: Iterable[CandidateLike]) -> Candidate | None:
    best: Candidate | None = None
    for raw in candidates:
        candidate = _as_candidate(raw)
        if not candidate.content.strip():
            continue
        # Strictly greater, so the oracle's own order breaks ties.
        if best is None or candidate.likelihood > best.likelihood:
            best = candidate
    return best


class TrajectoryEngine:
    """Default and exploratory trajectory generation."""

    def __init__(
        self,
        oracle: ReasoningOracle,
        aggregate: LikelihoodAggregator = product_likelihood,
    ):
        self._oracle = oracle
        self._aggregate = aggregate

    def aggregate(self, steps: Sequence[ReasoningStep]) -> float:
        return self._aggregate([step.likelihood for step in steps])

    async def generate_initial_trajectory(
        self,
        query: str,
        context: CognitiveContext,
        max_depth: int,
    ) -> ReasoningTrajectory:
        """
        Build the default (original-policy) trajectory for ``query``.

        Raises:
            ReasoningUnavailable: the oracle failed or returned nothing usable
                for the very first step.
        """
        prompt = build_reasoning_prompt(query, context)
        steps: list[ReasoningStep] = []

        for depth in range(max(1, max_depth)):
            proposals = await self._propose(prompt, steps, 1)
            candidate = _best(proposals)
            if candidate is None:
                break
            kind = candidate.kind or (StepKind.INITIAL if depth == 0 else StepKind.INFERENCE)
            steps.append(ReasoningStep(candidate.content, candidate.likelihood, kind))
            if kind is StepKind.FINAL:
                break

        if not steps:
            logger.error("trajectory_engine.no_continuation", query=query[:80])
            raise ReasoningUnavailable("Reasoning oracle returned no continuation")

        trajectory = ReasoningTrajectory(
            steps=tuple(steps),
            likelihood=self.aggregate(steps),
            original_policy=True,
        )
        logger.debug(
            "trajectory_engine.initial_built",
            steps=len(steps),
            likelihood=round(trajectory.likelihood, 4),
        )
        return trajectory

    async def generate_exploration_trajectories(
        self,
        base: ReasoningTrajectory,
        context: CognitiveContext,
        max_alternatives: int,
    ) -> list[ReasoningTrajectory]:
        """
        Ask the oracle for up to ``max_alternatives`` divergent continuations.

        Each alternative keeps the base trajectory's opening step and replaces
        the rest with one exploration step. Proposals that repeat an existing
        step are dropped.

        Raises:
            ReasoningUnavailable: the oracle failed or returned no alternative.
        """
        if max_alternatives < 1:
            return []

        prompt = build_exploration_prompt(context.query, context, base.reasoning_text)
        proposals = await self._propose(prompt, base.steps, max_alternatives)

        seen = {step.content.strip().lower() for step in base.steps}
        alternatives: list[ReasoningTrajectory] = []
        for raw in proposals:
            candidate = _as_candidate(raw)
            key = candidate.content.strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            steps = (
                base.steps[0],
                ReasoningStep(candidate.content, candidate.likelihood, StepKind.EXPLORATION),
            )
            alternatives.append(
                ReasoningTrajectory(
                    steps=steps,
                    likelihood=self.aggregate(steps),
                    is_explored=False,
                    original_policy=False,
                )
            )
            if len(alternatives) >= max_alternatives:
                break

        if not alternatives:
            logger.warning("trajectory_engine.no_alternatives", base=base.trajectory_id)
            raise ReasoningUnavailable("Reasoning oracle proposed no alternative trajectory")

        logger.debug(
            "trajectory_engine.alternatives_built",
            count=len(alternatives),
            likelihoods=[round(t.likelihood, 4) for t in alternatives],
        )
        return alternatives

    async def generate_final_response(
        self,
        query: str,
        consolidation: ConsolidationResult,
        trajectory: ReasoningTrajectory,
    ) -> str:
        """
        Have the oracle phrase the answer from the chosen consolidation.

        Raises:
            ReasoningUnavailable: the oracle failed or returned empty text.
        """
        prompt = build_answer_prompt(query, consolidation)
        candidate = _best(await self._propose(prompt, trajectory.steps, 1))
        if candidate is None:
            raise ReasoningUnavailable("Reasoning oracle returned no final answer")
        return candidate.content.strip()

    async def _propose(
        self,
        prompt: str,
        prior_steps: Sequence[ReasoningStep],
        max_alternatives: int,
    ) -> list[CandidateLike]:
        try:
            proposals = await self._oracle.propose_continuation(
                prompt, tuple(prior_steps), max_alternatives
            )
        except ReasoningUnavailable:
            raise
        except Exception as exc:
            logger.error(
                "trajectory_engine.oracle_failed",
                error_type=type(exc).__name__,
                error=str(exc)[:200],
            )
            raise ReasoningUnavailable(f"Reasoning oracle failed: {exc}") from exc
        return list(proposals or [])
