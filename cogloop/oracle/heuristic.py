"""
Heuristic Oracle — deterministic, offline reasoning.

Builds the default four-step trajectory from the wording of the query:

    1. Analyzing query: <query>                    (initial, 0.9)
    2. Reasoning approach: <approach>              (inference)
    3. Retrieval strategy: <strategy>              (retrieval)
    4. Consolidation plan: <plan>                  (consolidation)

then stops. In exploration mode it proposes alternative angles on the query,
and in answer mode it renders the consolidated knowledge as the final text.
No randomness: the same prompt always yields the same candidates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import structlog

from cogloop.prompts import (
    MODE_ANSWER,
    MODE_EXPLORE,
    MODE_REASON,
    parse_memory_line,
    parse_sections,
)
from cogloop.types import Candidate, ReasoningStep, StepKind

logger = structlog.get_logger(__name__)

EXPLORATION_MARKERS = (
    "Alternatively",
    "Considering another angle",
    "Exploring different perspective",
    "Alternative approach",
)

LOW_CONFIDENCE_SUFFIX_BELOW = 0.7


@dataclass(frozen=True)
class _Approach:
    name: str
    description: str
    confidence: float
    strategy: str
    strategy_confidence: float


_FACTUAL = _Approach(
    "factual",
    "factual lookup of specific details",
    0.85,
    "prioritise verbatim facts, then supporting events",
    0.8,
)
_CONCEPTUAL = _Approach(
    "conceptual",
    "conceptual analysis of relationships and causes",
    0.8,
    "prioritise abstract concepts and their relations",
    0.85,
)
_EXPERIENTIAL = _Approach(
    "experiential",
    "recall of personal experiences",
    0.75,
    "prioritise time-stamped events and the people involved",
    0.75,
)
_INTEGRATIVE = _Approach(
    "integrative",
    "integrative synthesis across all memory layers",
    0.7,
    "draw evenly on facts, concepts and experiences",
    0.9,
)

_APPROACH_WORDS = (
    (_FACTUAL, ("when", "where", "who", "what")),
    (_CONCEPTUAL, ("why", "how", "explain", "understand")),
    (_EXPERIENTIAL, ("remember", "experience", "happened", "felt")),
)


def determine_approach(query: str) -> _Approach:
    lowered = query.lower()
    for approach, words in _APPROACH_WORDS:
        if any(word in lowered for word in words):
            return approach
    return _INTEGRATIVE


def plan_consolidation(load_factor: float, exploration_enabled: bool) -> tuple[str, float]:
    if load_factor > 0.8:
        return "conservative: merge only strongly supported links under high memory load", 0.7
    if exploration_enabled:
        return "exploratory: look for novel cross-layer links", 0.8
    return "standard: merge well-supported links", 0.85


class HeuristicOracle:
    """A ``ReasoningOracle`` that needs no model."""

    def __init__(self, exploration_decay: float = 0.1):
        self._exploration_decay = exploration_decay
        self.calls = 0

    async def propose_continuation(
        self,
        prompt: str,
        prior_steps: Sequence[ReasoningStep],
        max_alternatives: int,
    ) -> list[Candidate]:
        self.calls += 1
        sections = parse_sections(prompt)
        mode = sections.get("MODE", MODE_REASON).lower()
        query = sections.get("QUERY", "").strip()
        if max_alternatives < 1 or not query:
            return []

        if mode == MODE_ANSWER:
            return [self._render_answer(sections)]
        if mode == MODE_EXPLORE:
            return self._explore(query, prior_steps, max_alternatives)
        return self._continue(query, sections, prior_steps)

    # -- reason --------------------------------------------------------------

    def _continue(
        self,
        query: str,
        sections: dict[str, str],
        prior_steps: Sequence[ReasoningStep],
    ) -> list[Candidate]:
        approach = determine_approach(query)
        position = len(prior_steps)
        if position == 0:
            return [Candidate(f"Analyzing query: {query}", 0.9, StepKind.INITIAL)]
        if position == 1:
            return [
                Candidate(
                    f"Reasoning approach: {approach.description}",
                    approach.confidence,
                    StepKind.INFERENCE,
                )
            ]
        if position == 2:
            return [
                Candidate(
                    f"Retrieval strategy: {approach.strategy}",
                    approach.strategy_confidence,
                    StepKind.RETRIEVAL,
                )
            ]
        if position == 3:
            memory = parse_memory_line(sections.get("MEMORY", ""))
            exploring = sections.get("EXPLORATION", "enabled").lower() == "enabled"
            plan, confidence = plan_consolidation(memory.get("load", 0.0), exploring)
            return [Candidate(f"Consolidation plan: {plan}", confidence, StepKind.CONSOLIDATION)]
        return []

    # -- explore -------------------------------------------------------------

    def _explore(
        self,
        query: str,
        prior_steps: Sequence[ReasoningStep],
        max_alternatives: int,
    ) -> list[Candidate]:
        base = prior_steps[-1].likelihood if prior_steps else 0.7
        approach = determine_approach(query)
        others = [a for a in (_FACTUAL, _CONCEPTUAL, _EXPERIENTIAL, _INTEGRATIVE) if a is not approach]
        candidates = []
        for index in range(min(max_alternatives, len(EXPLORATION_MARKERS), len(others))):
            alternative = others[index]
            likelihood = max(0.05, base * (1.0 - self._exploration_decay * (index + 1)))
            candidates.append(
                Candidate(
                    f"{EXPLORATION_MARKERS[index]}: {alternative.description} for {query}",
                    likelihood,
                    StepKind.EXPLORATION,
                )
            )
        return candidates

    # -- answer --------------------------------------------------------------

    def _render_answer(self, sections: dict[str, str]) -> Candidate:
        knowledge = sections.get("KNOWLEDGE", "")
        insights = [
            line.strip()
            for line in sections.get("INSIGHTS", "").splitlines()
            if line.strip() and line.strip().lower() != "none"
        ]
        try:
            confidence = float(sections.get("CONFIDENCE", "0"))
        except ValueError:
            confidence = 0.0

        parts = [knowledge] if knowledge and knowledge.lower() != "none" else []
        if insights:
            parts.append("Key insights: " + "; ".join(insights))
        if confidence < LOW_CONFIDENCE_SUFFIX_BELOW:
            parts.append(f"(Confidence: {confidence * 100:.1f}%)")
        return Candidate("\n\n".join(parts), confidence, StepKind.FINAL)
