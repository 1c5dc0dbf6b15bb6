"""
Shared fixtures for the cogloop test suite.

Provides a small three-layer memory graph, a populated in-memory store, and a
scripted reasoning oracle so individual test modules can focus on behavior
rather than setup.
"""

from __future__ import annotations

import time
from typing import Any, Iterable, Sequence

import pytest

from cogloop.memory.graph import InMemoryGraphStore
from cogloop.metrics import MetricsRegistry
from cogloop.prompts import MODE_ANSWER, MODE_EXPLORE, MODE_REASON, parse_sections
from cogloop.types import Candidate, MemoryLayer, MemoryNode, ReasoningStep, StepKind


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------

def _ts(days_ago: float = 0.0) -> float:
    """Return a timestamp that is *days_ago* days before now."""
    return time.time() - days_ago * 86400.0


# ---------------------------------------------------------------------------
# Memory fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def sample_nodes() -> list[MemoryNode]:
    """A small diverse graph: coffee habits plus an unrelated Python thread."""
    return [
        MemoryNode(
            node_id="v-coffee",
            layer=MemoryLayer.VERIDICAL,
            content="Alice drinks espresso every morning",
            created_at=_ts(2),
            updated_at=_ts(2),
            importance=0.7,
            confidence=0.9,
            metadata={"verified": True},
        ),
        MemoryNode(
            node_id="v-python",
            layer=MemoryLayer.VERIDICAL,
            content="Python 3.12 was released in October 2023",
            created_at=_ts(40),
            updated_at=_ts(40),
            importance=0.5,
            confidence=0.95,
            metadata={"verified": True},
        ),
        MemoryNode(
            node_id="s-caffeine",
            layer=MemoryLayer.SEMANTIC,
            content="Caffeine in espresso improves morning alertness",
            created_at=_ts(10),
            updated_at=_ts(10),
            importance=0.6,
            confidence=0.8,
            connections=["s-sleep"],
            metadata={"concept_type": "effect", "abstraction_level": 6},
        ),
        MemoryNode(
            node_id="s-sleep",
            layer=MemoryLayer.SEMANTIC,
            content="Poor sleep leads to stronger morning espresso cravings",
            created_at=_ts(12),
            updated_at=_ts(12),
            importance=0.5,
            confidence=0.7,
            connections=["s-caffeine"],
            metadata={"concept_type": "effect", "abstraction_level": 5},
        ),
        MemoryNode(
            node_id="s-decorators",
            layer=MemoryLayer.SEMANTIC,
            content="Python decorators wrap functions to extend behaviour",
            created_at=_ts(5),
            updated_at=_ts(5),
            importance=0.6,
            confidence=0.85,
            metadata={"concept_type": "pattern"},
        ),
        MemoryNode(
            node_id="e-cafe",
            layer=MemoryLayer.EPISODIC,
            content="Alice and Bob shared espresso at the corner cafe on Monday morning",
            created_at=_ts(3),
            updated_at=_ts(3),
            importance=0.6,
            confidence=0.8,
            participants=["alice", "bob"],
            metadata={"time_of_day": "morning", "vividness": 0.7},
        ),
        MemoryNode(
            node_id="e-meetup",
            layer=MemoryLayer.EPISODIC,
            content="Bob explained Python decorators during the Friday meetup",
            created_at=_ts(6),
            updated_at=_ts(6),
            importance=0.5,
            confidence=0.75,
            participants=["bob"],
            metadata={"time_of_day": "evening", "vividness": 0.5},
        ),
    ]


@pytest.fixture()
def store(sample_nodes) -> InMemoryGraphStore:
    """An in-memory store loaded with ``sample_nodes``."""
    graph = InMemoryGraphStore()
    graph.add_nodes(sample_nodes)
    return graph


@pytest.fixture()
def registry() -> MetricsRegistry:
    """A private metrics registry so tests never share counters."""
    return MetricsRegistry()


# ---------------------------------------------------------------------------
# Scripted oracle
# ---------------------------------------------------------------------------

class ScriptedOracle:
    """
    Replays fixed candidates by prompt mode.

    ``steps[i]`` answers the reasoning prompt when ``i`` steps already exist;
    an entry may be a single candidate or a list of competing ones. Explore
    prompts get ``alternatives``; answer prompts get ``answer``. Any mode
    listed in ``fail_on`` raises instead.
    """

    def __init__(
        self,
        steps: Sequence[Any] = (("Analyzing query: espresso morning", 0.9),),
        alternatives: Iterable[Any] = (),
        answer: str = "Scripted answer.",
        fail_on: Iterable[str] = (),
    ):
        self.steps = list(steps)
        self.alternatives = list(alternatives)
        self.answer = answer
        self.fail_on = set(fail_on)
        self.prompts: list[str] = []

    async def propose_continuation(
        self,
        prompt: str,
        prior_steps: Sequence[ReasoningStep],
        max_alternatives: int,
    ) -> list[Any]:
        self.prompts.append(prompt)
        mode = parse_sections(prompt).get("MODE", MODE_REASON)
        if mode in self.fail_on:
            raise RuntimeError(f"scripted failure in {mode} mode")
        if mode == MODE_ANSWER:
            return [Candidate(self.answer, 1.0, StepKind.FINAL)]
        if mode == MODE_EXPLORE:
            return self.alternatives[:max_alternatives]
        index = len(prior_steps)
        if index >= len(self.steps):
            return []
        entry = self.steps[index]
        return list(entry) if isinstance(entry, list) else [entry]


@pytest.fixture()
def scripted_oracle():
    """Factory for ``ScriptedOracle`` instances."""
    return ScriptedOracle
