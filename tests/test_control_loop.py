"""
Tests for cogloop.harness.loop — the Cognitive Control Loop.

Covers:
- The phase sequence, with and without the exploring detour
- Active trajectory bookkeeping
- Self-correction: strict improvement only, absorbed alternative failures
- Cancellation by token, by reset() and by task cancellation
- Status snapshots during a query, single-flight rejection
- Failure propagation and the return to idle
"""

from __future__ import annotations

import asyncio
import time

import pytest
from structlog.testing import capture_logs

from cogloop.config import ControlLoopConfig
from cogloop.engines.probe import ProbeEngine
from cogloop.errors import (
    ControlLoopBusy,
    InvalidConfiguration,
    ProbeFailed,
    QueryCancelled,
    ReasoningUnavailable,
)
from cogloop.harness.cancellation import CancellationToken
from cogloop.harness.loop import CognitiveControlLoop
from cogloop.memory.graph import InMemoryGraphStore
from cogloop.metrics import QUERIES_CANCELLED, QUERIES_FAILED, QUERIES_TOTAL
from cogloop.oracle.heuristic import HeuristicOracle
from cogloop.prompts import MODE_EXPLORE, parse_sections
from cogloop.types import ConsolidationResult, ControlLoopPhase, MemoryLayer

QUERY = "Why do I drink espresso every morning?"

LOW_START = [("Analyzing query: espresso morning", 0.5)]
ALTERNATIVES = [
    ("Alternatively: espresso cafe with Bob", 0.45),
    ("Considering another angle: caffeine alertness", 0.4),
]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class ObservedStore(InMemoryGraphStore):
    """Records the loop's published status at every layer lookup."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.loop = None
        self.seen = []

    async def query_layer(self, layer, hint, depth):
        if self.loop is not None:
            self.seen.append(self.loop.get_status())
        return await super().query_layer(layer, hint, depth)


class StubConsolidator:
    """Confidence chosen per trajectory by ``score(trajectory)``."""

    def __init__(self, score):
        self.score = score

    def consolidate_knowledge(self, reasoning, retrieval, fusion_result):
        return ConsolidationResult(
            fused_connections=fusion_result.connections,
            consolidation_confidence=self.score(reasoning.trajectory),
            consolidated_knowledge=reasoning.reasoning,
        )


def _fixed(original: float, alternative: float) -> StubConsolidator:
    return StubConsolidator(lambda t: original if t.original_policy else alternative)


def _phases(logs) -> list[str]:
    return [e["phase"] for e in logs if e["event"] == "control_loop.phase_changed"]


async def _wait_for_phase(loop, phase, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while loop.get_status().phase is not phase:
        if time.monotonic() > deadline:
            raise AssertionError(f"loop never reached {phase.value}")
        await asyncio.sleep(0.005)


@pytest.fixture()
def observed_store(sample_nodes) -> ObservedStore:
    graph = ObservedStore()
    graph.add_nodes(sample_nodes)
    return graph


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

class TestConstruction:
    def test_invalid_threshold_rejected(self, store, scripted_oracle, monkeypatch):
        monkeypatch.setenv("COGLOOP_EXPLORATION_THRESHOLD", "1.5")
        with pytest.raises(InvalidConfiguration):
            CognitiveControlLoop(scripted_oracle(), store)

    def test_bad_section_value_in_environment_rejected(self, store, scripted_oracle, monkeypatch):
        monkeypatch.setenv("COGLOOP_PROBE_MAX_NODES_PER_LAYER", "lots")
        with pytest.raises(InvalidConfiguration, match="max_nodes_per_layer"):
            CognitiveControlLoop(scripted_oracle(), store, ControlLoopConfig())

    def test_starts_idle(self, store, scripted_oracle, registry):
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        status = loop.get_status()
        assert status.phase is ControlLoopPhase.IDLE
        assert status.is_processing is False
        assert status.active_trajectory_count == 0

    def test_build_context_snapshots_store(self, store, scripted_oracle, registry):
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        context = loop.build_context(QUERY, exploration_enabled=False)
        assert context.memory_state.layer_counts == {"veridical": 2, "semantic": 3, "episodic": 2}
        assert context.reasoning_depth == 5
        assert context.exploration_enabled is False

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, store, scripted_oracle, registry):
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        with pytest.raises(ValueError):
            await loop.process_query("   ")


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------

class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_heuristic_run_produces_grounded_response(self, store, registry):
        loop = CognitiveControlLoop(HeuristicOracle(), store, metrics_registry=registry)

        response = await loop.process_query(QUERY)

        assert response.answer
        assert 0.0 <= response.confidence <= 1.0
        assert response.confidence == response.consolidation.consolidation_confidence
        assert response.metrics.memory_hits == len(response.retrieval.retrieved)
        assert response.metrics.layers_engaged == len(response.retrieval.layer_distribution)
        assert response.metrics.confidence_score == response.confidence
        assert 1 <= len(response.trajectories) <= 4
        assert "v-coffee" in {item.node.node_id for item in response.retrieval.retrieved}

        status = loop.get_status()
        assert status.phase is ControlLoopPhase.IDLE
        assert status.is_processing is False
        assert status.active_trajectory_count == 0
        assert status.last_metrics == response.metrics
        assert registry.counter(QUERIES_TOTAL) == 1

    @pytest.mark.asyncio
    async def test_phase_sequence_without_exploration(self, store, scripted_oracle, registry):
        oracle = scripted_oracle(steps=[("Analyzing query: espresso morning", 0.9)])
        loop = CognitiveControlLoop(
            oracle, store, consolidation_engine=_fixed(0.9, 0.0), metrics_registry=registry
        )
        with capture_logs() as logs:
            response = await loop.process_query(QUERY)

        assert _phases(logs) == ["reasoning", "probing", "retrieving", "consolidating", "resolving"]
        assert response.answer == "Scripted answer."
        assert response.metrics.exploration_paths == 0


# ---------------------------------------------------------------------------
# Active trajectories
# ---------------------------------------------------------------------------

class TestActiveTrajectories:
    @pytest.mark.asyncio
    async def test_exploration_disabled_uses_one_trajectory(self, observed_store, registry):
        loop = CognitiveControlLoop(HeuristicOracle(), observed_store, metrics_registry=registry)
        observed_store.loop = loop
        context = loop.build_context(QUERY, exploration_enabled=False)

        with capture_logs() as logs:
            response = await loop.process_query(QUERY, context)

        assert observed_store.seen
        assert all(s.active_trajectory_count == 1 for s in observed_store.seen)
        assert len(response.trajectories) == 1
        assert response.metrics.exploration_paths == 0
        assert "exploring" not in _phases(logs)

    @pytest.mark.asyncio
    async def test_confident_start_never_explores(self, observed_store, scripted_oracle, registry):
        oracle = scripted_oracle(
            steps=[("Analyzing query: espresso morning", 0.9)], alternatives=ALTERNATIVES
        )
        loop = CognitiveControlLoop(
            oracle,
            observed_store,
            ControlLoopConfig(exploration_threshold=0.6),
            consolidation_engine=_fixed(0.3, 0.9),
            metrics_registry=registry,
        )
        observed_store.loop = loop

        with capture_logs() as logs:
            response = await loop.process_query(QUERY)

        assert all(s.active_trajectory_count == 1 for s in observed_store.seen)
        assert "exploring" not in _phases(logs)
        assert all(parse_sections(p).get("MODE") != MODE_EXPLORE for p in oracle.prompts)
        assert response.used_alternative is False

    @pytest.mark.asyncio
    async def test_uncertain_start_adds_alternatives(self, observed_store, scripted_oracle, registry):
        oracle = scripted_oracle(steps=LOW_START, alternatives=ALTERNATIVES)
        loop = CognitiveControlLoop(
            oracle, observed_store, consolidation_engine=_fixed(0.9, 0.0), metrics_registry=registry
        )
        observed_store.loop = loop

        response = await loop.process_query(QUERY)

        assert observed_store.seen[0].active_trajectory_count == 3
        originals = [t for t in response.trajectories if t.original_policy]
        assert len(originals) == 1
        assert response.metrics.exploration_paths == 0

    @pytest.mark.asyncio
    async def test_active_list_bounded(self, observed_store, scripted_oracle, registry):
        many = [(f"Alternatively: espresso angle {i}", 0.4) for i in range(6)]
        oracle = scripted_oracle(steps=LOW_START, alternatives=many)
        loop = CognitiveControlLoop(
            oracle,
            observed_store,
            ControlLoopConfig(max_active_trajectories=2),
            consolidation_engine=_fixed(0.9, 0.0),
            metrics_registry=registry,
        )
        observed_store.loop = loop
        await loop.process_query(QUERY)
        assert max(s.active_trajectory_count for s in observed_store.seen) == 2


# ---------------------------------------------------------------------------
# Self-correction
# ---------------------------------------------------------------------------

class TestSelfCorrection:
    @pytest.mark.asyncio
    async def test_tie_keeps_original(self, store, scripted_oracle, registry):
        oracle = scripted_oracle(steps=LOW_START, alternatives=ALTERNATIVES)
        loop = CognitiveControlLoop(
            oracle, store, consolidation_engine=_fixed(0.5, 0.5), metrics_registry=registry
        )
        with capture_logs() as logs:
            response = await loop.process_query(QUERY)

        assert response.used_alternative is False
        assert response.reasoning.trajectory.original_policy is True
        assert response.confidence == pytest.approx(0.5)
        assert response.metrics.exploration_paths == 2
        assert _phases(logs)[-2:] == ["exploring", "resolving"]
        assert registry.counter("exploration_paths_total") == 2

    @pytest.mark.asyncio
    async def test_strictly_better_alternative_adopted(self, store, scripted_oracle, registry):
        oracle = scripted_oracle(steps=LOW_START, alternatives=ALTERNATIVES)
        loop = CognitiveControlLoop(
            oracle, store, consolidation_engine=_fixed(0.5, 0.55), metrics_registry=registry
        )
        response = await loop.process_query(QUERY)

        assert response.used_alternative is True
        assert response.reasoning.trajectory.is_explored is True
        assert response.confidence == pytest.approx(0.55)
        explored = [t for t in response.trajectories if t.is_explored]
        assert len(explored) == 2

    @pytest.mark.asyncio
    async def test_best_of_several_alternatives(self, store, scripted_oracle, registry):
        def score(trajectory):
            if trajectory.original_policy:
                return 0.4
            return 0.7 if "caffeine" in trajectory.reasoning_text else 0.45

        oracle = scripted_oracle(steps=LOW_START, alternatives=ALTERNATIVES)
        loop = CognitiveControlLoop(
            oracle, store, consolidation_engine=StubConsolidator(score), metrics_registry=registry
        )
        response = await loop.process_query(QUERY)
        assert "caffeine alertness" in response.reasoning.reasoning
        assert response.confidence == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_confident_consolidation_skips_exploration(self, store, scripted_oracle, registry):
        oracle = scripted_oracle(steps=LOW_START, alternatives=ALTERNATIVES)
        loop = CognitiveControlLoop(
            oracle, store, consolidation_engine=_fixed(0.6, 0.99), metrics_registry=registry
        )
        response = await loop.process_query(QUERY)
        assert response.used_alternative is False
        assert response.metrics.exploration_paths == 0

    @pytest.mark.asyncio
    async def test_failed_alternatives_are_absorbed(self, store, scripted_oracle, registry):
        def score(trajectory):
            if trajectory.original_policy:
                return 0.4
            raise RuntimeError("alternative consolidation broke")

        oracle = scripted_oracle(steps=LOW_START, alternatives=ALTERNATIVES)
        loop = CognitiveControlLoop(
            oracle, store, consolidation_engine=StubConsolidator(score), metrics_registry=registry
        )
        with capture_logs() as logs:
            response = await loop.process_query(QUERY)

        assert response.used_alternative is False
        assert response.confidence == pytest.approx(0.4)
        assert response.metrics.exploration_paths == 2
        failures = [e for e in logs if e["event"] == "control_loop.exploration_failed"]
        assert len(failures) == 2
        assert registry.counter(QUERIES_FAILED) == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_the_other(self, store, scripted_oracle, registry):
        def score(trajectory):
            if trajectory.original_policy:
                return 0.4
            if "Bob" in trajectory.reasoning_text:
                raise RuntimeError("boom")
            return 0.5

        oracle = scripted_oracle(steps=LOW_START, alternatives=ALTERNATIVES)
        loop = CognitiveControlLoop(
            oracle, store, consolidation_engine=StubConsolidator(score), metrics_registry=registry
        )
        response = await loop.process_query(QUERY)
        assert response.used_alternative is True
        assert "caffeine alertness" in response.reasoning.reasoning

    @pytest.mark.asyncio
    async def test_explored_alternatives_capped(self, store, scripted_oracle, registry):
        many = [(f"Alternatively: espresso angle {i}", 0.4) for i in range(3)]
        oracle = scripted_oracle(steps=LOW_START, alternatives=many)
        loop = CognitiveControlLoop(
            oracle, store, consolidation_engine=_fixed(0.3, 0.2), metrics_registry=registry
        )
        response = await loop.process_query(QUERY)
        assert len(response.trajectories) == 4
        assert response.metrics.exploration_paths == 2
        assert sum(1 for t in response.trajectories if t.is_explored) == 2

    @pytest.mark.asyncio
    async def test_alternatives_evaluated_concurrently_within_cap(self, store, scripted_oracle, registry):
        class TrackingProbe(ProbeEngine):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                self.in_flight = 0
                self.peak = 0

            async def probe_with_trajectory(self, trajectory, probe_depth=None):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                try:
                    await asyncio.sleep(0.02)
                    return await super().probe_with_trajectory(trajectory, probe_depth)
                finally:
                    self.in_flight -= 1

        for concurrency, expected_peak in ((1, 1), (2, 2)):
            probe = TrackingProbe(store)
            loop = CognitiveControlLoop(
                scripted_oracle(steps=LOW_START, alternatives=ALTERNATIVES),
                store,
                ControlLoopConfig(exploration_concurrency=concurrency),
                probe_engine=probe,
                consolidation_engine=_fixed(0.3, 0.2),
                metrics_registry=registry,
            )
            await loop.process_query(QUERY)
            assert probe.peak == expected_peak


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_probing(self, store, scripted_oracle, registry):
        store.set_latency(0.2)
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        token = CancellationToken()
        task = asyncio.create_task(loop.process_query(QUERY, cancel_token=token))

        await _wait_for_phase(loop, ControlLoopPhase.PROBING)
        token.cancel("user abort")

        with pytest.raises(QueryCancelled) as info:
            await task
        assert info.value.phase == "probing"
        status = loop.get_status()
        assert status.phase is ControlLoopPhase.IDLE
        assert status.is_processing is False
        assert status.last_metrics is None
        assert registry.counter(QUERIES_CANCELLED) == 1
        assert registry.counter(QUERIES_FAILED) == 0

    @pytest.mark.asyncio
    async def test_already_cancelled_token_never_calls_oracle(self, store, scripted_oracle, registry):
        oracle = scripted_oracle()
        loop = CognitiveControlLoop(oracle, store, metrics_registry=registry)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(QueryCancelled) as info:
            await loop.process_query(QUERY, cancel_token=token)
        assert info.value.phase == "reasoning"
        assert oracle.prompts == []
        assert loop.get_status().phase is ControlLoopPhase.IDLE

    @pytest.mark.asyncio
    async def test_reset_cancels_in_flight_query(self, store, scripted_oracle, registry):
        store.set_latency(0.2)
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        task = asyncio.create_task(loop.process_query(QUERY))

        await _wait_for_phase(loop, ControlLoopPhase.PROBING)
        loop.reset()
        assert loop.get_status().phase is ControlLoopPhase.IDLE

        with pytest.raises(QueryCancelled):
            await task
        assert loop.get_status().phase is ControlLoopPhase.IDLE
        assert loop.get_status().active_trajectory_count == 0

    @pytest.mark.asyncio
    async def test_reset_clears_last_metrics(self, store, scripted_oracle, registry):
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        await loop.process_query(QUERY)
        assert loop.get_status().last_metrics is not None

        loop.reset()
        assert loop.get_status().last_metrics is None

    @pytest.mark.asyncio
    async def test_task_cancellation_returns_to_idle(self, store, scripted_oracle, registry):
        store.set_latency(0.2)
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        task = asyncio.create_task(loop.process_query(QUERY))

        await _wait_for_phase(loop, ControlLoopPhase.PROBING)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert loop.get_status().phase is ControlLoopPhase.IDLE
        assert registry.counter(QUERIES_CANCELLED) == 1


# ---------------------------------------------------------------------------
# Concurrency contract
# ---------------------------------------------------------------------------

class TestConcurrency:
    @pytest.mark.asyncio
    async def test_status_reads_during_query_never_block(self, store, scripted_oracle, registry):
        store.set_latency(0.1)
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        task = asyncio.create_task(loop.process_query(QUERY))

        await _wait_for_phase(loop, ControlLoopPhase.PROBING)
        started = time.perf_counter()
        snapshots = [loop.get_status() for _ in range(1000)]
        elapsed = time.perf_counter() - started

        assert elapsed < 0.1
        assert all(s.is_processing for s in snapshots)
        assert all(s.phase is ControlLoopPhase.PROBING for s in snapshots)
        await task

    @pytest.mark.asyncio
    async def test_second_query_rejected_while_busy(self, store, scripted_oracle, registry):
        store.set_latency(0.05)
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        first = asyncio.create_task(loop.process_query(QUERY))
        await _wait_for_phase(loop, ControlLoopPhase.PROBING)

        with pytest.raises(ControlLoopBusy):
            await loop.process_query("Who is Bob?")

        response = await first
        assert response.answer == "Scripted answer."
        assert registry.counter(QUERIES_TOTAL) == 1

    @pytest.mark.asyncio
    async def test_sequential_queries_reuse_loop(self, store, scripted_oracle, registry):
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        await loop.process_query(QUERY)
        await loop.process_query("Who is Bob?")
        assert registry.counter(QUERIES_TOTAL) == 2
        assert registry.histogram("query_latency_ms")["count"] == 2


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_all_layers_failing_aborts_query(self, store, scripted_oracle, registry):
        for layer in MemoryLayer:
            store.fail_layer(layer)
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)

        with pytest.raises(ProbeFailed):
            await loop.process_query(QUERY)
        status = loop.get_status()
        assert status.phase is ControlLoopPhase.IDLE
        assert status.is_processing is False
        assert registry.counter(QUERIES_FAILED) == 1

    @pytest.mark.asyncio
    async def test_partial_layer_failure_still_answers(self, store, scripted_oracle, registry):
        store.fail_layer(MemoryLayer.EPISODIC)
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        response = await loop.process_query(QUERY)
        assert MemoryLayer.EPISODIC not in response.retrieval.layer_distribution

    @pytest.mark.asyncio
    async def test_oracle_failure_aborts_query(self, store, scripted_oracle, registry):
        loop = CognitiveControlLoop(
            scripted_oracle(fail_on={"reason"}), store, metrics_registry=registry
        )
        with pytest.raises(ReasoningUnavailable):
            await loop.process_query(QUERY)
        assert loop.get_status().phase is ControlLoopPhase.IDLE
        assert store.query_count == 0

    @pytest.mark.asyncio
    async def test_alternative_generation_failure_aborts_query(self, store, scripted_oracle, registry):
        oracle = scripted_oracle(steps=LOW_START, fail_on={"explore"})
        loop = CognitiveControlLoop(oracle, store, metrics_registry=registry)
        with pytest.raises(ReasoningUnavailable):
            await loop.process_query(QUERY)
        assert loop.get_status().phase is ControlLoopPhase.IDLE

    @pytest.mark.asyncio
    async def test_answer_failure_aborts_query(self, store, scripted_oracle, registry):
        loop = CognitiveControlLoop(
            scripted_oracle(fail_on={"answer"}), store, metrics_registry=registry
        )
        with pytest.raises(ReasoningUnavailable):
            await loop.process_query(QUERY)
        assert loop.get_status().last_metrics is None

    @pytest.mark.asyncio
    async def test_loop_usable_after_failure(self, store, scripted_oracle, registry):
        for layer in MemoryLayer:
            store.fail_layer(layer)
        loop = CognitiveControlLoop(scripted_oracle(), store, metrics_registry=registry)
        with pytest.raises(ProbeFailed):
            await loop.process_query(QUERY)

        for layer in MemoryLayer:
            store.fail_layer(layer, failing=False)
        response = await loop.process_query(QUERY)
        assert response.answer == "Scripted answer."
