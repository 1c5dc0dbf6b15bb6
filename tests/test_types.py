"""Tests for cogloop.types and cogloop.models — value objects and snapshots."""

from __future__ import annotations

import dataclasses

import pytest
from pydantic import ValidationError

from cogloop.models import CognitiveMetrics, CognitiveResponse, ControlLoopStatus
from cogloop.types import (
    ConsolidationResult,
    ControlLoopPhase,
    MemoryLayer,
    MemoryNode,
    NodeRef,
    ProbeResult,
    ReasoningResult,
    ReasoningStep,
    ReasoningTrajectory,
    RetrievalResult,
    RetrievedNode,
    StepKind,
)


# ---------------------------------------------------------------------------
# Memory records
# ---------------------------------------------------------------------------

class TestMemoryNode:
    def test_dict_round_trip_keeps_fields(self):
        node = MemoryNode(
            node_id="n1",
            layer=MemoryLayer.EPISODIC,
            content="Lunch with Bob",
            participants=["bob"],
            connections=["n2"],
            metadata={"vividness": 0.4},
        )
        restored = MemoryNode.from_dict(node.to_dict())
        assert restored == node

    def test_from_dict_clamps_scores_and_lowercases_layer(self):
        node = MemoryNode.from_dict(
            {"node_id": "n", "layer": "SEMANTIC", "importance": 4, "confidence": "nope"}
        )
        assert node.layer is MemoryLayer.SEMANTIC
        assert node.importance == 1.0
        assert node.confidence == 0.5

    def test_unknown_layer_rejected(self):
        with pytest.raises(ValueError):
            MemoryNode.from_dict({"layer": "procedural"})

    def test_node_ref_relevance_clamped(self):
        assert NodeRef("n", MemoryLayer.SEMANTIC, 1.7).relevance == 1.0
        assert NodeRef("n", MemoryLayer.SEMANTIC, float("nan")).relevance == 0.0


# ---------------------------------------------------------------------------
# Trajectories
# ---------------------------------------------------------------------------

class TestReasoningTrajectory:
    def test_requires_a_step(self):
        with pytest.raises(ValueError):
            ReasoningTrajectory(steps=(), likelihood=0.5)

    def test_immutable(self):
        trajectory = ReasoningTrajectory(steps=(ReasoningStep("a", 0.5),), likelihood=0.5)
        with pytest.raises(dataclasses.FrozenInstanceError):
            trajectory.is_explored = True

    def test_reasoning_text_joins_steps(self):
        trajectory = ReasoningTrajectory(
            steps=[ReasoningStep("first", 0.9, StepKind.INITIAL), ReasoningStep("second", 0.8)],
            likelihood=0.72,
        )
        assert trajectory.reasoning_text == "first → second"
        assert isinstance(trajectory.steps, tuple)

    def test_result_from_trajectory(self):
        trajectory = ReasoningTrajectory(
            steps=(ReasoningStep("a", 0.6),), likelihood=0.6, original_policy=True
        )
        result = ReasoningResult.from_trajectory(trajectory)
        assert result.reasoning == "a"
        assert result.confidence == pytest.approx(0.6)
        assert result.trajectory is trajectory

    def test_ids_are_unique(self):
        steps = (ReasoningStep("a", 0.5),)
        assert ReasoningTrajectory(steps, 0.5).trajectory_id != ReasoningTrajectory(steps, 0.5).trajectory_id


# ---------------------------------------------------------------------------
# Phase results
# ---------------------------------------------------------------------------

class TestResults:
    def test_probe_result_iterates_in_layer_order(self):
        result = ProbeResult(
            hits={
                MemoryLayer.EPISODIC: (NodeRef("e1", MemoryLayer.EPISODIC, 0.5),),
                MemoryLayer.VERIDICAL: (NodeRef("v1", MemoryLayer.VERIDICAL, 0.4),),
            }
        )
        assert result.node_ids == ["v1", "e1"]
        assert result.total_hits == 2
        assert result.layer_hits(MemoryLayer.SEMANTIC) == ()

    def test_retrieval_mean_relevance(self):
        nodes = (
            RetrievedNode(MemoryNode(node_id="a"), 0.8),
            RetrievedNode(MemoryNode(node_id="b"), 0.4),
        )
        result = RetrievalResult(retrieved=nodes, total_relevance=1.2)
        assert result.mean_relevance == pytest.approx(0.6)
        assert RetrievalResult.empty().mean_relevance == 0.0

    def test_consolidation_confidence_clamped(self):
        assert ConsolidationResult(consolidation_confidence=1.4).consolidation_confidence == 1.0
        assert ConsolidationResult(consolidation_confidence=-0.2).consolidation_confidence == 0.0


# ---------------------------------------------------------------------------
# Reporting models
# ---------------------------------------------------------------------------

class TestModels:
    def test_status_defaults_to_idle(self):
        status = ControlLoopStatus()
        assert status.phase is ControlLoopPhase.IDLE
        assert status.is_processing is False
        assert status.last_metrics is None

    def test_status_is_frozen(self):
        status = ControlLoopStatus()
        with pytest.raises(ValidationError):
            status.phase = ControlLoopPhase.PROBING

    def test_status_to_dict_is_json_ready(self):
        status = ControlLoopStatus(
            phase=ControlLoopPhase.PROBING,
            is_processing=True,
            active_trajectory_count=2,
            last_metrics=CognitiveMetrics(memory_hits=3),
        )
        data = status.to_dict()
        assert data["phase"] == "probing"
        assert data["active_trajectory_count"] == 2
        assert data["last_metrics"]["memory_hits"] == 3

    def test_response_to_dict(self):
        trajectory = ReasoningTrajectory(
            steps=(ReasoningStep("look it up", 0.9),), likelihood=0.9, original_policy=True
        )
        node = MemoryNode(node_id="v1", layer=MemoryLayer.VERIDICAL, content="fact")
        response = CognitiveResponse(
            answer="It is a fact.",
            reasoning=ReasoningResult.from_trajectory(trajectory),
            retrieval=RetrievalResult(
                retrieved=(RetrievedNode(node, 0.7),),
                total_relevance=0.7,
                layer_distribution={MemoryLayer.VERIDICAL: 1},
            ),
            consolidation=ConsolidationResult(consolidation_confidence=0.66),
            confidence=0.66,
            metrics=CognitiveMetrics(memory_hits=1, layers_engaged=1, confidence_score=0.66),
        )
        data = response.to_dict()
        assert response.used_alternative is False
        assert data["answer"] == "It is a fact."
        assert data["retrieved"][0]["node_id"] == "v1"
        assert data["layer_distribution"] == {"veridical": 1}
        assert data["metrics"]["confidence_score"] == pytest.approx(0.66)
