"""
The Cognitive Control Loop — the five-phase query pipeline.

    idle → reasoning → probing → retrieving → consolidating → resolving → idle
                                                                  ↕
                                                              exploring

Every query runs the same fixed sequence. Reason builds the default
trajectory (and, when it looks shaky, a few alternatives). Probe asks every
memory layer about them. Retrieve ranks what came back. Consolidate fuses
and scores it. Resolve decides whether that is good enough. If it is not,
the alternatives each get their own probe → retrieve → consolidate pass in
parallel, and one replaces the current best only if it scores strictly
higher. The oracle then phrases the final answer from whichever
consolidation won.

Failure policy: anything that goes wrong in phases one to four aborts the
query. Anything that goes wrong while evaluating an alternative only
disqualifies that alternative.

Concurrency contract: one query per loop instance at a time. The pipeline is
the only writer of loop state and publishes it as an immutable
``ControlLoopStatus`` snapshot, so ``get_status()`` never waits on anything.
No lock is held across an oracle or store call.

Cancellation: each phase is raced against the query's cancellation tokens.
When a token fires, the running phase is cancelled, the loop drops back to
idle, and ``QueryCancelled`` is raised. No partial response is returned.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Optional, Sequence, TypeVar, Union

import structlog

from cogloop.config import CogloopConfig, ControlLoopConfig
from cogloop.engines.consolidation import ConsolidationEngine
from cogloop.engines.fusion import FusionEngine
from cogloop.engines.probe import ProbeEngine
from cogloop.engines.retrieval import RetrievalEngine
from cogloop.engines.trajectory import TrajectoryEngine, get_aggregator
from cogloop.errors import ControlLoopBusy, QueryCancelled
from cogloop.harness.cancellation import CancellationToken
from cogloop.metrics import (
    QUERIES_CANCELLED,
    QUERIES_FAILED,
    QUERIES_TOTAL,
    MetricsRegistry,
    metrics as default_metrics,
)
from cogloop.models import CognitiveMetrics, CognitiveResponse, ControlLoopStatus
from cogloop.protocols import (
    Consolidator,
    Fuser,
    FusionScorer,
    MemoryGraphStore,
    MemoryStateSource,
    Prober,
    ReasoningOracle,
    Retriever,
    TrajectoryGenerator,
)
from cogloop.types import (
    CognitiveContext,
    ConsolidationResult,
    ControlLoopPhase,
    MemoryState,
    ReasoningResult,
    ReasoningTrajectory,
    RetrievalResult,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class _Outcome:
    """One full probe → retrieve → consolidate pass for one trajectory set."""
    reasoning: ReasoningResult
    retrieval: RetrievalResult
    consolidation: ConsolidationResult

    @property
    def confidence(self) -> float:
        return self.consolidation.consolidation_confidence


class CognitiveControlLoop:
    """
    Orchestrates the trajectory, probe, retrieval, fusion and consolidation
    engines for one query at a time.

    Engines are built from the oracle, the store and the configuration unless
    replacements are injected.
    """

    def __init__(
        self,
        oracle: ReasoningOracle,
        store: MemoryGraphStore,
        config: Union[CogloopConfig, ControlLoopConfig, None] = None,
        *,
        fusion_scorer: Optional[FusionScorer] = None,
        trajectory_engine: Optional[TrajectoryGenerator] = None,
        probe_engine: Optional[Prober] = None,
        retrieval_engine: Optional[Retriever] = None,
        fusion_engine: Optional[Fuser] = None,
        consolidation_engine: Optional[Consolidator] = None,
        metrics_registry: Optional[MetricsRegistry] = None,
    ):
        if isinstance(config, ControlLoopConfig):
            config = CogloopConfig(control=config)
        settings = config or CogloopConfig()
        self._settings = settings
        self._config = settings.control

        self._oracle = oracle
        self._store = store
        self._trajectories = trajectory_engine or TrajectoryEngine(
            oracle, get_aggregator(self._config.likelihood_aggregation)
        )
        self._probe = probe_engine or ProbeEngine(
            store, settings.probe, correction_depth=self._config.exploration_probe_depth
        )
        self._retrieval = retrieval_engine or RetrievalEngine(store, settings.retrieval)
        self._fusion = fusion_engine or FusionEngine(
            self._config.fusion_threshold, settings.fusion, scorer=fusion_scorer
        )
        self._consolidation = consolidation_engine or ConsolidationEngine(settings.consolidation)
        self._metrics = metrics_registry or default_metrics

        # Pipeline-owned state. Only the in-flight query writes it.
        self._in_flight = False
        self._active: tuple[ReasoningTrajectory, ...] = ()
        self._last_metrics: Optional[CognitiveMetrics] = None
        self._reset_token: Optional[CancellationToken] = None
        self._status = ControlLoopStatus()

        logger.info(
            "control_loop.initialized",
            exploration_threshold=self._config.exploration_threshold,
            fusion_threshold=self._config.fusion_threshold,
            max_reasoning_depth=self._config.max_reasoning_depth,
            aggregation=self._config.likelihood_aggregation,
        )

    @property
    def config(self) -> ControlLoopConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Status (any reader, never blocks)
    # -------------------------------------------------------------------------

    def get_status(self) -> ControlLoopStatus:
        return self._status

    def _publish(self, phase: Optional[ControlLoopPhase] = None) -> None:
        self._status = ControlLoopStatus(
            phase=phase if phase is not None else self._status.phase,
            is_processing=self._in_flight,
            active_trajectory_count=len(self._active),
            last_metrics=self._last_metrics,
        )

    def _set_phase(self, phase: ControlLoopPhase) -> None:
        # A reset has already published idle; the unwinding query must not overwrite it.
        if self._reset_token is not None and self._reset_token.cancelled:
            return
        if phase is not self._status.phase:
            logger.debug(
                "control_loop.phase_changed",
                previous=self._status.phase.value,
                phase=phase.value,
            )
        self._publish(phase)

    def reset(self) -> None:
        """
        Force the loop back to idle, dropping active trajectories and the
        last metrics. A query still in flight is cancelled and will raise
        ``QueryCancelled``.
        """
        if self._reset_token is not None:
            self._reset_token.cancel("reset")
        self._active = ()
        self._last_metrics = None
        self._status = ControlLoopStatus(
            phase=ControlLoopPhase.IDLE,
            is_processing=self._in_flight,
        )
        logger.info("control_loop.reset", in_flight=self._in_flight)

    # -------------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------------

    def build_context(self, query: str, exploration_enabled: bool = True) -> CognitiveContext:
        """Fresh per-query context with a snapshot of the store's state."""
        if isinstance(self._store, MemoryStateSource):
            state = self._store.memory_state()
        else:
            state = MemoryState()
        return CognitiveContext(
            query=query,
            memory_state=state,
            reasoning_depth=self._config.max_reasoning_depth,
            exploration_enabled=exploration_enabled,
        )

    # -------------------------------------------------------------------------
    # The query pipeline
    # -------------------------------------------------------------------------

    async def process_query(
        self,
        query: str,
        context: Optional[CognitiveContext] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CognitiveResponse:
        """
        Run one query through all five phases.

        Raises:
            ControlLoopBusy: another query is already in flight.
            ReasoningUnavailable: the oracle failed during reasoning or
                while rendering the answer.
            ProbeFailed: every memory layer failed during the main probe.
            QueryCancelled: ``cancel_token`` fired or ``reset()`` was called.
        """
        if not query or not query.strip():
            raise ValueError("query must be a non-empty string")
        if self._in_flight:
            logger.warning("control_loop.busy", query=query[:80])
            raise ControlLoopBusy("A query is already being processed")

        self._in_flight = True
        self._reset_token = CancellationToken()
        tokens: tuple[CancellationToken, ...] = (self._reset_token,) + (
            (cancel_token,) if cancel_token is not None else ()
        )
        started = time.monotonic()
        self._metrics.inc(QUERIES_TOTAL)
        logger.info("control_loop.query_started", query=query[:80])

        try:
            response = await self._run(query, context, tokens, started)
        except QueryCancelled as exc:
            self._metrics.inc(QUERIES_CANCELLED)
            logger.info("control_loop.query_cancelled", phase=exc.phase)
            raise
        except asyncio.CancelledError:
            self._metrics.inc(QUERIES_CANCELLED)
            logger.info("control_loop.task_cancelled", phase=self._status.phase.value)
            raise
        except Exception as exc:
            self._metrics.inc(QUERIES_FAILED)
            logger.error(
                "control_loop.query_failed",
                phase=self._status.phase.value,
                error_type=type(exc).__name__,
                error=str(exc)[:200],
            )
            raise
        finally:
            self._in_flight = False
            self._active = ()
            self._reset_token = None
            self._status = ControlLoopStatus(
                phase=ControlLoopPhase.IDLE,
                is_processing=False,
                last_metrics=self._last_metrics,
            )

        return response

    async def _run(
        self,
        query: str,
        context: Optional[CognitiveContext],
        tokens: Sequence[CancellationToken],
        started: float,
    ) -> CognitiveResponse:
        config = self._config
        context = context or self.build_context(query)

        # 1. Reason
        trajectories = await self._guard(
            ControlLoopPhase.REASONING, self._reason(query, context), tokens
        )
        self._active = trajectories
        self._set_phase(ControlLoopPhase.REASONING)
        initial = trajectories[0]

        # 2. Probe
        probe = await self._guard(
            ControlLoopPhase.PROBING,
            self._probe.probe_all_layers(trajectories, config.probe_depth),
            tokens,
        )

        # 3. Retrieve
        retrieval = await self._guard(
            ControlLoopPhase.RETRIEVING,
            self._retrieval.retrieve_from_probe_result(probe, config.max_retrieved_nodes),
            tokens,
        )

        # 4. Consolidate
        reasoning = ReasoningResult.from_trajectory(initial)
        consolidation = await self._guard(
            ControlLoopPhase.CONSOLIDATING,
            self._consolidate(reasoning, retrieval),
            tokens,
        )
        best = _Outcome(reasoning, retrieval, consolidation)

        # 5. Resolve, with self-correction when confidence is low
        self._set_phase(ControlLoopPhase.RESOLVING)
        attempted = 0
        if best.confidence < config.exploration_threshold:
            best, attempted = await self._self_correct(best, tokens)
            self._set_phase(ControlLoopPhase.RESOLVING)

        answer = await self._guard(
            ControlLoopPhase.RESOLVING,
            self._trajectories.generate_final_response(
                query, best.consolidation, best.reasoning.trajectory
            ),
            tokens,
        )

        # 6. Metrics
        record = CognitiveMetrics(
            processing_time_ms=(time.monotonic() - started) * 1000.0,
            memory_hits=len(best.retrieval.retrieved),
            layers_engaged=sum(1 for n in best.retrieval.layer_distribution.values() if n > 0),
            fusion_operations=len(best.consolidation.fused_connections),
            confidence_score=best.confidence,
            exploration_paths=attempted,
        )
        self._last_metrics = record
        self._metrics.record_query(record)
        logger.info(
            "control_loop.query_completed",
            confidence=round(record.confidence_score, 4),
            processing_time_ms=round(record.processing_time_ms, 1),
            exploration_paths=attempted,
            used_alternative=not best.reasoning.trajectory.original_policy,
        )

        return CognitiveResponse(
            answer=answer,
            reasoning=best.reasoning,
            retrieval=best.retrieval,
            consolidation=best.consolidation,
            confidence=best.confidence,
            metrics=record,
            trajectories=self._active,
        )

    # -------------------------------------------------------------------------
    # Phase bodies
    # -------------------------------------------------------------------------

    async def _reason(
        self, query: str, context: CognitiveContext
    ) -> tuple[ReasoningTrajectory, ...]:
        config = self._config
        depth = max(1, min(context.reasoning_depth, config.max_reasoning_depth))
        initial = await self._trajectories.generate_initial_trajectory(query, context, depth)

        budget = config.alternatives_budget
        if (
            not context.exploration_enabled
            or initial.likelihood >= config.exploration_threshold
            or budget < 1
        ):
            return (initial,)

        alternatives = await self._trajectories.generate_exploration_trajectories(
            initial, context, budget
        )
        logger.debug(
            "control_loop.alternatives_generated",
            initial_likelihood=round(initial.likelihood, 4),
            alternatives=len(alternatives),
        )
        return (initial, *alternatives[:budget])

    async def _consolidate(
        self, reasoning: ReasoningResult, retrieval: RetrievalResult
    ) -> ConsolidationResult:
        fusion = self._fusion.identify_and_create_fusions(
            retrieval.retrieved_nodes, reasoning.trajectory
        )
        return self._consolidation.consolidate_knowledge(reasoning, retrieval, fusion)

    async def _self_correct(
        self, best: _Outcome, tokens: Sequence[CancellationToken]
    ) -> tuple[_Outcome, int]:
        """
        Evaluate unexplored alternatives concurrently and keep the best one
        that strictly beats ``best``. Returns the winner and the number of
        alternatives attempted.
        """
        config = self._config
        candidates = [
            t for t in self._active if not t.is_explored and not t.original_policy
        ][: config.max_exploration_paths]
        if not candidates:
            return best, 0

        semaphore = asyncio.Semaphore(config.exploration_concurrency)

        async def evaluate(trajectory: ReasoningTrajectory) -> _Outcome:
            async with semaphore:
                for token in tokens:
                    token.raise_if_cancelled(ControlLoopPhase.EXPLORING.value)
                probe = await self._probe.probe_with_trajectory(
                    trajectory, config.exploration_probe_depth
                )
                explored = self._mark_explored(trajectory)
                retrieval = await self._retrieval.retrieve_from_probe_result(
                    probe, config.exploration_max_nodes
                )
                for token in tokens:
                    token.raise_if_cancelled(ControlLoopPhase.EXPLORING.value)
                reasoning = ReasoningResult.from_trajectory(explored)
                consolidation = await self._consolidate(reasoning, retrieval)
                return _Outcome(reasoning, retrieval, consolidation)

        results = await self._guard(
            ControlLoopPhase.EXPLORING,
            asyncio.gather(*(evaluate(t) for t in candidates), return_exceptions=True),
            tokens,
        )

        for trajectory, result in zip(candidates, results):
            if isinstance(result, QueryCancelled):
                raise result
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(
                    "control_loop.exploration_failed",
                    trajectory=trajectory.trajectory_id,
                    error_type=type(result).__name__,
                    error=str(result)[:200],
                )
                continue
            if result.confidence > best.confidence:
                logger.info(
                    "control_loop.alternative_adopted",
                    trajectory=trajectory.trajectory_id,
                    previous=round(best.confidence, 4),
                    confidence=round(result.confidence, 4),
                )
                best = result
            else:
                logger.debug(
                    "control_loop.alternative_discarded",
                    trajectory=trajectory.trajectory_id,
                    confidence=round(result.confidence, 4),
                    best=round(best.confidence, 4),
                )
        return best, len(candidates)

    def _mark_explored(self, trajectory: ReasoningTrajectory) -> ReasoningTrajectory:
        explored = dataclasses.replace(trajectory, is_explored=True)
        self._active = tuple(
            explored if t.trajectory_id == trajectory.trajectory_id else t for t in self._active
        )
        if not (self._reset_token is not None and self._reset_token.cancelled):
            self._publish()
        return explored

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    async def _guard(
        self,
        phase: ControlLoopPhase,
        work: Awaitable[T],
        tokens: Sequence[CancellationToken],
    ) -> T:
        """Run one phase, abandoning it as soon as any token fires."""
        for token in tokens:
            if token.cancelled:
                _close(work)
                raise QueryCancelled(phase.value)
        self._set_phase(phase)

        task = asyncio.ensure_future(work)
        waiters = [asyncio.ensure_future(token.wait()) for token in tokens]
        try:
            done, _ = await asyncio.wait({task, *waiters}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            for waiter in waiters:
                waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        # Let the abandoned phase unwind; its outcome no longer matters.
        await asyncio.gather(task, return_exceptions=True)
        raise QueryCancelled(phase.value)


def _close(work: Any) -> None:
    """Close a coroutine that will never be awaited."""
    close = getattr(work, "close", None)
    if callable(close):
        close()
    elif isinstance(work, asyncio.Future):
        work.cancel()
