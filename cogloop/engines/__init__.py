"""The five engines the control loop composes."""

from cogloop.engines.consolidation import ConsolidationEngine
from cogloop.engines.fusion import FusionEngine, HeuristicFusionScorer
from cogloop.engines.probe import ProbeEngine
from cogloop.engines.retrieval import RetrievalEngine
from cogloop.engines.trajectory import TrajectoryEngine, max_likelihood, product_likelihood

__all__ = [
    "ConsolidationEngine",
    "FusionEngine",
    "HeuristicFusionScorer",
    "ProbeEngine",
    "RetrievalEngine",
    "TrajectoryEngine",
    "max_likelihood",
    "product_likelihood",
]
