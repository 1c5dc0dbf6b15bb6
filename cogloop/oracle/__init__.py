"""Reasoning oracle implementations."""

from cogloop.oracle.claude import ClaudeOracle
from cogloop.oracle.heuristic import HeuristicOracle

__all__ = ["ClaudeOracle", "HeuristicOracle"]
