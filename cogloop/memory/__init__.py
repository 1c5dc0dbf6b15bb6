"""Memory graph store implementations and scoring helpers."""

from cogloop.memory.graph import InMemoryGraphStore

__all__ = ["InMemoryGraphStore"]
