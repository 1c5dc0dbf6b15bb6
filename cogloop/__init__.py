"""
Cogloop — Cognitive Retrieval-and-Reasoning Control Loop.

This package answers natural-language questions against a personal knowledge
store by running a five-phase cycle over a three-layer memory graph:

    Reason → Probe → Retrieve → Consolidate → Resolve

When the consolidated answer is weak, the loop explores alternative reasoning
trajectories and keeps whichever one produces the most confident consolidation.

Architecture layers (bottom to top):
    1. Shared data model (types, errors, metrics)
    2. External collaborators (reasoning oracle, memory graph store)
    3. Engines (trajectory, probe, retrieval, fusion, consolidation)
    4. Control loop (phase state machine, self-correction, cancellation)
    5. CLI
"""

__version__ = "0.1.0"
