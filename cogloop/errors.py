"""
Typed errors raised by the control loop and its engines.

Failures (``CogloopFailure``) abort the query in flight. Cancellation is kept
on a separate branch so callers can tell "stopped on request" apart from
"something broke".
"""

from __future__ import annotations


class CogloopError(Exception):
    """Root of every error this package raises on purpose."""


class CogloopFailure(CogloopError):
    """A logical failure that aborts the current query."""


class InvalidConfiguration(CogloopFailure, ValueError):
    """Threshold, depth, or cap values are out of range."""


class ReasoningUnavailable(CogloopFailure):
    """The reasoning oracle is unreachable or produced no continuation."""


class ProbeFailed(CogloopFailure):
    """Every memory layer failed during a probe."""

    def __init__(self, message: str, layer_errors: dict[str, str] | None = None):
        super().__init__(message)
        self.layer_errors = dict(layer_errors or {})


class ControlLoopBusy(CogloopFailure):
    """A second query was submitted while another one is still in flight."""


class QueryCancelled(CogloopError):
    """Cooperative cancellation was observed before the query completed."""

    def __init__(self, phase: str = ""):
        super().__init__(f"Query cancelled during {phase or 'processing'}")
        self.phase = phase
