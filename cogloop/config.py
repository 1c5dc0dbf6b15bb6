# cogloop/config.py
"""
Configuration for the cognitive control loop.

All configuration flows through this module. Values are loaded from environment
variables (via an optional .env file) and validated with Pydantic. Every
settings class is frozen: the control loop reads its configuration once at
construction and never again.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal, Optional, TypeVar

import structlog
from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from cogloop.errors import InvalidConfiguration

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above the cogloop/ package).
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

_SETTINGS_CONFIG: dict[str, Any] = {
    "env_file": _ENV_FILE,
    "extra": "ignore",
    "frozen": True,
    "populate_by_name": True,
}

LikelihoodAggregation = Literal["product", "max"]

UnitInterval = Annotated[float, Field(ge=0.0, le=1.0)]
PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]

SectionT = TypeVar("SectionT", bound=BaseSettings)


def _invalid(section: type[BaseSettings], exc: ValidationError) -> InvalidConfiguration:
    """Report a section's validation errors by field name rather than env alias."""
    names = {info.alias: name for name, info in section.model_fields.items() if info.alias}
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"])
        problems.append(f"{names.get(field, field)}: {error['msg']}")
    logger.error("config.invalid", section=section.__name__, problems=problems)
    return InvalidConfiguration(f"Invalid {section.__name__}: " + "; ".join(problems))


def build_section(section: type[SectionT], **values: Any) -> SectionT:
    """Instantiate a settings section, raising ``InvalidConfiguration`` on bad input."""
    try:
        return section(**values)
    except ValidationError as exc:
        raise _invalid(section, exc) from exc


class ControlLoopConfig(BaseSettings):
    """Thresholds, depths, and caps for the five-phase control loop."""

    max_reasoning_depth: PositiveInt = Field(5, alias="COGLOOP_MAX_REASONING_DEPTH")
    exploration_threshold: UnitInterval = Field(0.6, alias="COGLOOP_EXPLORATION_THRESHOLD")
    fusion_threshold: UnitInterval = Field(0.7, alias="COGLOOP_FUSION_THRESHOLD")
    # Seconds between passes of an external periodic-consolidation scheduler.
    # Per-query logic never reads it.
    consolidation_interval: float = Field(60.0, ge=0.0, alias="COGLOOP_CONSOLIDATION_INTERVAL")

    max_active_trajectories: PositiveInt = Field(4, alias="COGLOOP_MAX_ACTIVE_TRAJECTORIES")
    max_alternatives: NonNegativeInt = Field(3, alias="COGLOOP_MAX_ALTERNATIVES")
    max_exploration_paths: NonNegativeInt = Field(2, alias="COGLOOP_MAX_EXPLORATION_PATHS")
    exploration_concurrency: PositiveInt = Field(2, alias="COGLOOP_EXPLORATION_CONCURRENCY")

    probe_depth: PositiveInt = Field(2, alias="COGLOOP_PROBE_DEPTH")
    exploration_probe_depth: PositiveInt = Field(3, alias="COGLOOP_EXPLORATION_PROBE_DEPTH")
    max_retrieved_nodes: PositiveInt = Field(20, alias="COGLOOP_MAX_RETRIEVED_NODES")
    exploration_max_nodes: PositiveInt = Field(15, alias="COGLOOP_EXPLORATION_MAX_NODES")

    likelihood_aggregation: LikelihoodAggregation = Field(
        "product", alias="COGLOOP_LIKELIHOOD_AGGREGATION"
    )

    model_config = _SETTINGS_CONFIG

    @model_validator(mode="before")
    @classmethod
    def normalize_aggregation(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for key in ("likelihood_aggregation", "COGLOOP_LIKELIHOOD_AGGREGATION"):
                if isinstance(data.get(key), str):
                    data = {**data, key: data[key].strip().lower()}
        return data

    @property
    def alternatives_budget(self) -> int:
        """Alternatives that fit next to the original trajectory in the active list."""
        return max(0, min(self.max_alternatives, self.max_active_trajectories - 1))


class ProbeConfig(BaseSettings):
    """Per-layer probe limits."""

    relevance_threshold: UnitInterval = Field(0.2, alias="COGLOOP_PROBE_RELEVANCE_THRESHOLD")
    max_nodes_per_layer: PositiveInt = Field(10, alias="COGLOOP_PROBE_MAX_NODES_PER_LAYER")

    model_config = _SETTINGS_CONFIG


class RetrievalConfig(BaseSettings):
    """Ranking weights for turning probe hits into a retrieval set."""

    relevance_threshold: UnitInterval = Field(0.3, alias="COGLOOP_RETRIEVAL_RELEVANCE_THRESHOLD")
    diversity_weight: UnitInterval = Field(0.15, alias="COGLOOP_RETRIEVAL_DIVERSITY_WEIGHT")
    recency_weight: UnitInterval = Field(0.1, alias="COGLOOP_RETRIEVAL_RECENCY_WEIGHT")
    importance_weight: UnitInterval = Field(0.15, alias="COGLOOP_RETRIEVAL_IMPORTANCE_WEIGHT")
    recency_horizon_days: float = Field(30.0, gt=0.0, alias="COGLOOP_RETRIEVAL_RECENCY_HORIZON_DAYS")

    model_config = _SETTINGS_CONFIG


class FusionConfig(BaseSettings):
    """Candidate scoring weights and per-operation caps for fusion."""

    max_fusions_per_operation: PositiveInt = Field(10, alias="COGLOOP_MAX_FUSIONS_PER_OPERATION")
    coherence_weight: UnitInterval = Field(0.4, alias="COGLOOP_FUSION_COHERENCE_WEIGHT")
    novelty_weight: UnitInterval = Field(0.3, alias="COGLOOP_FUSION_NOVELTY_WEIGHT")
    importance_weight: UnitInterval = Field(0.3, alias="COGLOOP_FUSION_IMPORTANCE_WEIGHT")
    max_nodes_per_layer_pairing: PositiveInt = Field(5, alias="COGLOOP_FUSION_MAX_LAYER_PAIRING")

    model_config = _SETTINGS_CONFIG


class ConsolidationConfig(BaseSettings):
    """Insight generation settings for the consolidation phase."""

    insights_enabled: bool = Field(True, alias="COGLOOP_INSIGHTS_ENABLED")
    max_insights: NonNegativeInt = Field(5, alias="COGLOOP_MAX_INSIGHTS")

    model_config = _SETTINGS_CONFIG


class ClaudeConfig(BaseSettings):
    """Connection settings for the Claude-backed reasoning oracle."""

    api_key: Optional[str] = Field(None, alias="ANTHROPIC_API_KEY")
    model: str = Field("claude-sonnet-4-5-20250929", alias="COGLOOP_MODEL")
    max_tokens: int = Field(1024, alias="COGLOOP_MAX_TOKENS")
    temperature: float = Field(0.0, alias="COGLOOP_TEMPERATURE")
    request_timeout_seconds: float = Field(60.0, alias="COGLOOP_REQUEST_TIMEOUT_SECONDS")
    retry_max_retries: int = Field(3, alias="COGLOOP_RETRY_MAX_RETRIES")
    retry_base_delay: float = Field(0.5, alias="COGLOOP_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(8.0, alias="COGLOOP_RETRY_MAX_DELAY")
    retry_exponential_base: float = Field(2.0, alias="COGLOOP_RETRY_EXPONENTIAL_BASE")
    retry_jitter_range: float = Field(0.25, alias="COGLOOP_RETRY_JITTER_RANGE")

    model_config = {**_SETTINGS_CONFIG, "frozen": False}

    @model_validator(mode="after")
    def normalize_runtime_limits(self) -> "ClaudeConfig":
        self.max_tokens = max(1, int(self.max_tokens))
        self.temperature = max(0.0, min(1.0, float(self.temperature)))
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.retry_max_retries = max(0, int(self.retry_max_retries))
        self.retry_base_delay = max(0.05, float(self.retry_base_delay))
        self.retry_max_delay = max(self.retry_base_delay, float(self.retry_max_delay))
        self.retry_exponential_base = max(1.0, float(self.retry_exponential_base))
        self.retry_jitter_range = max(0.0, min(1.0, float(self.retry_jitter_range)))
        return self


class CogloopConfig:
    """Aggregate of every settings section the control loop needs.

    Sections that are not supplied are read from the environment; a bad
    value there raises ``InvalidConfiguration`` naming the offending field.
    """

    def __init__(
        self,
        control: Optional[ControlLoopConfig] = None,
        probe: Optional[ProbeConfig] = None,
        retrieval: Optional[RetrievalConfig] = None,
        fusion: Optional[FusionConfig] = None,
        consolidation: Optional[ConsolidationConfig] = None,
    ):
        self.control = control or build_section(ControlLoopConfig)
        self.probe = probe or build_section(ProbeConfig)
        self.retrieval = retrieval or build_section(RetrievalConfig)
        self.fusion = fusion or build_section(FusionConfig)
        self.consolidation = consolidation or build_section(ConsolidationConfig)


def load_control_config(**overrides: Any) -> ControlLoopConfig:
    """Build a ``ControlLoopConfig`` from the environment plus ``overrides``.

    Out-of-range and non-numeric values are reported as ``InvalidConfiguration``.
    """
    return build_section(ControlLoopConfig, **overrides)
