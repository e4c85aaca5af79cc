"""Pydantic v2 data models for the hybrid search engine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from hybrid_search.utils.url_utils import is_absolute_url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Configuration document
# ---------------------------------------------------------------------------


class ProviderKind(str, Enum):
    """How a provider is reached."""

    SUBPROCESS_TOOL = "subprocess-tool"
    DIRECT_API = "direct-api"


class StrategyKind(str, Enum):
    """Routing policy families."""

    CASCADE = "cascade"
    PARALLEL_BEST = "parallel-best"
    COST_OPTIMIZED = "cost-optimized"


class TransportConfig(BaseModel):
    """How to start or reach a provider.

    ``command``/``args``/``env``/``cwd`` apply to subprocess tools,
    ``base_url``/``headers`` to direct APIs.  ``api_key_env`` names the
    environment variable holding the provider credential.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    base_url: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    api_key_env: Optional[str] = None


class ProviderConfig(BaseModel):
    """A named search backend, immutable for the process lifetime."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1)
    name: str
    kind: ProviderKind
    enabled: bool = True
    priority: int = 100
    cost_score: float = 0.0
    quality_score: float = 0.0
    adapter: str
    transport: TransportConfig = Field(default_factory=TransportConfig)
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    options: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_transport(self) -> "ProviderConfig":
        if self.kind is ProviderKind.SUBPROCESS_TOOL and not self.transport.command:
            raise ValueError(f"provider '{self.id}': subprocess-tool transport needs 'command'")
        if self.kind is ProviderKind.DIRECT_API and not self.transport.base_url:
            raise ValueError(f"provider '{self.id}': direct-api transport needs 'base_url'")
        return self


class CascadeStep(BaseModel):
    """One ``(condition, providers)`` step of a cascade strategy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    condition: str = Field(..., min_length=1)
    providers: list[str] = Field(..., min_length=1)


class StrategyConfig(BaseModel):
    """A named routing policy."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: StrategyKind
    steps: list[CascadeStep] = Field(default_factory=list)
    providers: list[str] = Field(default_factory=list)
    max_parallel: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def _check_shape(self) -> "StrategyConfig":
        if self.kind is StrategyKind.CASCADE and not self.steps:
            raise ValueError("cascade strategy needs at least one step")
        if self.kind is StrategyKind.PARALLEL_BEST and not self.providers:
            raise ValueError("parallel-best strategy needs a provider list")
        return self


class CategoryConfig(BaseModel):
    """Regex set (and optional overrides) for one query category."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    patterns: list[str] = Field(..., min_length=1)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    suggested_providers: list[str] = Field(default_factory=list)


class ResultProcessingConfig(BaseModel):
    """Tunables for the result processor."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_content_length: int = Field(default=0, ge=0)
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    title_weight: float = Field(default=0.4, ge=0.0, le=1.0)
    content_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    url_weight: float = Field(default=0.2, ge=0.0, le=1.0)


class SearchConfig(BaseModel):
    """The whole search configuration document."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: Optional[str] = None
    providers: dict[str, ProviderConfig] = Field(..., min_length=1)
    strategies: dict[str, StrategyConfig] = Field(..., min_length=1)
    query_analysis: dict[str, CategoryConfig] = Field(default_factory=dict)
    result_processing: ResultProcessingConfig = Field(default_factory=ResultProcessingConfig)

    @model_validator(mode="before")
    @classmethod
    def _inject_provider_ids(cls, data: Any) -> Any:  # noqa: ANN401
        if isinstance(data, dict) and isinstance(data.get("providers"), dict):
            data = dict(data)
            data["providers"] = {
                key: {**value, "id": key} if isinstance(value, dict) else value
                for key, value in data["providers"].items()
            }
        return data

    @field_validator("query_analysis", mode="before")
    @classmethod
    def _expand_pattern_lists(cls, value: Any) -> Any:  # noqa: ANN401
        # A bare list of regexes is shorthand for {"patterns": [...]}.
        if isinstance(value, dict):
            return {
                name: {"patterns": patterns} if isinstance(patterns, list) else patterns
                for name, patterns in value.items()
            }
        return value

    @model_validator(mode="after")
    def _check_references(self) -> "SearchConfig":
        known = set(self.providers)
        for name, strategy in self.strategies.items():
            referenced = list(strategy.providers)
            for step in strategy.steps:
                referenced.extend(step.providers)
            missing = sorted(set(referenced) - known)
            if missing:
                raise ValueError(f"strategy '{name}' references undeclared providers: {missing}")
        for name, category in self.query_analysis.items():
            missing = sorted(set(category.suggested_providers) - known)
            if missing:
                raise ValueError(f"category '{name}' suggests undeclared providers: {missing}")
        return self


# ---------------------------------------------------------------------------
# Intermediate pipeline models
# ---------------------------------------------------------------------------


class QueryClassification(BaseModel):
    """Per-request classification of a query; discarded after routing."""

    query_type: str = "general"
    patterns: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    suggested_providers: list[str] = Field(default_factory=list)


class ProviderSelection(BaseModel):
    """Providers chosen by a strategy, with how to run them."""

    strategy: str
    kind: StrategyKind
    provider_ids: list[str]
    max_parallel: Optional[int] = None

    @property
    def concurrent(self) -> bool:
        return self.kind is StrategyKind.PARALLEL_BEST


class SearchResult(BaseModel):
    """A normalized result from any provider."""

    title: str = ""
    url: Optional[str] = None
    content: str = ""
    provider: str = Field(..., min_length=1)
    score: float = Field(default=0.5, ge=0.0, le=1.0)
    relevance: float = Field(default=0.0, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=_utcnow)

    @field_validator("url")
    @classmethod
    def _absolute_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not is_absolute_url(value):
            raise ValueError(f"url must be absolute: {value!r}")
        return value


class InvocationRecord(BaseModel):
    """Immutable telemetry entry for one provider attempt."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    started_at: datetime
    duration_ms: float = Field(..., ge=0.0)
    success: bool
    error: Optional[str] = None
    result_count: int = 0


class ProviderErrorEntry(BaseModel):
    """Structured description of one provider failure within a request."""

    provider: str
    error: str
    kind: str
    timed_out: bool = False


class ProviderOutcome(BaseModel):
    """What one provider attempt produced: results or an error entry."""

    provider_id: str
    results: list[SearchResult] = Field(default_factory=list)
    error: Optional[ProviderErrorEntry] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ErrorSummary(BaseModel):
    """A recent provider error surfaced by the diagnostics."""

    provider: str
    error: str
    timestamp: datetime


class PerformanceStats(BaseModel):
    """Aggregate view over every invocation record since start."""

    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    success_rate: float = 0.0
    provider_usage: dict[str, int] = Field(default_factory=dict)
    avg_latency_ms: dict[str, float] = Field(default_factory=dict)
    recent_errors: list[ErrorSummary] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# API response models
# ---------------------------------------------------------------------------


class HybridSearchResponse(BaseModel):
    """Top-level response of a hybrid search."""

    request_id: str
    query: str
    strategy: str
    query_type: str
    providers_used: list[str]
    results: list[SearchResult]
    total_results: int
    errors: Optional[list[ProviderErrorEntry]] = None
    partial: bool = False
    deadline_exceeded: bool = False
    latency_ms: float
    timestamp: datetime = Field(default_factory=_utcnow)


class ProviderStatus(BaseModel):
    """Per-provider block of the status response."""

    enabled: bool
    connected: bool
    avg_latency_ms: Optional[float] = None
    invocations: int = 0
    priority: int
    cost_score: float
    quality_score: float


class StatusResponse(BaseModel):
    """Response from GET /status."""

    server_status: str
    total_queries: int
    success_rate: float
    per_provider: dict[str, ProviderStatus]
    recent_errors: list[ErrorSummary]
    config_version: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class ProvidersResponse(BaseModel):
    """Response from GET /providers."""

    providers: dict[str, dict[str, Any]]
    routing_strategies: list[str]
    total_providers: int
    enabled_providers: int


class HealthResponse(BaseModel):
    """Response from GET /health."""

    status: str
    providers_enabled: int
    providers_connected: int
    uptime_seconds: float
