"""Pydantic models for facet.yaml configuration."""

from typing import Literal

from pydantic import BaseModel, Field


class BreakerConfig(BaseModel):
    """Per-agent circuit breaker configuration."""

    failure_threshold: int = Field(
        default=5, description="Failures before the circuit opens", ge=1
    )
    success_threshold: int = Field(
        default=1, description="Successful half-open probes needed to close the circuit", ge=1
    )
    open_timeout_ms: int = Field(
        default=60000, description="Milliseconds the circuit stays open before probing", ge=0
    )


class BusConfig(BaseModel):
    """Coordination bus configuration."""

    backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Message transport: in-process or Redis pub/sub",
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis server URL")
    key_prefix: str = Field(default="facet:", description="Prefix applied to Redis channels and keys")
    state_ttl_seconds: int = Field(
        default=3600, description="Time to live for stored coordination state", ge=1
    )


class CoordinationConfig(BaseModel):
    """Multi-agent coordination configuration."""

    default_timeout_ms: int = Field(
        default=30000, description="Per-agent call timeout in milliseconds", ge=1
    )
    crisis_timeout_ms: int = Field(
        default=5000, description="Timeout for the critical crisis path in milliseconds", ge=1
    )
    consensus_threshold: float = Field(
        default=0.8,
        description="Consensus score at or above which round one is accepted",
        ge=0.0,
        le=1.0,
    )
    optimal_response_time_ms: float = Field(
        default=2000.0, description="Reference time for resource utilization", gt=0
    )
    emergency_keywords: list[str] = Field(
        default_factory=lambda: ["crisis", "emergency", "suicide", "self-harm", "danger"],
        description="Keywords in agent responses that trigger emergency escalation",
    )
    max_workflow_steps: int = Field(
        default=50, description="Upper bound on executed workflow steps", ge=5
    )


class RoutingWeights(BaseModel):
    """Factor weights for agent scoring."""

    cultural_match: float = Field(default=0.20, ge=0.0, le=1.0)
    load_balance: float = Field(default=0.15, ge=0.0, le=1.0)
    performance: float = Field(default=0.25, ge=0.0, le=1.0)
    specialization: float = Field(default=0.20, ge=0.0, le=1.0)
    user_preference: float = Field(default=0.10, ge=0.0, le=1.0)
    session_continuity: float = Field(default=0.10, ge=0.0, le=1.0)


class RoutingConfig(BaseModel):
    """Intelligent router configuration."""

    weights: RoutingWeights = Field(default_factory=RoutingWeights)
    high_urgency_weights: RoutingWeights = Field(
        default_factory=lambda: RoutingWeights(
            cultural_match=0.15,
            load_balance=0.20,
            performance=0.30,
            specialization=0.25,
            user_preference=0.05,
            session_continuity=0.05,
        )
    )
    critical_urgency_weights: RoutingWeights = Field(
        default_factory=lambda: RoutingWeights(
            cultural_match=0.05,
            load_balance=0.20,
            performance=0.40,
            specialization=0.30,
            user_preference=0.025,
            session_continuity=0.025,
        )
    )
    load_balancing: Literal["weighted_round_robin", "least_connections", "performance_based"] = (
        Field(default="performance_based", description="Load balance scoring strategy")
    )
    cultural_algorithm: Literal["cultural_affinity", "generational_matching"] = Field(
        default="cultural_affinity", description="Cultural match scoring algorithm"
    )
    history_per_session: int = Field(
        default=20, description="Routing decisions kept per session", ge=1
    )
    history_retention_hours: float = Field(
        default=24.0, description="Age after which routing history is trimmed", gt=0
    )


class MetricThreshold(BaseModel):
    """Target, warning and critical levels for one metric."""

    target: float
    warning: float
    critical: float


class MonitoringThresholds(BaseModel):
    """Alert thresholds for the performance monitor."""

    response_time_ms: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(target=2000, warning=5000, critical=10000)
    )
    user_satisfaction: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(target=0.8, warning=0.6, critical=0.4)
    )
    error_rate: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(target=0.01, warning=0.05, critical=0.1)
    )
    cpu_percent: MetricThreshold = Field(
        default_factory=lambda: MetricThreshold(target=50, warning=70, critical=90)
    )


class MonitoringConfig(BaseModel):
    """Performance monitor configuration."""

    thresholds: MonitoringThresholds = Field(default_factory=MonitoringThresholds)
    max_records: int = Field(default=1000, description="Records kept per agent", ge=10)
    retention_days: float = Field(default=7.0, description="Record retention in days", gt=0)
    health_window: int = Field(
        default=20, description="Recent records used for health checks", ge=1
    )
    error_rate_window: int = Field(
        default=20, description="Recent records used for error rate alerts", ge=1
    )
    maintenance_interval_seconds: float = Field(
        default=300.0, description="Seconds between maintenance passes", gt=0
    )


class FacetConfig(BaseModel):
    """Root configuration model for facet.yaml."""

    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    coordination: CoordinationConfig = Field(default_factory=CoordinationConfig)
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
