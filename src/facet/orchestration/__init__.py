"""Orchestration: strategy selection, intelligent routing and performance monitoring."""

from facet.orchestration.engine import OrchestrationEngine, system_fallback
from facet.orchestration.monitor import (
    Alert,
    AlertSeverity,
    AlertType,
    HealthStatus,
    OptimizationRecommendation,
    PerformanceMonitor,
)
from facet.orchestration.router import (
    CulturalProfile,
    IntelligentRouter,
    RoutingContext,
    RoutingDecision,
    SessionTurn,
)
from facet.orchestration.strategies import (
    OrchestrationContext,
    OrchestrationRegistry,
    OrchestrationStrategy,
    register_orchestration,
)

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertType",
    "CulturalProfile",
    "HealthStatus",
    "IntelligentRouter",
    "OptimizationRecommendation",
    "OrchestrationContext",
    "OrchestrationEngine",
    "OrchestrationRegistry",
    "OrchestrationStrategy",
    "PerformanceMonitor",
    "RoutingContext",
    "RoutingDecision",
    "SessionTurn",
    "register_orchestration",
    "system_fallback",
]
