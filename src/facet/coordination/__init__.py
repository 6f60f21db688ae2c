"""Coordination: bus messaging, circuit breakers, strategies and workflows."""

from facet.coordination.bus import (
    BusMessage,
    CoordinationBus,
    InMemoryTransport,
    MessageType,
    Transport,
)
from facet.coordination.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from facet.coordination.coordinator import AgentCoordinator
from facet.coordination.models import (
    AgentFailure,
    CoordinatedResponse,
    CoordinationRequest,
    CoordinationResult,
    CoordinationStrategy,
    CoordinationTask,
    Urgency,
)
from facet.coordination.redis_transport import RedisTransport
from facet.coordination.worker import AgentWorker
from facet.coordination.workflow import WorkflowEngine

__all__ = [
    "AgentCoordinator",
    "AgentFailure",
    "AgentWorker",
    "BusMessage",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CoordinatedResponse",
    "CoordinationBus",
    "CoordinationRequest",
    "CoordinationResult",
    "CoordinationStrategy",
    "CoordinationTask",
    "InMemoryTransport",
    "MessageType",
    "RedisTransport",
    "Transport",
    "Urgency",
    "WorkflowEngine",
]
