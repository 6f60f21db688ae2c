"""Dispatch of coordination requests to agents over the bus."""

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from facet.agents.base import AgentResponse, AgentType
from facet.config.schema import CoordinationConfig
from facet.coordination.bus import CoordinationBus, MessageType, correlation_key
from facet.coordination.circuit_breaker import CircuitBreakerRegistry
from facet.coordination.models import (
    CoordinationMetrics,
    CoordinationRequest,
    CoordinationResult,
    CoordinationStrategy,
    CoordinationTask,
)
from facet.coordination.strategies import StrategyRegistry
from facet.errors import AgentInvocationError, FacetError
from facet.store import RecordStore

logger = logging.getLogger(__name__)

STATE_KIND = "coordination:state"


@dataclass
class CoordinatorMetrics:
    """Counters across all coordinations run by a coordinator."""

    total_coordinations: int = 0
    successful_coordinations: int = 0
    failed_coordinations: int = 0
    average_coordination_time_ms: float = 0.0
    active_coordinations: int = 0


def parallel_efficiency(responses: Sequence[AgentResponse], wall_time_ms: float) -> float:
    """Achieved speedup over running the same calls back to back, per agent.

    1.0 means every agent ran fully overlapped with the others.
    """
    if not responses or wall_time_ms <= 0:
        return 1.0
    serial_ms = sum(r.processing_time_ms for r in responses)
    return min(1.0, serial_ms / wall_time_ms / len(responses))


def resource_utilization(responses: Sequence[AgentResponse], optimal_time_ms: float) -> float:
    """Ratio of the target response time to the mean processing time, capped at 1."""
    if not responses:
        return 0.0
    average = sum(r.processing_time_ms for r in responses) / len(responses)
    if average <= 0:
        return 1.0
    return min(1.0, optimal_time_ms / average)


def cultural_integration(responses: Sequence[AgentResponse]) -> dict[str, Any]:
    """Summary of what cultural adapter agents contributed."""
    adapters = [r for r in responses if r.agent_type == AgentType.CULTURAL_ADAPTER.value]
    if not adapters:
        return {}
    return {
        "cultural_relevance_score": sum(r.cultural_relevance or 0.0 for r in adapters)
        / len(adapters),
        "cultural_adaptations": [item for r in adapters for item in r.action_items],
        "cultural_metadata": [key for r in adapters for key in r.metadata],
    }


class AgentCoordinator:
    """
    Runs coordination strategies against agents reachable over the bus.

    Every agent call goes through that agent's circuit breaker and the
    request deadline. A timeout or agent error counts as a breaker failure.
    """

    def __init__(
        self,
        bus: CoordinationBus,
        breakers: CircuitBreakerRegistry,
        config: CoordinationConfig | None = None,
        store: RecordStore | None = None,
        state_ttl_seconds: int = 3600,
    ):
        """
        Initialize coordinator.

        Args:
            bus: Coordination bus used to reach agents
            breakers: Per-agent circuit breakers
            config: Coordination settings
            store: Optional store for coordination state records
            state_ttl_seconds: Lifetime of stored coordination state
        """
        self.bus = bus
        self.breakers = breakers
        self.config = config or CoordinationConfig()
        self.store = store
        self.state_ttl_seconds = state_ttl_seconds
        self._active: dict[str, CoordinationRequest] = {}
        self._metrics = CoordinatorMetrics()

    async def call_agent(
        self,
        request: CoordinationRequest,
        agent_id: str,
        task: CoordinationTask,
        round_id: str | None = None,
    ) -> AgentResponse:
        """
        Call one agent under its breaker and the request timeout.

        Raises:
            CircuitOpenError: If the agent's circuit rejects the call
            AgentTimeoutError: If the agent misses the deadline
            AgentInvocationError: If the agent reports an error
        """
        breaker = self.breakers.get_breaker(agent_id)
        return await breaker.execute(
            self._dispatch, request, agent_id, task, round_id or request.id
        )

    async def _dispatch(
        self,
        request: CoordinationRequest,
        agent_id: str,
        task: CoordinationTask,
        round_id: str,
    ) -> AgentResponse:
        payload = {
            "coordination_id": request.id,
            "session_id": request.session_id,
            "strategy": request.strategy.value,
            "agent_ids": list(request.agent_ids),
            "task": task.model_dump(mode="json"),
        }
        try:
            reply = await self.bus.request(
                agent_id, correlation_key(round_id, agent_id), payload, request.timeout_ms
            )
        except FacetError:
            raise
        except Exception as e:
            raise AgentInvocationError(agent_id, f"transport failure: {e}") from e
        if reply.type == MessageType.ERROR:
            raise AgentInvocationError(agent_id, str(reply.payload.get("error", "unknown error")))
        try:
            return AgentResponse.model_validate(reply.payload["response"])
        except (KeyError, ValueError) as e:
            raise AgentInvocationError(agent_id, f"malformed response: {e}") from e

    async def run(self, request: CoordinationRequest) -> CoordinationResult:
        """
        Execute the request's strategy.

        Args:
            request: Coordination request

        Returns:
            Result with every response and every per-agent failure

        Raises:
            ConfigurationError: If the strategy cannot run with these agents
        """
        strategy = StrategyRegistry.create(request.strategy, **self._strategy_options(request))
        # Duplicate ids would share a correlation key
        request.agent_ids = list(dict.fromkeys(request.agent_ids))

        self._metrics.total_coordinations += 1
        self._metrics.active_coordinations += 1
        self._active[request.id] = request
        await self._store_state(request, "started")

        try:
            result = await strategy.execute(request, self.call_agent)
        except Exception:
            self._metrics.failed_coordinations += 1
            await self._store_state(request, "failed")
            raise
        finally:
            self._metrics.active_coordinations -= 1
            self._active.pop(request.id, None)

        if result.success:
            self._metrics.successful_coordinations += 1
        else:
            self._metrics.failed_coordinations += 1

        completed = self._metrics.successful_coordinations + self._metrics.failed_coordinations
        self._metrics.average_coordination_time_ms += (
            result.total_time_ms - self._metrics.average_coordination_time_ms
        ) / completed
        await self._store_state(request, "completed" if result.success else "failed")
        return result

    def _strategy_options(self, request: CoordinationRequest) -> dict[str, Any]:
        if request.strategy == CoordinationStrategy.CONSENSUS:
            return {"threshold": self.config.consensus_threshold}
        return {}

    def coordination_metrics(
        self, result: CoordinationResult, wall_time_ms: float
    ) -> CoordinationMetrics:
        """Efficiency figures for a finished coordination."""
        return CoordinationMetrics(
            total_processing_time_ms=wall_time_ms,
            parallel_efficiency=parallel_efficiency(result.responses, wall_time_ms),
            resource_utilization=resource_utilization(
                result.responses, self.config.optimal_response_time_ms
            ),
        )

    async def _store_state(self, request: CoordinationRequest, status: str) -> None:
        if self.store is None:
            return
        record = {
            "coordination_id": request.id,
            "session_id": request.session_id,
            "agent_ids": list(request.agent_ids),
            "strategy": request.strategy.value,
            "status": status,
            "start_time": request.start_time,
            "updated_at": time.time(),
        }
        try:
            await self.store.put(STATE_KIND, request.id, record, self.state_ttl_seconds)
        except Exception as e:
            logger.warning("Could not store state for coordination %s: %s", request.id, e)

    async def get_state(self, coordination_id: str) -> dict[str, Any] | None:
        """Stored state record of a coordination, if any."""
        if self.store is None:
            return None
        return await self.store.get(STATE_KIND, coordination_id)

    @property
    def active_coordinations(self) -> list[str]:
        return list(self._active.keys())

    def get_metrics(self) -> CoordinatorMetrics:
        """Snapshot of coordinator counters."""
        return CoordinatorMetrics(**vars(self._metrics))

    async def health_check(self) -> bool:
        bus_health = await self.bus.health_check()
        return bool(bus_health["healthy"])

    async def shutdown(self) -> None:
        """Cancel outstanding waiters and close the bus."""
        await self.bus.shutdown()
        self._active.clear()
