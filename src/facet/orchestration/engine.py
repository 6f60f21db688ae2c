"""Top-level orchestration of a user turn across specialist agents."""

import logging
import time
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from facet.agents.base import Agent, AgentResponse, AgentType
from facet.agents.registry import AgentRegistry
from facet.config.schema import CoordinationConfig
from facet.coordination.circuit_breaker import CircuitBreakerRegistry
from facet.coordination.models import (
    CoordinatedResponse,
    CoordinationRequest,
    CoordinationStrategy,
    CoordinationTask,
    Urgency,
)
from facet.coordination.workflow import WorkflowEngine
from facet.errors import FacetError, NoEligibleAgentsError
from facet.events import EventEmitter, EventType
from facet.orchestration.monitor import PerformanceMonitor
from facet.orchestration.router import IntelligentRouter, RoutingContext, SessionTurn
from facet.orchestration.strategies import (
    OrchestrationContext,
    OrchestrationRegistry,
    OrchestrationStrategy,
    select_strategy,
)
from facet.store import RecordStore

logger = logging.getLogger(__name__)

FALLBACK_AGENT_ID = "system_fallback"
FALLBACK_MESSAGE = (
    "I'm having some difficulty responding right now. Please try again in a moment. "
    "If you are in crisis, please contact your local emergency services."
)
SESSION_KIND = "session:orchestration"
HISTORY_LIMIT = 100
SESSION_TURNS_KEPT = 5
DEFAULT_RESPONSE_TIME_MS = 2000.0
COORDINATION_OVERHEAD_MS = 500.0
# Agent health gate
HEALTH_WINDOW_SECONDS = 300.0
HEALTH_MIN_SAMPLES = 3
MIN_SUCCESS_RATE = 0.7
MAX_AVERAGE_RESPONSE_MS = 10000.0
MAX_ACTIVE_SESSIONS = 10


def system_fallback(session_id: str, reason: str) -> AgentResponse:
    """Well-formed stand-in response for when no agent could answer."""
    return AgentResponse(
        agent_id=FALLBACK_AGENT_ID,
        agent_type="system",
        content=FALLBACK_MESSAGE,
        confidence=0.0,
        metadata={"session_id": session_id, "reason": reason},
    )


@dataclass
class OrchestrationPlan:
    """Agents and strategy chosen for one turn."""

    strategy: OrchestrationStrategy
    primary: Agent
    supporting: list[Agent]
    estimated_response_time_ms: float
    routing_reason: str
    load_balancing_reason: str

    @property
    def agent_ids(self) -> list[str]:
        return [self.primary.descriptor.id, *(a.descriptor.id for a in self.supporting)]


class OrchestrationEngine:
    """
    Entry point of the core: turns a user turn into agent responses.

    Critical turns go straight to the crisis agent under the crisis
    timeout. All other turns are load balanced, matched to the best
    scoring orchestration strategy and run through the workflow engine.
    ``orchestrate`` never raises for agent or eligibility failures; it
    returns a ``system_fallback`` response instead.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        workflow: WorkflowEngine,
        breakers: CircuitBreakerRegistry,
        events: EventEmitter | None = None,
        config: CoordinationConfig | None = None,
        router: IntelligentRouter | None = None,
        monitor: PerformanceMonitor | None = None,
        store: RecordStore | None = None,
        session_ttl_seconds: int = 3600,
    ):
        """
        Initialize orchestration engine.

        Args:
            registry: Agents available to the engine
            workflow: Runs coordinations across agents
            breakers: Per-agent circuit breakers
            events: Emitter for crisis events
            config: Coordination settings
            router: Optional router that picks the primary agent
            monitor: Optional performance monitor fed after each turn
            store: Optional store for session continuity records
            session_ttl_seconds: Lifetime of session continuity records
        """
        self.registry = registry
        self.workflow = workflow
        self.breakers = breakers
        self.events = events or workflow.events
        self.config = config or workflow.config
        self.router = router
        self.monitor = monitor
        self.store = store
        self.session_ttl_seconds = session_ttl_seconds
        self._active: dict[str, OrchestrationContext] = {}
        self._history: dict[str, deque[float]] = {}
        self.total_orchestrations = 0
        self.fallbacks = 0

    async def orchestrate(self, context: OrchestrationContext) -> list[AgentResponse]:
        """
        Handle one user turn.

        Args:
            context: The turn and its routing constraints

        Returns:
            Agent responses, primary first. A failed primary or a total
            failure yields a ``system_fallback`` response in first place.
        """
        self.total_orchestrations += 1
        self._active[context.session_id] = context
        try:
            if context.urgency == Urgency.CRITICAL:
                return await self._handle_crisis(context)
            return await self._orchestrate(context)
        except FacetError as e:
            self.fallbacks += 1
            logger.error("Orchestration failed for session %s: %s", context.session_id, e)
            return [system_fallback(context.session_id, type(e).__name__)]
        except Exception as e:
            self.fallbacks += 1
            logger.exception("Unexpected orchestration failure for session %s", context.session_id)
            return [system_fallback(context.session_id, type(e).__name__)]
        finally:
            self._active.pop(context.session_id, None)

    async def _orchestrate(self, context: OrchestrationContext) -> list[AgentResponse]:
        plan = await self.plan(context)
        logger.info(
            "Session %s: %s orchestration with %s (%s)",
            context.session_id,
            plan.strategy.name,
            plan.agent_ids,
            plan.routing_reason,
        )
        execution = plan.strategy.plan(plan.primary, plan.supporting)
        task = CoordinationTask(
            description=context.user_input,
            user_id=context.user_id,
            priority=context.urgency,
            context={**context.cultural_context, "orchestration_strategy": plan.strategy.name},
        )
        started = time.perf_counter()
        coordinated = await self.workflow.execute(
            context.session_id,
            execution.agent_ids,
            task,
            strategy=execution.strategy,
            timeout_ms=context.max_response_time_ms,
            coordinator_id=execution.coordinator_id,
        )
        elapsed_ms = (time.perf_counter() - started) * 1000

        self._record_outcome(coordinated, elapsed_ms)
        responses = self._order_responses(plan, coordinated)
        await self._save_session(context, plan.primary.descriptor.id, responses)
        return responses

    def _order_responses(
        self, plan: OrchestrationPlan, coordinated: CoordinatedResponse
    ) -> list[AgentResponse]:
        primary_id = plan.primary.descriptor.id
        primary = [r for r in coordinated.agent_responses if r.agent_id == primary_id]
        others = [r for r in coordinated.agent_responses if r.agent_id != primary_id]
        if primary:
            return [*primary, *others]

        failure = next((f for f in coordinated.errors if f.agent_id == primary_id), None)
        reason = failure.error_type if failure else "no_response"
        self.fallbacks += 1
        logger.warning(
            "Primary agent %s failed in session %s: %s", primary_id, coordinated.session_id, reason
        )
        return [system_fallback(coordinated.session_id, reason), *others]

    async def plan(self, context: OrchestrationContext) -> OrchestrationPlan:
        """
        Choose strategy, primary and supporting agents for a turn.

        Raises:
            NoEligibleAgentsError: If no healthy, non-excluded agent remains
        """
        agents = self.load_balance(self.available_agents(context))
        if not agents:
            raise NoEligibleAgentsError(
                f"No eligible agents for session {context.session_id}"
            )

        strategy = select_strategy(context, agents)
        primary, routing_reason = await self._select_primary(context, agents)
        supporting: list[Agent] = []
        if strategy.uses_supporting_agents:
            supporting = [a for a in agents if a is not primary][:2]

        return OrchestrationPlan(
            strategy=strategy,
            primary=primary,
            supporting=supporting,
            estimated_response_time_ms=self.estimate_response_time(primary, supporting),
            routing_reason=routing_reason,
            load_balancing_reason=self._load_balancing_reason(primary, supporting),
        )

    def available_agents(self, context: OrchestrationContext) -> list[Agent]:
        """Registered agents that are healthy, not excluded and capable."""
        agents = []
        for agent in self.registry.list_agents():
            descriptor = agent.descriptor
            if descriptor.id in context.excluded_agents:
                continue
            if context.required_capabilities and not any(
                descriptor.has_capability(c) for c in context.required_capabilities
            ):
                continue
            if self.breakers.is_open(descriptor.id):
                continue
            if not self.is_agent_healthy(agent):
                continue
            agents.append(agent)
        return agents

    def load_balance(self, agents: Sequence[Agent]) -> list[Agent]:
        """Sort agents so fewer sessions and higher success rates come first."""

        def load_score(agent: Agent) -> float:
            status = agent.get_status()
            if status.max_concurrency <= 0:
                return 1.0
            sessions = status.active_sessions / status.max_concurrency
            return sessions * 0.4 + (1.0 - agent.get_metrics().success_rate) * 0.6

        return sorted(agents, key=load_score)

    def is_agent_healthy(self, agent: Agent) -> bool:
        """
        Whether an agent should take new turns.

        Only outcomes inside the recent health window count, so an agent
        excluded for failing becomes eligible again once they age out.
        Open circuits are filtered separately.
        """
        if agent.get_status().active_sessions >= MAX_ACTIVE_SESSIONS:
            return False
        if self.monitor is None:
            return True

        recent = self.monitor.recent_records(agent.descriptor.id, HEALTH_WINDOW_SECONDS)
        if len(recent) < HEALTH_MIN_SAMPLES:
            return True
        succeeded = [r.response_time_ms for r in recent if r.success]
        success_rate = len(succeeded) / len(recent)
        average_ms = sum(succeeded) / len(succeeded) if succeeded else 0.0
        return success_rate > MIN_SUCCESS_RATE and average_ms < MAX_AVERAGE_RESPONSE_MS

    async def _select_primary(
        self, context: OrchestrationContext, agents: list[Agent]
    ) -> tuple[Agent, str]:
        if context.preferred_agent:
            for agent in agents:
                if agent.descriptor.id == context.preferred_agent:
                    return agent, "User preferred agent"

        if self.router is None:
            return agents[0], self._default_reason(agents[0])

        decision = self.router.route(agents, await self._routing_context(context))
        return decision.selected_agent, decision.reason

    def _default_reason(self, agent: Agent) -> str:
        if agent.get_status().active_sessions < 3:
            return "Agent has low current load"
        return "Default routing based on agent capabilities"

    async def _routing_context(self, context: OrchestrationContext) -> RoutingContext:
        history = list(context.session_history)
        current_agent = None
        record = await self._load_session(context.session_id)
        if record is not None:
            current_agent = record.get("current_agent")
            if not history:
                history = [SessionTurn(**turn) for turn in record.get("turns", [])]

        return RoutingContext(
            session_id=context.session_id,
            user_input=context.user_input,
            user_id=context.user_id,
            urgency=context.urgency,
            cultural_profile=context.cultural_profile,
            session_history=history,
            current_agent=current_agent,
            preferred_agents=[context.preferred_agent] if context.preferred_agent else [],
            blacklisted_agents=list(context.excluded_agents),
        )

    def estimate_response_time(self, primary: Agent, supporting: Sequence[Agent]) -> float:
        """Expected wall time of the turn in milliseconds."""
        primary_time = self.average_response_time(primary.descriptor.id)
        if not supporting:
            return primary_time
        slowest = max(self.average_response_time(a.descriptor.id) for a in supporting)
        return max(primary_time, slowest) + COORDINATION_OVERHEAD_MS

    def average_response_time(self, agent_id: str) -> float:
        history = self._history.get(agent_id)
        if not history:
            return DEFAULT_RESPONSE_TIME_MS
        return sum(history) / len(history)

    def _load_balancing_reason(self, primary: Agent, supporting: Sequence[Agent]) -> str:
        status = primary.get_status()
        reasons = [
            f"Primary agent load: {status.active_sessions} sessions",
            f"Success rate: {primary.get_metrics().success_rate * 100:.1f}%",
        ]
        if supporting:
            reasons.append(f"{len(supporting)} supporting agents selected for collaboration")
        return "; ".join(reasons)

    # Crisis path

    async def _handle_crisis(self, context: OrchestrationContext) -> list[AgentResponse]:
        crisis_agents = self.registry.get_by_type(AgentType.CRISIS_MONITOR)
        if not crisis_agents:
            self._emit_crisis(context, agent_id=None, escalation_required=True)
            raise NoEligibleAgentsError("No crisis agent registered")

        agent_id = crisis_agents[0].descriptor.id
        task = CoordinationTask(
            description=context.user_input,
            user_id=context.user_id,
            priority=Urgency.CRITICAL,
            context={**context.cultural_context, "crisis_mode": True, "urgency": "critical"},
        )
        request = CoordinationRequest(
            session_id=context.session_id,
            agent_ids=[agent_id],
            task=task,
            strategy=CoordinationStrategy.PARALLEL,
            timeout_ms=self.config.crisis_timeout_ms,
            priority=Urgency.CRITICAL,
        )
        started = time.perf_counter()
        try:
            response = await self.workflow.coordinator.call_agent(request, agent_id, task)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self._record_agent(agent_id, elapsed_ms, success=False)
            # Unreachable crisis agent still needs human attention
            self._emit_crisis(context, agent_id=agent_id, escalation_required=True, error=str(e))
            raise

        self._record_agent(
            agent_id,
            response.processing_time_ms,
            success=True,
            cultural_relevance=response.cultural_relevance,
            escalated=response.escalation_needed,
        )
        self._emit_crisis(context, agent_id=agent_id, escalation_required=response.escalation_needed)
        await self._save_session(context, agent_id, [response])
        return [response]

    def _emit_crisis(
        self,
        context: OrchestrationContext,
        agent_id: str | None,
        escalation_required: bool,
        error: str | None = None,
    ) -> None:
        logger.warning(
            "Crisis turn in session %s (agent %s, escalation %s)",
            context.session_id,
            agent_id,
            escalation_required,
        )
        payload: dict[str, Any] = {
            "session_id": context.session_id,
            "user_id": context.user_id,
            "agent_id": agent_id,
            "severity": "critical",
            "escalation_required": escalation_required,
        }
        if error is not None:
            payload["error"] = error
        self.events.emit(EventType.CRISIS_DETECTED, **payload)

    # Metrics

    def _record_outcome(self, coordinated: CoordinatedResponse, elapsed_ms: float) -> None:
        for response in coordinated.agent_responses:
            self._record_agent(
                response.agent_id,
                response.processing_time_ms,
                success=True,
                cultural_relevance=response.cultural_relevance,
                escalated=response.escalation_needed,
            )
        for failure in coordinated.errors:
            self._record_agent(failure.agent_id, elapsed_ms, success=False)

    def _record_agent(
        self,
        agent_id: str,
        response_time_ms: float,
        success: bool,
        cultural_relevance: float | None = None,
        escalated: bool = False,
    ) -> None:
        if success:
            history = self._history.setdefault(agent_id, deque(maxlen=HISTORY_LIMIT))
            history.append(response_time_ms)
        if self.router is not None:
            self.router.update_agent_performance(agent_id, response_time_ms, success)
        if self.monitor is not None:
            sessions = 0
            if self.registry.has(agent_id):
                sessions = self.registry.get(agent_id).get_status().active_sessions
            self.monitor.record_interaction(
                agent_id,
                response_time_ms,
                success,
                cultural_relevance=cultural_relevance,
                concurrent_sessions=sessions,
                escalated=escalated,
            )

    def record_feedback(self, agent_id: str, response_time_ms: float, satisfaction: float) -> None:
        """Feed a user satisfaction rating for an earlier turn into routing and monitoring."""
        if self.router is not None:
            self.router.update_agent_performance(agent_id, response_time_ms, True, satisfaction)
        if self.monitor is not None:
            self.monitor.record_interaction(
                agent_id, response_time_ms, True, user_satisfaction=satisfaction
            )

    # Session continuity

    async def _load_session(self, session_id: str) -> dict[str, Any] | None:
        if self.store is None:
            return None
        try:
            return await self.store.get(SESSION_KIND, session_id)
        except Exception as e:
            logger.warning("Could not load session record %s: %s", session_id, e)
            return None

    async def _save_session(
        self, context: OrchestrationContext, current_agent: str, responses: list[AgentResponse]
    ) -> None:
        if self.store is None:
            return
        record = await self._load_session(context.session_id) or {}
        turns = list(record.get("turns", []))
        turns.append(
            {
                "agent_id": current_agent,
                "escalation_required": any(r.escalation_needed for r in responses),
            }
        )
        record = {
            "current_agent": current_agent,
            "turns": turns[-SESSION_TURNS_KEPT:],
            "updated_at": time.time(),
        }
        try:
            await self.store.put(SESSION_KIND, context.session_id, record, self.session_ttl_seconds)
        except Exception as e:
            logger.warning("Could not store session record %s: %s", context.session_id, e)

    # Status

    @property
    def active_orchestrations(self) -> list[str]:
        return list(self._active.keys())

    def get_status(self) -> dict[str, Any]:
        """Active orchestrations, strategies and per-agent load."""
        return {
            "active_orchestrations": len(self._active),
            "total_orchestrations": self.total_orchestrations,
            "fallbacks": self.fallbacks,
            "available_strategies": OrchestrationRegistry.available(),
            "agents": {
                agent.descriptor.id: self._agent_report(agent)
                for agent in self.registry.list_agents()
            },
        }

    def get_performance_report(self, agent_id: str | None = None) -> dict[str, Any] | None:
        """Load figures of one agent, or of every agent when no id is given."""
        if agent_id is None:
            return {a.descriptor.id: self._agent_report(a) for a in self.registry.list_agents()}
        if not self.registry.has(agent_id):
            return None
        return self._agent_report(self.registry.get(agent_id))

    def _agent_report(self, agent: Agent) -> dict[str, Any]:
        status = agent.get_status()
        metrics = agent.get_metrics()
        return {
            "current_sessions": status.active_sessions,
            "average_response_time_ms": self.average_response_time(agent.descriptor.id),
            "success_rate": metrics.success_rate,
            "is_healthy": self.is_agent_healthy(agent),
            "circuit_state": self.breakers.get_state(agent.descriptor.id).value,
        }
