"""Workflow engine: an explicit state machine around the coordination strategies.

Each strategy runs through the same graph::

    initialize -> dispatch -> collect -> check_emergency
        -> emergency_escalation -> synthesize
        -> synthesize

Steps return partial state patches. The executor merges them with pure
reducers: responses and errors concatenate, completed agent ids union,
everything else is replaced.
"""

import asyncio
import dataclasses
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from facet.agents.base import AgentResponse
from facet.config.schema import CoordinationConfig
from facet.coordination.coordinator import AgentCoordinator, cultural_integration
from facet.coordination.models import (
    AgentFailure,
    CoordinatedResponse,
    CoordinationRequest,
    CoordinationResult,
    CoordinationStrategy,
    CoordinationTask,
)
from facet.coordination.strategies import synthesize_responses
from facet.events import EventEmitter, EventType

logger = logging.getLogger(__name__)

END = "__end__"


@dataclass
class WorkflowState:
    """State carried through one workflow run."""

    coordination_id: str
    session_id: str
    strategy: CoordinationStrategy
    agent_ids: list[str]
    task: CoordinationTask
    timeout_ms: float
    coordinator_id: str | None = None
    phase: str = "pending"
    responses: list[AgentResponse] = field(default_factory=list)
    completed_agents: set[str] = field(default_factory=set)
    errors: list[AgentFailure] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    result: CoordinationResult | None = None
    consensus_score: float | None = None
    emergency_detected: bool = False
    emergency_reasons: list[str] = field(default_factory=list)
    synthesized_response: str = ""
    started_at: float = field(default_factory=time.time)


StatePatch = dict[str, Any]
Step = Callable[[WorkflowState], Awaitable[StatePatch]]
EdgeFn = Callable[[WorkflowState], str]
Reducer = Callable[[Any, Any], Any]


def concat(current: list, update: list) -> list:
    return [*current, *update]


def union(current: set, update: set) -> set:
    return set(current) | set(update)


def replace(current: Any, update: Any) -> Any:
    return update


REDUCERS: dict[str, Reducer] = {
    "responses": concat,
    "errors": concat,
    "steps": concat,
    "emergency_reasons": concat,
    "completed_agents": union,
}


def merge_state(state: WorkflowState, patch: StatePatch) -> WorkflowState:
    """Apply a patch to a state, returning a new state.

    Raises:
        KeyError: If the patch names a field the state does not have
    """
    known = {f.name for f in dataclasses.fields(state)}
    changes = {}
    for key, value in patch.items():
        if key not in known:
            raise KeyError(f"Unknown workflow state field: {key}")
        reducer = REDUCERS.get(key, replace)
        changes[key] = reducer(getattr(state, key), value)
    return dataclasses.replace(state, **changes)


class StateGraph:
    """Named steps joined by fixed or conditional edges."""

    def __init__(self, name: str):
        self.name = name
        self.entry: str | None = None
        self._steps: dict[str, Step] = {}
        self._edges: dict[str, str | EdgeFn] = {}

    def add_step(self, name: str, step: Step) -> "StateGraph":
        if name in self._steps or name == END:
            raise ValueError(f"Step '{name}' already defined in graph '{self.name}'")
        self._steps[name] = step
        if self.entry is None:
            self.entry = name
        return self

    def add_edge(self, source: str, target: str) -> "StateGraph":
        self._edges[source] = target
        return self

    def add_conditional_edge(self, source: str, choose: EdgeFn) -> "StateGraph":
        self._edges[source] = choose
        return self

    @property
    def step_names(self) -> list[str]:
        return list(self._steps.keys())

    def validate(self) -> None:
        """Check every step has an outgoing edge and fixed edges hit known steps."""
        for name in self._steps:
            if name not in self._edges:
                raise ValueError(f"Step '{name}' in graph '{self.name}' has no outgoing edge")
            target = self._edges[name]
            if isinstance(target, str) and target != END and target not in self._steps:
                raise ValueError(f"Edge {name} -> {target} points to an unknown step")

    def next_step(self, current: str, state: WorkflowState) -> str:
        edge = self._edges[current]
        target = edge if isinstance(edge, str) else edge(state)
        if target != END and target not in self._steps:
            raise ValueError(f"Edge from '{current}' chose unknown step '{target}'")
        return target

    async def run(
        self,
        state: WorkflowState,
        max_steps: int = 50,
        on_step: Callable[[WorkflowState], None] | None = None,
    ) -> WorkflowState:
        """Execute steps from the entry until END.

        Raises:
            RuntimeError: If more than ``max_steps`` steps execute
        """
        if self.entry is None:
            raise ValueError(f"Graph '{self.name}' has no steps")

        current = self.entry
        executed = 0
        while current != END:
            if executed >= max_steps:
                raise RuntimeError(f"Graph '{self.name}' exceeded {max_steps} steps")
            patch = await self._steps[current](state)
            state = merge_state(state, {**patch, "steps": [current]})
            if on_step is not None:
                on_step(state)
            executed += 1
            current = self.next_step(current, state)
        return state


class WorkflowEngine:
    """
    Runs multi-agent coordinations through the workflow graph.

    One graph is built per coordination strategy. All of them share the
    emergency check, so any crisis indicator in collected responses raises
    a ``crisis_detected`` event regardless of strategy.
    """

    def __init__(
        self,
        coordinator: AgentCoordinator,
        events: EventEmitter | None = None,
        config: CoordinationConfig | None = None,
    ):
        """
        Initialize workflow engine.

        Args:
            coordinator: Dispatches strategies to agents
            events: Emitter for coordination and crisis events
            config: Coordination settings
        """
        self.coordinator = coordinator
        self.events = events or EventEmitter()
        self.config = config or coordinator.config
        self._states: dict[str, WorkflowState] = {}
        self._requests: dict[str, CoordinationRequest] = {}
        self._inflight: dict[str, asyncio.Task[CoordinationResult]] = {}
        self._cancelled: set[str] = set()
        self._keyword_patterns = [
            (keyword, re.compile(rf"\b{re.escape(keyword.lower())}\b"))
            for keyword in self.config.emergency_keywords
        ]
        self._graphs = {strategy: self._build_graph(strategy) for strategy in CoordinationStrategy}

    def _build_graph(self, strategy: CoordinationStrategy) -> StateGraph:
        graph = StateGraph(f"{strategy.value}_workflow")
        graph.add_step("initialize", self._initialize)
        graph.add_step("dispatch", self._dispatch)
        graph.add_step("collect", self._collect)
        graph.add_step("check_emergency", self._check_emergency)
        graph.add_step("emergency_escalation", self._emergency_escalation)
        graph.add_step("synthesize", self._synthesize)

        graph.add_edge("initialize", "dispatch")
        graph.add_conditional_edge(
            "dispatch", lambda s: END if s.phase == "cancelled" else "collect"
        )
        graph.add_conditional_edge(
            "collect", lambda s: END if s.phase == "cancelled" else "check_emergency"
        )
        graph.add_conditional_edge(
            "check_emergency",
            lambda s: "emergency_escalation" if s.emergency_detected else "synthesize",
        )
        graph.add_edge("emergency_escalation", "synthesize")
        graph.add_edge("synthesize", END)
        graph.validate()
        return graph

    def graph_for(self, strategy: CoordinationStrategy) -> StateGraph:
        return self._graphs[CoordinationStrategy(strategy)]

    async def execute(
        self,
        session_id: str,
        agent_ids: list[str],
        task: CoordinationTask,
        strategy: CoordinationStrategy = CoordinationStrategy.PARALLEL,
        timeout_ms: float | None = None,
        coordinator_id: str | None = None,
    ) -> CoordinatedResponse:
        """
        Coordinate agents on a task and synthesize their output.

        Args:
            session_id: Conversation session
            agent_ids: Agents to involve
            task: Work item for the agents
            strategy: Coordination strategy
            timeout_ms: Per-agent deadline; defaults to the configured timeout
            coordinator_id: Coordinator for hierarchical runs

        Returns:
            Synthesized coordinated response

        Raises:
            ConfigurationError: If the strategy cannot run with these agents
        """
        strategy = CoordinationStrategy(strategy)
        request = CoordinationRequest(
            session_id=session_id,
            agent_ids=list(agent_ids),
            task=task,
            strategy=strategy,
            timeout_ms=timeout_ms or self.config.default_timeout_ms,
            priority=task.priority,
            coordinator_id=coordinator_id,
        )
        state = WorkflowState(
            coordination_id=request.id,
            session_id=session_id,
            strategy=strategy,
            agent_ids=request.agent_ids,
            task=task,
            timeout_ms=request.timeout_ms,
            coordinator_id=coordinator_id,
            started_at=request.start_time,
        )
        self._states[request.id] = state
        self._requests[request.id] = request

        try:
            final = await self.graph_for(strategy).run(
                state,
                max_steps=self.config.max_workflow_steps,
                on_step=lambda s: self._states.__setitem__(s.coordination_id, s),
            )
        finally:
            self._requests.pop(request.id, None)
            leftover = self._inflight.pop(request.id, None)
            if leftover is not None and not leftover.done():
                leftover.cancel()
            self._states.pop(request.id, None)
            self._cancelled.discard(request.id)

        return self._build_response(final)

    async def _initialize(self, state: WorkflowState) -> StatePatch:
        self.events.emit(
            EventType.COORDINATION_STARTED,
            coordination_id=state.coordination_id,
            session_id=state.session_id,
            strategy=state.strategy.value,
            agent_ids=list(state.agent_ids),
        )
        return {"phase": "initialized"}

    async def _dispatch(self, state: WorkflowState) -> StatePatch:
        if state.coordination_id in self._cancelled:
            return {"phase": "cancelled"}
        request = self._requests[state.coordination_id]
        self._inflight[state.coordination_id] = asyncio.create_task(self.coordinator.run(request))
        return {"phase": "dispatched"}

    async def _collect(self, state: WorkflowState) -> StatePatch:
        # Stays registered while awaited so cancel_workflow can reach it
        task = self._inflight[state.coordination_id]
        try:
            result = await task
        except asyncio.CancelledError:
            if state.coordination_id not in self._cancelled:
                raise
            logger.info("Workflow %s cancelled during collection", state.coordination_id)
            return {"phase": "cancelled"}
        finally:
            if task.done():
                self._inflight.pop(state.coordination_id, None)

        return {
            "phase": "collected",
            "result": result,
            "responses": list(result.responses),
            "errors": list(result.errors),
            "completed_agents": {r.agent_id for r in result.responses},
            "consensus_score": result.consensus_score,
            "coordinator_id": result.coordinator_id or state.coordinator_id,
        }

    async def _check_emergency(self, state: WorkflowState) -> StatePatch:
        reasons = []
        for response in state.responses:
            if response.escalation_needed:
                reasons.append(f"{response.agent_id}: escalation flagged")
                continue
            content = response.content.lower()
            matched = [k for k, pattern in self._keyword_patterns if pattern.search(content)]
            if matched:
                reasons.append(f"{response.agent_id}: keywords {', '.join(matched)}")

        return {
            "phase": "emergency_checked",
            "emergency_detected": bool(reasons),
            "emergency_reasons": reasons,
        }

    async def _emergency_escalation(self, state: WorkflowState) -> StatePatch:
        logger.warning(
            "Emergency detected in coordination %s (session %s): %s",
            state.coordination_id,
            state.session_id,
            "; ".join(state.emergency_reasons),
        )
        self.events.emit(
            EventType.CRISIS_DETECTED,
            coordination_id=state.coordination_id,
            session_id=state.session_id,
            user_id=state.task.user_id,
            reasons=list(state.emergency_reasons),
            agent_ids=sorted(state.completed_agents),
        )
        return {"phase": "escalated"}

    async def _synthesize(self, state: WorkflowState) -> StatePatch:
        text = synthesize_responses(state.responses, state.strategy, state.coordinator_id)
        return {"phase": "completed", "synthesized_response": text}

    def _build_response(self, state: WorkflowState) -> CoordinatedResponse:
        wall_ms = (time.time() - state.started_at) * 1000
        if state.phase == "cancelled" or state.result is None:
            return CoordinatedResponse(
                coordination_id=state.coordination_id,
                session_id=state.session_id,
                strategy=state.strategy,
                agent_responses=[],
                synthesized_response="Coordination cancelled",
            )

        response = CoordinatedResponse(
            coordination_id=state.coordination_id,
            session_id=state.session_id,
            strategy=state.strategy,
            agent_responses=list(state.responses),
            synthesized_response=state.synthesized_response,
            errors=list(state.errors),
            consensus_score=state.consensus_score,
            emergency_detected=state.emergency_detected,
            cultural_integration=cultural_integration(state.responses),
            metrics=self.coordinator.coordination_metrics(state.result, wall_ms),
        )
        self.events.emit(
            EventType.COORDINATION_COMPLETED,
            coordination_id=state.coordination_id,
            session_id=state.session_id,
            strategy=state.strategy.value,
            success=response.success,
            response_count=len(response.agent_responses),
            error_count=len(response.errors),
            total_time_ms=wall_ms,
        )
        return response

    def get_workflow_status(self, coordination_id: str) -> dict[str, Any] | None:
        """Progress of a running workflow, or None if it is not running."""
        state = self._states.get(coordination_id)
        if state is None:
            return None
        return {
            "coordination_id": coordination_id,
            "strategy": state.strategy.value,
            "phase": state.phase,
            "steps": list(state.steps),
            "completed_agents": sorted(state.completed_agents),
            "error_count": len(state.errors),
            "elapsed_ms": (time.time() - state.started_at) * 1000,
        }

    def cancel_workflow(self, coordination_id: str) -> bool:
        """Cancel a running workflow's agent dispatch.

        Returns:
            True if a running workflow was found
        """
        if coordination_id not in self._states:
            return False
        self._cancelled.add(coordination_id)
        task = self._inflight.get(coordination_id)
        if task is not None and not task.done():
            task.cancel()
        return True

    @property
    def running_workflows(self) -> list[str]:
        return list(self._states.keys())
