"""Agent abstraction: descriptors, responses and the base agent."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class AgentType(StrEnum):
    """Specializations an agent can declare."""

    INTAKE = "intake"
    THERAPY_COORDINATOR = "therapy_coordinator"
    CRISIS_MONITOR = "crisis_monitor"
    CULTURAL_ADAPTER = "cultural_adapter"
    PROGRESS_TRACKER = "progress_tracker"


class AgentState(StrEnum):
    """Lifecycle state reported by an agent."""

    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


@dataclass(frozen=True)
class AgentDescriptor:
    """Immutable identity of an agent."""

    id: str
    type: AgentType
    name: str = ""
    capabilities: tuple[str, ...] = ()
    cultural_specializations: tuple[str, ...] = ()
    max_concurrency: int = 10

    def has_capability(self, capability: str) -> bool:
        wanted = capability.lower()
        return any(wanted in cap.lower() for cap in self.capabilities)


class AgentResponse(BaseModel):
    """Reply produced by one agent for one request."""

    agent_id: str
    agent_type: str
    content: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    escalation_needed: bool = False
    cultural_relevance: float | None = Field(default=None, ge=0.0, le=1.0)
    action_items: list[str] = Field(default_factory=list)
    processing_time_ms: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


@dataclass
class AgentStatus:
    """Point-in-time view of an agent's load."""

    agent_id: str
    state: AgentState
    active_sessions: int
    max_concurrency: int
    last_activity: float | None = None

    @property
    def utilization(self) -> float:
        if self.max_concurrency <= 0:
            return 1.0
        return min(1.0, self.active_sessions / self.max_concurrency)

    @property
    def at_capacity(self) -> bool:
        return self.active_sessions >= self.max_concurrency


@dataclass
class AgentMetrics:
    """Cumulative interaction counters for an agent."""

    agent_id: str
    total_interactions: int = 0
    failed_interactions: int = 0
    total_response_time_ms: float = 0.0
    escalations: int = 0
    confidence_sum: float = 0.0
    started_at: float = field(default_factory=time.time)

    @property
    def success_rate(self) -> float:
        if self.total_interactions == 0:
            return 1.0
        return 1.0 - self.failed_interactions / self.total_interactions

    @property
    def average_response_time_ms(self) -> float:
        succeeded = self.total_interactions - self.failed_interactions
        if succeeded <= 0:
            return 0.0
        return self.total_response_time_ms / succeeded

    @property
    def average_confidence(self) -> float:
        succeeded = self.total_interactions - self.failed_interactions
        if succeeded <= 0:
            return 0.0
        return self.confidence_sum / succeeded


@runtime_checkable
class Agent(Protocol):
    """Capability set every agent exposes to the orchestration core."""

    @property
    def descriptor(self) -> AgentDescriptor:
        """Identity of the agent."""
        ...

    async def interact(
        self,
        session_id: str,
        user_id: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> AgentResponse:
        """Handle one user turn.

        Args:
            session_id: Conversation session identifier
            user_id: Requesting user
            message: User input or task description
            context: Additional task context (prior responses, guidance)

        Returns:
            The agent's response
        """
        ...

    def get_status(self) -> AgentStatus:
        """Current load of the agent."""
        ...

    def get_metrics(self) -> AgentMetrics:
        """Cumulative counters of the agent."""
        ...


class BaseAgent(ABC):
    """Base class for specialist agents.

    Subclasses implement :meth:`process`. :meth:`interact` wraps it with
    session accounting so routing and load balancing see real concurrency.
    """

    def __init__(self, descriptor: AgentDescriptor):
        self._descriptor = descriptor
        self._active_sessions = 0
        self._last_activity: float | None = None
        self._last_error: str | None = None
        self._metrics = AgentMetrics(agent_id=descriptor.id)

    @property
    def descriptor(self) -> AgentDescriptor:
        return self._descriptor

    @property
    def agent_id(self) -> str:
        return self._descriptor.id

    @abstractmethod
    async def process(self, message: str, context: dict[str, Any]) -> AgentResponse:
        """Produce a response for a message.

        Args:
            message: User input or task description
            context: Task context including session and user identifiers

        Returns:
            The agent's response
        """

    def respond(self, content: str, **fields: Any) -> AgentResponse:
        """Build a response attributed to this agent."""
        return AgentResponse(
            agent_id=self._descriptor.id,
            agent_type=self._descriptor.type.value,
            content=content,
            **fields,
        )

    async def interact(
        self,
        session_id: str,
        user_id: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> AgentResponse:
        full_context = dict(context or {})
        full_context.setdefault("session_id", session_id)
        full_context.setdefault("user_id", user_id)

        self._active_sessions += 1
        self._last_activity = time.time()
        start = time.perf_counter()
        try:
            response = await self.process(message, full_context)
        except Exception as e:
            self._metrics.total_interactions += 1
            self._metrics.failed_interactions += 1
            self._last_error = str(e)
            logger.warning("Agent %s failed in session %s: %s", self.agent_id, session_id, e)
            raise
        finally:
            self._active_sessions -= 1

        elapsed_ms = (time.perf_counter() - start) * 1000
        if not response.processing_time_ms:
            response = response.model_copy(update={"processing_time_ms": elapsed_ms})

        self._last_error = None
        self._metrics.total_interactions += 1
        self._metrics.total_response_time_ms += response.processing_time_ms
        self._metrics.confidence_sum += response.confidence
        if response.escalation_needed:
            self._metrics.escalations += 1
        return response

    def get_status(self) -> AgentStatus:
        if self._last_error is not None:
            state = AgentState.ERROR
        elif self._active_sessions > 0:
            state = AgentState.BUSY
        else:
            state = AgentState.IDLE
        return AgentStatus(
            agent_id=self.agent_id,
            state=state,
            active_sessions=self._active_sessions,
            max_concurrency=self._descriptor.max_concurrency,
            last_activity=self._last_activity,
        )

    def get_metrics(self) -> AgentMetrics:
        return self._metrics


AgentHandler = Callable[[str, dict[str, Any]], Awaitable[AgentResponse | str]]


class FunctionAgent(BaseAgent):
    """Agent backed by an async callable.

    The handler may return a full :class:`AgentResponse` or a plain string,
    which is wrapped with the agent's default confidence.
    """

    def __init__(
        self,
        descriptor: AgentDescriptor,
        handler: AgentHandler,
        default_confidence: float = 0.7,
    ):
        super().__init__(descriptor)
        self._handler = handler
        self._default_confidence = default_confidence

    async def process(self, message: str, context: dict[str, Any]) -> AgentResponse:
        result = await self._handler(message, context)
        if isinstance(result, AgentResponse):
            return result
        return self.respond(str(result), confidence=self._default_confidence)
