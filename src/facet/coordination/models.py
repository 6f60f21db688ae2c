"""Data types shared by the coordination layer."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from facet.agents.base import AgentResponse


class CoordinationStrategy(StrEnum):
    """How a task fans out to several agents."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    HIERARCHICAL = "hierarchical"
    CONSENSUS = "consensus"


class Urgency(StrEnum):
    """Urgency of a user turn, also used as task priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class CoordinationTask(BaseModel):
    """Work item handed to each agent in a coordination."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str = "session_response"
    description: str
    user_id: str = "anonymous"
    priority: Urgency = Urgency.MEDIUM
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def with_metadata(self, **updates: Any) -> CoordinationTask:
        """Copy of the task with extra metadata merged in."""
        return self.model_copy(update={"metadata": {**self.metadata, **updates}})

    def agent_context(self) -> dict[str, Any]:
        """Context passed to the agent's ``interact``."""
        return {**self.context, **self.metadata, "task_id": self.id, "task_type": self.type}


@dataclass
class CoordinationRequest:
    """One coordination call across a set of agents."""

    session_id: str
    agent_ids: list[str]
    task: CoordinationTask
    strategy: CoordinationStrategy = CoordinationStrategy.PARALLEL
    timeout_ms: float = 30000.0
    priority: Urgency = Urgency.MEDIUM
    coordinator_id: str | None = None  # Explicit coordinator for hierarchical runs
    id: str = field(default_factory=lambda: f"coord_{uuid.uuid4().hex[:12]}")
    start_time: float = field(default_factory=time.time)


@dataclass(frozen=True)
class AgentFailure:
    """An agent that did not produce a response."""

    agent_id: str
    error: BaseException = field(compare=False)

    @property
    def error_type(self) -> str:
        return type(self.error).__name__

    @property
    def message(self) -> str:
        return str(self.error) or self.error_type

    def to_dict(self) -> dict[str, str]:
        return {"agent_id": self.agent_id, "error_type": self.error_type, "error": self.message}


@dataclass(frozen=True)
class CoordinationResult:
    """Outcome of running one strategy.

    ``dispatched`` counts every attempted agent call, including calls
    rejected by an open circuit, so ``len(responses) + len(errors)``
    always equals it.
    """

    coordination_id: str
    strategy: CoordinationStrategy
    responses: tuple[AgentResponse, ...]
    errors: tuple[AgentFailure, ...]
    total_time_ms: float
    dispatched: int
    rounds: int = 1
    consensus_score: float | None = None
    coordinator_id: str | None = None

    @property
    def success(self) -> bool:
        return len(self.responses) > 0

    @property
    def failed_agent_ids(self) -> list[str]:
        return [f.agent_id for f in self.errors]


@dataclass
class CoordinationMetrics:
    """Efficiency figures for a finished coordination."""

    total_processing_time_ms: float = 0.0
    parallel_efficiency: float = 0.0
    resource_utilization: float = 0.0


@dataclass
class CoordinatedResponse:
    """Final, synthesized output of a coordination workflow."""

    coordination_id: str
    session_id: str
    strategy: CoordinationStrategy
    agent_responses: list[AgentResponse]
    synthesized_response: str
    errors: list[AgentFailure] = field(default_factory=list)
    consensus_score: float | None = None
    emergency_detected: bool = False
    cultural_integration: dict[str, Any] = field(default_factory=dict)
    metrics: CoordinationMetrics = field(default_factory=CoordinationMetrics)
    timestamp: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return len(self.agent_responses) > 0
