"""Orchestration strategies and their self-registering registry.

Each strategy scores how well it fits a turn and maps the chosen agents
onto a coordination strategy run by the workflow engine.

Usage::

    @register_orchestration("single")
    class SingleAgentOrchestration(OrchestrationStrategy):
        ...

    strategy = OrchestrationRegistry.create("single")
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar

from facet.agents.base import Agent
from facet.coordination.models import CoordinationStrategy, Urgency
from facet.orchestration.router import CulturalProfile, SessionTurn


@dataclass
class OrchestrationContext:
    """A user turn submitted for orchestration."""

    session_id: str
    user_input: str
    user_id: str = "anonymous"
    urgency: Urgency = Urgency.MEDIUM
    cultural_context: dict[str, Any] = field(default_factory=dict)
    cultural_profile: CulturalProfile | None = None
    session_history: list[SessionTurn] = field(default_factory=list)
    required_capabilities: list[str] = field(default_factory=list)
    excluded_agents: list[str] = field(default_factory=list)
    preferred_agent: str | None = None
    max_response_time_ms: float | None = None


@dataclass
class ExecutionPlan:
    """How the workflow engine should run the selected agents."""

    strategy: CoordinationStrategy
    agent_ids: list[str]
    coordinator_id: str | None = None


class OrchestrationRegistry:
    """Lookup of orchestration strategies in declaration order."""

    _strategies: ClassVar[dict[str, type["OrchestrationStrategy"]]] = {}

    @classmethod
    def register(cls, name: str, strategy_cls: type["OrchestrationStrategy"]) -> None:
        cls._strategies[name] = strategy_cls

    @classmethod
    def get(cls, name: str) -> type["OrchestrationStrategy"]:
        if name not in cls._strategies:
            raise KeyError(f"Unknown orchestration strategy: {name!r}. Available: {cls.available()}")
        return cls._strategies[name]

    @classmethod
    def create(cls, name: str) -> "OrchestrationStrategy":
        return cls.get(name)()

    @classmethod
    def available(cls) -> list[str]:
        return list(cls._strategies.keys())


def register_orchestration(name: str) -> Any:
    """Class decorator that registers an orchestration strategy under *name*."""

    def decorator(cls: type["OrchestrationStrategy"]) -> type["OrchestrationStrategy"]:
        cls.name = name
        OrchestrationRegistry.register(name, cls)
        return cls

    return decorator


class OrchestrationStrategy(ABC):
    """Base class for orchestration strategies."""

    name: ClassVar[str] = ""
    # Whether the strategy takes supporting agents next to the primary
    uses_supporting_agents: ClassVar[bool] = False

    @abstractmethod
    def evaluate(self, context: OrchestrationContext, agents: Sequence[Agent]) -> float:
        """Fit of this strategy for the turn, in [0, 1]."""

    @abstractmethod
    def plan(self, primary: Agent, supporting: Sequence[Agent]) -> ExecutionPlan:
        """Map the selected agents onto a coordination strategy."""


@register_orchestration("single")
class SingleAgentOrchestration(OrchestrationStrategy):
    """One agent handles the whole turn."""

    def evaluate(self, context: OrchestrationContext, agents: Sequence[Agent]) -> float:
        if context.urgency == Urgency.LOW and len(context.session_history) < 3:
            return 0.8
        return 0.3

    def plan(self, primary: Agent, supporting: Sequence[Agent]) -> ExecutionPlan:
        return ExecutionPlan(CoordinationStrategy.PARALLEL, [primary.descriptor.id])


@register_orchestration("collaborative")
class CollaborativeOrchestration(OrchestrationStrategy):
    """The primary agent leads and supporting agents consult under it."""

    uses_supporting_agents = True

    def evaluate(self, context: OrchestrationContext, agents: Sequence[Agent]) -> float:
        if len(context.cultural_context) > 2:
            return 0.9
        if context.urgency == Urgency.MEDIUM and len(agents) >= 2:
            return 0.7
        return 0.4

    def plan(self, primary: Agent, supporting: Sequence[Agent]) -> ExecutionPlan:
        primary_id = primary.descriptor.id
        return ExecutionPlan(
            CoordinationStrategy.HIERARCHICAL,
            [primary_id, *(a.descriptor.id for a in supporting)],
            coordinator_id=primary_id,
        )


@register_orchestration("sequential")
class SequentialOrchestration(OrchestrationStrategy):
    """Agents build on each other's output in turn."""

    def evaluate(self, context: OrchestrationContext, agents: Sequence[Agent]) -> float:
        text = context.user_input.lower()
        if "progress" in text or "goal" in text:
            return 0.8
        return 0.3

    def plan(self, primary: Agent, supporting: Sequence[Agent]) -> ExecutionPlan:
        return ExecutionPlan(
            CoordinationStrategy.SEQUENTIAL,
            [primary.descriptor.id, *(a.descriptor.id for a in supporting)],
        )


@register_orchestration("parallel")
class ParallelOrchestration(OrchestrationStrategy):
    """All selected agents answer at once."""

    uses_supporting_agents = True

    def evaluate(self, context: OrchestrationContext, agents: Sequence[Agent]) -> float:
        if context.urgency == Urgency.HIGH and len(agents) >= 2:
            return 0.9
        if context.max_response_time_ms is not None and context.max_response_time_ms < 3000:
            return 0.7
        return 0.4

    def plan(self, primary: Agent, supporting: Sequence[Agent]) -> ExecutionPlan:
        return ExecutionPlan(
            CoordinationStrategy.PARALLEL,
            [primary.descriptor.id, *(a.descriptor.id for a in supporting)],
        )


def select_strategy(
    context: OrchestrationContext, agents: Sequence[Agent]
) -> OrchestrationStrategy:
    """Highest scoring registered strategy; the earliest declared wins ties."""
    best: OrchestrationStrategy | None = None
    best_score = -1.0
    for name in OrchestrationRegistry.available():
        strategy = OrchestrationRegistry.create(name)
        score = strategy.evaluate(context, agents)
        if score > best_score:
            best, best_score = strategy, score
    return best or OrchestrationRegistry.create("single")
