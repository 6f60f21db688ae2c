"""Agent abstraction and registry."""

from facet.agents.base import (
    Agent,
    AgentDescriptor,
    AgentMetrics,
    AgentResponse,
    AgentState,
    AgentStatus,
    AgentType,
    BaseAgent,
    FunctionAgent,
)
from facet.agents.registry import AgentRegistry

__all__ = [
    "Agent",
    "AgentDescriptor",
    "AgentMetrics",
    "AgentRegistry",
    "AgentResponse",
    "AgentState",
    "AgentStatus",
    "AgentType",
    "BaseAgent",
    "FunctionAgent",
]
