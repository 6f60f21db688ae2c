"""Agent registry for orchestration.

Holds live agent instances keyed by id. The registry is constructed once by
the application and passed to the services that need it.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from facet.agents.base import Agent, AgentResponse, AgentType
from facet.errors import AgentInvocationError

RegistrationHook = Callable[[Agent], None]


class AgentRegistry:
    """Registry of live agents.

    Hooks registered with :meth:`on_register` run for every agent added,
    which is how per-agent resources such as circuit breakers are created
    at registration time.
    """

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._hooks: list[RegistrationHook] = []

    def on_register(self, hook: RegistrationHook) -> None:
        """Run ``hook`` for every current and future agent."""
        self._hooks.append(hook)
        for agent in self._agents.values():
            hook(agent)

    def register(self, agent: Agent) -> None:
        """Register an agent.

        Args:
            agent: Agent instance to register

        Raises:
            ValueError: If an agent with the same id already exists
        """
        agent_id = agent.descriptor.id
        if agent_id in self._agents:
            raise ValueError(f"Agent '{agent_id}' already registered")
        self._agents[agent_id] = agent
        for hook in self._hooks:
            hook(agent)

    def get(self, agent_id: str) -> Agent:
        """Get an agent by id.

        Raises:
            KeyError: If agent not found
        """
        if agent_id not in self._agents:
            raise KeyError(f"Agent '{agent_id}' not found in registry")
        return self._agents[agent_id]

    def has(self, agent_id: str) -> bool:
        """Check if an agent is registered."""
        return agent_id in self._agents

    def list_agents(self) -> list[Agent]:
        """List all registered agents in registration order."""
        return list(self._agents.values())

    def get_by_type(self, agent_type: AgentType) -> list[Agent]:
        """List agents of one specialization."""
        return [a for a in self._agents.values() if a.descriptor.type == agent_type]

    @property
    def ids(self) -> list[str]:
        """List all registered agent ids."""
        return list(self._agents.keys())

    async def invoke(
        self,
        agent_id: str,
        session_id: str,
        user_id: str,
        message: str,
        context: dict[str, Any] | None = None,
    ) -> AgentResponse:
        """Invoke an agent directly.

        Raises:
            KeyError: If agent not found
            AgentInvocationError: If the agent raises
        """
        agent = self.get(agent_id)
        try:
            return await agent.interact(session_id, user_id, message, context)
        except AgentInvocationError:
            raise
        except Exception as e:
            raise AgentInvocationError(agent_id, str(e)) from e
