"""Agent-side endpoint that serves coordination requests from the bus."""

import logging

from facet.agents.base import Agent
from facet.coordination.bus import BusMessage, CoordinationBus, MessageType, agent_topic
from facet.coordination.models import CoordinationTask

logger = logging.getLogger(__name__)


class AgentWorker:
    """Binds one agent to its bus topic.

    Each request is handled by the agent's ``interact`` and answered on the
    agent's response topic. Agent exceptions are answered with an error
    reply so the coordinator fails the call without waiting for the timeout.
    """

    def __init__(self, agent: Agent, bus: CoordinationBus):
        self.agent = agent
        self.bus = bus
        self.handled = 0
        self.failed = 0
        self._topic = agent_topic(agent.descriptor.id)
        self._running = False

    @property
    def agent_id(self) -> str:
        return self.agent.descriptor.id

    async def start(self) -> None:
        if self._running:
            return
        await self.bus.subscribe(self._topic, self._on_message)
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        await self.bus.unsubscribe(self._topic)
        self._running = False

    async def _on_message(self, topic: str, message: BusMessage) -> None:
        if message.type != MessageType.REQUEST or message.correlation_id is None:
            return

        try:
            task = CoordinationTask.model_validate(message.payload["task"])
            session_id = str(message.payload.get("session_id", ""))
            response = await self.agent.interact(
                session_id, task.user_id, task.description, task.agent_context()
            )
        except Exception as e:
            self.failed += 1
            logger.warning("Agent %s failed request %s: %s", self.agent_id, message.correlation_id, e)
            await self.bus.reply(
                self.agent_id,
                message.correlation_id,
                {"error": str(e) or type(e).__name__, "error_type": type(e).__name__},
                error=True,
            )
            return

        self.handled += 1
        await self.bus.reply(
            self.agent_id,
            message.correlation_id,
            {"response": response.model_dump(mode="json")},
        )
