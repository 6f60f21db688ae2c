"""
Orchestrated Session Example
============================

This example runs a short support session through facet:
- Three in-process specialist agents behind the coordination bus
- Strategy selection driven by urgency and cultural context
- Crisis handling through the crisis monitor agent
- Health and performance figures after the session

No external services are needed; the in-memory bus and record store are
used. Point ``bus.backend`` at ``redis`` in ~/.facet/facet.yaml to run the
same session over Redis.

Usage:
    python examples/01_orchestrated_session.py
"""

import asyncio
import logging

from facet.agents.base import AgentDescriptor, AgentType, BaseAgent
from facet.config.loader import load_config
from facet.coordination.models import Urgency
from facet.events import EventType
from facet.orchestration.strategies import OrchestrationContext
from facet.system import create_system


class IntakeAgent(BaseAgent):
    async def process(self, message, context):
        return self.respond(f"Thanks for sharing. Tell me more about: {message}", confidence=0.7)


class CulturalAdapterAgent(BaseAgent):
    async def process(self, message, context):
        culture = context.get("primary_culture", "your background")
        return self.respond(
            f"We can take {culture} into account as we go.",
            confidence=0.8,
            cultural_relevance=0.9,
        )


class CrisisMonitorAgent(BaseAgent):
    async def process(self, message, context):
        return self.respond(
            "Your safety matters. If you are in danger, please call your local emergency number.",
            confidence=0.95,
            escalation_needed=True,
        )


def build_agents():
    return [
        IntakeAgent(AgentDescriptor("intake_1", AgentType.INTAKE, "Intake")),
        CulturalAdapterAgent(
            AgentDescriptor(
                "culture_1",
                AgentType.CULTURAL_ADAPTER,
                "Cultural adapter",
                cultural_specializations=("Vietnamese", "bicultural identity"),
            )
        ),
        CrisisMonitorAgent(
            AgentDescriptor(
                "crisis_1",
                AgentType.CRISIS_MONITOR,
                "Crisis monitor",
                capabilities=("crisis intervention",),
            )
        ),
    ]


async def main():
    logging.basicConfig(level=logging.INFO)
    config = load_config()

    async with create_system(config, build_agents()) as system:
        system.events.on(
            EventType.CRISIS_DETECTED,
            lambda event: print(f"  !! crisis event: {event.payload}"),
        )

        turns = [
            OrchestrationContext("demo", "I've been feeling low lately", urgency=Urgency.LOW),
            OrchestrationContext(
                "demo",
                "My family doesn't understand why I'm struggling",
                cultural_context={
                    "primary_culture": "Vietnamese",
                    "language": "vi",
                    "generational_status": "second",
                },
            ),
            OrchestrationContext("demo", "I can't keep going", urgency=Urgency.CRITICAL),
        ]

        for context in turns:
            print("\n" + "=" * 70)
            print(f"User ({context.urgency}): {context.user_input}")
            print("=" * 70)
            responses = await system.engine.orchestrate(context)
            for response in responses:
                print(f"  [{response.agent_id}] {response.content}")

        system.run_maintenance()
        print("\nHealth:")
        for agent_id, health in system.monitor.run_health_checks().items():
            print(f"  {agent_id}: {health.overall.value} ({health.score:.0f})")
        print(f"\nSystem health: {await system.health_check()}")


if __name__ == "__main__":
    asyncio.run(main())
