"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio

from facet.agents.base import AgentDescriptor, AgentResponse, AgentType, FunctionAgent
from facet.config.schema import CoordinationConfig, FacetConfig
from facet.metrics_source import StaticMetricsSource
from facet.system import create_system


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_agent(
    agent_id: str,
    agent_type: AgentType = AgentType.INTAKE,
    content: str | None = None,
    confidence: float = 0.7,
    delay: float = 0.0,
    error: Exception | None = None,
    escalation: bool = False,
    capabilities: tuple[str, ...] = (),
    cultural_specializations: tuple[str, ...] = (),
    max_concurrency: int = 10,
) -> FunctionAgent:
    """Agent that answers with fixed content and records every call in ``agent.calls``."""
    calls: list[tuple[str, dict]] = []

    async def handler(message: str, context: dict) -> AgentResponse:
        calls.append((message, context))
        if delay:
            await asyncio.sleep(delay)
        if error is not None:
            raise error
        return AgentResponse(
            agent_id=agent_id,
            agent_type=agent_type.value,
            content=content if content is not None else f"{agent_id} reply",
            confidence=confidence,
            escalation_needed=escalation,
        )

    descriptor = AgentDescriptor(
        id=agent_id,
        type=agent_type,
        name=agent_id,
        capabilities=capabilities,
        cultural_specializations=cultural_specializations,
        max_concurrency=max_concurrency,
    )
    agent = FunctionAgent(descriptor, handler)
    agent.calls = calls
    return agent


@pytest.fixture
def clock() -> FakeClock:
    """Provide a fake clock starting at a fixed epoch."""
    return FakeClock()


@pytest.fixture
def make_agent():
    """Provide the agent builder."""
    return build_agent


@pytest.fixture
def metrics_source() -> StaticMetricsSource:
    """Provide fixed resource figures."""
    return StaticMetricsSource()


@pytest.fixture
def fast_config() -> FacetConfig:
    """Provide a configuration with short agent timeouts."""
    return FacetConfig(
        coordination=CoordinationConfig(default_timeout_ms=1000, crisis_timeout_ms=300)
    )


@pytest_asyncio.fixture
async def start_system(fast_config, metrics_source):
    """Provide a factory for started systems; every system is stopped afterwards."""
    systems = []

    async def factory(*agents, config: FacetConfig | None = None, **kwargs):
        system = create_system(
            config or fast_config, agents, metrics_source=metrics_source, **kwargs
        )
        await system.start()
        systems.append(system)
        return system

    yield factory

    for system in systems:
        await system.stop()


@pytest.fixture
def fail_agent_topics():
    """Provide a patcher that makes publishes to agent topics raise a connection error."""

    def patch(transport):
        publish = transport.publish

        async def failing(topic, message):
            if topic.startswith("agent:"):
                raise ConnectionError("redis down")
            return await publish(topic, message)

        transport.publish = failing

    return patch
