"""Construction and lifecycle of a complete orchestration system.

``create_system`` wires every service from one :class:`FacetConfig`. The
returned :class:`OrchestrationSystem` owns the agent workers and the single
maintenance task, and is used as an async context manager::

    async with create_system(config, agents) as system:
        responses = await system.engine.orchestrate(context)
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

import redis.asyncio as redis

from facet.agents.base import Agent
from facet.agents.registry import AgentRegistry
from facet.config.schema import FacetConfig
from facet.coordination.bus import CoordinationBus, InMemoryTransport, Transport
from facet.coordination.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from facet.coordination.coordinator import AgentCoordinator
from facet.coordination.redis_transport import RedisTransport
from facet.coordination.worker import AgentWorker
from facet.coordination.workflow import WorkflowEngine
from facet.events import EventEmitter
from facet.metrics_source import MetricsSource
from facet.orchestration.engine import OrchestrationEngine
from facet.orchestration.monitor import PerformanceMonitor
from facet.orchestration.router import IntelligentRouter
from facet.store import InMemoryRecordStore, RecordStore, RedisRecordStore

logger = logging.getLogger(__name__)


class OrchestrationSystem:
    """
    All orchestration services for one process.

    Agents registered after ``start`` get a bus worker immediately.
    """

    def __init__(
        self,
        config: FacetConfig,
        registry: AgentRegistry,
        bus: CoordinationBus,
        breakers: CircuitBreakerRegistry,
        coordinator: AgentCoordinator,
        workflow: WorkflowEngine,
        router: IntelligentRouter,
        monitor: PerformanceMonitor,
        engine: OrchestrationEngine,
        events: EventEmitter,
        store: RecordStore,
    ):
        self.config = config
        self.registry = registry
        self.bus = bus
        self.breakers = breakers
        self.coordinator = coordinator
        self.workflow = workflow
        self.router = router
        self.monitor = monitor
        self.engine = engine
        self.events = events
        self.store = store
        self._workers: dict[str, AgentWorker] = {}
        self._maintenance_task: asyncio.Task | None = None
        self._running = False
        registry.on_register(self._on_agent_registered)

    @property
    def running(self) -> bool:
        return self._running

    def _on_agent_registered(self, agent: Agent) -> None:
        self.breakers.register(agent.descriptor.id)
        worker = AgentWorker(agent, self.bus)
        self._workers[worker.agent_id] = worker
        if self._running:
            task = asyncio.get_running_loop().create_task(worker.start())
            task.add_done_callback(self._log_worker_start)

    @staticmethod
    def _log_worker_start(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Agent worker failed to start: %s", task.exception())

    async def start(self) -> None:
        """Start the bus, every agent worker and the maintenance loop."""
        if self._running:
            return
        await self.bus.start()
        for worker in self._workers.values():
            await worker.start()
        self._running = True
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info("Orchestration system started with %d agents", len(self._workers))

    async def stop(self) -> None:
        """Stop maintenance, detach workers and shut the bus down."""
        if not self._running:
            return
        self._running = False
        if self._maintenance_task is not None and not self._maintenance_task.done():
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
        self._maintenance_task = None

        for worker in self._workers.values():
            await worker.stop()
        await self.coordinator.shutdown()
        await self.events.drain()
        logger.info("Orchestration system stopped")

    async def _maintenance_loop(self) -> None:
        interval = self.config.monitoring.maintenance_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                self.run_maintenance()
            except Exception:
                logger.exception("Maintenance pass failed")

    def run_maintenance(self) -> dict[str, Any]:
        """Trim routing history, clean monitor data and refresh agent health."""
        trimmed = self.router.trim_history()
        removed = self.monitor.cleanup_old_data()
        health = self.monitor.run_health_checks()
        logger.debug(
            "Maintenance: trimmed %d routing decisions, removed %d records", trimmed, removed
        )
        return {
            "routing_decisions_trimmed": trimmed,
            "records_removed": removed,
            "agents_checked": len(health),
        }

    async def health_check(self) -> dict[str, Any]:
        """Bus reachability plus breaker health."""
        bus = await self.bus.health_check()
        breakers = self.breakers.health_report()
        return {
            "healthy": bool(bus["healthy"]) and breakers.overall_health > 0,
            "bus": bus,
            "breakers": {
                "healthy": breakers.healthy_agents,
                "unhealthy": breakers.unhealthy_agents,
                "overall_health_pct": round(breakers.overall_health * 100, 1),
            },
            "running": self._running,
        }

    async def __aenter__(self) -> "OrchestrationSystem":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()


def _build_transport(config: FacetConfig, redis_client: redis.Redis | None) -> Transport:
    if config.bus.backend == "redis":
        return RedisTransport(config.bus.redis_url, config.bus.key_prefix, client=redis_client)
    return InMemoryTransport()


def _build_store(config: FacetConfig, redis_client: redis.Redis | None) -> RecordStore:
    if config.bus.backend == "redis":
        client = redis_client or redis.from_url(config.bus.redis_url, decode_responses=True)
        return RedisRecordStore(client, config.bus.key_prefix)
    return InMemoryRecordStore()


def create_system(
    config: FacetConfig | None = None,
    agents: Iterable[Agent] = (),
    store: RecordStore | None = None,
    metrics_source: MetricsSource | None = None,
    redis_client: redis.Redis | None = None,
    clock: Callable[[], float] = time.time,
) -> OrchestrationSystem:
    """
    Build a complete orchestration system.

    Args:
        config: System configuration, defaults when None
        agents: Agents to register up front
        store: Record store; by default in-memory, or Redis for the redis backend
        metrics_source: Resource usage provider for the monitor
        redis_client: Shared Redis client for the redis backend
        clock: Wall clock used by routing history and monitoring

    Returns:
        Unstarted system; start it with ``start`` or ``async with``
    """
    config = config or FacetConfig()
    events = EventEmitter()
    registry = AgentRegistry()
    breakers = CircuitBreakerRegistry(CircuitBreakerConfig.from_settings(config.breaker))
    bus = CoordinationBus(_build_transport(config, redis_client))
    store = store or _build_store(config, redis_client)

    coordinator = AgentCoordinator(
        bus,
        breakers,
        config.coordination,
        store=store,
        state_ttl_seconds=config.bus.state_ttl_seconds,
    )
    workflow = WorkflowEngine(coordinator, events, config.coordination)
    router = IntelligentRouter(config.routing, breakers, clock)
    monitor = PerformanceMonitor(config.monitoring, events, metrics_source, clock)
    engine = OrchestrationEngine(
        registry,
        workflow,
        breakers,
        events,
        config.coordination,
        router=router,
        monitor=monitor,
        store=store,
        session_ttl_seconds=config.bus.state_ttl_seconds,
    )

    system = OrchestrationSystem(
        config=config,
        registry=registry,
        bus=bus,
        breakers=breakers,
        coordinator=coordinator,
        workflow=workflow,
        router=router,
        monitor=monitor,
        engine=engine,
        events=events,
        store=store,
    )
    for agent in agents:
        registry.register(agent)
    return system
