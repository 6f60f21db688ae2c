"""Coordination bus: pub/sub plus correlated request/response over a transport."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from fnmatch import fnmatchcase
from typing import Any, Protocol

from pydantic import BaseModel, Field

from facet.errors import AgentTimeoutError

logger = logging.getLogger(__name__)

RESPONSE_PATTERN = "coordination:responses:*"
BROADCAST_TOPIC = "coordination:broadcast"


class MessageType(StrEnum):
    """Kinds of messages carried on the bus."""

    REQUEST = "request"
    RESPONSE = "response"
    ERROR = "error"
    EVENT = "event"
    BROADCAST = "broadcast"


class BusMessage(BaseModel):
    """Envelope for every message sent over the bus."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: MessageType = MessageType.EVENT
    sender: str = ""
    correlation_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)
    ttl_ms: int | None = None


MessageHandler = Callable[[str, BusMessage], Awaitable[None]]


def agent_topic(agent_id: str) -> str:
    return f"agent:{agent_id}:messages"


def response_topic(agent_id: str) -> str:
    return f"coordination:responses:{agent_id}"


def event_topic(event_type: str) -> str:
    return f"coordination:events:{event_type}"


def correlation_key(coordination_id: str, agent_id: str) -> str:
    """Correlation id for one agent's reply within one coordination."""
    return f"{coordination_id}:{agent_id}"


class Transport(Protocol):
    """Pub/sub transport underneath the coordination bus."""

    async def publish(self, topic: str, message: BusMessage) -> int:
        """Publish a message. Returns the number of receivers."""
        ...

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        """Subscribe a handler to a glob-style topic pattern."""
        ...

    async def unsubscribe(self, pattern: str, handler: MessageHandler | None = None) -> None:
        """Remove one handler, or all handlers for the pattern."""
        ...

    async def ping(self) -> bool:
        """Check the transport is reachable."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        ...


class InMemoryTransport:
    """In-process transport.

    Delivery is asynchronous: each matching handler runs in its own task so
    a publisher never waits on subscribers.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[MessageHandler]] = {}
        self._tasks: set[asyncio.Task] = set()

    async def publish(self, topic: str, message: BusMessage) -> int:
        handlers = [
            handler
            for pattern, handlers in self._subscriptions.items()
            if fnmatchcase(topic, pattern)
            for handler in handlers
        ]
        for handler in handlers:
            task = asyncio.create_task(self._deliver(handler, topic, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(handlers)

    async def _deliver(self, handler: MessageHandler, topic: str, message: BusMessage) -> None:
        try:
            await handler(topic, message)
        except Exception:
            logger.exception("Bus handler failed on topic %s", topic)

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        self._subscriptions.setdefault(pattern, []).append(handler)

    async def unsubscribe(self, pattern: str, handler: MessageHandler | None = None) -> None:
        if handler is None:
            self._subscriptions.pop(pattern, None)
            return
        handlers = self._subscriptions.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._subscriptions.pop(pattern, None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._subscriptions.clear()


@dataclass
class BusMetrics:
    """Counters for bus traffic."""

    messages_published: int = 0
    messages_received: int = 0
    average_latency_ms: float = 0.0
    errors: int = 0
    timeouts: int = 0
    duplicates_ignored: int = 0
    pending_responses: int = 0


class CoordinationBus:
    """
    Request/response messaging between the coordinator and agents.

    Responses are matched to waiters by correlation id. The first response
    for an id resolves its waiter; later duplicates are dropped. A waiter
    that times out is removed so a late reply cannot resurrect it.
    """

    def __init__(self, transport: Transport | None = None, sender_id: str = "coordinator"):
        """
        Initialize the bus.

        Args:
            transport: Underlying pub/sub transport. Defaults to in-memory.
            sender_id: Identity stamped on outgoing messages
        """
        self.transport: Transport = transport or InMemoryTransport()
        self.sender_id = sender_id
        self._pending: dict[str, asyncio.Future[BusMessage]] = {}
        self._metrics = BusMetrics()
        self._latency_total = 0.0
        self._started = False

    async def start(self) -> None:
        """Subscribe to agent responses. Safe to call more than once."""
        if self._started:
            return
        await self.transport.subscribe(RESPONSE_PATTERN, self._on_response)
        self._started = True

    async def publish(self, topic: str, message: BusMessage) -> int:
        """
        Publish a message to a topic.

        Args:
            topic: Destination topic
            message: Message envelope

        Returns:
            Number of receivers reported by the transport
        """
        if not message.sender:
            message = message.model_copy(update={"sender": self.sender_id})
        try:
            receivers = await self.transport.publish(topic, message)
        except Exception:
            self._metrics.errors += 1
            raise
        self._metrics.messages_published += 1
        logger.debug("Published %s on %s to %d receivers", message.type, topic, receivers)
        return receivers

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        """Subscribe a handler to a topic pattern."""
        await self.transport.subscribe(pattern, self._counting(handler))

    async def unsubscribe(self, pattern: str) -> None:
        """Drop every handler for a pattern."""
        await self.transport.unsubscribe(pattern)

    def _counting(self, handler: MessageHandler) -> MessageHandler:
        async def wrapped(topic: str, message: BusMessage) -> None:
            self._record_receipt(message)
            await handler(topic, message)

        return wrapped

    async def send_to_agent(self, agent_id: str, message: BusMessage) -> int:
        """Publish a message on the agent's own topic."""
        return await self.publish(agent_topic(agent_id), message)

    async def reply(
        self,
        agent_id: str,
        correlation_id: str,
        payload: dict[str, Any],
        error: bool = False,
    ) -> int:
        """Publish an agent's reply for a correlation id."""
        message = BusMessage(
            type=MessageType.ERROR if error else MessageType.RESPONSE,
            sender=agent_id,
            correlation_id=correlation_id,
            payload=payload,
        )
        return await self.publish(response_topic(agent_id), message)

    async def broadcast(self, event_type: str, data: dict[str, Any]) -> int:
        """Publish a coordination event to every listener on the broadcast topic."""
        message = BusMessage(
            type=MessageType.BROADCAST,
            payload={"event_type": event_type, "data": data},
        )
        return await self.publish(BROADCAST_TOPIC, message)

    def expect_response(self, correlation_id: str) -> asyncio.Future[BusMessage]:
        """Register a waiter before the request goes out."""
        future = self._pending.get(correlation_id)
        if future is None or future.done():
            future = asyncio.get_running_loop().create_future()
            self._pending[correlation_id] = future
        return future

    def resolve(self, correlation_id: str, message: BusMessage) -> bool:
        """
        Deliver a response to its waiter.

        Returns:
            True if a waiter was resolved, False for unknown, late or
            duplicate responses
        """
        future = self._pending.pop(correlation_id, None)
        if future is None or future.done():
            self._metrics.duplicates_ignored += 1
            logger.debug("Ignoring response for unknown or settled id %s", correlation_id)
            return False
        future.set_result(message)
        return True

    async def await_response(self, correlation_id: str, timeout_ms: float) -> BusMessage:
        """
        Wait for the response to a correlation id.

        Args:
            correlation_id: Key of the form ``coordination_id:agent_id``
            timeout_ms: Deadline in milliseconds

        Returns:
            The response message

        Raises:
            AgentTimeoutError: If no response arrives in time
        """
        return await self._wait(self.expect_response(correlation_id), correlation_id, timeout_ms)

    async def _wait(
        self, future: asyncio.Future[BusMessage], correlation_id: str, timeout_ms: float
    ) -> BusMessage:
        try:
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000)
        except TimeoutError:
            self._metrics.timeouts += 1
            agent_id = correlation_id.rsplit(":", 1)[-1]
            logger.warning("Timed out after %.0fms waiting for %s", timeout_ms, correlation_id)
            raise AgentTimeoutError(agent_id, timeout_ms) from None
        finally:
            if self._pending.get(correlation_id) is future:
                del self._pending[correlation_id]

    async def request(
        self,
        agent_id: str,
        correlation_id: str,
        payload: dict[str, Any],
        timeout_ms: float,
    ) -> BusMessage:
        """Send a request to an agent and wait for its correlated reply."""
        future = self.expect_response(correlation_id)
        message = BusMessage(
            type=MessageType.REQUEST,
            correlation_id=correlation_id,
            payload=payload,
            ttl_ms=int(timeout_ms),
        )
        try:
            await self.send_to_agent(agent_id, message)
        except Exception:
            if self._pending.get(correlation_id) is future:
                del self._pending[correlation_id]
            future.cancel()
            raise
        # The reply may already have resolved this future during publish
        return await self._wait(future, correlation_id, timeout_ms)

    async def _on_response(self, topic: str, message: BusMessage) -> None:
        self._record_receipt(message)
        if message.correlation_id is None:
            logger.debug("Dropping response without correlation id on %s", topic)
            return
        self.resolve(message.correlation_id, message)

    def _record_receipt(self, message: BusMessage) -> None:
        self._metrics.messages_received += 1
        latency_ms = max(0.0, (time.time() - message.timestamp) * 1000)
        self._latency_total += latency_ms
        self._metrics.average_latency_ms = self._latency_total / self._metrics.messages_received

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_metrics(self) -> BusMetrics:
        """Snapshot of bus counters."""
        self._metrics.pending_responses = len(self._pending)
        return BusMetrics(**vars(self._metrics))

    async def health_check(self) -> dict[str, Any]:
        """Report transport reachability and current counters."""
        try:
            reachable = await self.transport.ping()
        except Exception as e:
            logger.warning("Bus health check failed: %s", e)
            reachable = False
        metrics = self.get_metrics()
        return {
            "healthy": reachable,
            "pending_responses": metrics.pending_responses,
            "messages_published": metrics.messages_published,
            "messages_received": metrics.messages_received,
            "errors": metrics.errors,
        }

    async def shutdown(self) -> None:
        """Cancel all pending waiters and close the transport."""
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.cancel()
        if pending:
            logger.info("Cancelled %d pending response waiters", len(pending))
        await self.transport.close()
        self._started = False
