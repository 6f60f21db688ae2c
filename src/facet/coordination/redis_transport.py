"""Redis pub/sub transport for cross-process coordination."""

from __future__ import annotations

import asyncio
import logging

import redis.asyncio as redis
from pydantic import ValidationError
from redis.asyncio.client import PubSub

from facet.coordination.bus import BusMessage, MessageHandler

logger = logging.getLogger(__name__)


class RedisTransport:
    """Transport backed by Redis pattern subscriptions.

    Topics and patterns are namespaced with ``key_prefix``. A single
    background task reads the pub/sub connection and dispatches to the
    handlers registered for the matching pattern.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "facet:",
        client: redis.Redis | None = None,
    ):
        self.url = url
        self.key_prefix = key_prefix
        self._client = client
        self._pubsub: PubSub | None = None
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._listener_task: asyncio.Task | None = None

    def _key(self, name: str) -> str:
        if name.startswith(self.key_prefix):
            return name
        return f"{self.key_prefix}{name}"

    def _strip(self, name: str) -> str:
        if name.startswith(self.key_prefix):
            return name[len(self.key_prefix) :]
        return name

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.url, decode_responses=True)
        return self._client

    async def publish(self, topic: str, message: BusMessage) -> int:
        return await self.client.publish(self._key(topic), message.model_dump_json())

    async def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        key = self._key(pattern)
        is_new = key not in self._handlers
        self._handlers.setdefault(key, []).append(handler)

        if self._pubsub is None:
            self._pubsub = self.client.pubsub()
        if is_new:
            await self._pubsub.psubscribe(key)
        if self._listener_task is None:
            self._listener_task = asyncio.create_task(self._listen())

    async def unsubscribe(self, pattern: str, handler: MessageHandler | None = None) -> None:
        key = self._key(pattern)
        handlers = self._handlers.get(key)
        if handlers is None:
            return
        if handler is not None and handler in handlers:
            handlers.remove(handler)
        if handler is None or not handlers:
            del self._handlers[key]
            if self._pubsub is not None:
                await self._pubsub.punsubscribe(key)

    async def _listen(self) -> None:
        """Background task dispatching pub/sub messages to handlers."""
        assert self._pubsub is not None
        try:
            async for raw in self._pubsub.listen():
                if raw["type"] != "pmessage":
                    continue
                await self._dispatch(raw["pattern"], raw["channel"], raw["data"])
        except asyncio.CancelledError:
            raise
        except redis.RedisError:
            logger.exception("Redis pub/sub listener stopped")

    async def _dispatch(self, pattern: str, channel: str, data: str) -> None:
        try:
            message = BusMessage.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Discarding malformed message on %s: %s", channel, e)
            return

        topic = self._strip(channel)
        for handler in list(self._handlers.get(pattern, [])):
            try:
                await handler(topic, message)
            except Exception:
                logger.exception("Bus handler failed on topic %s", topic)

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._handlers.clear()
