"""Event Bus — publish/subscribe with retry + DLQ + idempotency.

InMemoryEventBus delivers within the process (tests, single worker).
RedisEventBus fans change events out to every process over a Redis pub/sub
channel; each process dispatches to its local handlers.

A publish that still fails after its retries is dispatched to the local
handlers and parked in the DLQ; replay_dead_letters publishes it again once
Redis is back, so the other processes catch up.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Awaitable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from lexcore.config import CoreSettings
from lexcore.errors import InvalidationDeliveryError
from lexcore.events.envelope import CloudEvent
from lexcore.events.dlq import DeadLetterQueue

logger = logging.getLogger(__name__)

EventHandler = Callable[[CloudEvent], Awaitable[None]]

_REDIS_FAULTS = (RedisError, OSError, asyncio.TimeoutError)


class EventBus(ABC):
    """Event bus base: local handler registry and at-least-once dispatch."""

    def __init__(self, max_retries: int = 5, retry_backoff_seconds: float = 0.0, dedup_window: int = 10_000) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._processed_ids: OrderedDict[str, None] = OrderedDict()
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff_seconds
        self._dedup_window = dedup_window
        self.dlq = DeadLetterQueue()

    @abstractmethod
    async def publish(self, event: CloudEvent) -> None: ...

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)

    def _mark_processed(self, event_id: str) -> None:
        self._processed_ids[event_id] = None
        while len(self._processed_ids) > self._dedup_window:
            self._processed_ids.popitem(last=False)

    async def _backoff(self, attempt: int) -> None:
        if self._retry_backoff:
            await asyncio.sleep(self._retry_backoff * attempt)

    async def dispatch(self, event: CloudEvent) -> None:
        if event.id in self._processed_ids:
            return
        self._mark_processed(event.id)

        handlers = self._handlers.get(event.type, [])
        for handler in handlers:
            retries = 0
            while retries < self._max_retries:
                try:
                    await handler(event)
                    break
                except Exception as e:
                    retries += 1
                    if retries >= self._max_retries:
                        logger.error("Handler failed for event %s after %d attempts: %s", event.id, retries, e)
                        self.dlq.add(event, error=str(e), retry_count=retries)
                    else:
                        logger.warning("Handler failed for event %s (attempt %d): %s", event.id, retries, e)
                        await self._backoff(retries)

    async def _redeliver(self, event: CloudEvent) -> None:
        await self.dispatch(event)

    async def replay_dead_letters(self, tenant_id: str | None = None) -> int:
        """Re-deliver parked events; returns how many were taken from the DLQ."""
        events = self.dlq.drain(tenant_id)
        for event in events:
            self._processed_ids.pop(event.id, None)
            await self._redeliver(event)
        return len(events)


class InMemoryEventBus(EventBus):
    async def publish(self, event: CloudEvent) -> None:
        await self.dispatch(event)


class RedisEventBus(EventBus):
    """Cross-process delivery through a Redis pub/sub channel."""

    def __init__(
        self,
        client: aioredis.Redis,
        channel: str,
        reconnect_max_seconds: float = 30.0,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._client = client
        self._channel = channel
        self._reconnect_max = reconnect_max_seconds

    @classmethod
    def from_settings(cls, client: aioredis.Redis, settings: CoreSettings) -> RedisEventBus:
        return cls(
            client,
            settings.invalidation_channel,
            reconnect_max_seconds=settings.invalidation_reconnect_max_seconds,
            max_retries=settings.invalidation_max_retries,
            retry_backoff_seconds=settings.invalidation_retry_backoff_seconds,
        )

    async def publish(self, event: CloudEvent) -> None:
        payload = event.to_json()
        attempts = max(self._max_retries, 1)
        for attempt in range(1, attempts + 1):
            try:
                await self._client.publish(self._channel, payload)
                return
            except _REDIS_FAULTS as e:
                error = e
                if attempt < attempts:
                    logger.warning("Publish of event %s failed (attempt %d): %s", event.id, attempt, e)
                    await self._backoff(attempt)

        logger.error("Publish of event %s failed after %d attempts: %s", event.id, attempts, error)
        self.dlq.add(event, error=str(error), retry_count=attempts)
        # Peers stay stale until replay; this process invalidates now.
        await self.dispatch(event)
        raise InvalidationDeliveryError(f"Failed to publish event {event.id}: {error}") from error

    async def _redeliver(self, event: CloudEvent) -> None:
        try:
            await self.publish(event)
        except InvalidationDeliveryError as e:
            logger.warning("Replay of event %s deferred: %s", event.id, e)

    async def listen(self, stop: asyncio.Event | None = None) -> None:
        """Consume the channel until ``stop`` is set or the task is cancelled.

        A dropped connection is logged and the subscription re-established
        with exponential backoff.
        """
        failures = 0
        while stop is None or not stop.is_set():
            pubsub = self._client.pubsub()
            try:
                await pubsub.subscribe(self._channel)
                if failures:
                    logger.warning(
                        "Resubscribed to %s; changes published while disconnected were missed", self._channel
                    )
                else:
                    logger.info("Listening for change events on %s", self._channel)
                failures = 0
                await self._consume(pubsub, stop)
            except _REDIS_FAULTS as e:
                failures += 1
                delay = min(self._reconnect_max, 0.5 * 2 ** (failures - 1))
                logger.error("Lost subscription to %s: %s; retrying in %.1fs", self._channel, e, delay)
                await asyncio.sleep(delay)
            finally:
                await self._close(pubsub)

    async def _consume(self, pubsub, stop: asyncio.Event | None) -> None:
        while stop is None or not stop.is_set():
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is None:
                continue
            try:
                event = CloudEvent.from_json(message["data"])
            except (ValueError, TypeError) as e:
                logger.error("Dropping malformed event on %s: %s", self._channel, e)
                continue
            await self.dispatch(event)

    async def _close(self, pubsub) -> None:
        try:
            await pubsub.unsubscribe(self._channel)
        except _REDIS_FAULTS as e:
            logger.debug("Unsubscribe from %s failed: %s", self._channel, e)
        try:
            await pubsub.aclose()
        except _REDIS_FAULTS as e:
            logger.debug("Closing subscription to %s failed: %s", self._channel, e)
