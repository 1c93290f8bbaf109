"""Change-data feed from PostgreSQL LISTEN/NOTIFY.

Rows changed outside the application (migrations, manual fixes) reach the
invalidation path through the lexcore_notify_change trigger. The listener
turns each notification into a change event on the bus.
"""

from __future__ import annotations

import asyncio
import json
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from lexcore.events.bus import EventBus
from lexcore.events.envelope import CloudEvent, build_change_event

logger = logging.getLogger(__name__)


def parse_notification(payload: str) -> CloudEvent:
    data = json.loads(payload)
    return build_change_event(
        tenant_id=data["tenant_id"],
        entity=data["entity"],
        entity_id=data["id"],
        action=data["action"],
        source="/lexcore/pg-change-feed",
    )


class PgChangeFeedListener:
    """Forwards pg_notify payloads on ``channel`` to ``bus``."""

    def __init__(self, engine: AsyncEngine, bus: EventBus, channel: str) -> None:
        self._engine = engine
        self._bus = bus
        self._channel = channel
        self._pending: set[asyncio.Task] = set()

    def _on_notify(self, connection, pid, channel, payload) -> None:
        try:
            event = parse_notification(payload)
        except (ValueError, KeyError) as e:
            logger.error("Dropping malformed change notification on %s: %s", channel, e)
            return
        task = asyncio.get_running_loop().create_task(self._bus.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Change notification not delivered: %s", task.exception())

    async def run(self, stop: asyncio.Event) -> None:
        """Hold a dedicated connection listening on the channel until ``stop``."""
        async with self._engine.connect() as conn:
            raw = await conn.get_raw_connection()
            driver = raw.driver_connection
            await driver.add_listener(self._channel, self._on_notify)
            logger.info("Listening for database change notifications on %s", self._channel)
            try:
                await stop.wait()
            finally:
                await driver.remove_listener(self._channel, self._on_notify)
                if self._pending:
                    await asyncio.gather(*self._pending, return_exceptions=True)
