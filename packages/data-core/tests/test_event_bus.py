"""Tests for Event Bus — CloudEvents, change events, retry, DLQ, Redis pub/sub, PG change feed."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from lexcore.config import CoreSettings
from lexcore.errors import InvalidationDeliveryError
from lexcore.events.bus import EventBus, InMemoryEventBus, RedisEventBus
from lexcore.events.dlq import DeadLetterQueue
from lexcore.events.envelope import (
    ENTITY_CHANGED,
    ChangeAction,
    ChangeEvent,
    CloudEvent,
    build_change_event,
    build_event,
)
from lexcore.events.pg_listener import PgChangeFeedListener, parse_notification


class TestCloudEvent:
    def test_build_event(self):
        event = build_event(
            event_type="lexcore.test",
            source="/lexcore/test",
            data={"id": "m-1"},
        )
        assert event.specversion == "1.0"
        assert event.type == "lexcore.test"
        assert event.source == "/lexcore/test"
        assert event.id is not None
        assert event.time is not None

    def test_json_round_trip(self):
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)
        restored = CloudEvent.from_json(event.to_json())
        assert restored == event


class TestChangeEvent:
    def test_build_change_event(self):
        event = build_change_event("tenant-a", "matters", "m-1", "delete")
        assert event.type == ENTITY_CHANGED
        assert event.tenant_id == "tenant-a"
        assert event.subject == "matters:m-1"
        assert event.data == {"tenant_id": "tenant-a", "entity": "matters", "id": "m-1", "action": "delete"}

    def test_from_event(self):
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.CREATE)
        assert ChangeEvent.from_event(event) == ChangeEvent("tenant-a", "matters", "m-1", ChangeAction.CREATE)

    def test_unknown_action_rejected(self):
        with pytest.raises(ValueError):
            build_change_event("tenant-a", "matters", "m-1", "truncate")


class TestInMemoryEventBus:
    async def test_publish_and_subscribe(self):
        bus = InMemoryEventBus()
        received = []

        async def handler(event: CloudEvent) -> None:
            received.append(event)

        bus.subscribe(ENTITY_CHANGED, handler)
        await bus.publish(build_change_event("tenant-a", "matters", "m-1", ChangeAction.CREATE))

        assert len(received) == 1
        assert received[0].data["entity"] == "matters"

    async def test_subscribe_filters_by_type(self):
        bus = InMemoryEventBus()
        received = []

        async def handler(event: CloudEvent) -> None:
            received.append(event)

        bus.subscribe(ENTITY_CHANGED, handler)
        await bus.publish(build_event("lexcore.other", "/test", {}))
        await bus.publish(build_change_event("tenant-a", "matters", "m-1", ChangeAction.CREATE))

        assert len(received) == 1

    async def test_failed_handler_sends_to_dlq(self):
        bus = InMemoryEventBus(max_retries=2)

        async def failing_handler(event: CloudEvent) -> None:
            raise InvalidationDeliveryError("cache down")

        bus.subscribe(ENTITY_CHANGED, failing_handler)
        await bus.publish(build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE))

        assert len(bus.dlq.entries) == 1
        assert bus.dlq.entries[0].retry_count == 2
        assert "cache down" in bus.dlq.entries[0].error

    async def test_retry_succeeds_before_dlq(self):
        bus = InMemoryEventBus(max_retries=3)
        attempts = []

        async def flaky_handler(event: CloudEvent) -> None:
            attempts.append(event.id)
            if len(attempts) < 2:
                raise InvalidationDeliveryError("blip")

        bus.subscribe(ENTITY_CHANGED, flaky_handler)
        await bus.publish(build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE))

        assert len(attempts) == 2
        assert bus.dlq.depth == 0

    async def test_idempotent_delivery(self):
        bus = InMemoryEventBus()
        received = []

        async def handler(event: CloudEvent) -> None:
            received.append(event)

        bus.subscribe(ENTITY_CHANGED, handler)
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)
        await bus.publish(event)
        await bus.publish(event)  # same event_id

        assert len(received) == 1  # dedup

    async def test_dedup_window_bounded(self):
        bus = InMemoryEventBus(dedup_window=2)
        received = []

        async def handler(event: CloudEvent) -> None:
            received.append(event)

        bus.subscribe(ENTITY_CHANGED, handler)
        first = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)
        await bus.publish(first)
        for i in range(2):
            await bus.publish(build_change_event("tenant-a", "matters", f"m-{i + 2}", ChangeAction.UPDATE))
        await bus.publish(first)

        assert len(received) == 4


class TestRedisEventBus:
    async def test_publish_to_channel(self):
        client = AsyncMock()
        bus = RedisEventBus(client, "lexcore:changes")
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)

        await bus.publish(event)

        channel, payload = client.publish.await_args.args
        assert channel == "lexcore:changes"
        assert json.loads(payload)["data"]["id"] == "m-1"

    async def test_publish_retried_after_blip(self):
        client = AsyncMock()
        client.publish.side_effect = [RedisConnectionError("blip"), 1]
        bus = RedisEventBus(client, "lexcore:changes", max_retries=3)

        await bus.publish(build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE))

        assert client.publish.await_count == 2
        assert bus.dlq.depth == 0

    async def test_publish_failure_dead_lettered_and_handled_locally(self):
        client = AsyncMock()
        client.publish.side_effect = RedisConnectionError("Connection refused")
        bus = RedisEventBus(client, "lexcore:changes", max_retries=3)
        received = []

        async def handler(e: CloudEvent) -> None:
            received.append(e)

        bus.subscribe(ENTITY_CHANGED, handler)
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)

        with pytest.raises(InvalidationDeliveryError):
            await bus.publish(event)

        assert client.publish.await_count == 3
        assert [e.id for e in received] == [event.id]
        assert bus.dlq.entries[0].retry_count == 3

    async def test_replay_republishes(self):
        client = AsyncMock()
        client.publish.side_effect = RedisConnectionError("Connection refused")
        bus = RedisEventBus(client, "lexcore:changes", max_retries=1)
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)
        with pytest.raises(InvalidationDeliveryError):
            await bus.publish(event)

        assert await bus.replay_dead_letters() == 1
        assert bus.dlq.depth == 1

        client.publish.side_effect = None
        assert await bus.replay_dead_letters() == 1
        assert bus.dlq.depth == 0
        assert json.loads(client.publish.await_args.args[1])["id"] == event.id

    def test_from_settings(self):
        settings = CoreSettings(invalidation_channel="lex:events", invalidation_max_retries=7)
        bus = RedisEventBus.from_settings(AsyncMock(), settings)
        assert bus._channel == "lex:events"
        assert bus._max_retries == 7

    def test_base_is_abstract(self):
        with pytest.raises(TypeError):
            EventBus()

    async def test_listen_dispatches_and_skips_malformed(self):
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)
        stop = asyncio.Event()
        messages = [
            {"type": "message", "data": b"not json"},
            {"type": "message", "data": event.to_json().encode()},
        ]

        async def get_message(**kwargs):
            if messages:
                return messages.pop(0)
            stop.set()
            return None

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = get_message
        client = MagicMock()
        client.pubsub.return_value = pubsub

        bus = RedisEventBus(client, "lexcore:changes")
        received = []

        async def handler(e: CloudEvent) -> None:
            received.append(e)

        bus.subscribe(ENTITY_CHANGED, handler)
        await bus.listen(stop)

        assert [e.id for e in received] == [event.id]
        pubsub.subscribe.assert_awaited_once_with("lexcore:changes")
        pubsub.aclose.assert_awaited_once()

    async def test_listen_resubscribes_after_connection_loss(self):
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)
        stop = asyncio.Event()

        async def dropped(**kwargs):
            raise RedisConnectionError("Connection reset by peer")

        messages = [{"type": "message", "data": event.to_json().encode()}]

        async def healthy(**kwargs):
            if messages:
                return messages.pop(0)
            stop.set()
            return None

        def make_pubsub(get_message):
            pubsub = MagicMock()
            pubsub.subscribe = AsyncMock()
            pubsub.unsubscribe = AsyncMock()
            pubsub.aclose = AsyncMock()
            pubsub.get_message = get_message
            return pubsub

        first, second = make_pubsub(dropped), make_pubsub(healthy)
        client = MagicMock()
        client.pubsub.side_effect = [first, second]

        bus = RedisEventBus(client, "lexcore:changes", reconnect_max_seconds=0)
        received = []

        async def handler(e: CloudEvent) -> None:
            received.append(e)

        bus.subscribe(ENTITY_CHANGED, handler)
        await bus.listen(stop)

        assert [e.id for e in received] == [event.id]
        first.aclose.assert_awaited_once()
        second.subscribe.assert_awaited_once_with("lexcore:changes")


class TestPgChangeFeed:
    def test_parse_notification(self):
        payload = json.dumps({"tenant_id": "tenant-a", "entity": "matters", "id": "m-1", "action": "update"})
        event = parse_notification(payload)
        assert event.source == "/lexcore/pg-change-feed"
        assert ChangeEvent.from_event(event) == ChangeEvent("tenant-a", "matters", "m-1", ChangeAction.UPDATE)

    async def test_notification_forwarded_to_bus(self):
        bus = AsyncMock()
        listener = PgChangeFeedListener(MagicMock(), bus, "lexcore_changes")
        payload = json.dumps({"tenant_id": "tenant-a", "entity": "clients", "id": "c-1", "action": "create"})

        listener._on_notify(None, 1, "lexcore_changes", payload)
        listener._on_notify(None, 1, "lexcore_changes", "{broken")
        await asyncio.sleep(0)

        bus.publish.assert_awaited_once()
        assert bus.publish.await_args.args[0].data["entity"] == "clients"


class TestDeadLetterQueue:
    def test_add_to_dlq(self):
        dlq = DeadLetterQueue()
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)
        dlq.add(event, error="Handler failed", retry_count=5)
        assert len(dlq.entries) == 1
        assert dlq.entries[0].error == "Handler failed"

    def test_replay_removes_from_dlq(self):
        dlq = DeadLetterQueue()
        event = build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE)
        dlq.add(event, error="fail", retry_count=5)
        assert dlq.replay(event.id) is event
        assert dlq.depth == 0

    def test_drain(self):
        dlq = DeadLetterQueue()
        for i in range(3):
            dlq.add(build_event("lexcore.test", "/test", {"i": i}), error="fail", retry_count=5)
        assert len(dlq.drain()) == 3
        assert dlq.depth == 0

    def test_drain_one_tenant(self):
        dlq = DeadLetterQueue()
        dlq.add(build_change_event("tenant-a", "matters", "m-1", ChangeAction.UPDATE), error="fail", retry_count=5)
        dlq.add(build_change_event("tenant-b", "matters", "m-2", ChangeAction.UPDATE), error="fail", retry_count=5)

        assert [e.tenant_id for e in dlq.drain("tenant-a")] == ["tenant-a"]
        assert [e.tenant_id for e in dlq.entries] == ["tenant-b"]
        assert len(dlq.for_tenant("tenant-b")) == 1

    def test_bounded(self):
        dlq = DeadLetterQueue(max_entries=2)
        events = [build_change_event("tenant-a", "matters", f"m-{i}", ChangeAction.UPDATE) for i in range(3)]
        for event in events:
            dlq.add(event, error="fail", retry_count=5)

        assert [e.event.id for e in dlq.entries] == [events[1].id, events[2].id]
