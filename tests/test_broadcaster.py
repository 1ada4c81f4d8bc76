"""Tests for NotificationBroadcaster scoping, dead-peer pruning and ordering."""

import asyncio

import pytest

from broadcaster import EventType, NotificationBroadcaster, build_event

from conftest import RecordingChannel


def _join(registry, venue_id, role, customer_name=None, **channel_kwargs):
    channel = RecordingChannel(**channel_kwargs)
    connection_id = registry.register(channel)
    registry.join(connection_id, venue_id, role, customer_name)
    return connection_id, channel


@pytest.fixture
def broadcaster(registry, clock):
    return NotificationBroadcaster(registry, send_timeout=0.05, clock=clock)


def test_build_event():
    assert build_event(EventType.ORDER_DELETED, orderId=3) == {"type": "order_deleted", "orderId": 3}
    assert build_event("pong") == {"type": "pong"}


@pytest.mark.asyncio
async def test_role_broadcast_skips_guests(registry, broadcaster, clock):
    _, bartender_one = _join(registry, 1, "bartender")
    _, bartender_two = _join(registry, 1, "bartender")
    _, bob = _join(registry, 1, "guest", "Bob")

    sent = await broadcaster.broadcast_to_role(1, "bartender", build_event(EventType.NEW_ORDER, order={"id": 1}))

    assert sent == 2
    assert bartender_one.sent == [{"type": "new_order", "order": {"id": 1}, "deliveredAt": clock().isoformat()}]
    assert bartender_two.types() == ["new_order"]
    assert bob.sent == []


@pytest.mark.asyncio
async def test_customer_broadcast_reaches_only_that_guest(registry, broadcaster):
    _, alice = _join(registry, 1, "guest", "Alice")
    _, alice_phone = _join(registry, 1, "guest", "Alice")
    _, bob = _join(registry, 1, "guest", "Bob")
    _, alice_elsewhere = _join(registry, 2, "guest", "Alice")

    sent = await broadcaster.broadcast_to_customer(1, "Alice", build_event(EventType.ORDER_STATUS_UPDATED, order={}))

    assert sent == 2
    assert alice.types() == alice_phone.types() == ["order_status_updated"]
    assert bob.sent == []
    assert alice_elsewhere.sent == []


@pytest.mark.asyncio
async def test_venue_broadcast_is_tenant_scoped(registry, broadcaster):
    _, here = _join(registry, 1, "guest", "Alice")
    _, there = _join(registry, 2, "bartender")
    registry.register(RecordingChannel())

    sent = await broadcaster.broadcast_to_venue(1, build_event(EventType.ORDER_DELETED, orderId=9))

    assert sent == 1
    assert here.types() == ["order_deleted"]
    assert there.sent == []


@pytest.mark.asyncio
async def test_dead_peer_is_pruned_and_others_still_receive(registry, broadcaster):
    dropped = []
    broadcaster.on_drop = dropped.append

    _, first = _join(registry, 1, "bartender")
    dead_id, dead = _join(registry, 1, "guest", "Bob", fail=True)
    _, last = _join(registry, 1, "bartender")

    sent = await broadcaster.broadcast_to_venue(1, build_event(EventType.NEW_ORDER, order={}))

    assert sent == 2
    assert first.types() == last.types() == ["new_order"]
    assert dead_id not in registry.query_by_venue(1)
    assert dead.closed is not None
    assert [info.connection_id for info in dropped] == [dead_id]
    assert broadcaster.get_stats()["failed"] == 1


@pytest.mark.asyncio
async def test_slow_peer_times_out_and_is_pruned(registry, broadcaster):
    slow_id, _ = _join(registry, 1, "bartender", hang=True)
    _, healthy = _join(registry, 1, "bartender")

    sent = await broadcaster.broadcast_to_role(1, "bartender", build_event(EventType.NEW_ORDER, order={}))

    assert sent == 1
    assert healthy.types() == ["new_order"]
    assert registry.get(slow_id) is None


@pytest.mark.asyncio
async def test_publish_is_queued_until_drained(registry, broadcaster):
    _, channel = _join(registry, 1, "bartender")

    broadcaster.publish_to_venue(1, EventType.NEW_ORDER, order={"id": 1})
    assert channel.sent == []

    await broadcaster.drain()

    assert channel.types() == ["new_order"]


@pytest.mark.asyncio
async def test_worker_preserves_publish_order(registry, broadcaster):
    connection_id, channel = _join(registry, 1, "guest", "Alice")

    await broadcaster.start()
    broadcaster.publish_to_venue(1, EventType.NEW_ORDER, order={"id": 1})
    broadcaster.publish_to_connection(connection_id, EventType.PONG)
    broadcaster.publish_to_customer(1, "Alice", EventType.ORDER_STATUS_UPDATED, order={"id": 1})
    broadcaster.publish_to_role(1, "guest", EventType.ORDER_DELETED, orderId=1)
    await broadcaster.drain()
    await broadcaster.stop()

    assert channel.types() == ["new_order", "pong", "order_status_updated", "order_deleted"]
    assert not broadcaster.is_running


@pytest.mark.asyncio
async def test_stop_delivers_pending_events(registry, broadcaster):
    _, channel = _join(registry, 1, "bartender")

    await broadcaster.start()
    broadcaster.publish_to_venue(1, EventType.NEW_ORDER, order={})
    await broadcaster.stop()

    assert channel.types() == ["new_order"]


@pytest.mark.asyncio
async def test_send_to_unknown_connection(broadcaster):
    assert await broadcaster.send_to(77, build_event(EventType.PONG)) is False


async def _wait_for_frames(channel, count=1, attempts=50):
    for _ in range(attempts):
        if len(channel.sent) >= count:
            return
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_hung_peer_does_not_hold_up_other_venues(registry, clock):
    broadcaster = NotificationBroadcaster(registry, send_timeout=5.0, clock=clock)
    hung_id, _ = _join(registry, 2, "bartender", hang=True)
    _, healthy = _join(registry, 1, "bartender")

    await broadcaster.start()
    broadcaster.publish_to_venue(2, EventType.NEW_ORDER, order={"id": 1})
    broadcaster.publish_to_venue(1, EventType.NEW_ORDER, order={"id": 2})
    await _wait_for_frames(healthy)

    assert healthy.sent[0]["order"] == {"id": 2}
    assert registry.get(hung_id) is not None

    await broadcaster.stop(drain_timeout=0.05)

    assert broadcaster.get_stats()["outboxes"] == 0


@pytest.mark.asyncio
async def test_hung_peer_does_not_hold_up_its_own_venue(registry, clock):
    broadcaster = NotificationBroadcaster(registry, send_timeout=5.0, clock=clock)
    _join(registry, 1, "bartender", hang=True)
    _, healthy = _join(registry, 1, "bartender")

    pending = asyncio.create_task(
        broadcaster.broadcast_to_venue(1, build_event(EventType.ORDER_DELETED, orderId=4))
    )
    await _wait_for_frames(healthy)

    assert healthy.types() == ["order_deleted"]
    assert not pending.done()

    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending
    await broadcaster.start()
    await broadcaster.stop(drain_timeout=0.05)
