"""Tests for OrderService: create / transition / cancel and the read queries."""

import asyncio

import pytest

from broadcaster import EventType
from db import MemoryOrderStore
from errors import ConflictError, InvalidTransitionError, PreconditionError, StoreError
from order import Order, OrderService
from order_state import OrderStatus

from conftest import (
    MOJITO_ID,
    NEGRONI_ID,
    OTHER_VENUE_ID,
    SPRITZ_ID,
    VENUE_ID,
    RecordingBroadcaster,
)


# Status path from a fresh order to each status
PATHS = {
    OrderStatus.NEW: [],
    OrderStatus.ACCEPTED: ["accepted"],
    OrderStatus.REJECTED: ["rejected"],
    OrderStatus.READY: ["accepted", "ready"],
    OrderStatus.PROCESSED: ["accepted", "ready", "processed"],
}


async def _order_in(service, status, customer="Alice"):
    result = await service.create_order(VENUE_ID, customer, MOJITO_ID, "Mojito")
    order = result.unwrap()
    for step in PATHS[status]:
        order = (await service.transition(order.id, VENUE_ID, step)).unwrap()
    assert order.status == status
    return order


# ============================================================================
# CREATE
# ============================================================================

@pytest.mark.asyncio
async def test_create_then_second_create_conflicts(service, recorder):
    first = await service.create_order(VENUE_ID, "Alice", MOJITO_ID, "Mojito")

    assert first.ok
    assert first.value.status == OrderStatus.NEW
    assert first.value.drink_title == "Mojito"

    second = await service.create_order(VENUE_ID, "Alice", MOJITO_ID, "Mojito")

    assert not second.ok
    assert isinstance(second.error, ConflictError)
    assert second.error.user_message == "You already have an order in progress."
    assert recorder.types() == [EventType.NEW_ORDER]
    assert recorder.events[0][2]["order"]["id"] == first.value.id


@pytest.mark.asyncio
async def test_concurrent_creates_yield_one_active_order(service, store):
    results = await asyncio.gather(*[
        service.create_order(VENUE_ID, "Alice", MOJITO_ID, "Mojito")
        for _ in range(5)
    ])

    assert sum(1 for r in results if r.ok) == 1
    assert all(isinstance(r.error, ConflictError) for r in results if not r.ok)
    assert len(await store.list_active_orders(VENUE_ID)) == 1


@pytest.mark.asyncio
async def test_other_guest_and_other_venue_are_independent(service):
    assert (await service.create_order(VENUE_ID, "Alice", MOJITO_ID, "Mojito")).ok
    assert (await service.create_order(VENUE_ID, "Bob", MOJITO_ID, "Mojito")).ok
    assert (await service.create_order(OTHER_VENUE_ID, "Alice", SPRITZ_ID, "Spritz")).ok


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", [OrderStatus.REJECTED, OrderStatus.PROCESSED])
async def test_new_order_allowed_after_terminal(service, terminal):
    await _order_in(service, terminal)

    result = await service.create_order(VENUE_ID, "Alice", MOJITO_ID, "Mojito")

    assert result.ok


@pytest.mark.asyncio
async def test_create_trims_names(service):
    result = await service.create_order(VENUE_ID, "  Alice ", MOJITO_ID, " Mojito ")

    assert result.value.customer_name == "Alice"
    assert result.value.drink_title == "Mojito"


@pytest.mark.asyncio
@pytest.mark.parametrize("venue_id, customer, drink_id, title, kind, message", [
    (None, "Alice", MOJITO_ID, "Mojito", "validation", "venueId is required"),
    ("abc", "Alice", MOJITO_ID, "Mojito", "validation", "venueId must be an integer"),
    (VENUE_ID, "   ", MOJITO_ID, "Mojito", "validation", "customerName is required"),
    (VENUE_ID, "Alice", None, "Mojito", "validation", "drinkId is required"),
    (VENUE_ID, "Alice", float("inf"), "Mojito", "validation", "drinkId must be an integer"),
    (VENUE_ID, "Alice", float("nan"), "Mojito", "validation", "drinkId must be an integer"),
    (1.5, "Alice", MOJITO_ID, "Mojito", "validation", "venueId must be an integer"),
    (VENUE_ID, "Alice", "1e400", "Mojito", "validation", "drinkId must be an integer"),
    (VENUE_ID, "Alice", NEGRONI_ID, "Negroni", "validation", "Drink is currently out of stock"),
    (99, "Alice", MOJITO_ID, "Mojito", "not_found", "Venue not found"),
    (VENUE_ID, "Alice", SPRITZ_ID, "Spritz", "not_found", "Drink not found"),
])
async def test_create_rejections(service, recorder, venue_id, customer, drink_id, title, kind, message):
    result = await service.create_order(venue_id, customer, drink_id, title)

    assert result.error.kind == kind
    assert result.error.user_message == message
    assert recorder.events == []


@pytest.mark.asyncio
async def test_store_level_conflict_backstop(store, clock):
    order = Order(id=None, venue_id=VENUE_ID, customer_name="Alice", drink_id=MOJITO_ID, drink_title="Mojito")
    await store.insert_order(order)

    with pytest.raises(ConflictError):
        await store.insert_order(order)


# ============================================================================
# TRANSITION
# ============================================================================

@pytest.mark.asyncio
async def test_accept_then_jump_to_processed_fails(service, store, recorder):
    order = await _order_in(service, OrderStatus.NEW)

    accepted = await service.transition(order.id, VENUE_ID, "accepted")
    assert accepted.ok
    assert accepted.value.status == OrderStatus.ACCEPTED

    jumped = await service.transition(order.id, VENUE_ID, "processed")
    assert isinstance(jumped.error, InvalidTransitionError)
    assert jumped.error.user_message == "Cannot change status from accepted to processed"

    stored = await store.find_order(order.id, VENUE_ID)
    assert stored.status == OrderStatus.ACCEPTED
    assert recorder.types() == [EventType.NEW_ORDER, EventType.ORDER_STATUS_UPDATED]


@pytest.mark.asyncio
async def test_every_disallowed_transition_fails_without_mutation(service, store):
    allowed = {
        ("new", "accepted"), ("new", "rejected"),
        ("accepted", "ready"), ("accepted", "rejected"),
        ("ready", "processed"),
    }

    for index, current in enumerate(OrderStatus):
        order = await _order_in(service, current, customer=f"guest-{index}")
        for requested in OrderStatus:
            if (current.value, requested.value) in allowed:
                continue
            result = await service.transition(order.id, VENUE_ID, requested.value)
            assert isinstance(result.error, InvalidTransitionError), (current, requested)
            assert (await store.find_order(order.id, VENUE_ID)).status == current


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", [OrderStatus.REJECTED, OrderStatus.PROCESSED])
async def test_terminal_states_are_sinks(service, terminal):
    order = await _order_in(service, terminal)

    for requested in OrderStatus:
        assert not (await service.transition(order.id, VENUE_ID, requested.value)).ok
    assert not (await service.cancel(order.id, VENUE_ID, "Alice")).ok


@pytest.mark.asyncio
async def test_transition_validation(service):
    order = await _order_in(service, OrderStatus.NEW)

    missing = await service.transition(order.id, VENUE_ID, None)
    unknown = await service.transition(order.id, VENUE_ID, "served")
    wrong_venue = await service.transition(order.id, OTHER_VENUE_ID, "accepted")

    assert missing.error.user_message == "status is required"
    assert unknown.error.user_message == "Invalid status"
    assert wrong_venue.error.kind == "not_found"


class RacingStore(MemoryOrderStore):
    """Lets a competing writer reject the order right before our conditional write."""

    async def update_order_status(self, order_id, venue_id, expected_status, new_status, updated_at):
        await super().update_order_status(order_id, venue_id, expected_status, OrderStatus.REJECTED, updated_at)
        return await super().update_order_status(order_id, venue_id, expected_status, new_status, updated_at)


@pytest.mark.asyncio
async def test_lost_race_reports_fresh_status(clock):
    store = RacingStore()
    store.add_venue(VENUE_ID)
    store.add_drink(VENUE_ID, "Mojito", drink_id=MOJITO_ID)
    recorder = RecordingBroadcaster()
    service = OrderService(store, recorder, clock=clock)
    order = (await service.create_order(VENUE_ID, "Alice", MOJITO_ID, "Mojito")).unwrap()

    result = await service.transition(order.id, VENUE_ID, "accepted")

    assert isinstance(result.error, InvalidTransitionError)
    assert result.error.current == OrderStatus.REJECTED
    assert recorder.types() == [EventType.NEW_ORDER]


# ============================================================================
# CANCEL
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_new_order_then_too_late(service, store, recorder):
    order = await _order_in(service, OrderStatus.NEW)

    cancelled = await service.cancel(order.id, VENUE_ID, "Alice")

    assert cancelled.ok
    assert await store.find_order(order.id, VENUE_ID) is None
    assert recorder.events[-1] == (VENUE_ID, EventType.ORDER_DELETED, {"orderId": order.id})

    again = await _order_in(service, OrderStatus.ACCEPTED)
    late = await service.cancel(again.id, VENUE_ID, "Alice")

    assert isinstance(late.error, PreconditionError)
    assert late.error.reason == PreconditionError.ALREADY_ACCEPTED
    assert (await store.find_order(again.id, VENUE_ID)).status == OrderStatus.ACCEPTED


@pytest.mark.asyncio
async def test_cancel_by_other_customer_refused(service, store):
    order = await _order_in(service, OrderStatus.NEW)

    result = await service.cancel(order.id, VENUE_ID, "Mallory")

    assert result.error.reason == PreconditionError.NOT_OWNER
    assert result.error.user_message == "You can only cancel your own orders."
    assert await store.find_order(order.id, VENUE_ID) is not None


@pytest.mark.asyncio
async def test_cancel_requires_customer_name(service):
    order = await _order_in(service, OrderStatus.NEW)

    result = await service.cancel(order.id, VENUE_ID, None)

    assert result.error.kind == "validation"


@pytest.mark.asyncio
async def test_cancel_unknown_order(service):
    result = await service.cancel(404, VENUE_ID, "Alice")

    assert result.error.kind == "not_found"


# ============================================================================
# FAILURES OUTSIDE THE STATE MACHINE
# ============================================================================

class BrokenStore(MemoryOrderStore):
    async def find_venue(self, venue_id):
        raise StoreError("find_venue: timeout")


@pytest.mark.asyncio
async def test_store_failure_is_opaque(clock):
    service = OrderService(BrokenStore(), RecordingBroadcaster(), clock=clock)

    result = await service.create_order(VENUE_ID, "Alice", MOJITO_ID, "Mojito")

    assert result.error.kind == "store"
    assert "timeout" not in result.error.user_message


@pytest.mark.asyncio
async def test_broadcast_failure_does_not_fail_operation(store, clock):
    service = OrderService(store, RecordingBroadcaster(fail=True), clock=clock)

    result = await service.create_order(VENUE_ID, "Alice", MOJITO_ID, "Mojito")

    assert result.ok
    assert await store.find_order(result.value.id, VENUE_ID) is not None


# ============================================================================
# QUERIES
# ============================================================================

@pytest.mark.asyncio
async def test_queries(service):
    first = await _order_in(service, OrderStatus.PROCESSED, customer="Alice")
    second = await _order_in(service, OrderStatus.NEW, customer="Bob")
    third = await _order_in(service, OrderStatus.ACCEPTED, customer="Carol")

    listed = (await service.list_orders(VENUE_ID)).unwrap()
    assert [o.id for o in listed] == [third.id, second.id, first.id]

    pending = (await service.pending_orders(VENUE_ID)).unwrap()
    assert [o.id for o in pending] == [second.id, third.id]

    only_new = (await service.list_orders(VENUE_ID, status="new")).unwrap()
    assert [o.id for o in only_new] == [second.id]

    by_customer = (await service.list_orders(VENUE_ID, customer_name="Alice", limit=1)).unwrap()
    assert [o.id for o in by_customer] == [first.id]

    assert (await service.current_order(VENUE_ID, "Bob")).value.id == second.id
    assert (await service.current_order(VENUE_ID, "Alice")).value is None


@pytest.mark.asyncio
async def test_list_rejects_unknown_status(service):
    result = await service.list_orders(VENUE_ID, status="served")

    assert result.error.user_message == "Invalid status"
