"""Shared fixtures: seeded memory store, fake channels, recording broadcaster, clock."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from db import MemoryOrderStore
from order import OrderService
from registry import SubscriptionRegistry


VENUE_ID = 1
OTHER_VENUE_ID = 2
MOJITO_ID = 5
NEGRONI_ID = 7  # out of stock
SPRITZ_ID = 9   # belongs to OTHER_VENUE_ID


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)
        return self.now


class RecordingChannel:
    """Stand-in for a websocket: records frames, answers pings on demand."""

    def __init__(self, fail=False, hang=False, auto_pong=True):
        self.sent = []
        self.closed = None
        self.pings = []
        self.fail = fail
        self.hang = hang
        self.auto_pong = auto_pong

    async def send_json(self, message):
        if self.fail:
            raise ConnectionError("socket already closed")
        if self.hang:
            await asyncio.sleep(3600)
        self.sent.append(message)

    async def ping(self):
        waiter = asyncio.get_running_loop().create_future()
        if self.auto_pong:
            waiter.set_result(0.0)
        self.pings.append(waiter)
        return waiter

    async def close(self, code=1000, reason=""):
        self.closed = (code, reason)

    def types(self):
        return [message["type"] for message in self.sent]

    def of_type(self, event_type):
        return [message for message in self.sent if message["type"] == event_type]


class RecordingBroadcaster:
    """Captures publish_to_venue calls instead of delivering them."""

    def __init__(self, fail=False):
        self.events = []
        self.fail = fail

    def publish_to_venue(self, venue_id, event_type, **payload):
        if self.fail:
            raise RuntimeError("broadcaster down")
        self.events.append((venue_id, event_type, payload))

    def types(self):
        return [event_type for _, event_type, _ in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = MemoryOrderStore()
    store.add_venue(VENUE_ID, "Test Bar")
    store.add_venue(OTHER_VENUE_ID, "Other Bar")
    store.add_drink(VENUE_ID, "Mojito", drink_id=MOJITO_ID)
    store.add_drink(VENUE_ID, "Negroni", in_stock=False, drink_id=NEGRONI_ID)
    store.add_drink(OTHER_VENUE_ID, "Spritz", drink_id=SPRITZ_ID)
    return store


@pytest.fixture
def recorder():
    return RecordingBroadcaster()


@pytest.fixture
def service(store, recorder, clock):
    return OrderService(store, recorder, clock=clock)


@pytest.fixture
def registry(clock):
    return SubscriptionRegistry(clock=clock)
