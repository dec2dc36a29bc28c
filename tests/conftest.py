from datetime import datetime, timedelta, timezone
from typing import Dict, List

import pytest

from connections.registry import ConnectionRegistry
from dispatch.dispatcher import Dispatcher
from dispatch.expiry import ExpiryScheduler
from notifications.events import Event, EventType
from notifications.notifier import EventNotifier
from notifications.sinks import EventSink
from rides.policy import DispatchPolicy


class FakeConnection:
    """Stands in for a websocket: records every message pushed to it."""

    def __init__(self):
        self.messages: List[dict] = []

    def send(self, message):
        self.messages.append(message)

    def types(self) -> List[str]:
        return [message["type"] for message in self.messages]

    def of_type(self, message_type: str) -> List[dict]:
        return [message for message in self.messages if message["type"] == message_type]


class RecordingSink(EventSink):
    def __init__(self):
        self.events: List[Event] = []

    def emit(self, event):
        self.events.append(event)

    def of(self, event_type: EventType) -> List[Event]:
        return [event for event in self.events if event.type == event_type]


class ManualScheduler(ExpiryScheduler):
    """Keeps deadlines until a test fires them."""

    def __init__(self):
        self.scheduled = {}

    def schedule(self, request_id, expires_at, callback):
        self.scheduled[request_id] = (expires_at, callback)

    def cancel(self, request_id):
        return self.scheduled.pop(request_id, None) is not None

    def pending(self):
        return len(self.scheduled)

    def fire(self, request_id):
        _, callback = self.scheduled.pop(request_id)
        return callback(request_id)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def make_dispatcher(clock, scheduler, sink):
    def _make(**policy_overrides) -> Dispatcher:
        registry = ConnectionRegistry()
        notifier = EventNotifier(registry, sinks=[sink])
        return Dispatcher(
            registry=registry,
            notifier=notifier,
            policy=DispatchPolicy(**policy_overrides),
            scheduler=scheduler,
            clock=clock,
        )
    return _make


@pytest.fixture
def dispatcher(make_dispatcher):
    return make_dispatcher()


@pytest.fixture
def connect():
    """connect(dispatcher, participant_id, role, available=True) -> FakeConnection"""
    def _connect(dispatcher, participant_id, role="driver", available=True):
        connection = FakeConnection()
        dispatcher.register_connection(participant_id, role, connection)
        if role == "driver" and available:
            dispatcher.set_driver_availability(participant_id, True)
        return connection
    return _connect


@pytest.fixture
def three_drivers(dispatcher, connect) -> Dict[str, FakeConnection]:
    return {driver_id: connect(dispatcher, driver_id) for driver_id in ("A", "B", "C")}


@pytest.fixture
def rider(dispatcher, connect) -> FakeConnection:
    return connect(dispatcher, "rider-1", role="rider")
