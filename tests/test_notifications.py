import logging
from concurrent.futures import ThreadPoolExecutor

import pytest

from connections.registry import ConnectionRegistry
from notifications import webhook
from notifications.events import Event, EventType, MessageType, build_message
from notifications.notifier import EventNotifier, Outbox
from notifications.sinks import EventSink, LoggingEventSink, call_sink
from notifications.webhook import WebhookError, WebhookEventSink
from rides.models import RideRequest

from conftest import FakeConnection, RecordingSink


class ExplodingConnection:
    def send(self, message):
        raise ConnectionError("socket closed")


class ExplodingSink(EventSink):
    def emit(self, event):
        raise RuntimeError("sink down")


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def request_record():
    return RideRequest.new("rider-1", "123 Main St", "456 Oak Ave", 18.75, ttl_seconds=60)


def test_build_message_shape(request_record):
    message = build_message(MessageType.OFFER_WITHDRAWN, request_record, reason="expired", driver_id="A")

    assert message["type"] == "offer_withdrawn"
    assert message["request_id"] == request_record.id
    assert message["reason"] == "expired"
    assert message["driver_id"] == "A"
    assert message["ride"]["origin"] == "123 Main St"
    assert message["ride"]["state"] == "requested"


def test_event_payload_only_carries_relevant_fields():
    offer = Event(EventType.OFFER_CREATED, "r1", driver_ids=("A", "B"))
    voided = Event(EventType.REQUEST_VOIDED, "r1", reason="expired")

    assert offer.to_payload() == {"event": "offer_created", "request_id": "r1", "driver_ids": ["A", "B"]}
    assert voided.to_payload() == {"event": "request_voided", "request_id": "r1", "reason": "expired"}


def test_flush_delivers_messages_and_events():
    registry = ConnectionRegistry()
    rider = FakeConnection()
    registry.register("rider-1", "rider", rider)
    sink = RecordingSink()
    notifier = EventNotifier(registry, sinks=[sink])

    outbox = Outbox()
    outbox.send("rider-1", {"type": "ride_assigned"})
    outbox.emit(Event(EventType.ASSIGNED, "r1", driver_id="A"))
    notifier.flush(outbox)

    assert rider.types() == ["ride_assigned"]
    assert [event.type for event in sink.events] == [EventType.ASSIGNED]


def test_message_to_disconnected_participant_is_dropped(caplog):
    notifier = EventNotifier(ConnectionRegistry())
    outbox = Outbox()
    outbox.send("ghost", {"type": "ride_offer"})

    with caplog.at_level(logging.WARNING, logger="notifications.notifier"):
        notifier.flush(outbox)

    assert "not connected" in caplog.text


def test_failing_connection_does_not_block_others():
    registry = ConnectionRegistry()
    healthy = FakeConnection()
    registry.register("A", "driver", ExplodingConnection())
    registry.register("B", "driver", healthy)
    notifier = EventNotifier(registry)

    outbox = Outbox()
    outbox.send("A", {"type": "offer_withdrawn"})
    outbox.send("B", {"type": "offer_withdrawn"})
    notifier.flush(outbox)

    assert healthy.types() == ["offer_withdrawn"]


def test_failing_sink_does_not_block_others(caplog):
    recording = RecordingSink()
    notifier = EventNotifier(ConnectionRegistry(), sinks=[ExplodingSink(), recording])
    outbox = Outbox()
    outbox.emit(Event(EventType.REQUEST_VOIDED, "r1", reason="cancelled"))

    with caplog.at_level(logging.ERROR, logger="notifications.notifier"):
        notifier.flush(outbox)

    assert len(recording.events) == 1
    assert "ExplodingSink" in caplog.text


def test_executor_delivery_keeps_order():
    registry = ConnectionRegistry()
    rider = FakeConnection()
    registry.register("rider-1", "rider", rider)
    executor = ThreadPoolExecutor(max_workers=1)
    notifier = EventNotifier(registry, executor=executor)

    outbox = Outbox()
    for i in range(20):
        outbox.send("rider-1", {"type": "tick", "n": i})
    notifier.flush(outbox)
    executor.shutdown(wait=True)

    assert [message["n"] for message in rider.messages] == list(range(20))


def test_empty_outbox_submits_nothing():
    class CountingExecutor:
        def __init__(self):
            self.submitted = 0

        def submit(self, fn, *args):
            self.submitted += 1

    executor = CountingExecutor()
    notifier = EventNotifier(ConnectionRegistry(), sinks=[RecordingSink()], executor=executor)

    notifier.flush(Outbox())

    assert executor.submitted == 0


def test_close_only_shuts_down_owned_executor():
    borrowed = ThreadPoolExecutor(max_workers=1)
    EventNotifier(ConnectionRegistry(), executor=borrowed).close()
    # still usable by its owner
    assert borrowed.submit(lambda: 42).result() == 42
    borrowed.shutdown()

    owned = ThreadPoolExecutor(max_workers=1)
    EventNotifier(ConnectionRegistry(), executor=owned, owns_executor=True).close()
    with pytest.raises(RuntimeError):
        owned.submit(lambda: 42)


def test_ride_completed_event_carries_fare_and_rating():
    recording = RecordingSink()

    call_sink(recording, Event(EventType.RIDE_COMPLETED, "r1", driver_id="B", fare=31.5, rating=4))

    assert recording.events[0].to_payload() == {
        "event": "ride_completed",
        "request_id": "r1",
        "driver_id": "B",
        "fare": 31.5,
        "rating": 4,
    }


def test_call_sink_routes_to_hooks():
    class HookSink(EventSink):
        def __init__(self):
            self.calls = []

        def on_assigned(self, request_id, driver_id):
            self.calls.append(("assigned", request_id, driver_id))

        def on_driver_offer_withdrawn(self, request_id, driver_id, reason):
            self.calls.append(("withdrawn", request_id, driver_id, reason))

    sink = HookSink()
    call_sink(sink, Event(EventType.ASSIGNED, "r1", driver_id="B"))
    call_sink(sink, Event(EventType.DRIVER_OFFER_WITHDRAWN, "r1", driver_id="A", reason="assigned_elsewhere"))

    assert sink.calls == [
        ("assigned", "r1", "B"),
        ("withdrawn", "r1", "A", "assigned_elsewhere"),
    ]


def test_logging_sink_writes_event(caplog):
    sink = LoggingEventSink()

    with caplog.at_level(logging.INFO, logger="notifications.sinks"):
        sink.on_request_voided("r1", "no_drivers")

    assert "request_voided" in caplog.text
    assert "no_drivers" in caplog.text


# --- Webhook ---

def test_webhook_posts_event_json(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append((url, json, timeout))
        return FakeResponse(204)

    monkeypatch.setattr(webhook.requests, "post", fake_post)
    sink = WebhookEventSink(url="http://hooks.local/dispatch", timeout=2)

    sink.on_assigned("r1", "B")

    assert calls == [
        ("http://hooks.local/dispatch", {"event": "assigned", "request_id": "r1", "driver_id": "B"}, 2),
    ]


def test_webhook_non_2xx_raises(monkeypatch):
    monkeypatch.setattr(webhook.requests, "post", lambda *args, **kwargs: FakeResponse(500))
    sink = WebhookEventSink(url="http://hooks.local/dispatch")

    with pytest.raises(WebhookError):
        sink.on_request_voided("r1", "expired")


def test_webhook_url_from_environment(monkeypatch):
    monkeypatch.setenv("EVENT_WEBHOOK_URL", "http://env.local/events")
    assert WebhookEventSink().url == "http://env.local/events"

    monkeypatch.delenv("EVENT_WEBHOOK_URL")
    with pytest.raises(ValueError):
        WebhookEventSink()
