"""
Notifications package.

Public API:
- Vocabulary: EventType, MessageType, VoidReason, WithdrawalReason, Event, Delivery
- Delivery: EventNotifier, Outbox
- Sinks: EventSink, LoggingEventSink, WebhookEventSink, WebhookError
"""
from .events import (
    Delivery,
    Event,
    EventType,
    MessageType,
    VoidReason,
    WithdrawalReason,
    build_message,
)
from .notifier import EventNotifier, Outbox
from .sinks import EventSink, LoggingEventSink
from .webhook import WebhookError, WebhookEventSink

__all__ = [
    "Delivery",
    "Event",
    "EventType",
    "MessageType",
    "VoidReason",
    "WithdrawalReason",
    "build_message",
    "EventNotifier",
    "Outbox",
    "EventSink",
    "LoggingEventSink",
    "WebhookError",
    "WebhookEventSink",
]
