"""
Outbound event sinks.

A sink receives the dispatcher's public events (offer created, assigned,
request voided, driver offer withdrawn, ride completed). Subclasses either
override the individual `on_*` hooks or just `emit`, which every hook funnels
into by default.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from .events import Event, EventType

logger = logging.getLogger(__name__)


class EventSink:
    """Base sink: every hook builds an Event and hands it to `emit`."""

    # True for sinks that do network I/O in `emit`
    blocking = False

    def on_offer_created(self, request_id: str, driver_ids: List[str]) -> None:
        self.emit(Event(EventType.OFFER_CREATED, request_id, driver_ids=tuple(driver_ids)))

    def on_assigned(self, request_id: str, driver_id: str) -> None:
        self.emit(Event(EventType.ASSIGNED, request_id, driver_id=driver_id))

    def on_request_voided(self, request_id: str, reason: str) -> None:
        self.emit(Event(EventType.REQUEST_VOIDED, request_id, reason=reason))

    def on_driver_offer_withdrawn(self, request_id: str, driver_id: str, reason: str) -> None:
        self.emit(Event(EventType.DRIVER_OFFER_WITHDRAWN, request_id, driver_id=driver_id, reason=reason))

    def on_ride_completed(
        self,
        request_id: str,
        driver_id: str,
        fare: Optional[float] = None,
        rating: Optional[int] = None,
    ) -> None:
        self.emit(Event(EventType.RIDE_COMPLETED, request_id, driver_id=driver_id, fare=fare, rating=rating))

    def emit(self, event: Event) -> None:
        pass


class LoggingEventSink(EventSink):
    """Writes every event to a logger."""

    def __init__(self, log: Optional[logging.Logger] = None, level: int = logging.INFO) -> None:
        self.log = log or logger
        self.level = level

    def emit(self, event: Event) -> None:
        self.log.log(self.level, "dispatch event %s", event.to_payload())


def call_sink(sink: EventSink, event: Event) -> None:
    """Route a generic Event to the matching `on_*` hook of `sink`."""
    if event.type == EventType.OFFER_CREATED:
        sink.on_offer_created(event.request_id, list(event.driver_ids))
    elif event.type == EventType.ASSIGNED:
        sink.on_assigned(event.request_id, event.driver_id)
    elif event.type == EventType.REQUEST_VOIDED:
        sink.on_request_voided(event.request_id, event.reason)
    elif event.type == EventType.DRIVER_OFFER_WITHDRAWN:
        sink.on_driver_offer_withdrawn(event.request_id, event.driver_id, event.reason)
    elif event.type == EventType.RIDE_COMPLETED:
        sink.on_ride_completed(event.request_id, event.driver_id, event.fare, event.rating)
    else:
        raise ValueError(f"Unknown event type {event.type}")
