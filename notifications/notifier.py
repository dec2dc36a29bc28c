"""
Purpose: Delivers dispatch notifications once a state change is committed.
What it does:
- Collects participant messages and public events in an Outbox while the
  dispatcher holds a request lock
- Flushes the Outbox after the lock is released: messages go to each
  participant's current connection, events go to every registered sink

Delivery is best-effort. A participant without a connection at flush time
simply misses the message; there is no queued redelivery.
"""

from __future__ import annotations

import logging
from concurrent.futures import Executor
from typing import Any, Dict, List, Optional

from connections.registry import ConnectionRegistry

from .events import Delivery, Event
from .sinks import EventSink, call_sink

logger = logging.getLogger(__name__)


class Outbox:
    """
    Notifications produced by one committed transition, in the order they
    were produced.
    """

    def __init__(self) -> None:
        self.deliveries: List[Delivery] = []
        self.events: List[Event] = []

    def send(self, recipient_id: str, message: Dict[str, Any]) -> None:
        self.deliveries.append(Delivery(recipient_id, message))

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def __bool__(self) -> bool:
        return bool(self.deliveries or self.events)


class EventNotifier:
    """
    Fan-out for committed dispatch outcomes.

    With no executor every send happens inline on the caller's thread, which
    expects connection handles whose `send` only enqueues. Pass an executor
    to push slow handles and sinks off the caller's thread; a single-worker
    executor keeps per-recipient ordering.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        sinks: Optional[List[EventSink]] = None,
        executor: Optional[Executor] = None,
        owns_executor: bool = False,
    ) -> None:
        self.registry = registry
        self.sinks: List[EventSink] = list(sinks or [])
        self.executor = executor
        self.owns_executor = owns_executor

    def flush(self, outbox: Outbox) -> None:
        if not outbox:
            return

        for delivery in outbox.deliveries:
            self._submit(self._deliver, delivery)

        for event in outbox.events:
            for sink in self.sinks:
                self._submit(self._notify_sink, sink, event)

    def close(self) -> None:
        """
        Wait for queued notifications and shut down an executor this
        notifier was handed ownership of.
        """
        if self.executor is not None and self.owns_executor:
            self.executor.shutdown(wait=True)

    # --- Internal helpers ---

    def _submit(self, fn, *args) -> None:
        if self.executor is None:
            fn(*args)
        else:
            self.executor.submit(fn, *args)

    def _deliver(self, delivery: Delivery) -> bool:
        connection = self.registry.connection_for(delivery.recipient_id)
        if connection is None:
            logger.warning(
                "Dropped %s for %s: participant not connected",
                delivery.message.get("type"),
                delivery.recipient_id,
            )
            return False

        try:
            connection.send(delivery.message)
        except Exception as e:
            logger.warning("Failed to deliver %s to %s: %s", delivery.message.get("type"), delivery.recipient_id, e)
            return False

        logger.debug("WS -> %s: %s", delivery.recipient_id, delivery.message.get("type"))
        return True

    def _notify_sink(self, sink: EventSink, event: Event) -> None:
        try:
            call_sink(sink, event)
        except Exception:
            logger.exception("Event sink %s failed on %s", type(sink).__name__, event.type.value)
