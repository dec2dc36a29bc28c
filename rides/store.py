"""
Purpose: Owns the authoritative state of every in-flight ride request.
What it does:
- Holds active requests keyed by id
- Keeps a bounded history of resolved requests so duplicate or late
  messages can still be answered with "already resolved"

Provides operations:
   - create(rider_id, origin, destination, fare_estimate)
   - get(request_id)
   - update(request_id, mutator)
   - remove(request_id)

Rule: Store guards the monotonic lifecycle (no edits once terminal);
the dispatcher owns which transition happens when.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .models import RideRequest, RideState, TerminalReason, utc_now

logger = logging.getLogger(__name__)


class RideRequestStore:
    """
    In-memory request store:

    active (requested/offered) -> history (terminal, bounded FIFO)

    The internal lock only protects the two maps. Serializing the
    read-check-write sequence on a single request is the dispatcher's job
    (see dispatch.locks).
    """

    def __init__(
        self,
        ttl_seconds: float = 60,
        history_size: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.history_size = history_size
        self.clock = clock

        self._lock = threading.Lock()
        self._active: Dict[str, RideRequest] = {}
        self._history: "OrderedDict[str, RideRequest]" = OrderedDict()

    # --- Public API ---

    def create(
        self,
        rider_id: str,
        origin: Any,
        destination: Any,
        fare_estimate: float,
        notes: str = "",
    ) -> RideRequest:
        """
        Allocate a new request in state REQUESTED expiring ttl_seconds from now.
        """
        request = RideRequest.new(
            rider_id=rider_id,
            origin=origin,
            destination=destination,
            fare_estimate=fare_estimate,
            ttl_seconds=self.ttl_seconds,
            notes=notes,
            now=self.clock(),
        )
        with self._lock:
            self._active[request.id] = request
        return request

    def get(self, request_id: str) -> Optional[RideRequest]:
        """
        Active record first, then archived. Returns the live object; callers
        outside the dispatcher should use `snapshot()` on it.
        """
        with self._lock:
            return self._active.get(request_id) or self._history.get(request_id)

    def is_active(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._active

    def update(self, request_id: str, mutator: Callable[[RideRequest], None]) -> bool:
        """
        Apply `mutator` to an active, non-terminal record.
        No-op returning False if the record is unknown or already terminal.
        """
        with self._lock:
            request = self._active.get(request_id)

        if request is None or request.is_terminal:
            return False

        mutator(request)
        return True

    def remove(self, request_id: str) -> bool:
        """
        Move a record from active to the bounded history.
        """
        with self._lock:
            request = self._active.pop(request_id, None)
            if request is None:
                return False

            self._history[request_id] = request
            while len(self._history) > self.history_size:
                evicted_id, _ = self._history.popitem(last=False)
                logger.debug("Evicted request %s from history", evicted_id)
            return True

    def close_out(
        self,
        request_id: str,
        reason: TerminalReason,
        mutator: Optional[Callable[[RideRequest], None]] = None,
    ) -> bool:
        """
        Stamp the post-assignment outcome (completed / assignment_lost) on an
        archived ACCEPTED record, applying `mutator` in the same step. Only
        the first close-out wins.
        """
        with self._lock:
            request = self._history.get(request_id)
            if request is None or request.state != RideState.ACCEPTED:
                return False
            if request.terminal_reason is not None:
                return False

            request.terminal_reason = reason
            if mutator is not None:
                mutator(request)
            return True

    # --- Listings ---

    def active_requests(self) -> List[RideRequest]:
        with self._lock:
            return list(self._active.values())

    def history(self) -> List[RideRequest]:
        with self._lock:
            return list(self._history.values())

    def open_request_for_rider(self, rider_id: str) -> Optional[RideRequest]:
        with self._lock:
            for request in self._active.values():
                if request.rider_id == rider_id and not request.is_terminal:
                    return request
        return None
