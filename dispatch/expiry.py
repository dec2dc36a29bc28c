"""
Offer expiry scheduling.

Two interchangeable strategies decide *when* a request's expiry callback
runs; the callback itself (Dispatcher.expire_request) decides whether there
is still anything to expire:

- TimerExpiryScheduler: one threading.Timer per request, fires at the deadline.
- SweepExpiryScheduler: a background thread that wakes every
  `interval_seconds` and fires every deadline that has passed, so expiry is
  at most one interval late.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from rides.models import utc_now
from rides.policy import DispatchPolicy

logger = logging.getLogger(__name__)

ExpiryCallback = Callable[[str], Any]


class ExpiryScheduler:
    """Interface shared by the scheduling strategies."""

    def schedule(self, request_id: str, expires_at: datetime, callback: ExpiryCallback) -> None:
        raise NotImplementedError

    def cancel(self, request_id: str) -> bool:
        raise NotImplementedError

    def start(self) -> None:
        pass

    def stop(self) -> None:
        pass

    def pending(self) -> int:
        raise NotImplementedError

    def _fire(self, request_id: str, callback: ExpiryCallback) -> None:
        try:
            callback(request_id)
        except Exception:  # pragma: no cover - best effort logging
            logger.exception("Expiry callback failed for request %s", request_id)


class TimerExpiryScheduler(ExpiryScheduler):
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self.clock = clock
        self._lock = threading.Lock()
        self._timers: Dict[str, threading.Timer] = {}

    def schedule(self, request_id: str, expires_at: datetime, callback: ExpiryCallback) -> None:
        delay = max(0.0, (expires_at - self.clock()).total_seconds())
        timer = threading.Timer(delay, self._on_timer, args=(request_id, callback))
        timer.daemon = True

        with self._lock:
            previous = self._timers.pop(request_id, None)
            self._timers[request_id] = timer

        if previous is not None:
            previous.cancel()
        timer.start()
        logger.debug("Scheduled expiry of %s in %.2fs", request_id, delay)

    def cancel(self, request_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(request_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def stop(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        logger.info("Stopped timer expiry scheduler (%s timers cancelled)", len(timers))

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def _on_timer(self, request_id: str, callback: ExpiryCallback) -> None:
        with self._lock:
            timer = self._timers.get(request_id)
            if timer is not threading.current_thread():
                # cancelled or rescheduled while we were waking up
                return
            del self._timers[request_id]
        self._fire(request_id, callback)


class SweepExpiryScheduler(ExpiryScheduler):
    def __init__(self, interval_seconds: float = 1.0, clock: Callable[[], datetime] = utc_now) -> None:
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._deadlines: Dict[str, Tuple[datetime, ExpiryCallback]] = {}
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def schedule(self, request_id: str, expires_at: datetime, callback: ExpiryCallback) -> None:
        with self._lock:
            self._deadlines[request_id] = (expires_at, callback)

    def cancel(self, request_id: str) -> bool:
        with self._lock:
            return self._deadlines.pop(request_id, None) is not None

    def pending(self) -> int:
        with self._lock:
            return len(self._deadlines)

    def run_pending(self, now: Optional[datetime] = None) -> int:
        """
        Fire every deadline at or before `now`. Returns how many fired.
        """
        now = now or self.clock()
        with self._lock:
            due = [
                (request_id, callback)
                for request_id, (expires_at, callback) in self._deadlines.items()
                if expires_at <= now
            ]
            for request_id, _ in due:
                del self._deadlines[request_id]

        for request_id, callback in due:
            self._fire(request_id, callback)
        return len(due)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        logger.info("Starting expiry sweep (interval=%ss)", self.interval_seconds)
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="expiry-sweep", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval_seconds * 2)
            self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                fired = self.run_pending()
                if fired:
                    logger.info("Expiry sweep fired %s deadlines", fired)
            except Exception:  # pragma: no cover - best effort logging
                logger.exception("Expiry sweep encountered an error")


def build_expiry_scheduler(policy: DispatchPolicy, clock: Callable[[], datetime] = utc_now) -> ExpiryScheduler:
    if policy.expiry_strategy == "sweep":
        return SweepExpiryScheduler(policy.sweep_interval_seconds, clock=clock)
    return TimerExpiryScheduler(clock=clock)
