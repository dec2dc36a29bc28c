"""
Purpose: Orchestrator / decision pipeline (the "glue").
What it does:
Accepts a rider's ride request, broadcasts it to every eligible driver at
once, and resolves the race among their answers, the expiry deadline and a
rider cancel so that at most one driver ever wins a request.

Every mutation of a request happens while holding that request's lock, and
every message about it goes out only after the lock is released, so nobody
is told about a win that could still be overturned.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, List, Optional

from connections.models import Participant, ParticipantRole
from connections.registry import ConnectionRegistry
from notifications.events import (
    RIDER_VOID_MESSAGES,
    Event,
    EventType,
    MessageType,
    VoidReason,
    WithdrawalReason,
    build_message,
)
from notifications.notifier import EventNotifier, Outbox
from notifications.sinks import EventSink, LoggingEventSink
from rides.models import RideRequest, RideState, TerminalReason, utc_now
from rides.policy import DispatchPolicy, default_dispatch_policy, policy_from_env
from rides.store import RideRequestStore

from .expiry import ExpiryScheduler, build_expiry_scheduler
from .locks import RequestLockManager
from .results import DriverDecision, InvariantViolation, Outcome, Rejection, RejectReason
from .state_machines.ride_state import (
    extend_offer,
    record_decline,
    transition_request_to_accepted,
    transition_request_to_cancelled,
    transition_request_to_expired,
    transition_request_to_offered,
    transition_request_to_rejected_by_all,
)

logger = logging.getLogger(__name__)


def _ride_key(request_id: str) -> str:
    return f"ride_{request_id}"


def _rider_key(rider_id: str) -> str:
    return f"rider_{rider_id}"


class Dispatcher:
    """
    Coordinates the transaction of a RideRequest to exactly one Driver.

    Lock order: rider lock -> request lock -> registry/store internals.
    No code path holds two request locks at once.
    """
    def __init__(
        self,
        registry: Optional[ConnectionRegistry] = None,
        store: Optional[RideRequestStore] = None,
        notifier: Optional[EventNotifier] = None,
        policy: Optional[DispatchPolicy] = None,
        scheduler: Optional[ExpiryScheduler] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.policy = policy if policy is not None else default_dispatch_policy()
        self.policy.validate()
        self.clock = clock

        # an empty registry is falsy (it has __len__), so test against None
        self.registry = registry if registry is not None else ConnectionRegistry()
        if store is None:
            store = RideRequestStore(
                ttl_seconds=self.policy.request_ttl_seconds,
                history_size=self.policy.history_size,
                clock=clock,
            )
        self.store = store
        self.notifier = notifier if notifier is not None else EventNotifier(self.registry)
        self.scheduler = scheduler if scheduler is not None else build_expiry_scheduler(self.policy, clock=clock)
        self.locks = RequestLockManager()

    # --- Lifecycle ---

    def start(self) -> "Dispatcher":
        self.scheduler.start()
        return self

    def stop(self) -> None:
        self.scheduler.stop()
        self.notifier.close()

    def __enter__(self) -> "Dispatcher":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()

    # --- Connections ---

    def register_connection(self, participant_id: str, role: str | ParticipantRole, connection: Any) -> Participant:
        return self.registry.register(participant_id, role, connection)

    def on_disconnect(self, participant_id: str) -> Outcome:
        """
        Drop the participant. A driver mid-assignment costs the rider the
        ride (assignment_lost); a driver's pending offers count as declines.
        """
        participant = self.registry.unregister(participant_id)
        if participant is None:
            return Outcome.rejected(None, Rejection.NOT_FOUND, RejectReason.UNKNOWN_PARTICIPANT)

        if not participant.is_driver:
            return Outcome.success(None)

        outbox = Outbox()
        if participant.current_request_id is not None:
            self._abandon_assignment(participant.id, participant.current_request_id, outbox)

        self._drop_driver_from_open_offers(participant.id, outbox, withdrawal_reason=None)
        self.notifier.flush(outbox)
        return Outcome.success(participant.current_request_id)

    def set_driver_availability(self, driver_id: str, available: bool) -> Outcome:
        participant = self.registry.get(driver_id)
        if participant is None:
            return Outcome.rejected(None, Rejection.NOT_FOUND, RejectReason.UNKNOWN_PARTICIPANT)
        if not participant.is_driver:
            return Outcome.rejected(None, Rejection.NOT_ELIGIBLE, RejectReason.NOT_A_DRIVER)

        self.registry.set_availability(driver_id, available)
        logger.info("Driver %s availability -> %s", driver_id, available)

        if available and self.policy.offer_to_late_joiners:
            self._offer_open_requests_to(driver_id)
        return Outcome.success(None)

    # --- Rider side ---

    def submit_ride_request(
        self,
        rider_id: str,
        origin: Any,
        destination: Any,
        fare_estimate: Optional[float] = None,
        notes: str = "",
    ) -> Outcome:
        """
        Create a request and broadcast it to the first wave of eligible
        drivers. With nobody eligible the request ends immediately as
        rejected_by_all and the rider is told there are no drivers.
        """
        fare = self.policy.default_fare if fare_estimate is None else float(fare_estimate)
        if fare < 0:
            raise ValueError("fare_estimate must be >= 0")

        rider = self.registry.get(rider_id)
        if rider is not None and rider.role != ParticipantRole.RIDER:
            return Outcome.rejected(None, Rejection.NOT_ELIGIBLE, RejectReason.NOT_A_RIDER)

        outbox = Outbox()
        with self.locks.lock(_rider_key(rider_id)):
            if not self.policy.allow_concurrent_rider_requests:
                existing = self.store.open_request_for_rider(rider_id)
                if existing is not None:
                    return Outcome.rejected(
                        existing.id, Rejection.NOT_ELIGIBLE, RejectReason.ACTIVE_REQUEST_EXISTS, existing.state
                    )

            request = self.store.create(rider_id, origin, destination, fare, notes=notes)

            with self.locks.lock(_ride_key(request.id)):
                wave = self._next_wave(request)
                if not wave:
                    logger.info("No eligible drivers for request %s", request.id)
                    self._void(request, transition_request_to_rejected_by_all, VoidReason.NO_DRIVERS, None, outbox)
                    outcome = Outcome.rejected(
                        request.id, Rejection.NO_DRIVERS_AVAILABLE, RejectReason.NO_DRIVERS, request.state
                    )
                else:
                    self._mutate(request, lambda r: transition_request_to_offered(r, wave))
                    self._announce_offer(request, wave, outbox)
                    self.scheduler.schedule(request.id, request.expires_at, self.expire_request)
                    logger.info("Broadcasting request %s to %s drivers", request.id, len(wave))
                    outcome = Outcome.success(request.id, request.state)

        self.notifier.flush(outbox)
        return outcome

    def cancel_request(self, request_id: str, rider_id: str) -> Outcome:
        """
        Rider pulls a request that no driver has won yet.
        """
        outbox = Outbox()
        with self.locks.lock(_ride_key(request_id)):
            request = self.store.get(request_id)
            if request is None:
                return Outcome.rejected(request_id, Rejection.NOT_FOUND, RejectReason.UNKNOWN_REQUEST)
            if request.rider_id != rider_id:
                return Outcome.rejected(request_id, Rejection.NOT_ELIGIBLE, RejectReason.NOT_REQUEST_OWNER)
            if request.is_terminal:
                return self._already_resolved(request)

            self._void(request, transition_request_to_cancelled, VoidReason.CANCELLED, WithdrawalReason.CANCELLED, outbox)
            outcome = Outcome.success(request_id, request.state)

        self.notifier.flush(outbox)
        return outcome

    # --- Driver side ---

    def driver_respond(
        self,
        request_id: str,
        driver_id: str,
        decision: str | DriverDecision,
        reason: Optional[str] = None,
    ) -> Outcome:
        """
        Race Condition Resolver: called when a driver hits Accept or Reject.
        The state is consulted at resolution time, under the request's lock,
        so two drivers can never both win.
        """
        if isinstance(decision, str):
            decision = DriverDecision(decision)

        outbox = Outbox()
        won = False
        with self.locks.lock(_ride_key(request_id)):
            request = self.store.get(request_id)
            if request is None:
                return Outcome.rejected(request_id, Rejection.NOT_FOUND, RejectReason.UNKNOWN_REQUEST)
            if request.is_terminal:
                return self._already_resolved(request)
            if driver_id not in request.offered_to:
                return Outcome.rejected(request_id, Rejection.NOT_ELIGIBLE, RejectReason.NOT_OFFERED, request.state)
            if driver_id in request.declined_by:
                return Outcome.rejected(request_id, Rejection.NOT_ELIGIBLE, RejectReason.ALREADY_DECLINED, request.state)

            if request.is_expired(self.clock()):
                # the deadline passed but the expiry has not landed yet
                self._void(request, transition_request_to_expired, VoidReason.EXPIRED, WithdrawalReason.EXPIRED, outbox)
                outcome = Outcome.rejected(request_id, Rejection.ALREADY_RESOLVED, RejectReason.EXPIRED, request.state)
            elif decision == DriverDecision.ACCEPT:
                outcome = self._accept(request, driver_id, outbox)
                won = outcome.ok
            else:
                logger.info("Driver %s declined request %s (%s)", driver_id, request_id, reason or "no reason")
                self._mutate(request, lambda r: record_decline(r, driver_id))
                self._settle_after_decline(request, outbox)
                outcome = Outcome.success(request_id, request.state)

        self.notifier.flush(outbox)

        if won:
            # the winner can no longer take any other ride
            follow_up = Outbox()
            self._drop_driver_from_open_offers(driver_id, follow_up, withdrawal_reason=WithdrawalReason.DRIVER_ASSIGNED)
            self.notifier.flush(follow_up)

        return outcome

    def complete_ride(
        self,
        request_id: str,
        driver_id: str,
        fare: Optional[float] = None,
        rating: Optional[int] = None,
    ) -> Outcome:
        """
        The assigned driver finished the ride: record the final fare (the
        estimate when none is given) and the rider's rating, close the
        request out and hand the driver back to the pool.
        """
        if fare is not None and fare < 0:
            raise ValueError("fare must be >= 0")
        if rating is not None and not 1 <= rating <= 5:
            raise ValueError("rating must be between 1 and 5")

        outbox = Outbox()
        with self.locks.lock(_ride_key(request_id)):
            request = self.store.get(request_id)
            if request is None:
                return Outcome.rejected(request_id, Rejection.NOT_FOUND, RejectReason.UNKNOWN_REQUEST)
            if request.state != RideState.ACCEPTED or request.assigned_driver_id != driver_id:
                return Outcome.rejected(request_id, Rejection.NOT_ELIGIBLE, RejectReason.NOT_ASSIGNED, request.state)

            now = self.clock()

            def stamp(r: RideRequest) -> None:
                r.final_fare = r.fare_estimate if fare is None else float(fare)
                r.rating = rating
                r.completed_at = now

            if not self.store.close_out(request_id, TerminalReason.COMPLETED, stamp):
                return Outcome.rejected(
                    request_id, Rejection.ALREADY_RESOLVED, request.terminal_reason.value, request.state
                )

            release_to_pool = self.policy.release_driver_on_complete
            self.registry.release_driver(driver_id, request_id, available=release_to_pool)

            outbox.send(
                request.rider_id,
                build_message(
                    MessageType.RIDE_COMPLETED,
                    request,
                    driver_id=driver_id,
                    fare=request.final_fare,
                    rating=request.rating,
                ),
            )
            outbox.emit(
                Event(
                    EventType.RIDE_COMPLETED,
                    request_id,
                    driver_id=driver_id,
                    fare=request.final_fare,
                    rating=request.rating,
                )
            )
            logger.info("Request %s completed by driver %s (fare %s)", request_id, driver_id, request.final_fare)
            outcome = Outcome.success(request_id, request.state)

        self.notifier.flush(outbox)

        if release_to_pool and self.policy.offer_to_late_joiners:
            self._offer_open_requests_to(driver_id)
        return outcome

    # --- Expiry ---

    def expire_request(self, request_id: str) -> Outcome:
        """
        Expiry callback. A request that resolved in the meantime is left
        untouched.
        """
        outbox = Outbox()
        with self.locks.lock(_ride_key(request_id)):
            request = self.store.get(request_id)
            if request is None:
                return Outcome.rejected(request_id, Rejection.NOT_FOUND, RejectReason.UNKNOWN_REQUEST)
            if request.is_terminal:
                return self._already_resolved(request)

            self._void(request, transition_request_to_expired, VoidReason.EXPIRED, WithdrawalReason.EXPIRED, outbox)
            outcome = Outcome.success(request_id, request.state)

        self.notifier.flush(outbox)
        return outcome

    # --- Queries ---

    def get_request(self, request_id: str) -> Optional[RideRequest]:
        with self.locks.lock(_ride_key(request_id)):
            request = self.store.get(request_id)
            return request.snapshot() if request else None

    def pending_requests(self) -> List[RideRequest]:
        snapshots = []
        for request in self.store.active_requests():
            with self.locks.lock(_ride_key(request.id)):
                if request.state == RideState.OFFERED:
                    snapshots.append(request.snapshot())
        return snapshots

    def current_ride(self, driver_id: str) -> Optional[RideRequest]:
        request_id = self.registry.assignment_of(driver_id)
        if request_id is None:
            return None
        return self.get_request(request_id)

    # --- Internal helpers (caller holds the request lock) ---

    def _mutate(self, request: RideRequest, mutator: Callable[[RideRequest], Any]) -> None:
        if not self.store.update(request.id, mutator):
            raise InvariantViolation(f"Request {request.id} changed while its lock was held ({request.state.value})")

    def _next_wave(self, request: RideRequest) -> List[str]:
        eligible = self.registry.list_eligible_drivers(exclude_ids=request.offered_to)
        cap = self.policy.max_broadcast_size
        if cap is None:
            return eligible
        return eligible[:max(0, cap - len(request.pending_driver_ids))]

    def _announce_offer(self, request: RideRequest, driver_ids: List[str], outbox: Outbox) -> None:
        for driver_id in driver_ids:
            outbox.send(driver_id, build_message(MessageType.RIDE_OFFER, request))
        outbox.emit(Event(EventType.OFFER_CREATED, request.id, driver_ids=tuple(driver_ids)))

    def _withdraw(self, request: RideRequest, driver_id: str, reason: WithdrawalReason, outbox: Outbox) -> None:
        outbox.send(driver_id, build_message(MessageType.OFFER_WITHDRAWN, request, reason=reason.value))
        outbox.emit(Event(EventType.DRIVER_OFFER_WITHDRAWN, request.id, driver_id=driver_id, reason=reason.value))

    def _accept(self, request: RideRequest, driver_id: str, outbox: Outbox) -> Outcome:
        if request.assigned_driver_id is not None:
            raise InvariantViolation(
                f"Request {request.id} is {request.state.value} but already assigned to {request.assigned_driver_id}"
            )

        if not self.registry.claim_driver(driver_id, request.id):
            return Outcome.rejected(request.id, Rejection.NOT_ELIGIBLE, RejectReason.DRIVER_UNAVAILABLE, request.state)

        losers = [other for other in request.pending_driver_ids if other != driver_id]
        now = self.clock()
        self._mutate(request, lambda r: transition_request_to_accepted(r, driver_id, now))
        self.store.remove(request.id)
        self.scheduler.cancel(request.id)

        outbox.send(request.rider_id, build_message(MessageType.RIDE_ASSIGNED, request, driver_id=driver_id))
        outbox.send(driver_id, build_message(MessageType.RIDE_ASSIGNED, request, driver_id=driver_id))
        outbox.emit(Event(EventType.ASSIGNED, request.id, driver_id=driver_id))
        for loser in losers:
            self._withdraw(request, loser, WithdrawalReason.ASSIGNED_ELSEWHERE, outbox)

        logger.info("Request %s accepted by driver %s", request.id, driver_id)
        return Outcome.success(request.id, request.state)

    def _settle_after_decline(self, request: RideRequest, outbox: Outbox) -> None:
        """
        Once nobody holds a live offer: widen to the next wave, or give up.
        """
        if request.pending_driver_ids:
            return

        if self.policy.widen_on_reject:
            wave = self._next_wave(request)
            if wave:
                self._mutate(request, lambda r: extend_offer(r, wave))
                self._announce_offer(request, wave, outbox)
                logger.info("Widening request %s to %s more drivers", request.id, len(wave))
                return

        self._void(request, transition_request_to_rejected_by_all, VoidReason.NO_DRIVERS, None, outbox)

    def _void(
        self,
        request: RideRequest,
        transition: Callable[[RideRequest, datetime], Any],
        void_reason: VoidReason,
        withdrawal_reason: Optional[WithdrawalReason],
        outbox: Outbox,
    ) -> None:
        """
        Move a live request to a failure state and tell everyone still
        waiting on it.
        """
        pending = list(request.pending_driver_ids)
        now = self.clock()
        self._mutate(request, lambda r: transition(r, now))
        self.store.remove(request.id)
        self.scheduler.cancel(request.id)

        outbox.send(request.rider_id, build_message(RIDER_VOID_MESSAGES[void_reason], request, reason=void_reason.value))
        outbox.emit(Event(EventType.REQUEST_VOIDED, request.id, reason=void_reason.value))
        if withdrawal_reason is not None:
            for driver_id in pending:
                self._withdraw(request, driver_id, withdrawal_reason, outbox)

        logger.info("Request %s voided: %s", request.id, void_reason.value)

    def _already_resolved(self, request: RideRequest) -> Outcome:
        if request.state == RideState.ACCEPTED:
            reason = RejectReason.ALREADY_ASSIGNED.value
        else:
            reason = request.terminal_reason.value if request.terminal_reason else request.state.value
        return Outcome.rejected(request.id, Rejection.ALREADY_RESOLVED, reason, request.state)

    # --- Internal helpers (take request locks one at a time) ---

    def _abandon_assignment(self, driver_id: str, request_id: str, outbox: Outbox) -> None:
        with self.locks.lock(_ride_key(request_id)):
            request = self.store.get(request_id)
            if request is None or not self.store.close_out(request_id, TerminalReason.ASSIGNMENT_LOST):
                return

            reason = VoidReason.ASSIGNMENT_LOST
            outbox.send(request.rider_id, build_message(RIDER_VOID_MESSAGES[reason], request, reason=reason.value))
            outbox.emit(Event(EventType.REQUEST_VOIDED, request_id, reason=reason.value))
            logger.warning("Driver %s disconnected while assigned to request %s", driver_id, request_id)

    def _drop_driver_from_open_offers(
        self,
        driver_id: str,
        outbox: Outbox,
        withdrawal_reason: Optional[WithdrawalReason],
    ) -> None:
        """
        Treat every live offer the driver still holds as declined. With a
        withdrawal reason the driver is told; without one (disconnect) the
        driver is unreachable anyway.
        """
        for candidate in self.store.active_requests():
            # offered_to only changes under the request lock, so read it there
            with self.locks.lock(_ride_key(candidate.id)):
                if not self.store.is_active(candidate.id) or candidate.is_terminal:
                    continue
                if driver_id not in candidate.pending_driver_ids:
                    continue

                self._mutate(candidate, lambda r: record_decline(r, driver_id))
                if withdrawal_reason is not None:
                    self._withdraw(candidate, driver_id, withdrawal_reason, outbox)
                self._settle_after_decline(candidate, outbox)

    def _offer_open_requests_to(self, driver_id: str) -> None:
        outbox = Outbox()
        for candidate in self.store.active_requests():
            if driver_id in candidate.offered_to:
                continue

            with self.locks.lock(_ride_key(candidate.id)):
                if not self.store.is_active(candidate.id) or candidate.state != RideState.OFFERED:
                    continue
                if driver_id in candidate.offered_to or candidate.is_expired(self.clock()):
                    continue

                cap = self.policy.max_broadcast_size
                if cap is not None and len(candidate.pending_driver_ids) >= cap:
                    continue

                participant = self.registry.get(driver_id)
                if participant is None or not participant.is_eligible:
                    break

                self._mutate(candidate, lambda r: extend_offer(r, [driver_id]))
                self._announce_offer(candidate, [driver_id], outbox)
                logger.info("Offering open request %s to late driver %s", candidate.id, driver_id)

        self.notifier.flush(outbox)


def create_dispatcher(
    policy: Optional[DispatchPolicy] = None,
    sinks: Optional[List[EventSink]] = None,
    executor: Optional[Executor] = None,
) -> Dispatcher:
    """
    Convenience factory: policy from the environment, a logging sink, the
    webhook sink when EVENT_WEBHOOK_URL is set, and a started scheduler.

    The webhook does network I/O, so when it is wired and no executor is
    given, notifications go through a single-worker pool owned by the
    dispatcher (shut down by `stop()`).
    """
    if policy is None:
        policy = policy_from_env()

    if sinks is None:
        sinks = [LoggingEventSink()]
        if os.getenv("EVENT_WEBHOOK_URL"):
            from notifications.webhook import WebhookEventSink
            sinks.append(WebhookEventSink())

    owns_executor = False
    if executor is None and any(getattr(sink, "blocking", False) for sink in sinks):
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dispatch-notify")
        owns_executor = True

    registry = ConnectionRegistry()
    notifier = EventNotifier(registry, sinks=sinks, executor=executor, owns_executor=owns_executor)
    dispatcher = Dispatcher(registry=registry, notifier=notifier, policy=policy)
    return dispatcher.start()
