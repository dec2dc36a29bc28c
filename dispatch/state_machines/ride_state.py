from datetime import datetime
from typing import List

from rides.models import RideRequest, RideState, TerminalReason


class RideStateException(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


def _require(request: RideRequest, allowed, target: RideState) -> None:
    if request.state not in allowed:
        raise RideStateException(f"Cannot transition request {request.id} to {target.value} from {request.state.value}")


def transition_request_to_offered(request: RideRequest, driver_ids: List[str]) -> RideRequest:
    """
    Called once the first wave of eligible drivers is known.
    """
    _require(request, (RideState.REQUESTED,), RideState.OFFERED)
    if not driver_ids:
        raise RideStateException(f"Cannot offer request {request.id} to nobody")

    request.offered_to.extend(driver_ids)
    request.state = RideState.OFFERED
    return request


def extend_offer(request: RideRequest, driver_ids: List[str]) -> RideRequest:
    """
    Widen an open offer to more drivers (next wave, or a driver who just
    turned available). Drivers already offered are skipped.
    """
    _require(request, (RideState.OFFERED,), RideState.OFFERED)
    for driver_id in driver_ids:
        if driver_id not in request.offered_to:
            request.offered_to.append(driver_id)
    return request


def record_decline(request: RideRequest, driver_id: str) -> RideRequest:
    _require(request, (RideState.OFFERED,), RideState.OFFERED)
    if driver_id not in request.offered_to:
        raise RideStateException(f"Driver {driver_id} was never offered request {request.id}")

    if driver_id not in request.declined_by:
        request.declined_by.append(driver_id)
    return request


def transition_request_to_accepted(request: RideRequest, driver_id: str, now: datetime) -> RideRequest:
    """
    The single winning transition. Caller must hold the request's lock.
    """
    _require(request, (RideState.OFFERED,), RideState.ACCEPTED)
    if request.assigned_driver_id is not None:
        raise RideStateException(f"Request {request.id} is already assigned to {request.assigned_driver_id}")
    if driver_id not in request.pending_driver_ids:
        raise RideStateException(f"Driver {driver_id} holds no live offer for request {request.id}")

    request.assigned_driver_id = driver_id
    request.state = RideState.ACCEPTED
    request.resolved_at = now
    return request


def transition_request_to_rejected_by_all(request: RideRequest, now: datetime) -> RideRequest:
    """
    Nobody is left to offer the ride to (including nobody at submission).
    """
    _require(request, (RideState.REQUESTED, RideState.OFFERED), RideState.REJECTED_BY_ALL)
    request.state = RideState.REJECTED_BY_ALL
    request.terminal_reason = TerminalReason.NO_DRIVERS
    request.resolved_at = now
    return request


def transition_request_to_expired(request: RideRequest, now: datetime) -> RideRequest:
    _require(request, (RideState.REQUESTED, RideState.OFFERED), RideState.EXPIRED)
    request.state = RideState.EXPIRED
    request.terminal_reason = TerminalReason.EXPIRED
    request.resolved_at = now
    return request


def transition_request_to_cancelled(request: RideRequest, now: datetime) -> RideRequest:
    """
    Rider pulled the request before any driver won it.
    """
    _require(request, (RideState.REQUESTED, RideState.OFFERED), RideState.CANCELLED)
    request.state = RideState.CANCELLED
    request.terminal_reason = TerminalReason.CANCELLED
    request.resolved_at = now
    return request
