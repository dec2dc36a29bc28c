"""Typed outcomes for dispatcher operations.

Late, duplicate and unauthorized messages are normal under broadcast
dispatch, so they come back as a rejected Outcome instead of an exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from rides.models import RideState


class InvariantViolation(Exception):
    """Raised when dispatcher state breaks a rule that must never break
    (e.g. a second winner for one request)."""
    pass


class DriverDecision(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class Rejection(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_RESOLVED = "already_resolved"
    NOT_ELIGIBLE = "not_eligible"
    NO_DRIVERS_AVAILABLE = "no_drivers_available"


class RejectReason(str, Enum):
    ALREADY_ASSIGNED = "already_assigned"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    NO_DRIVERS = "no_drivers"
    NOT_OFFERED = "not_offered"
    ALREADY_DECLINED = "already_declined"
    NOT_REQUEST_OWNER = "not_request_owner"
    DRIVER_UNAVAILABLE = "driver_unavailable"
    NOT_A_RIDER = "not_a_rider"
    NOT_A_DRIVER = "not_a_driver"
    NOT_ASSIGNED = "not_assigned"
    ACTIVE_REQUEST_EXISTS = "active_request_exists"
    UNKNOWN_PARTICIPANT = "unknown_participant"
    UNKNOWN_REQUEST = "unknown_request"


@dataclass(frozen=True)
class Outcome:
    """
    Result of one inbound operation.
    `rejection` is None on success; `state` is the request state afterwards
    when there is a request to speak of.
    """
    request_id: Optional[str]
    rejection: Optional[Rejection] = None
    reason: Optional[str] = None
    state: Optional[RideState] = None

    @property
    def ok(self) -> bool:
        return self.rejection is None

    @classmethod
    def success(cls, request_id: Optional[str], state: Optional[RideState] = None) -> Outcome:
        return cls(request_id=request_id, state=state)

    @classmethod
    def rejected(
        cls,
        request_id: Optional[str],
        rejection: Rejection,
        reason: Optional[str] = None,
        state: Optional[RideState] = None,
    ) -> Outcome:
        return cls(request_id=request_id, rejection=rejection, reason=reason, state=state)
