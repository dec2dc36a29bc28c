"""
Purpose: Domain models for the Rides capability.
What it does:
- Defines the RideRequest record the dispatcher drives through its lifecycle
- Defines enums/constants:
  - RideState = REQUESTED | OFFERED | ACCEPTED | REJECTED_BY_ALL | EXPIRED | CANCELLED
  - TerminalReason = EXPIRED | CANCELLED | NO_DRIVERS | COMPLETED | ASSIGNMENT_LOST

Rule: No dispatch logic. Models only.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RideState(str, Enum):
    REQUESTED = "requested"
    OFFERED = "offered"
    ACCEPTED = "accepted"
    REJECTED_BY_ALL = "rejected_by_all"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({
    RideState.ACCEPTED,
    RideState.REJECTED_BY_ALL,
    RideState.EXPIRED,
    RideState.CANCELLED,
})


class TerminalReason(str, Enum):
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    NO_DRIVERS = "no_drivers"
    COMPLETED = "completed"
    ASSIGNMENT_LOST = "assignment_lost"


@dataclass
class RideRequest:
    """
    One rider's request for a ride, from submission to resolution.
    """

    id: str
    rider_id: str
    origin: Any
    destination: Any
    fare_estimate: float
    expires_at: datetime

    notes: str = ""
    created_at: datetime = field(default_factory=utc_now)
    state: RideState = RideState.REQUESTED

    assigned_driver_id: Optional[str] = None

    # insertion order = the order offers went out
    offered_to: List[str] = field(default_factory=list)
    declined_by: List[str] = field(default_factory=list)

    terminal_reason: Optional[TerminalReason] = None
    resolved_at: Optional[datetime] = None

    # set when the assigned driver completes the ride
    final_fare: Optional[float] = None
    rating: Optional[int] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def pending_driver_ids(self) -> List[str]:
        """Drivers holding a live offer: offered, not declined, not the winner."""
        declined = set(self.declined_by)
        return [
            driver_id
            for driver_id in self.offered_to
            if driver_id not in declined and driver_id != self.assigned_driver_id
        ]

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.expires_at

    def snapshot(self) -> RideRequest:
        """Detached copy safe to hand outside the dispatcher."""
        return replace(
            self,
            offered_to=list(self.offered_to),
            declined_by=list(self.declined_by),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "rider_id": self.rider_id,
            "origin": self.origin,
            "destination": self.destination,
            "fare_estimate": self.fare_estimate,
            "notes": self.notes,
            "state": self.state.value,
            "assigned_driver_id": self.assigned_driver_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "terminal_reason": self.terminal_reason.value if self.terminal_reason else None,
            "final_fare": self.final_fare,
            "rating": self.rating,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @staticmethod
    def new(
        rider_id: str,
        origin: Any,
        destination: Any,
        fare_estimate: float,
        ttl_seconds: float,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> RideRequest:
        created_at = now or utc_now()
        return RideRequest(
            id=str(uuid.uuid4()),
            rider_id=rider_id,
            origin=origin,
            destination=destination,
            fare_estimate=fare_estimate,
            notes=notes,
            created_at=created_at,
            expires_at=created_at + timedelta(seconds=ttl_seconds),
        )
