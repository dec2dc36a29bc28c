"""
Purpose: The vocabulary the dispatcher speaks to the outside world.
What it does:
- EventType: outbound events consumed by presentation/notification layers
- MessageType: messages pushed to a single rider or driver connection
- Reason enums for voided requests and withdrawn offers
- Small frozen records for one event / one participant delivery

Rule: No delivery logic here, see notifier.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from rides.models import RideRequest


class EventType(str, Enum):
    OFFER_CREATED = "offer_created"
    ASSIGNED = "assigned"
    REQUEST_VOIDED = "request_voided"
    DRIVER_OFFER_WITHDRAWN = "driver_offer_withdrawn"
    RIDE_COMPLETED = "ride_completed"


class VoidReason(str, Enum):
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    NO_DRIVERS = "no_drivers"
    ASSIGNMENT_LOST = "assignment_lost"


class WithdrawalReason(str, Enum):
    ASSIGNED_ELSEWHERE = "assigned_elsewhere"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    # the driver won a different request
    DRIVER_ASSIGNED = "driver_assigned"


class MessageType(str, Enum):
    # driver side
    RIDE_OFFER = "ride_offer"
    OFFER_WITHDRAWN = "offer_withdrawn"
    # both sides
    RIDE_ASSIGNED = "ride_assigned"
    # rider side
    NO_DRIVERS = "no_drivers"
    RIDE_EXPIRED = "ride_expired"
    RIDE_CANCELLED = "ride_cancelled"
    ASSIGNMENT_LOST = "assignment_lost"
    RIDE_COMPLETED = "ride_completed"


# What the rider is told for each way a request can be voided.
RIDER_VOID_MESSAGES = {
    VoidReason.EXPIRED: MessageType.RIDE_EXPIRED,
    VoidReason.CANCELLED: MessageType.RIDE_CANCELLED,
    VoidReason.NO_DRIVERS: MessageType.NO_DRIVERS,
    VoidReason.ASSIGNMENT_LOST: MessageType.ASSIGNMENT_LOST,
}


@dataclass(frozen=True)
class Event:
    """
    One outbound event. Only the fields relevant to `type` are set.
    """
    type: EventType
    request_id: str
    driver_ids: Tuple[str, ...] = ()
    driver_id: Optional[str] = None
    reason: Optional[str] = None
    fare: Optional[float] = None
    rating: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"event": self.type.value, "request_id": self.request_id}
        if self.type == EventType.OFFER_CREATED:
            payload["driver_ids"] = list(self.driver_ids)
        if self.driver_id is not None:
            payload["driver_id"] = self.driver_id
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.fare is not None:
            payload["fare"] = self.fare
        if self.rating is not None:
            payload["rating"] = self.rating
        return payload


@dataclass(frozen=True)
class Delivery:
    """
    One message for one participant's connection.
    """
    recipient_id: str
    message: Dict[str, Any] = field(default_factory=dict)


def build_message(
    message_type: MessageType,
    request: RideRequest,
    reason: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "type": message_type.value,
        "request_id": request.id,
        "ride": request.to_payload(),
        **extra,
    }
    if reason is not None:
        message["reason"] = reason
    return message
