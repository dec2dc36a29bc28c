#Expose the high-level pipeline pieces:
#Dispatcher orchestrator (the "one call" entry point for every inbound message)
#Typed outcomes returned by every operation
#Expiry schedulers (timer per request, or periodic sweep)

from .dispatcher import Dispatcher, create_dispatcher #the main entry point for riders and drivers
from .expiry import ExpiryScheduler, SweepExpiryScheduler, TimerExpiryScheduler, build_expiry_scheduler
from .locks import RequestLockManager
from .results import DriverDecision, InvariantViolation, Outcome, Rejection, RejectReason
from .state_machines.ride_state import RideStateException

__all__ = [
    "Dispatcher",
    "create_dispatcher",
    "ExpiryScheduler",
    "SweepExpiryScheduler",
    "TimerExpiryScheduler",
    "build_expiry_scheduler",
    "RequestLockManager",
    "DriverDecision",
    "InvariantViolation",
    "Outcome",
    "Rejection",
    "RejectReason",
    "RideStateException",
]
