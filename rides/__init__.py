"""
Rides domain package.

Public API:
- Domain models: RideRequest, RideState, TerminalReason
- Store: RideRequestStore
- Configuration: DispatchPolicy, default_dispatch_policy, policy_from_env
"""
from .models import RideRequest, RideState, TerminalReason, TERMINAL_STATES, utc_now
from .policy import DispatchPolicy, default_dispatch_policy, policy_from_env
from .store import RideRequestStore

__all__ = ["RideRequest",
           "RideState",
             "TerminalReason",
               "TERMINAL_STATES",
               "utc_now",
               "RideRequestStore",
               "DispatchPolicy",
               "default_dispatch_policy",
               "policy_from_env",
               ]
