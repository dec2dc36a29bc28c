"""
Purpose: Central configuration for ride dispatch (single source of truth).
What it does:

Stores all tunable thresholds/caps for offering rides to drivers:

REQUEST_TTL_SECONDS = 60
EXPIRY_STRATEGY = "timer" (or "sweep", checked every SWEEP_INTERVAL_SECONDS)
MAX_BROADCAST_SIZE = None (every eligible driver)

Values can be overridden from the environment / a .env file:

DISPATCH_REQUEST_TTL_SECONDS=45
DISPATCH_EXPIRY_STRATEGY=sweep

Rule: No logic here, just parameters so you can tune without rewriting code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

EXPIRY_STRATEGIES = ("timer", "sweep")


@dataclass(frozen=True)
class DispatchPolicy:
    """
    Central configuration for the dispatch engine.
    """

    # --- Offer lifetime ---
    # How long a request stays open for drivers before it expires.
    request_ttl_seconds: float = 60

    # "timer": one timer per request, fires at the deadline.
    # "sweep": a background loop checks deadlines every sweep_interval_seconds,
    # so expiry can land up to one interval late.
    expiry_strategy: str = "timer"
    sweep_interval_seconds: float = 1.0

    # --- Broadcast waves ---
    # Cap on drivers offered at once. None broadcasts to every eligible driver.
    max_broadcast_size: Optional[int] = None

    # When every offered driver declined, offer the next eligible drivers
    # instead of giving up straight away.
    widen_on_reject: bool = True

    # A driver who turns available sees every offer that is still open.
    offer_to_late_joiners: bool = True

    # --- Bookkeeping ---
    # How many resolved requests are kept for duplicate/late message detection.
    history_size: int = 1000

    # Fare used when the rider does not send an estimate.
    default_fare: float = 25.00

    # Put the driver back in the pool when they complete a ride.
    release_driver_on_complete: bool = True

    # A rider may only have one open request unless this is on.
    allow_concurrent_rider_requests: bool = False

    def validate(self) -> None:
        """
        Basic sanity checks.
        """
        if self.request_ttl_seconds <= 0:
            raise ValueError("request_ttl_seconds must be > 0")

        if self.expiry_strategy not in EXPIRY_STRATEGIES:
            raise ValueError(f"expiry_strategy must be one of {EXPIRY_STRATEGIES}")

        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")

        if self.max_broadcast_size is not None and self.max_broadcast_size < 1:
            raise ValueError("max_broadcast_size must be >= 1 or None")

        if self.history_size < 1:
            raise ValueError("history_size must be >= 1")

        if self.default_fare < 0:
            raise ValueError("default_fare must be >= 0")


def default_dispatch_policy() -> DispatchPolicy:
    """
    Convenience factory for the default policy.
    """
    p = DispatchPolicy()
    p.validate()
    return p


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def policy_from_env() -> DispatchPolicy:
    """
    Build a policy from DISPATCH_* environment variables (a .env file is
    loaded first). Unset variables keep their defaults.
    """
    load_dotenv()
    defaults = DispatchPolicy()

    max_broadcast = os.getenv("DISPATCH_MAX_BROADCAST_SIZE")

    p = DispatchPolicy(
        request_ttl_seconds=float(os.getenv("DISPATCH_REQUEST_TTL_SECONDS", defaults.request_ttl_seconds)),
        expiry_strategy=os.getenv("DISPATCH_EXPIRY_STRATEGY", defaults.expiry_strategy),
        sweep_interval_seconds=float(os.getenv("DISPATCH_SWEEP_INTERVAL_SECONDS", defaults.sweep_interval_seconds)),
        max_broadcast_size=int(max_broadcast) if max_broadcast else None,
        widen_on_reject=_env_bool("DISPATCH_WIDEN_ON_REJECT", defaults.widen_on_reject),
        offer_to_late_joiners=_env_bool("DISPATCH_OFFER_TO_LATE_JOINERS", defaults.offer_to_late_joiners),
        history_size=int(os.getenv("DISPATCH_HISTORY_SIZE", defaults.history_size)),
        default_fare=float(os.getenv("DISPATCH_DEFAULT_FARE", defaults.default_fare)),
    )
    p.validate()
    return p
