"""
Purpose: Presence bookkeeping for every live rider/driver connection.
What it does:
- Maps a participant id to its current connection handle
- Tracks driver availability and the one request a driver may be assigned to
- Answers "who can be offered this ride right now?" in a stable order

Rule: No dispatch decisions here. The registry only records presence; the
dispatcher decides what to do with it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from .models import Participant, ParticipantRole

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    In-memory registry of connected participants.

    Thread-safe: every method holds a single short-lived lock, and nothing
    inside the lock calls back out of the registry. Iteration order is
    registration order, so two calls against identical state return drivers
    in the same order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._participants: Dict[str, Participant] = {}

    # --- Public API ---

    def register(
        self,
        participant_id: str,
        role: str | ParticipantRole,
        connection: Any,
    ) -> Participant:
        """
        Attach `connection` to `participant_id`, replacing any prior handle.

        Re-registering keeps availability and any assignment, so a driver
        that reconnects mid-ride does not lose its state.
        """
        candidate = Participant.new(participant_id, role, connection)

        with self._lock:
            existing = self._participants.get(participant_id)
            if existing is None:
                self._participants[participant_id] = candidate
                logger.info("Registered %s %s", candidate.role.value, participant_id)
                return replace(candidate)

            if existing.role != candidate.role:
                raise ValueError(
                    f"Participant {participant_id} is already registered as {existing.role.value}"
                )

            existing.connection = connection
            logger.debug("Replaced connection handle for %s", participant_id)
            return replace(existing)

    def unregister(self, participant_id: str) -> Optional[Participant]:
        """
        Remove the participant and return its final record (or None).

        The caller inspects `current_request_id` on the returned record to
        find out whether a driver walked away from an assignment.
        """
        with self._lock:
            participant = self._participants.pop(participant_id, None)

        if participant is not None:
            logger.info("Unregistered %s %s", participant.role.value, participant_id)
        return participant

    def get(self, participant_id: str) -> Optional[Participant]:
        with self._lock:
            participant = self._participants.get(participant_id)
            return replace(participant) if participant else None

    def connection_for(self, participant_id: str) -> Optional[Any]:
        with self._lock:
            participant = self._participants.get(participant_id)
            return participant.connection if participant else None

    def set_availability(self, driver_id: str, available: bool) -> bool:
        """
        Flip a driver's availability flag.
        Returns False if `driver_id` is not a registered driver.
        """
        with self._lock:
            participant = self._participants.get(driver_id)
            if participant is None or not participant.is_driver:
                return False
            participant.available = available
            return True

    def list_eligible_drivers(self, exclude_ids: Optional[Iterable[str]] = None) -> List[str]:
        """
        Connected + available + unassigned drivers not in `exclude_ids`,
        in registration order.
        """
        excluded = set(exclude_ids or ())

        with self._lock:
            return [
                participant.id
                for participant in self._participants.values()
                if participant.is_eligible and participant.id not in excluded
            ]

    # --- Assignment bookkeeping ---

    def claim_driver(self, driver_id: str, request_id: str) -> bool:
        """
        Atomically bind an eligible driver to `request_id` and mark them
        unavailable. Fails if the driver is offline, unavailable or already
        holds another request.
        """
        with self._lock:
            participant = self._participants.get(driver_id)
            if participant is None or not participant.is_eligible:
                return False

            participant.current_request_id = request_id
            participant.available = False
            return True

    def release_driver(self, driver_id: str, request_id: str, available: bool = True) -> bool:
        """
        Clear the driver's assignment if it is still `request_id`.
        """
        with self._lock:
            participant = self._participants.get(driver_id)
            if participant is None or participant.current_request_id != request_id:
                return False

            participant.current_request_id = None
            participant.available = available
            return True

    def assignment_of(self, driver_id: str) -> Optional[str]:
        with self._lock:
            participant = self._participants.get(driver_id)
            return participant.current_request_id if participant else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._participants)

    def __contains__(self, participant_id: object) -> bool:
        with self._lock:
            return participant_id in self._participants
