"""
Purpose: Core data models for the connections domain.
What it does:
Defines who is connected (riders and drivers), the handle their messages
travel over, and the presence flags the dispatch engine filters on.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ParticipantRole(str, Enum):
    """
    The two kinds of participant that can hold a live connection.
    """
    RIDER = "rider"
    DRIVER = "driver"


@dataclass
class Participant:
    """
    A connected rider or driver.

    `connection` is any object exposing `send(message: dict)`; the registry
    never inspects it beyond that. Availability and the current assignment
    only mean something for drivers.
    """
    id: str
    role: ParticipantRole
    connection: Optional[Any] = None

    available: bool = False
    current_request_id: Optional[str] = None

    @property
    def is_driver(self) -> bool:
        return self.role == ParticipantRole.DRIVER

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    @property
    def is_eligible(self) -> bool:
        """Connected, marked available and not holding an assignment."""
        return (
            self.is_driver
            and self.is_connected
            and self.available
            and self.current_request_id is None
        )

    @classmethod
    def new(
        cls,
        participant_id: str,
        role: str | ParticipantRole,
        connection: Optional[Any] = None,
    ) -> Participant:
        if isinstance(role, str):
            role = ParticipantRole(role)

        return cls(id=participant_id, role=role, connection=connection)
