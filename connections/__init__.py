"""
Connections domain package.

Public API:
- Models: Participant, ParticipantRole
- Registry: ConnectionRegistry
"""
from .models import Participant, ParticipantRole
from .registry import ConnectionRegistry

__all__ = [
    "Participant",
    "ParticipantRole",
    "ConnectionRegistry",
]
