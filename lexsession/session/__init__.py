"""
Session module: join-code allocation, session model and registry.

Components:
- CodeAllocator: bounded-retry random numeric codes
- Session / ParticipantInfo / VoteData: the session data model
- SessionRegistry: code-addressable sessions with TTL and a reaper
"""

from lexsession.session.codes import CodeAllocator
from lexsession.session.models import (
    JoinOptions,
    ParticipantInfo,
    Session,
    SessionOptions,
    SessionStatistics,
    SessionStatus,
    VoteChoice,
    VoteData,
)
from lexsession.session.registry import (
    RegistryStatistics,
    RegistryStatus,
    SessionRegistry,
)

__all__ = [
    "CodeAllocator",
    "JoinOptions",
    "ParticipantInfo",
    "Session",
    "SessionOptions",
    "SessionStatistics",
    "SessionStatus",
    "VoteChoice",
    "VoteData",
    "RegistryStatistics",
    "RegistryStatus",
    "SessionRegistry",
]
