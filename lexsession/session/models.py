"""
Session Data Model

Classroom sessions addressed by a short numeric join code:
- Session: code, lifetime window, owner, participants and status
- ParticipantInfo: per-participant presence and activity
- SessionStatistics: aggregate counters derived from participants
- VoteData / VoteChoice: the single active poll

Status lifecycle:
    WAITING <-> ACTIVE   (driven by whether anyone is present)
    WAITING/ACTIVE -> ENDED   (terminal)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional
from uuid import uuid4

from lexsession.core.types import Timestamp


class SessionStatus(Enum):
    """Session lifecycle status."""
    WAITING = "waiting"
    ACTIVE = "active"
    ENDED = "ended"


# =============================================================================
# PARTICIPANTS
# =============================================================================
@dataclass(slots=True)
class ParticipantInfo:
    """Participant presence record. Flipped offline, never removed, on session end."""

    participant_id: str
    display_name: str
    joined_at: Timestamp
    last_active_at: Timestamp
    is_online: bool = True
    hand_raised: bool = False
    attributes: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.participant_id,
            "display_name": self.display_name,
            "joined_at_ms": self.joined_at.millis,
            "last_active_at_ms": self.last_active_at.millis,
            "is_online": self.is_online,
            "hand_raised": self.hand_raised,
            "attributes": dict(self.attributes),
        }


@dataclass(slots=True)
class SessionStatistics:
    """
    Aggregate counters for one session.

    Invariant: active_participants <= total_participants.
    """

    total_participants: int = 0
    active_participants: int = 0
    # topic -> seconds spent on it
    topic_durations: dict[str, float] = field(default_factory=dict)

    def recompute(self, participants: Mapping[str, ParticipantInfo]) -> None:
        """Derive participant counters from the current participant map."""
        self.total_participants = len(participants)
        self.active_participants = sum(1 for p in participants.values() if p.is_online)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_participants": self.total_participants,
            "active_participants": self.active_participants,
            "topic_durations": dict(self.topic_durations),
        }


# =============================================================================
# VOTING
# =============================================================================
@dataclass(slots=True)
class VoteChoice:
    """One answer option of a poll."""
    choice_id: str
    text: str
    count: int = 0


@dataclass(slots=True)
class VoteData:
    """
    A poll posted by the session owner.

    `ends_at` is optional; a poll without it stays open until replaced
    or explicitly ended.
    """

    question: str
    choices: list[VoteChoice]
    created_at: Timestamp
    vote_id: str = field(default_factory=lambda: uuid4().hex)
    ends_at: Optional[Timestamp] = None
    is_ended: bool = False
    voted_participants: set[str] = field(default_factory=set)

    @classmethod
    def create(
        cls,
        question: str,
        choices: list[str],
        created_at: Timestamp,
        duration_seconds: Optional[float] = None,
    ) -> VoteData:
        """Build a poll from plain choice texts; ids are "0", "1", ..."""
        return cls(
            question=question,
            choices=[VoteChoice(choice_id=str(i), text=text) for i, text in enumerate(choices)],
            created_at=created_at,
            ends_at=(
                created_at.plus_seconds(duration_seconds)
                if duration_seconds is not None else None
            ),
        )

    def is_closed(self, now: Timestamp) -> bool:
        return self.is_ended or (self.ends_at is not None and now > self.ends_at)

    def choice(self, choice_id: str) -> Optional[VoteChoice]:
        for c in self.choices:
            if c.choice_id == choice_id:
                return c
        return None

    @property
    def total_votes(self) -> int:
        return sum(c.count for c in self.choices)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.vote_id,
            "question": self.question,
            "choices": [
                {"id": c.choice_id, "text": c.text, "count": c.count}
                for c in self.choices
            ],
            "voted": sorted(self.voted_participants),
            "created_at_ms": self.created_at.millis,
            "ends_at_ms": self.ends_at.millis if self.ends_at else None,
            "is_ended": self.is_ended,
        }


# =============================================================================
# SESSION
# =============================================================================
@dataclass(slots=True)
class SessionOptions:
    """Caller-supplied options for SessionRegistry.create()."""
    owner_id: Optional[str] = None
    name: Optional[str] = None
    ttl_seconds: Optional[float] = None
    max_participants: Optional[int] = None
    allow_anonymous: bool = False


@dataclass(slots=True)
class JoinOptions:
    """Caller-supplied participant details for SessionRegistry.add_participant()."""
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Session:
    """
    A live classroom session.

    Mutated only by SessionRegistry under its lock. Callers receive the
    live object; treat it as read-only.
    """

    session_id: str
    code: str
    created_at: Timestamp
    expires_at: Timestamp
    owner_id: Optional[str] = None
    name: Optional[str] = None
    max_participants: Optional[int] = None
    allow_anonymous: bool = False
    status: SessionStatus = SessionStatus.WAITING
    participants: dict[str, ParticipantInfo] = field(default_factory=dict)
    statistics: SessionStatistics = field(default_factory=SessionStatistics)
    current_question: Optional[str] = None
    current_vote: Optional[VoteData] = None
    current_topic: Optional[str] = None
    topic_started_at: Optional[Timestamp] = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")

    def is_expired(self, now: Timestamp) -> bool:
        return now > self.expires_at

    @property
    def is_ended(self) -> bool:
        return self.status == SessionStatus.ENDED

    @property
    def online_count(self) -> int:
        return sum(1 for p in self.participants.values() if p.is_online)

    def age_seconds(self, now: Timestamp) -> float:
        return self.created_at.seconds_until(now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        return {
            "session_id": self.session_id,
            "code": self.code,
            "name": self.name,
            "owner_id": self.owner_id,
            "status": self.status.value,
            "created_at_ms": self.created_at.millis,
            "expires_at_ms": self.expires_at.millis,
            "max_participants": self.max_participants,
            "allow_anonymous": self.allow_anonymous,
            "participants": [p.to_dict() for p in self.participants.values()],
            "statistics": self.statistics.to_dict(),
            "current_question": self.current_question,
            "current_vote": self.current_vote.to_dict() if self.current_vote else None,
            "current_topic": self.current_topic,
        }
