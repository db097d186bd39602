"""
Session Registry: Code-Addressable Classroom Sessions

Owns every live session, indexed twice:
- session_id -> Session   (primary store)
- code -> session_id      (join-code index)

Guarantees:
- Codes are unique among sessions held by the registry. The allocator
  proposes a code; the registry commits it under the same lock that
  guards the code index, so concurrent creates cannot collide.
- Expired sessions are removed only by cleanup_expired() (run
  periodically by the reaper). Until then, lookups return
  SESSION_EXPIRED rather than SESSION_NOT_FOUND.
- ENDED is terminal: participants are forced offline and no further
  participant or status mutation is accepted.

Every fallible operation returns a Result; nothing raises for caller
mistakes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import uuid4

from lexsession.core.clock import Clock, SYSTEM_CLOCK
from lexsession.core.config import SessionConfig
from lexsession.core.errors import SessionError
from lexsession.core.tasks import PeriodicTask
from lexsession.core.types import Result, Ok, Err, Timestamp, valid_duration
from lexsession.session.codes import CodeAllocator
from lexsession.session.models import (
    JoinOptions,
    ParticipantInfo,
    Session,
    SessionOptions,
    SessionStatus,
    VoteData,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RegistryStatistics:
    """Point-in-time aggregate over every session held by the registry."""
    total_sessions: int
    active_sessions: int
    expired_sessions: int
    total_participants: int
    online_participants: int
    avg_session_age_seconds: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_sessions": self.total_sessions,
            "active_sessions": self.active_sessions,
            "expired_sessions": self.expired_sessions,
            "total_participants": self.total_participants,
            "online_participants": self.online_participants,
            "avg_session_age_seconds": round(self.avg_session_age_seconds, 3),
        }


@dataclass(frozen=True, slots=True)
class RegistryStatus:
    """Manager-level health snapshot."""
    is_running: bool
    session_count: int
    code_map_count: int
    max_sessions: int


class SessionRegistry:
    """
    In-memory registry of classroom sessions.

    Usage:
        registry = SessionRegistry(clock=ManualClock())
        registry.start()

        result = await registry.create(SessionOptions(owner_id="instructor-1"))
        if result.is_ok():
            code = result.unwrap().code
            await registry.join(code, "student-0", JoinOptions(display_name="Ada"))

        await registry.stop()
    """

    __slots__ = (
        "_config", "_clock", "_allocator", "_sessions", "_codes",
        "_lock", "_reaper",
    )

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        clock: Optional[Clock] = None,
        allocator: Optional[CodeAllocator] = None,
    ) -> None:
        self._config = config or SessionConfig()
        self._clock = clock or SYSTEM_CLOCK
        self._allocator = allocator or CodeAllocator(
            length=self._config.code_length,
            max_attempts=self._config.max_code_attempts,
        )
        self._sessions: dict[str, Session] = {}
        self._codes: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._reaper = PeriodicTask(
            "session-reaper",
            self._config.cleanup_interval_seconds,
            self.cleanup_expired,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def start(self) -> None:
        """Start the background reaper. Must be called inside a running loop."""
        self._reaper.start()

    async def stop(self) -> None:
        """Halt the reaper and drop all sessions. Safe to call repeatedly."""
        await self._reaper.stop()
        async with self._lock:
            dropped = len(self._sessions)
            self._sessions.clear()
            self._codes.clear()
        if dropped:
            logger.info("Session registry stopped", extra={"dropped_sessions": dropped})

    @property
    def is_running(self) -> bool:
        return self._reaper.is_running

    # -------------------------------------------------------------------------
    # Creation and lookup
    # -------------------------------------------------------------------------
    async def create(
        self,
        options: Optional[SessionOptions] = None,
    ) -> Result[Session, SessionError]:
        """
        Create a session with a freshly allocated join code.

        Fails with SESSION_FULL when the number of unexpired sessions has
        reached max_sessions.
        """
        opts = options or SessionOptions()
        ttl = opts.ttl_seconds if opts.ttl_seconds is not None else self._config.default_ttl_seconds
        if not valid_duration(ttl):
            return Err(SessionError.invalid_input("ttl_seconds", "must be finite and > 0", ttl))
        if opts.max_participants is not None and opts.max_participants < 1:
            return Err(SessionError.invalid_input(
                "max_participants", "must be >= 1", opts.max_participants,
            ))

        async with self._lock:
            now = self._clock.now()
            live = sum(1 for s in self._sessions.values() if not s.is_expired(now))
            if live >= self._config.max_sessions:
                logger.warning(
                    "Session limit reached",
                    extra={"live_sessions": live, "max_sessions": self._config.max_sessions},
                )
                return Err(SessionError.full("sessions", live, self._config.max_sessions))

            code_result = self._allocator.allocate(lambda code: code in self._codes)
            if code_result.is_err():
                logger.error(
                    "Code allocation exhausted",
                    extra={"code_map_count": len(self._codes)},
                )
                return code_result
            code = code_result.unwrap()

            try:
                session = Session(
                    session_id=uuid4().hex,
                    code=code,
                    created_at=now,
                    expires_at=now.plus_seconds(ttl),
                    owner_id=opts.owner_id,
                    name=opts.name,
                    max_participants=opts.max_participants,
                    allow_anonymous=opts.allow_anonymous,
                )
            except ValueError as e:
                logger.exception("Session construction failed", extra={"session_code": code})
                return Err(SessionError.internal("create", e))
            self._sessions[session.session_id] = session
            self._codes[code] = session.session_id

        logger.info(
            "Session created",
            extra={"session_code": code, "owner_id": opts.owner_id, "ttl_seconds": ttl},
        )
        return Ok(session)

    async def get_by_code(self, code: str) -> Result[Session, SessionError]:
        """
        Look up a session by join code.

        An expired session stays in the table until the next cleanup and
        keeps returning SESSION_EXPIRED until then.
        """
        async with self._lock:
            return self._lookup(code, self._clock.now())

    def _lookup(self, code: str, now: Timestamp) -> Result[Session, SessionError]:
        """Resolve a code. Caller must hold the lock."""
        session_id = self._codes.get(code)
        session = self._sessions.get(session_id) if session_id is not None else None
        if session is None:
            return Err(SessionError.not_found(code))
        if session.is_expired(now):
            return Err(SessionError.expired(code, session.expires_at))
        return Ok(session)

    def _lookup_open(self, code: str, now: Timestamp) -> Result[Session, SessionError]:
        """Resolve a code to a session that has not ENDED."""
        result = self._lookup(code, now)
        if result.is_ok() and result.unwrap().is_ended:
            return Err(SessionError.invalid_input("code", "session has ended", code))
        return result

    # -------------------------------------------------------------------------
    # Participants
    # -------------------------------------------------------------------------
    async def add_participant(
        self,
        code: str,
        participant_id: str,
        options: Optional[JoinOptions] = None,
    ) -> Result[ParticipantInfo, SessionError]:
        """
        Add a participant. The first participant flips WAITING -> ACTIVE.

        Fails with INVALID_INPUT on an empty or duplicate id, a missing
        display name (unless the session allows anonymous joins) or an
        ended session; with SESSION_FULL when max_participants is reached.
        """
        opts = options or JoinOptions()
        if not participant_id or not participant_id.strip():
            return Err(SessionError.invalid_input("participant_id", "must not be empty"))

        async with self._lock:
            now = self._clock.now()
            result = self._lookup_open(code, now)
            if result.is_err():
                return result
            session = result.unwrap()

            if participant_id in session.participants:
                return Err(SessionError.invalid_input(
                    "participant_id", "already in session", participant_id,
                ))

            display_name = (opts.display_name or "").strip()
            if not display_name:
                if not session.allow_anonymous:
                    return Err(SessionError.invalid_input(
                        "display_name", "required for this session",
                    ))
                display_name = f"Anonymous-{participant_id[-4:]}"

            limit = session.max_participants
            if limit is not None and len(session.participants) >= limit:
                return Err(SessionError.full(
                    f"session {code}", len(session.participants), limit,
                ))

            attributes = dict(opts.attributes)
            if opts.avatar:
                attributes["avatar"] = opts.avatar

            participant = ParticipantInfo(
                participant_id=participant_id,
                display_name=display_name,
                joined_at=now,
                last_active_at=now,
                attributes=attributes,
            )
            session.participants[participant_id] = participant
            session.statistics.recompute(session.participants)
            if session.status == SessionStatus.WAITING:
                session.status = SessionStatus.ACTIVE

        logger.debug(
            "Participant joined",
            extra={"session_code": code, "participant_id": participant_id},
        )
        return Ok(participant)

    join = add_participant

    async def remove_participant(
        self,
        code: str,
        participant_id: str,
    ) -> Result[bool, SessionError]:
        """Remove a participant. The last one leaving flips ACTIVE -> WAITING."""
        async with self._lock:
            result = self._lookup_open(code, self._clock.now())
            if result.is_err():
                return result
            session = result.unwrap()

            if session.participants.pop(participant_id, None) is None:
                return Err(SessionError.invalid_input(
                    "participant_id", "not in session", participant_id,
                ))
            session.statistics.recompute(session.participants)
            if not session.participants and session.status == SessionStatus.ACTIVE:
                session.status = SessionStatus.WAITING

        logger.debug(
            "Participant left",
            extra={"session_code": code, "participant_id": participant_id},
        )
        return Ok(True)

    leave = remove_participant

    async def update_activity(
        self,
        code: str,
        participant_id: str,
    ) -> Result[ParticipantInfo, SessionError]:
        """Mark a participant online and refresh its last-active time."""
        async with self._lock:
            now = self._clock.now()
            result = self._lookup_open(code, now)
            if result.is_err():
                return result
            session = result.unwrap()

            participant = session.participants.get(participant_id)
            if participant is None:
                return Err(SessionError.invalid_input(
                    "participant_id", "not in session", participant_id,
                ))
            participant.is_online = True
            participant.last_active_at = now
            session.statistics.recompute(session.participants)
            return Ok(participant)

    async def raise_hand(
        self,
        code: str,
        participant_id: str,
        raised: bool = True,
    ) -> Result[ParticipantInfo, SessionError]:
        """Set or clear a participant's raised hand."""
        async with self._lock:
            now = self._clock.now()
            result = self._lookup_open(code, now)
            if result.is_err():
                return result
            participant = result.unwrap().participants.get(participant_id)
            if participant is None:
                return Err(SessionError.invalid_input(
                    "participant_id", "not in session", participant_id,
                ))
            participant.hand_raised = raised
            participant.last_active_at = now
            return Ok(participant)

    # -------------------------------------------------------------------------
    # Status and lifetime
    # -------------------------------------------------------------------------
    async def update_status(
        self,
        code: str,
        status: SessionStatus,
    ) -> Result[bool, SessionError]:
        """
        Set the session status directly.

        ENDED forces every participant offline, zeroes the active count
        and closes the running topic. Re-ending is a no-op success; any
        other status after ENDED is rejected.
        """
        async with self._lock:
            now = self._clock.now()
            result = self._lookup(code, now)
            if result.is_err():
                return result
            session = result.unwrap()

            if session.is_ended:
                if status == SessionStatus.ENDED:
                    return Ok(True)
                return Err(SessionError.invalid_input("status", "session has ended", status.value))

            session.status = status
            if status == SessionStatus.ENDED:
                self._close_topic(session, now)
                for participant in session.participants.values():
                    participant.is_online = False
                    participant.hand_raised = False
                session.statistics.active_participants = 0
                if session.current_vote is not None:
                    session.current_vote.is_ended = True

        if status == SessionStatus.ENDED:
            logger.info("Session ended", extra={"session_code": code})
        return Ok(True)

    set_status = update_status

    async def extend(
        self,
        code: str,
        extra_seconds: float,
    ) -> Result[Session, SessionError]:
        """Push the expiry out by `extra_seconds`."""
        if not valid_duration(extra_seconds):
            return Err(SessionError.invalid_input("extra_seconds", "must be finite and > 0", extra_seconds))
        async with self._lock:
            result = self._lookup(code, self._clock.now())
            if result.is_err():
                return result
            session = result.unwrap()
            extended = session.expires_at.plus_seconds(extra_seconds)
            if extended <= session.expires_at:
                return Err(SessionError.invalid_input("extra_seconds", "does not move the expiry", extra_seconds))
            session.expires_at = extended
            return Ok(session)

    # -------------------------------------------------------------------------
    # Prompts, polls, topics
    # -------------------------------------------------------------------------
    async def set_question(
        self,
        code: str,
        text: Optional[str],
    ) -> Result[bool, SessionError]:
        """Replace the current question (None clears it)."""
        async with self._lock:
            result = self._lookup(code, self._clock.now())
            if result.is_err():
                return result
            result.unwrap().current_question = text
            return Ok(True)

    async def set_vote(
        self,
        code: str,
        vote: Optional[VoteData],
    ) -> Result[bool, SessionError]:
        """Replace the current poll (None clears it)."""
        if vote is not None and len(vote.choices) < 2:
            return Err(SessionError.invalid_input("vote.choices", "need at least two choices"))
        async with self._lock:
            result = self._lookup(code, self._clock.now())
            if result.is_err():
                return result
            result.unwrap().current_vote = vote
            return Ok(True)

    async def cast_vote(
        self,
        code: str,
        participant_id: str,
        choice_id: str,
    ) -> Result[VoteData, SessionError]:
        """Record one participant's vote on the current poll."""
        async with self._lock:
            now = self._clock.now()
            result = self._lookup_open(code, now)
            if result.is_err():
                return result
            session = result.unwrap()

            vote = session.current_vote
            if vote is None:
                return Err(SessionError.invalid_input("vote", "no active vote"))
            if vote.is_closed(now):
                return Err(SessionError.invalid_input("vote", "vote has ended", vote.vote_id))
            if participant_id not in session.participants:
                return Err(SessionError.invalid_input(
                    "participant_id", "not in session", participant_id,
                ))
            if participant_id in vote.voted_participants:
                return Err(SessionError.invalid_input(
                    "participant_id", "already voted", participant_id,
                ))
            choice = vote.choice(choice_id)
            if choice is None:
                return Err(SessionError.invalid_input("choice_id", "unknown choice", choice_id))

            choice.count += 1
            vote.voted_participants.add(participant_id)
            session.participants[participant_id].last_active_at = now
            return Ok(vote)

    async def set_topic(
        self,
        code: str,
        topic: Optional[str],
    ) -> Result[bool, SessionError]:
        """
        Switch the discussion topic.

        Time spent on the previous topic is added to
        statistics.topic_durations.
        """
        async with self._lock:
            now = self._clock.now()
            result = self._lookup_open(code, now)
            if result.is_err():
                return result
            session = result.unwrap()
            self._close_topic(session, now)
            session.current_topic = topic
            session.topic_started_at = now if topic is not None else None
            return Ok(True)

    @staticmethod
    def _close_topic(session: Session, now: Timestamp) -> None:
        if session.current_topic is None or session.topic_started_at is None:
            return
        elapsed = max(0.0, session.topic_started_at.seconds_until(now))
        durations = session.statistics.topic_durations
        durations[session.current_topic] = durations.get(session.current_topic, 0.0) + elapsed
        session.topic_started_at = now

    # -------------------------------------------------------------------------
    # Removal and maintenance
    # -------------------------------------------------------------------------
    async def delete(self, code: str) -> Result[bool, SessionError]:
        """Remove a session and its code mapping, expired or not."""
        async with self._lock:
            session_id = self._codes.pop(code, None)
            if session_id is None:
                return Err(SessionError.not_found(code))
            self._sessions.pop(session_id, None)
        logger.info("Session deleted", extra={"session_code": code})
        return Ok(True)

    async def cleanup_expired(self) -> int:
        """Remove every session past its expiry. Returns the number removed."""
        async with self._lock:
            now = self._clock.now()
            expired = [s for s in self._sessions.values() if s.is_expired(now)]
            for session in expired:
                del self._sessions[session.session_id]
                self._codes.pop(session.code, None)

        if expired:
            logger.info(
                "Expired sessions reaped",
                extra={"reaped": len(expired), "remaining": len(self._sessions)},
            )
        return len(expired)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------
    async def list_active(self) -> list[Session]:
        """Unexpired sessions that have not ENDED."""
        async with self._lock:
            now = self._clock.now()
            return [
                s for s in self._sessions.values()
                if not s.is_expired(now) and not s.is_ended
            ]

    async def stats(self) -> RegistryStatistics:
        """Aggregate counters computed at call time."""
        async with self._lock:
            now = self._clock.now()
            total_participants = 0
            online_participants = 0
            total_age = 0.0
            active = 0
            expired = 0

            for session in self._sessions.values():
                total_participants += len(session.participants)
                online_participants += session.online_count
                total_age += max(0.0, session.age_seconds(now))
                if session.is_expired(now):
                    expired += 1
                elif session.status == SessionStatus.ACTIVE:
                    active += 1

            count = len(self._sessions)
            return RegistryStatistics(
                total_sessions=count,
                active_sessions=active,
                expired_sessions=expired,
                total_participants=total_participants,
                online_participants=online_participants,
                avg_session_age_seconds=total_age / count if count else 0.0,
            )

    def status(self) -> RegistryStatus:
        return RegistryStatus(
            is_running=self.is_running,
            session_count=len(self._sessions),
            code_map_count=len(self._codes),
            max_sessions=self._config.max_sessions,
        )

    def __len__(self) -> int:
        return len(self._sessions)
