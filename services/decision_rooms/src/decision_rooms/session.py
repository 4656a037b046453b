"""Decision session: the per-room vote/commit state machine.

A room moves LOBBY -> VOTING(1) -> VOTING(2) -> VOTING(3) -> COMPLETED, or to
CLOSED from any VOTING round when the inactivity sweep fires. Within a round
the phase is VOTING until every member has voted (ALL_VOTED) and COMMITTED once
any member commits an option. ALL_VOTED is advisory; committing with partial
votes is allowed and only logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .badges import BadgeScheduler
from .data import (
    ROOM_CLOSED,
    ROOM_COMPLETED,
    ROOM_IN_PROGRESS,
    CommitRecord,
    DataStoreProtocol,
    MembershipRecord,
    ParticipantRecord,
    RoomRecord,
    StaleWriteError,
    VoteRecord,
)
from .exceptions import DuplicateSuppressed, InvalidInput, StateConflict
from .matchmaking import require_membership
from .quests import OPTION_KEYS, Quest, QuestCatalog

logger = logging.getLogger(__name__)

JUSTIFICATION_MAX_LENGTH = 160


class RoomPhase(str, Enum):
    LOBBY = "LOBBY"
    VOTING = "VOTING"
    COMPLETED = "COMPLETED"
    CLOSED = "CLOSED"


class RoundPhase(str, Enum):
    VOTING = "VOTING"
    ALL_VOTED = "ALL_VOTED"
    COMMITTED = "COMMITTED"


def room_phase(room: RoomRecord) -> RoomPhase:
    if room.status == ROOM_IN_PROGRESS:
        return RoomPhase.VOTING
    if room.status == ROOM_COMPLETED:
        return RoomPhase.COMPLETED
    if room.status == ROOM_CLOSED:
        return RoomPhase.CLOSED
    return RoomPhase.LOBBY


def round_phase(*, committed: bool, voters: int, members: int) -> RoundPhase:
    if committed:
        return RoundPhase.COMMITTED
    if members > 0 and voters >= members:
        return RoundPhase.ALL_VOTED
    return RoundPhase.VOTING


@dataclass(frozen=True)
class CommitResult:
    is_complete: bool
    current_round: int


@dataclass
class RoundView:
    number: int
    title: str
    phase: RoundPhase
    votes: List[VoteRecord] = field(default_factory=list)
    commit: Optional[CommitRecord] = None


@dataclass
class RoomState:
    """Snapshot returned to polling clients."""

    room: RoomRecord
    quest: Quest
    phase: RoomPhase
    members: List[MembershipRecord]
    participants: Dict[str, ParticipantRecord]
    rounds: List[RoundView]
    all_voted: bool
    artifact_id: Optional[str] = None

    @property
    def current_round(self) -> int:
        return self.room.current_round


class DecisionSession:
    def __init__(
        self,
        store: DataStoreProtocol,
        catalog: QuestCatalog,
        *,
        badges: Optional[BadgeScheduler] = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._badges = badges

    def _open_round(self, room_id: str, participant_id: str, round: int) -> tuple[RoomRecord, List[MembershipRecord]]:
        members = require_membership(self._store, room_id=room_id, participant_id=participant_id)
        room = self._store.get_room(room_id)
        if room_phase(room) is not RoomPhase.VOTING:
            raise StateConflict(f"Room is {room.status}, decisions are only accepted while IN_PROGRESS")
        if round != room.current_round:
            if round < room.current_round:
                raise StateConflict("Decision already committed")
            raise StateConflict(f"Decision {round} is not open yet, current decision is {room.current_round}")
        return room, members

    @staticmethod
    def _check_option(option: str) -> str:
        if option not in OPTION_KEYS:
            raise InvalidInput(f"Option must be one of {', '.join(OPTION_KEYS)}")
        return option

    def vote(
        self,
        room_id: str,
        participant_id: str,
        round: int,
        option: str,
        justification: str,
    ) -> VoteRecord:
        self._check_option(option)
        text = (justification or "").strip()
        if not text or len(text) > JUSTIFICATION_MAX_LENGTH:
            raise InvalidInput(f"Justification must be 1..{JUSTIFICATION_MAX_LENGTH} characters")
        self._open_round(room_id, participant_id, round)
        if any(c.round == round for c in self._store.list_commits(room_id)):
            raise StateConflict("Decision already committed")
        try:
            return self._store.upsert_vote(
                room_id=room_id,
                participant_id=participant_id,
                round=round,
                option=option,
                justification=text,
            )
        except StaleWriteError as exc:
            raise StateConflict("Decision already committed") from exc

    def commit(self, room_id: str, participant_id: str, round: int, option: str) -> CommitResult:
        self._check_option(option)
        room, members = self._open_round(room_id, participant_id, round)
        quest = self._catalog.get(room.quest_id)
        voters = {v.participant_id for v in self._store.list_votes(room_id, round=round)}
        if len(voters) < len(members):
            logger.warning(
                "room=%s round=%s committed with partial quorum votes=%d members=%d",
                room_id,
                round,
                len(voters),
                len(members),
            )
        try:
            self._store.commit_round(
                room_id=room_id,
                round=round,
                option=option,
                committed_by=participant_id,
                final_round=quest.final_round,
            )
        except DuplicateSuppressed as exc:
            raise StateConflict("Decision already committed") from exc
        except StaleWriteError as exc:
            raise StateConflict("Room state changed, refresh and try again") from exc

        is_complete = round >= quest.final_round
        logger.info("room=%s round=%s committed option=%s by=%s", room_id, round, option, participant_id)
        if is_complete and self._badges is not None:
            self._badges.schedule(room_id)
        return CommitResult(is_complete=is_complete, current_round=round if is_complete else round + 1)

    def room_state(self, room_id: str, participant_id: str) -> RoomState:
        members = require_membership(self._store, room_id=room_id, participant_id=participant_id)
        room = self._store.get_room(room_id)
        quest = self._catalog.get(room.quest_id)
        votes = self._store.list_votes(room_id)
        commits = {c.round: c for c in self._store.list_commits(room_id)}

        rounds: List[RoundView] = []
        for decision in quest.decisions:
            round_votes = [v for v in votes if v.round == decision.number]
            rounds.append(
                RoundView(
                    number=decision.number,
                    title=decision.title,
                    phase=round_phase(
                        committed=decision.number in commits,
                        voters=len({v.participant_id for v in round_votes}),
                        members=len(members),
                    ),
                    votes=round_votes,
                    commit=commits.get(decision.number),
                )
            )
        current_voters = {v.participant_id for v in rounds[room.current_round - 1].votes}
        artifact = self._store.find_artifact_for_room(room_id) if room.status == ROOM_COMPLETED else None
        return RoomState(
            room=room,
            quest=quest,
            phase=room_phase(room),
            members=members,
            participants=self._store.list_participants(m.participant_id for m in members),
            rounds=rounds,
            all_voted=bool(members) and len(current_voters) >= len(members),
            artifact_id=artifact.id if artifact else None,
        )
