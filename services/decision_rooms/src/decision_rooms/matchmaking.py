"""Room matchmaking: put participants into rooms for a quest and start rooms."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import List, Optional

from .data import (
    ROOM_FULL,
    ROOM_IN_PROGRESS,
    ROOM_OPEN,
    DataStoreProtocol,
    MembershipRecord,
    RoomRecord,
    StaleWriteError,
)
from .exceptions import AuthorizationError, StateConflict
from .quests import QuestCatalog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinResult:
    room_id: str
    room_code: str
    joined: bool


def require_membership(store: DataStoreProtocol, *, room_id: str, participant_id: str) -> List[MembershipRecord]:
    """Return the room roster, raising :class:`AuthorizationError` for outsiders."""

    members = store.list_members(room_id)
    if not any(m.participant_id == participant_id for m in members):
        raise AuthorizationError(f"Participant {participant_id} is not a member of room {room_id}")
    return members


class Matchmaker:
    def __init__(self, store: DataStoreProtocol, catalog: QuestCatalog) -> None:
        self._store = store
        self._catalog = catalog

    def join(self, participant_id: str, quest_id: str, *, event_id: Optional[str] = None) -> JoinResult:
        """Join the oldest open room for the quest, or open a new one.

        Re-joining a quest the participant is already playing returns the same
        room with ``joined=False``. Capacity is checked and the membership is
        written in a single store operation.
        """

        quest = self._catalog.get(quest_id)
        room, joined = self._store.join_or_create_room(
            participant_id=participant_id,
            quest_id=quest.id,
            event_id=event_id,
            max_members=quest.max_members,
        )
        if joined:
            logger.info(
                "participant=%s joined room=%s quest=%s status=%s",
                participant_id,
                room.id,
                quest.id,
                room.status,
            )
        return JoinResult(room_id=room.id, room_code=room.room_code, joined=joined)

    def start(self, room_id: str, participant_id: str, *, force: bool = False) -> RoomRecord:
        members = require_membership(self._store, room_id=room_id, participant_id=participant_id)
        room = self._store.get_room(room_id)
        if room.status not in (ROOM_OPEN, ROOM_FULL):
            raise StateConflict(f"Room cannot be started from status {room.status}")
        quest = self._catalog.get(room.quest_id)
        if len(members) < quest.min_members and not force:
            raise StateConflict(
                f"Room needs at least {quest.min_members} members to start, has {len(members)}"
            )
        try:
            started = self._store.transition_room(
                room_id,
                expected=(ROOM_OPEN, ROOM_FULL),
                status=ROOM_IN_PROGRESS,
                started_at=datetime.now(tz=UTC),
            )
        except StaleWriteError as exc:
            raise StateConflict("Room was started concurrently") from exc
        logger.info("room=%s started by participant=%s members=%d force=%s", room_id, participant_id, len(members), force)
        return started
