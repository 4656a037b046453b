"""Completion barrier: the artifact is generated only after every member acknowledges."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .artifacts import ArtifactGenerator
from .data import ROOM_COMPLETED, DataStoreProtocol
from .exceptions import StateConflict
from .matchmaking import require_membership

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AckResult:
    all_completed: bool
    artifact_id: Optional[str] = None


class CompletionCoordinator:
    def __init__(self, store: DataStoreProtocol, generator: ArtifactGenerator) -> None:
        self._store = store
        self._generator = generator

    def acknowledge_completion(self, room_id: str, participant_id: str) -> AckResult:
        require_membership(self._store, room_id=room_id, participant_id=participant_id)
        room = self._store.get_room(room_id)
        if room.status != ROOM_COMPLETED:
            raise StateConflict(f"Room is {room.status}, completion can only be acknowledged once COMPLETED")

        self._store.acknowledge_member(room_id=room_id, participant_id=participant_id)
        members = self._store.list_members(room_id)
        pending = [m.participant_id for m in members if m.acknowledged_at is None]
        if pending:
            logger.debug("room=%s waiting for %d acknowledgements", room_id, len(pending))
            return AckResult(all_completed=False)

        existing = self._store.find_artifact_for_room(room_id)
        if existing is not None:
            return AckResult(all_completed=True, artifact_id=existing.id)

        try:
            artifact = self._generator.generate(room_id)
        except Exception:
            # the room stays COMPLETED without an artifact; the next acknowledgement retries
            logger.exception("Artifact generation failed for room=%s", room_id)
            return AckResult(all_completed=True)
        return AckResult(all_completed=True, artifact_id=artifact.id)
