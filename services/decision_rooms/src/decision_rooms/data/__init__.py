"""Decision Rooms data layer (in-memory by default)."""

from .store import (
    ACTIVE_ROOM_STATUSES,
    ROOM_CLOSED,
    ROOM_COMPLETED,
    ROOM_FULL,
    ROOM_IN_PROGRESS,
    ROOM_OPEN,
    ArtifactRecord,
    BadgeAwardRecord,
    CommitRecord,
    DataStoreError,
    DataStoreProtocol,
    InMemoryDataStore,
    MembershipRecord,
    NotFoundError,
    ParticipantRecord,
    PostgresDataStore,
    RoomRecord,
    StaleWriteError,
    VoteRecord,
)

__all__ = [
    "ACTIVE_ROOM_STATUSES",
    "ROOM_CLOSED",
    "ROOM_COMPLETED",
    "ROOM_FULL",
    "ROOM_IN_PROGRESS",
    "ROOM_OPEN",
    "ArtifactRecord",
    "BadgeAwardRecord",
    "CommitRecord",
    "DataStoreError",
    "DataStoreProtocol",
    "InMemoryDataStore",
    "MembershipRecord",
    "NotFoundError",
    "ParticipantRecord",
    "PostgresDataStore",
    "RoomRecord",
    "StaleWriteError",
    "VoteRecord",
]
