"""Shared room storage: in-memory for dev/tests, Postgres for multi-instance deployments.

Every cross-request guarantee of the service lives here. Capacity checks,
commit-per-round, artifact-per-room and badge-per-scope are all atomic
conditional writes, so application code never holds a lock across requests.
"""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence
from uuid import uuid4

from ..exceptions import CapacityExceeded, DuplicateSuppressed

ROOM_OPEN = "OPEN"
ROOM_FULL = "FULL"
ROOM_IN_PROGRESS = "IN_PROGRESS"
ROOM_COMPLETED = "COMPLETED"
ROOM_CLOSED = "CLOSED"

ACTIVE_ROOM_STATUSES = (ROOM_OPEN, ROOM_FULL, ROOM_IN_PROGRESS)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _room_code() -> str:
    return f"ROOM-{secrets.token_hex(4).upper()}"


@dataclass
class ParticipantRecord:
    id: str
    display_name: str
    organisation: Optional[str] = None
    role: Optional[str] = None
    country: Optional[str] = None
    event_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_seen_at: datetime = field(default_factory=_utcnow)


@dataclass
class RoomRecord:
    id: str
    quest_id: str
    room_code: str
    event_id: Optional[str] = None
    status: str = ROOM_OPEN
    current_round: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    last_activity_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


@dataclass
class MembershipRecord:
    room_id: str
    participant_id: str
    joined_at: datetime = field(default_factory=_utcnow)
    acknowledged_at: Optional[datetime] = None


@dataclass
class VoteRecord:
    room_id: str
    participant_id: str
    round: int
    option: str
    justification: str
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class CommitRecord:
    room_id: str
    round: int
    option: str
    committed_by: Optional[str] = None
    committed_at: datetime = field(default_factory=_utcnow)


@dataclass
class ArtifactRecord:
    id: str
    room_id: str
    content: str
    media_type: str = "text/html"
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class BadgeAwardRecord:
    id: str
    participant_id: str
    badge_type: str
    room_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    awarded_at: datetime = field(default_factory=_utcnow)


class DataStoreProtocol(Protocol):
    """Storage contract shared by the in-memory and Postgres backends."""

    kind: str

    def upsert_participant(
        self,
        *,
        participant_id: str,
        display_name: str,
        organisation: Optional[str] = None,
        role: Optional[str] = None,
        country: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> ParticipantRecord: ...
    def get_participant(self, participant_id: str) -> ParticipantRecord: ...
    def list_participants(self, participant_ids: Iterable[str]) -> Dict[str, ParticipantRecord]: ...

    def join_or_create_room(
        self,
        *,
        participant_id: str,
        quest_id: str,
        event_id: Optional[str],
        max_members: int,
    ) -> tuple[RoomRecord, bool]: ...
    def get_room(self, room_id: str) -> RoomRecord: ...
    def list_rooms(self, *, quest_id: Optional[str] = None) -> List[RoomRecord]: ...
    def list_members(self, room_id: str) -> List[MembershipRecord]: ...
    def transition_room(
        self,
        room_id: str,
        *,
        expected: Sequence[str],
        status: str,
        **stamps: datetime,
    ) -> RoomRecord: ...
    def touch_room(self, room_id: str) -> None: ...

    def upsert_vote(
        self,
        *,
        room_id: str,
        participant_id: str,
        round: int,
        option: str,
        justification: str,
    ) -> VoteRecord: ...
    def list_votes(self, room_id: str, *, round: Optional[int] = None) -> List[VoteRecord]: ...
    def commit_round(
        self,
        *,
        room_id: str,
        round: int,
        option: str,
        committed_by: Optional[str],
        final_round: int,
    ) -> CommitRecord: ...
    def list_commits(self, room_id: str) -> List[CommitRecord]: ...

    def acknowledge_member(self, *, room_id: str, participant_id: str) -> MembershipRecord: ...

    def insert_artifact(self, *, room_id: str, content: str, media_type: str) -> ArtifactRecord: ...
    def get_artifact(self, artifact_id: str) -> ArtifactRecord: ...
    def find_artifact_for_room(self, room_id: str) -> Optional[ArtifactRecord]: ...

    def award_badge(
        self,
        *,
        participant_id: str,
        badge_type: str,
        room_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[BadgeAwardRecord]: ...
    def list_badge_awards(self, participant_id: str) -> List[BadgeAwardRecord]: ...
    def count_completed_memberships(self, participant_id: str) -> int: ...
    def list_teammate_ids(self, participant_id: str, *, statuses: Sequence[str]) -> set[str]: ...

    def close_inactive_rooms(self, *, cutoff: datetime) -> List[str]: ...


class DataStoreError(RuntimeError):
    """Generic storage-layer failure."""


class NotFoundError(DataStoreError):
    """Requested entity does not exist."""


class StaleWriteError(DataStoreError):
    """A guarded update matched no row because the room changed state concurrently."""


class InMemoryDataStore:
    """Single-process store; one re-entrant lock serialises every guarded write."""

    kind = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.participants: Dict[str, ParticipantRecord] = {}
        self.rooms: Dict[str, RoomRecord] = {}
        self.members: List[MembershipRecord] = []
        self.votes: Dict[tuple[str, str, int], VoteRecord] = {}
        self.commits: Dict[tuple[str, int], CommitRecord] = {}
        self.artifacts: Dict[str, ArtifactRecord] = {}
        self.badge_awards: List[BadgeAwardRecord] = []

    # Participants
    def upsert_participant(
        self,
        *,
        participant_id: str,
        display_name: str,
        organisation: Optional[str] = None,
        role: Optional[str] = None,
        country: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> ParticipantRecord:
        with self._lock:
            record = self.participants.get(participant_id)
            if record is None:
                record = ParticipantRecord(id=participant_id, display_name=display_name)
                self.participants[participant_id] = record
            record.display_name = display_name or record.display_name
            record.organisation = organisation or record.organisation
            record.role = role or record.role
            record.country = country or record.country
            record.event_id = event_id or record.event_id
            record.last_seen_at = _utcnow()
            return replace(record)

    def get_participant(self, participant_id: str) -> ParticipantRecord:
        with self._lock:
            try:
                return replace(self.participants[participant_id])
            except KeyError as exc:
                raise NotFoundError(f"Participant {participant_id} not found") from exc

    def list_participants(self, participant_ids: Iterable[str]) -> Dict[str, ParticipantRecord]:
        with self._lock:
            return {pid: replace(self.participants[pid]) for pid in participant_ids if pid in self.participants}

    # Rooms
    def _room(self, room_id: str) -> RoomRecord:
        try:
            return self.rooms[room_id]
        except KeyError as exc:
            raise NotFoundError(f"Room {room_id} not found") from exc

    def _room_members(self, room_id: str) -> List[MembershipRecord]:
        return [m for m in self.members if m.room_id == room_id]

    def join_or_create_room(
        self,
        *,
        participant_id: str,
        quest_id: str,
        event_id: Optional[str],
        max_members: int,
    ) -> tuple[RoomRecord, bool]:
        with self._lock:
            for membership in self.members:
                if membership.participant_id != participant_id:
                    continue
                room = self.rooms[membership.room_id]
                if room.quest_id == quest_id and room.status in ACTIVE_ROOM_STATUSES:
                    room.last_activity_at = _utcnow()
                    return replace(room), False

            candidates = sorted(
                (
                    r
                    for r in self.rooms.values()
                    if r.quest_id == quest_id and r.status == ROOM_OPEN and r.event_id == event_id
                ),
                key=lambda r: r.created_at,
            )
            now = _utcnow()
            for room in candidates:
                count = len(self._room_members(room.id))
                if count >= max_members:
                    continue
                self.members.append(MembershipRecord(room_id=room.id, participant_id=participant_id, joined_at=now))
                if count + 1 >= max_members:
                    room.status = ROOM_FULL
                room.last_activity_at = now
                return replace(room), True

            room = RoomRecord(
                id=uuid4().hex,
                quest_id=quest_id,
                room_code=_room_code(),
                event_id=event_id,
                status=ROOM_FULL if max_members <= 1 else ROOM_OPEN,
                created_at=now,
                last_activity_at=now,
            )
            self.rooms[room.id] = room
            self.members.append(MembershipRecord(room_id=room.id, participant_id=participant_id, joined_at=now))
            return replace(room), True

    def get_room(self, room_id: str) -> RoomRecord:
        with self._lock:
            return replace(self._room(room_id))

    def list_rooms(self, *, quest_id: Optional[str] = None) -> List[RoomRecord]:
        with self._lock:
            rooms = [r for r in self.rooms.values() if quest_id is None or r.quest_id == quest_id]
            return [replace(r) for r in sorted(rooms, key=lambda r: r.created_at)]

    def list_members(self, room_id: str) -> List[MembershipRecord]:
        with self._lock:
            self._room(room_id)
            return [replace(m) for m in sorted(self._room_members(room_id), key=lambda m: m.joined_at)]

    def transition_room(
        self,
        room_id: str,
        *,
        expected: Sequence[str],
        status: str,
        **stamps: datetime,
    ) -> RoomRecord:
        with self._lock:
            room = self._room(room_id)
            if room.status not in expected:
                raise StaleWriteError(f"Room {room_id} is {room.status}, expected one of {', '.join(expected)}")
            room.status = status
            for key, value in stamps.items():
                setattr(room, key, value)
            room.last_activity_at = _utcnow()
            return replace(room)

    def touch_room(self, room_id: str) -> None:
        with self._lock:
            self._room(room_id).last_activity_at = _utcnow()

    # Votes and commits
    def upsert_vote(
        self,
        *,
        room_id: str,
        participant_id: str,
        round: int,
        option: str,
        justification: str,
    ) -> VoteRecord:
        with self._lock:
            room = self._room(room_id)
            if room.status != ROOM_IN_PROGRESS or room.current_round != round or (room_id, round) in self.commits:
                raise StaleWriteError(f"Round {round} of room {room_id} is not open for voting")
            now = _utcnow()
            key = (room_id, participant_id, round)
            existing = self.votes.get(key)
            if existing is None:
                existing = VoteRecord(
                    room_id=room_id,
                    participant_id=participant_id,
                    round=round,
                    option=option,
                    justification=justification,
                    created_at=now,
                    updated_at=now,
                )
                self.votes[key] = existing
            else:
                existing.option = option
                existing.justification = justification
                existing.updated_at = now
            room.last_activity_at = now
            return replace(existing)

    def list_votes(self, room_id: str, *, round: Optional[int] = None) -> List[VoteRecord]:
        with self._lock:
            votes = [
                v for v in self.votes.values() if v.room_id == room_id and (round is None or v.round == round)
            ]
            return [replace(v) for v in sorted(votes, key=lambda v: (v.round, v.created_at))]

    def commit_round(
        self,
        *,
        room_id: str,
        round: int,
        option: str,
        committed_by: Optional[str],
        final_round: int,
    ) -> CommitRecord:
        with self._lock:
            room = self._room(room_id)
            if (room_id, round) in self.commits:
                raise DuplicateSuppressed(f"Decision {round} already committed for room {room_id}")
            if room.status != ROOM_IN_PROGRESS or room.current_round != round:
                raise StaleWriteError(f"Round {round} of room {room_id} is not open for commit")
            now = _utcnow()
            commit = CommitRecord(room_id=room_id, round=round, option=option, committed_by=committed_by, committed_at=now)
            self.commits[(room_id, round)] = commit
            if round >= final_round:
                room.status = ROOM_COMPLETED
                room.completed_at = now
            else:
                room.current_round = round + 1
            room.last_activity_at = now
            return replace(commit)

    def list_commits(self, room_id: str) -> List[CommitRecord]:
        with self._lock:
            commits = [c for (rid, _), c in self.commits.items() if rid == room_id]
            return [replace(c) for c in sorted(commits, key=lambda c: c.round)]

    # Completion
    def acknowledge_member(self, *, room_id: str, participant_id: str) -> MembershipRecord:
        with self._lock:
            for membership in self.members:
                if membership.room_id == room_id and membership.participant_id == participant_id:
                    if membership.acknowledged_at is None:
                        membership.acknowledged_at = _utcnow()
                    return replace(membership)
            raise NotFoundError(f"Participant {participant_id} is not in room {room_id}")

    # Artifacts
    def insert_artifact(self, *, room_id: str, content: str, media_type: str) -> ArtifactRecord:
        with self._lock:
            if any(a.room_id == room_id for a in self.artifacts.values()):
                raise DuplicateSuppressed(f"Artifact for room {room_id} already exists")
            record = ArtifactRecord(id=uuid4().hex, room_id=room_id, content=content, media_type=media_type)
            self.artifacts[record.id] = record
            return replace(record)

    def get_artifact(self, artifact_id: str) -> ArtifactRecord:
        with self._lock:
            try:
                return replace(self.artifacts[artifact_id])
            except KeyError as exc:
                raise NotFoundError(f"Artifact {artifact_id} not found") from exc

    def find_artifact_for_room(self, room_id: str) -> Optional[ArtifactRecord]:
        with self._lock:
            for artifact in self.artifacts.values():
                if artifact.room_id == room_id:
                    return replace(artifact)
            return None

    # Badges
    def award_badge(
        self,
        *,
        participant_id: str,
        badge_type: str,
        room_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[BadgeAwardRecord]:
        with self._lock:
            for award in self.badge_awards:
                if (
                    award.participant_id == participant_id
                    and award.badge_type == badge_type
                    and award.room_id == room_id
                ):
                    return None
            record = BadgeAwardRecord(
                id=uuid4().hex,
                participant_id=participant_id,
                badge_type=badge_type,
                room_id=room_id,
                metadata=dict(metadata or {}),
            )
            self.badge_awards.append(record)
            return replace(record)

    def list_badge_awards(self, participant_id: str) -> List[BadgeAwardRecord]:
        with self._lock:
            awards = [a for a in self.badge_awards if a.participant_id == participant_id]
            return [replace(a) for a in sorted(awards, key=lambda a: a.awarded_at, reverse=True)]

    def count_completed_memberships(self, participant_id: str) -> int:
        with self._lock:
            return sum(
                1
                for m in self.members
                if m.participant_id == participant_id and self.rooms[m.room_id].status == ROOM_COMPLETED
            )

    def list_teammate_ids(self, participant_id: str, *, statuses: Sequence[str]) -> set[str]:
        with self._lock:
            room_ids = {
                m.room_id
                for m in self.members
                if m.participant_id == participant_id and self.rooms[m.room_id].status in statuses
            }
            return {
                m.participant_id
                for m in self.members
                if m.room_id in room_ids and m.participant_id != participant_id
            }

    # Sweep
    def close_inactive_rooms(self, *, cutoff: datetime) -> List[str]:
        with self._lock:
            closed: List[str] = []
            now = _utcnow()
            for room in self.rooms.values():
                if room.status == ROOM_IN_PROGRESS and room.last_activity_at < cutoff:
                    room.status = ROOM_CLOSED
                    room.closed_at = now
                    closed.append(room.id)
            return closed


_PARTICIPANT_COLUMNS = "id, display_name, organisation, role, country, event_id, created_at, last_seen_at"
_ROOM_COLUMNS = (
    "id, quest_id, room_code, event_id, status, current_round, created_at, "
    "last_activity_at, started_at, completed_at, closed_at"
)
_VOTE_COLUMNS = "room_id, participant_id, round, option, justification, created_at, updated_at"
_COMMIT_COLUMNS = "room_id, round, option, committed_by, committed_at"
_ARTIFACT_COLUMNS = "id, room_id, content, media_type, created_at"
_BADGE_COLUMNS = "id, participant_id, badge_type, room_id, metadata, awarded_at"
_ROOM_STAMPS = {"started_at", "completed_at", "closed_at"}


def _room_from_row(row: Sequence[Any]) -> RoomRecord:
    return RoomRecord(
        id=row[0],
        quest_id=row[1],
        room_code=row[2],
        event_id=row[3],
        status=row[4],
        current_round=row[5],
        created_at=row[6],
        last_activity_at=row[7],
        started_at=row[8],
        completed_at=row[9],
        closed_at=row[10],
    )


def _participant_from_row(row: Sequence[Any]) -> ParticipantRecord:
    return ParticipantRecord(
        id=row[0],
        display_name=row[1],
        organisation=row[2],
        role=row[3],
        country=row[4],
        event_id=row[5],
        created_at=row[6],
        last_seen_at=row[7],
    )


def _vote_from_row(row: Sequence[Any]) -> VoteRecord:
    return VoteRecord(
        room_id=row[0],
        participant_id=row[1],
        round=row[2],
        option=row[3],
        justification=row[4],
        created_at=row[5],
        updated_at=row[6],
    )


def _commit_from_row(row: Sequence[Any]) -> CommitRecord:
    return CommitRecord(room_id=row[0], round=row[1], option=row[2], committed_by=row[3], committed_at=row[4])


def _artifact_from_row(row: Sequence[Any]) -> ArtifactRecord:
    return ArtifactRecord(id=row[0], room_id=row[1], content=row[2], media_type=row[3], created_at=row[4])


def _badge_from_row(row: Sequence[Any]) -> BadgeAwardRecord:
    return BadgeAwardRecord(
        id=row[0],
        participant_id=row[1],
        badge_type=row[2],
        room_id=row[3],
        metadata=row[4] or {},
        awarded_at=row[5],
    )


class PostgresDataStore:
    """Postgres-backed store; safe to share between many worker instances."""

    kind = "postgres"

    def __init__(self, dsn: str) -> None:
        import psycopg
        from psycopg.types.json import Json

        self._psycopg = psycopg
        self._dsn = dsn
        self._json = Json
        self._ensure_schema()

    def _connect(self):
        return self._psycopg.connect(self._dsn, autocommit=True)

    def _ensure_schema(self) -> None:
        ddl = """
        create table if not exists participants (
            id text primary key,
            display_name text not null,
            organisation text,
            role text,
            country text,
            event_id text,
            created_at timestamptz not null default now(),
            last_seen_at timestamptz not null default now()
        );
        create table if not exists rooms (
            id text primary key,
            quest_id text not null,
            room_code text not null unique,
            event_id text,
            status text not null check (status in ('OPEN', 'FULL', 'IN_PROGRESS', 'COMPLETED', 'CLOSED')),
            current_round int not null default 1 check (current_round between 1 and 3),
            created_at timestamptz not null default now(),
            last_activity_at timestamptz not null default now(),
            started_at timestamptz,
            completed_at timestamptz,
            closed_at timestamptz
        );
        create index if not exists rooms_quest_status_idx on rooms (quest_id, status, created_at);
        create table if not exists room_members (
            room_id text not null references rooms(id) on delete cascade,
            participant_id text not null references participants(id) on delete cascade,
            joined_at timestamptz not null default now(),
            acknowledged_at timestamptz,
            primary key (room_id, participant_id)
        );
        create index if not exists room_members_participant_idx on room_members (participant_id);
        create table if not exists votes (
            room_id text not null references rooms(id) on delete cascade,
            participant_id text not null references participants(id) on delete cascade,
            round int not null,
            option text not null check (option in ('A', 'B', 'C')),
            justification text not null,
            created_at timestamptz not null default now(),
            updated_at timestamptz not null default now(),
            primary key (room_id, participant_id, round)
        );
        create table if not exists commits (
            room_id text not null references rooms(id) on delete cascade,
            round int not null,
            option text not null check (option in ('A', 'B', 'C')),
            committed_by text,
            committed_at timestamptz not null default now(),
            primary key (room_id, round)
        );
        create table if not exists artifacts (
            id text primary key,
            room_id text not null unique references rooms(id) on delete cascade,
            content text not null,
            media_type text not null,
            created_at timestamptz not null default now()
        );
        create table if not exists badge_awards (
            id text primary key,
            participant_id text not null references participants(id) on delete cascade,
            badge_type text not null,
            room_id text references rooms(id) on delete cascade,
            metadata jsonb not null default '{}'::jsonb,
            awarded_at timestamptz not null default now()
        );
        create unique index if not exists badge_awards_scope_uq
            on badge_awards (participant_id, badge_type, coalesce(room_id, ''));
        """
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(ddl)

    # Participants
    def upsert_participant(
        self,
        *,
        participant_id: str,
        display_name: str,
        organisation: Optional[str] = None,
        role: Optional[str] = None,
        country: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> ParticipantRecord:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                insert into participants (id, display_name, organisation, role, country, event_id)
                values (%s, %s, %s, %s, %s, %s)
                on conflict (id) do update set
                    display_name = coalesce(nullif(excluded.display_name, ''), participants.display_name),
                    organisation = coalesce(excluded.organisation, participants.organisation),
                    role = coalesce(excluded.role, participants.role),
                    country = coalesce(excluded.country, participants.country),
                    event_id = coalesce(excluded.event_id, participants.event_id),
                    last_seen_at = now()
                returning {_PARTICIPANT_COLUMNS}
                """,
                (participant_id, display_name, organisation, role, country, event_id),
            )
            row = cur.fetchone()
        return _participant_from_row(row)

    def get_participant(self, participant_id: str) -> ParticipantRecord:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"select {_PARTICIPANT_COLUMNS} from participants where id=%s", (participant_id,))
            row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Participant {participant_id} not found")
        return _participant_from_row(row)

    def list_participants(self, participant_ids: Iterable[str]) -> Dict[str, ParticipantRecord]:
        ids = list(participant_ids)
        if not ids:
            return {}
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"select {_PARTICIPANT_COLUMNS} from participants where id = any(%s)", (ids,))
            rows = cur.fetchall()
        return {row[0]: _participant_from_row(row) for row in rows}

    # Rooms
    def join_or_create_room(
        self,
        *,
        participant_id: str,
        quest_id: str,
        event_id: Optional[str],
        max_members: int,
    ) -> tuple[RoomRecord, bool]:
        with self._connect() as conn, conn.transaction(), conn.cursor() as cur:
            # serialises every join for one quest/event; held until the transaction ends
            cur.execute(
                "select pg_advisory_xact_lock(hashtext(%s))",
                (f"join:{quest_id}:{event_id or ''}",),
            )
            cur.execute(
                f"""
                select {", ".join("r." + c.strip() for c in _ROOM_COLUMNS.split(","))}
                from room_members m join rooms r on r.id = m.room_id
                where m.participant_id = %s and r.quest_id = %s and r.status = any(%s)
                order by r.created_at asc
                limit 1
                """,
                (participant_id, quest_id, list(ACTIVE_ROOM_STATUSES)),
            )
            row = cur.fetchone()
            if row:
                cur.execute("update rooms set last_activity_at = now() where id = %s", (row[0],))
                return _room_from_row(row), False

            cur.execute(
                f"""
                select {_ROOM_COLUMNS} from rooms
                where quest_id = %s and status = %s and event_id is not distinct from %s
                  and (select count(*) from room_members m where m.room_id = rooms.id) < %s
                order by created_at asc
                limit 1
                for update
                """,
                (quest_id, ROOM_OPEN, event_id, max_members),
            )
            row = cur.fetchone()
            if row:
                room_id = row[0]
                cur.execute(
                    """
                    insert into room_members (room_id, participant_id) values (%s, %s)
                    on conflict (room_id, participant_id) do nothing
                    """,
                    (room_id, participant_id),
                )
                cur.execute("select count(*) from room_members where room_id=%s", (room_id,))
                if cur.fetchone()[0] > max_members:
                    # raising inside the transaction rolls the membership insert back
                    raise CapacityExceeded(f"Room {room_id} is already full")
                cur.execute(
                    f"""
                    update rooms set
                        status = case
                            when (select count(*) from room_members m where m.room_id = rooms.id) >= %s then %s
                            else status
                        end,
                        last_activity_at = now()
                    where id = %s
                    returning {_ROOM_COLUMNS}
                    """,
                    (max_members, ROOM_FULL, room_id),
                )
                return _room_from_row(cur.fetchone()), True

            cur.execute(
                f"""
                insert into rooms (id, quest_id, room_code, event_id, status)
                values (%s, %s, %s, %s, %s)
                returning {_ROOM_COLUMNS}
                """,
                (uuid4().hex, quest_id, _room_code(), event_id, ROOM_FULL if max_members <= 1 else ROOM_OPEN),
            )
            room = _room_from_row(cur.fetchone())
            cur.execute(
                "insert into room_members (room_id, participant_id) values (%s, %s)",
                (room.id, participant_id),
            )
            return room, True

    def get_room(self, room_id: str) -> RoomRecord:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"select {_ROOM_COLUMNS} from rooms where id=%s", (room_id,))
            row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Room {room_id} not found")
        return _room_from_row(row)

    def list_rooms(self, *, quest_id: Optional[str] = None) -> List[RoomRecord]:
        with self._connect() as conn, conn.cursor() as cur:
            if quest_id is None:
                cur.execute(f"select {_ROOM_COLUMNS} from rooms order by created_at asc")
            else:
                cur.execute(
                    f"select {_ROOM_COLUMNS} from rooms where quest_id=%s order by created_at asc",
                    (quest_id,),
                )
            rows = cur.fetchall()
        return [_room_from_row(r) for r in rows]

    def list_members(self, room_id: str) -> List[MembershipRecord]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                select room_id, participant_id, joined_at, acknowledged_at
                from room_members where room_id=%s order by joined_at asc
                """,
                (room_id,),
            )
            rows = cur.fetchall()
        return [
            MembershipRecord(room_id=r[0], participant_id=r[1], joined_at=r[2], acknowledged_at=r[3])
            for r in rows
        ]

    def transition_room(
        self,
        room_id: str,
        *,
        expected: Sequence[str],
        status: str,
        **stamps: datetime,
    ) -> RoomRecord:
        unknown = set(stamps) - _ROOM_STAMPS
        if unknown:
            raise ValueError(f"Unsupported room stamps: {', '.join(sorted(unknown))}")
        assignments = ["status = %s", "last_activity_at = now()"]
        params: list[Any] = [status]
        for key, value in stamps.items():
            assignments.append(f"{key} = %s")
            params.append(value)
        params.extend([room_id, list(expected)])
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                update rooms set {", ".join(assignments)}
                where id = %s and status = any(%s)
                returning {_ROOM_COLUMNS}
                """,
                params,
            )
            row = cur.fetchone()
        if row:
            return _room_from_row(row)
        current = self.get_room(room_id)
        raise StaleWriteError(f"Room {room_id} is {current.status}, expected one of {', '.join(expected)}")

    def touch_room(self, room_id: str) -> None:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute("update rooms set last_activity_at = now() where id=%s", (room_id,))
            if cur.rowcount == 0:
                raise NotFoundError(f"Room {room_id} not found")

    # Votes and commits
    def upsert_vote(
        self,
        *,
        room_id: str,
        participant_id: str,
        round: int,
        option: str,
        justification: str,
    ) -> VoteRecord:
        with self._connect() as conn, conn.transaction(), conn.cursor() as cur:
            # waits for a concurrent commit_round holding the room row, then re-checks the updated row
            cur.execute(
                "select 1 from rooms where id=%s and status=%s and current_round=%s for share",
                (room_id, ROOM_IN_PROGRESS, round),
            )
            if not cur.fetchone():
                raise StaleWriteError(f"Round {round} of room {room_id} is not open for voting")
            cur.execute(
                f"""
                insert into votes (room_id, participant_id, round, option, justification)
                select %s, %s, %s, %s, %s
                where not exists (
                    select 1 from commits where room_id = %s and round = %s
                )
                on conflict (room_id, participant_id, round) do update set
                    option = excluded.option,
                    justification = excluded.justification,
                    updated_at = now()
                returning {_VOTE_COLUMNS}
                """,
                (room_id, participant_id, round, option, justification, room_id, round),
            )
            row = cur.fetchone()
            if not row:
                raise StaleWriteError(f"Round {round} of room {room_id} is not open for voting")
            cur.execute("update rooms set last_activity_at = now() where id=%s", (room_id,))
        return _vote_from_row(row)

    def list_votes(self, room_id: str, *, round: Optional[int] = None) -> List[VoteRecord]:
        with self._connect() as conn, conn.cursor() as cur:
            if round is None:
                cur.execute(
                    f"select {_VOTE_COLUMNS} from votes where room_id=%s order by round, created_at",
                    (room_id,),
                )
            else:
                cur.execute(
                    f"select {_VOTE_COLUMNS} from votes where room_id=%s and round=%s order by created_at",
                    (room_id, round),
                )
            rows = cur.fetchall()
        return [_vote_from_row(r) for r in rows]

    def commit_round(
        self,
        *,
        room_id: str,
        round: int,
        option: str,
        committed_by: Optional[str],
        final_round: int,
    ) -> CommitRecord:
        with self._connect() as conn, conn.transaction(), conn.cursor() as cur:
            cur.execute("select status, current_round from rooms where id=%s for update", (room_id,))
            state = cur.fetchone()
            if not state:
                raise NotFoundError(f"Room {room_id} not found")
            cur.execute(
                f"""
                insert into commits (room_id, round, option, committed_by)
                select %s, %s, %s, %s
                where %s = %s and %s = %s
                on conflict (room_id, round) do nothing
                returning {_COMMIT_COLUMNS}
                """,
                (room_id, round, option, committed_by, state[0], ROOM_IN_PROGRESS, state[1], round),
            )
            row = cur.fetchone()
            if not row:
                cur.execute("select 1 from commits where room_id=%s and round=%s", (room_id, round))
                if cur.fetchone():
                    raise DuplicateSuppressed(f"Decision {round} already committed for room {room_id}")
                raise StaleWriteError(f"Round {round} of room {room_id} is not open for commit")
            if round >= final_round:
                cur.execute(
                    """
                    update rooms set status=%s, completed_at=now(), last_activity_at=now()
                    where id=%s
                    """,
                    (ROOM_COMPLETED, room_id),
                )
            else:
                cur.execute(
                    "update rooms set current_round=%s, last_activity_at=now() where id=%s",
                    (round + 1, room_id),
                )
        return _commit_from_row(row)

    def list_commits(self, room_id: str) -> List[CommitRecord]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"select {_COMMIT_COLUMNS} from commits where room_id=%s order by round", (room_id,))
            rows = cur.fetchall()
        return [_commit_from_row(r) for r in rows]

    # Completion
    def acknowledge_member(self, *, room_id: str, participant_id: str) -> MembershipRecord:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                update room_members set acknowledged_at = coalesce(acknowledged_at, now())
                where room_id=%s and participant_id=%s
                returning room_id, participant_id, joined_at, acknowledged_at
                """,
                (room_id, participant_id),
            )
            row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Participant {participant_id} is not in room {room_id}")
        return MembershipRecord(room_id=row[0], participant_id=row[1], joined_at=row[2], acknowledged_at=row[3])

    # Artifacts
    def insert_artifact(self, *, room_id: str, content: str, media_type: str) -> ArtifactRecord:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                insert into artifacts (id, room_id, content, media_type)
                values (%s, %s, %s, %s)
                on conflict (room_id) do nothing
                returning {_ARTIFACT_COLUMNS}
                """,
                (uuid4().hex, room_id, content, media_type),
            )
            row = cur.fetchone()
        if not row:
            raise DuplicateSuppressed(f"Artifact for room {room_id} already exists")
        return _artifact_from_row(row)

    def get_artifact(self, artifact_id: str) -> ArtifactRecord:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"select {_ARTIFACT_COLUMNS} from artifacts where id=%s", (artifact_id,))
            row = cur.fetchone()
        if not row:
            raise NotFoundError(f"Artifact {artifact_id} not found")
        return _artifact_from_row(row)

    def find_artifact_for_room(self, room_id: str) -> Optional[ArtifactRecord]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(f"select {_ARTIFACT_COLUMNS} from artifacts where room_id=%s", (room_id,))
            row = cur.fetchone()
        return _artifact_from_row(row) if row else None

    # Badges
    def award_badge(
        self,
        *,
        participant_id: str,
        badge_type: str,
        room_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[BadgeAwardRecord]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                f"""
                insert into badge_awards (id, participant_id, badge_type, room_id, metadata)
                values (%s, %s, %s, %s, %s)
                on conflict do nothing
                returning {_BADGE_COLUMNS}
                """,
                (uuid4().hex, participant_id, badge_type, room_id, self._json(metadata or {})),
            )
            row = cur.fetchone()
        return _badge_from_row(row) if row else None

    def list_badge_awards(self, participant_id: str) -> List[BadgeAwardRecord]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                f"select {_BADGE_COLUMNS} from badge_awards where participant_id=%s order by awarded_at desc",
                (participant_id,),
            )
            rows = cur.fetchall()
        return [_badge_from_row(r) for r in rows]

    def count_completed_memberships(self, participant_id: str) -> int:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                select count(*) from room_members m join rooms r on r.id = m.room_id
                where m.participant_id=%s and r.status=%s
                """,
                (participant_id, ROOM_COMPLETED),
            )
            row = cur.fetchone()
        return int(row[0]) if row else 0

    def list_teammate_ids(self, participant_id: str, *, statuses: Sequence[str]) -> set[str]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                select distinct other.participant_id
                from room_members mine
                join rooms r on r.id = mine.room_id
                join room_members other on other.room_id = mine.room_id
                where mine.participant_id = %s and r.status = any(%s) and other.participant_id <> %s
                """,
                (participant_id, list(statuses), participant_id),
            )
            rows = cur.fetchall()
        return {r[0] for r in rows}

    # Sweep
    def close_inactive_rooms(self, *, cutoff: datetime) -> List[str]:
        with self._connect() as conn, conn.cursor() as cur:
            cur.execute(
                """
                update rooms set status=%s, closed_at=now()
                where status=%s and last_activity_at < %s
                returning id
                """,
                (ROOM_CLOSED, ROOM_IN_PROGRESS, cutoff),
            )
            rows = cur.fetchall()
        return [r[0] for r in rows]
