from __future__ import annotations

import concurrent.futures
from collections import Counter

import pytest

from decision_rooms.data import ROOM_FULL, ROOM_IN_PROGRESS, ROOM_OPEN, NotFoundError
from decision_rooms.exceptions import AuthorizationError, StateConflict


def test_first_join_creates_open_room(harness) -> None:
    harness.participant("p1")

    result = harness.matchmaker.join("p1", "q-test")

    room = harness.store.get_room(result.room_id)
    assert result.joined is True
    assert room.status == ROOM_OPEN
    assert room.room_code.startswith("ROOM-") and len(room.room_code) == 13
    assert [m.participant_id for m in harness.store.list_members(result.room_id)] == ["p1"]


def test_rejoin_is_idempotent(harness) -> None:
    harness.participant("p1")

    first = harness.matchmaker.join("p1", "q-test")
    second = harness.matchmaker.join("p1", "q-test")

    assert second.room_id == first.room_id
    assert second.joined is False
    assert len(harness.store.list_members(first.room_id)) == 1


def test_room_flips_to_full_and_next_join_opens_new_room(harness) -> None:
    results = []
    for pid in ("p1", "p2", "p3", "p4"):
        harness.participant(pid)
        results.append(harness.matchmaker.join(pid, "q-test"))

    first_room = results[0].room_id
    assert {r.room_id for r in results[:3]} == {first_room}
    assert harness.store.get_room(first_room).status == ROOM_FULL
    assert results[3].room_id != first_room
    assert harness.store.get_room(results[3].room_id).status == ROOM_OPEN


def test_join_prefers_oldest_open_room(harness) -> None:
    for pid in ("p1", "p2", "p3", "p4"):
        harness.participant(pid)
    a = harness.matchmaker.join("p1", "q-test")
    harness.store.rooms[a.room_id].status = ROOM_IN_PROGRESS
    b = harness.matchmaker.join("p2", "q-test")
    harness.store.rooms[a.room_id].status = ROOM_OPEN

    c = harness.matchmaker.join("p3", "q-test")

    assert b.room_id != a.room_id
    assert c.room_id == a.room_id


def test_participants_of_different_events_do_not_share_rooms(harness) -> None:
    harness.participant("p1", event_id="ev-1")
    harness.participant("p2", event_id="ev-2")

    a = harness.matchmaker.join("p1", "q-test", event_id="ev-1")
    b = harness.matchmaker.join("p2", "q-test", event_id="ev-2")

    assert a.room_id != b.room_id


def test_unknown_quest_raises_not_found(harness) -> None:
    harness.participant("p1")

    with pytest.raises(NotFoundError):
        harness.matchmaker.join("p1", "does-not-exist")


def test_concurrent_joins_fill_exactly_one_room(harness) -> None:
    pids = ["p1", "p2", "p3"]
    for pid in pids:
        harness.participant(pid)

    with concurrent.futures.ThreadPoolExecutor(max_workers=3) as pool:
        results = list(pool.map(lambda pid: harness.matchmaker.join(pid, "q-test"), pids))

    rooms = harness.store.list_rooms(quest_id="q-test")
    assert len(rooms) == 1
    assert rooms[0].status == ROOM_FULL
    assert {r.room_id for r in results} == {rooms[0].id}
    assert len(harness.store.list_members(rooms[0].id)) == 3


def test_concurrent_joins_never_overfill(harness) -> None:
    pids = [f"p{i}" for i in range(20)]
    for pid in pids:
        harness.participant(pid)

    with concurrent.futures.ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda pid: harness.matchmaker.join(pid, "q-test"), pids))

    sizes = Counter(r.room_id for r in results)
    assert max(sizes.values()) <= 3
    assert sum(sizes.values()) == 20
    for room_id, size in sizes.items():
        assert len(harness.store.list_members(room_id)) == size


def test_start_requires_min_members_unless_forced(harness) -> None:
    harness.participant("p1")
    room_id = harness.matchmaker.join("p1", "q-test").room_id

    with pytest.raises(StateConflict, match="at least 2"):
        harness.matchmaker.start(room_id, "p1")

    started = harness.matchmaker.start(room_id, "p1", force=True)
    assert started.status == ROOM_IN_PROGRESS
    assert started.started_at is not None


def test_start_twice_conflicts(harness) -> None:
    for pid in ("p1", "p2"):
        harness.participant(pid)
        room_id = harness.matchmaker.join(pid, "q-test").room_id

    harness.matchmaker.start(room_id, "p2")

    with pytest.raises(StateConflict):
        harness.matchmaker.start(room_id, "p1")


def test_start_by_outsider_is_rejected(harness) -> None:
    harness.participant("p1")
    harness.participant("outsider")
    room_id = harness.matchmaker.join("p1", "q-test").room_id

    with pytest.raises(AuthorizationError):
        harness.matchmaker.start(room_id, "outsider", force=True)


def test_in_progress_room_is_not_joined_by_newcomers(harness) -> None:
    room_id = harness.started_room("q-test", ["p1", "p2"])
    harness.participant("p3")

    result = harness.matchmaker.join("p3", "q-test")

    assert result.room_id != room_id
    assert harness.matchmaker.join("p1", "q-test").room_id == room_id
