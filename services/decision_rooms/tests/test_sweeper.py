from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from decision_rooms.data import ROOM_CLOSED, ROOM_COMPLETED, ROOM_IN_PROGRESS
from decision_rooms.exceptions import StateConflict
from decision_rooms.sweeper import close_inactive_rooms


def _age(harness, room_id: str, days: int) -> None:
    harness.store.rooms[room_id].last_activity_at = datetime.now(tz=UTC) - timedelta(days=days)


def test_stale_room_is_closed(harness) -> None:
    room_id = harness.started_room("q-test", ["p1", "p2"])
    _age(harness, room_id, 8)

    closed = close_inactive_rooms(harness.store)

    room = harness.store.get_room(room_id)
    assert closed == [room_id]
    assert room.status == ROOM_CLOSED
    assert room.closed_at is not None


def test_fresh_and_completed_rooms_are_untouched(harness) -> None:
    fresh = harness.started_room("q-test", ["p1", "p2"])
    _age(harness, fresh, 2)
    done = harness.completed_room("q-duo", ["p3", "p4"])
    _age(harness, done, 30)

    assert close_inactive_rooms(harness.store) == []
    assert harness.store.get_room(fresh).status == ROOM_IN_PROGRESS
    assert harness.store.get_room(done).status == ROOM_COMPLETED


def test_custom_window(harness) -> None:
    room_id = harness.started_room("q-test", ["p1", "p2"])
    _age(harness, room_id, 2)

    assert close_inactive_rooms(harness.store, inactive_days=1) == [room_id]


def test_sweep_is_repeatable(harness) -> None:
    room_id = harness.started_room("q-test", ["p1", "p2"])
    _age(harness, room_id, 10)

    assert close_inactive_rooms(harness.store) == [room_id]
    assert close_inactive_rooms(harness.store) == []


def test_closed_room_rejects_play(harness) -> None:
    room_id = harness.started_room("q-test", ["p1", "p2"])
    _age(harness, room_id, 10)
    close_inactive_rooms(harness.store)

    with pytest.raises(StateConflict):
        harness.session.vote(room_id, "p1", 1, "A", "Still here?")
    with pytest.raises(StateConflict):
        harness.session.commit(room_id, "p1", 1, "A")


def test_invalid_window_is_rejected(harness) -> None:
    with pytest.raises(ValueError):
        close_inactive_rooms(harness.store, inactive_days=0)
