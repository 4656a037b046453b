from collections import deque
from contextlib import nullcontext
from datetime import UTC, datetime

import pytest

from decision_rooms.data import PostgresDataStore, StaleWriteError


class FakeCursor:
    def __init__(self, queries: list[tuple[str, tuple | list | None]], results: deque) -> None:
        self._collector = queries
        self._results = results
        self.rowcount = 1

    def execute(self, query, params=None):
        self._collector.append((" ".join(str(query).split()), params))

    def fetchone(self):
        return self._results.popleft() if self._results else None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    def __init__(self, results: list[tuple | None] | None = None) -> None:
        self.queries: list[tuple[str, tuple | list | None]] = []
        self._results = deque(results or [])

    def cursor(self):
        return FakeCursor(self.queries, self._results)

    def transaction(self):
        return nullcontext()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def _store(connection: FakeConnection) -> PostgresDataStore:
    store = PostgresDataStore.__new__(PostgresDataStore)  # skip DDL in test
    store._connect = lambda: connection  # type: ignore[method-assign]
    return store


def test_vote_locks_room_row_before_writing() -> None:
    now = datetime.now(tz=UTC)
    connection = FakeConnection([(1,), ("room-1", "p1", 2, "B", "Levee first", now, now)])

    vote = _store(connection).upsert_vote(
        room_id="room-1", participant_id="p1", round=2, option="B", justification="Levee first"
    )

    assert vote.option == "B"
    lock_sql, lock_params = connection.queries[0]
    assert lock_sql.startswith("select 1 from rooms") and lock_sql.endswith("for share")
    assert lock_params == ("room-1", "IN_PROGRESS", 2)
    assert connection.queries[1][0].startswith("insert into votes")


def test_vote_after_round_moved_on_writes_nothing() -> None:
    # the locked re-check sees the row a concurrent commit already advanced
    connection = FakeConnection([None])

    with pytest.raises(StaleWriteError):
        _store(connection).upsert_vote(
            room_id="room-1", participant_id="p1", round=1, option="A", justification="Too slow"
        )

    assert len(connection.queries) == 1
    assert not any(q.startswith("insert into votes") for q, _ in connection.queries)
