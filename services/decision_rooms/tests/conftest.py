from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

from decision_rooms.artifacts import ArtifactGenerator
from decision_rooms.badges import BadgeEngine, InlineBadgeDispatcher
from decision_rooms.completion import CompletionCoordinator
from decision_rooms.config import get_settings
from decision_rooms.data import InMemoryDataStore, ParticipantRecord
from decision_rooms.matchmaking import Matchmaker
from decision_rooms.quests import Quest, QuestCatalog, parse_quest
from decision_rooms.rate_limit import reset_buckets
from decision_rooms.session import DecisionSession

REPO_ROOT = Path(__file__).resolve().parents[3]
QUEST_DIR = REPO_ROOT / "data" / "quests"


@pytest.fixture(autouse=True)
def allow_in_memory_store(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Unit tests run against the in-memory store with inline badge evaluation."""

    monkeypatch.setenv("DATABASE_FALLBACK_TO_MEMORY", "true")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("BADGE_WORKERS", "0")
    monkeypatch.setenv("QUEST_CATALOG_PATH", str(QUEST_DIR))
    get_settings.cache_clear()
    reset_buckets()
    yield
    get_settings.cache_clear()
    reset_buckets()


def quest_payload(quest_id: str = "q-test", *, min_members: int = 2, max_members: int = 3) -> dict:
    decisions = []
    for number in (1, 2, 3):
        decisions.append(
            {
                "number": number,
                "title": f"Decision {number}",
                "context": f"Context for decision {number}.",
                "options": {
                    key: {
                        "title": f"Option {key}{number}",
                        "description": f"Description {key}{number}",
                        "impact": f"Impact {key}{number}",
                        "tradeoff": f"Tradeoff {key}{number}",
                    }
                    for key in ("A", "B", "C")
                },
            }
        )
    return {
        "id": quest_id,
        "name": f"Quest {quest_id}",
        "description": "Test quest",
        "questType": "DECISION_ROOM",
        "minMembers": min_members,
        "maxMembers": max_members,
        "durationMinutes": 30,
        "decisions": decisions,
    }


def make_quest(quest_id: str = "q-test", **kwargs) -> Quest:
    return parse_quest(quest_payload(quest_id, **kwargs), default_id=quest_id)


class Harness:
    """Wires the room services around one in-memory store."""

    def __init__(self, catalog: QuestCatalog) -> None:
        self.store = InMemoryDataStore()
        self.catalog = catalog
        self.badges = BadgeEngine(self.store, catalog)
        self.dispatcher = InlineBadgeDispatcher(self.badges)
        self.matchmaker = Matchmaker(self.store, catalog)
        self.session = DecisionSession(self.store, catalog, badges=self.dispatcher)
        self.generator = ArtifactGenerator(self.store, catalog, badges=self.dispatcher)
        self.completion = CompletionCoordinator(self.store, self.generator)

    def participant(self, pid: str, *, country: Optional[str] = None, event_id: Optional[str] = None) -> ParticipantRecord:
        return self.store.upsert_participant(
            participant_id=pid,
            display_name=f"Name {pid}",
            organisation="Org",
            role="Analyst",
            country=country,
            event_id=event_id,
        )

    def started_room(self, quest_id: str, members: list[str]) -> str:
        room_id = None
        for pid in members:
            if pid not in self.store.participants:
                self.participant(pid)
            result = self.matchmaker.join(pid, quest_id)
            room_id = room_id or result.room_id
            assert result.room_id == room_id
        self.matchmaker.start(room_id, members[0], force=True)
        return room_id

    def play_round(self, room_id: str, round_number: int, votes: dict[str, str], *, commit: str, justification: str = "Because it helps.") -> None:
        for pid, option in votes.items():
            self.session.vote(room_id, pid, round_number, option, justification)
        self.session.commit(room_id, next(iter(votes)), round_number, commit)

    def completed_room(self, quest_id: str, members: list[str], *, justification: str = "Because it helps.") -> str:
        room_id = self.started_room(quest_id, members)
        for number in (1, 2, 3):
            self.play_round(room_id, number, {pid: "A" for pid in members}, commit="A", justification=justification)
        return room_id


@pytest.fixture
def catalog() -> QuestCatalog:
    return QuestCatalog([make_quest("q-test"), make_quest("q-duo", min_members=2, max_members=2)])


@pytest.fixture
def harness(catalog: QuestCatalog) -> Harness:
    return Harness(catalog)


@pytest.fixture
def quest_factory() -> Callable[..., Quest]:
    return make_quest


@pytest.fixture
def quest_payload_factory() -> Callable[..., dict]:
    return quest_payload


@pytest.fixture
def evaluated_rooms(harness: Harness, monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Room ids handed to badge evaluation, in call order."""

    calls: list[str] = []
    evaluate = harness.badges.evaluate

    def spy(room_id: str):
        calls.append(room_id)
        return evaluate(room_id)

    monkeypatch.setattr(harness.badges, "evaluate", spy)
    return calls
