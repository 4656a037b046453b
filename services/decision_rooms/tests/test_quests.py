from __future__ import annotations

from pathlib import Path

import pytest

from decision_rooms.data import NotFoundError
from decision_rooms.quests import QuestCatalog, QuestValidationError, parse_quest

QUEST_DIR = Path(__file__).resolve().parents[3] / "data" / "quests"


def test_shipped_catalog_loads() -> None:
    catalog = QuestCatalog.from_directory(QUEST_DIR)

    quest = catalog.get("city-flood-response")

    assert quest.max_members == 3
    assert [d.number for d in quest.decisions] == [1, 2, 3]
    assert quest.decision(2).option("C").title == "SMS alerts"


def test_parse_defaults_id_and_context(quest_payload_factory) -> None:
    raw = quest_payload_factory("ignored")
    raw.pop("id")
    raw["decisions"][0].pop("context")

    quest = parse_quest(raw, default_id="from-file-name")

    assert quest.id == "from-file-name"
    assert quest.decisions[0].context == quest.decisions[0].title


def test_rejects_missing_option(quest_payload_factory) -> None:
    raw = quest_payload_factory()
    del raw["decisions"][1]["options"]["B"]

    with pytest.raises(QuestValidationError, match="'B' is a required property"):
        parse_quest(raw, default_id="broken")


def test_rejects_extra_option(quest_payload_factory) -> None:
    raw = quest_payload_factory()
    raw["decisions"][0]["options"]["D"] = {"title": "Fourth way"}

    with pytest.raises(QuestValidationError):
        parse_quest(raw, default_id="broken")


def test_rejects_wrong_decision_count(quest_payload_factory) -> None:
    raw = quest_payload_factory()
    raw["decisions"] = raw["decisions"][:2]

    with pytest.raises(QuestValidationError):
        parse_quest(raw, default_id="broken")


def test_rejects_min_above_max(quest_payload_factory) -> None:
    raw = quest_payload_factory(min_members=3, max_members=2)

    with pytest.raises(QuestValidationError, match="minMembers > maxMembers"):
        parse_quest(raw, default_id="broken")


def test_decision_lookup_out_of_range(quest_factory) -> None:
    quest = quest_factory()

    with pytest.raises(NotFoundError):
        quest.decision(0)
    with pytest.raises(NotFoundError):
        quest.decision(4)


def test_catalog_rejects_duplicate_ids(quest_factory) -> None:
    with pytest.raises(QuestValidationError, match="Duplicate"):
        QuestCatalog([quest_factory("same"), quest_factory("same")])


def test_unknown_quest_is_not_found(catalog: QuestCatalog) -> None:
    with pytest.raises(NotFoundError):
        catalog.get("missing")


def test_missing_directory_gives_empty_catalog(tmp_path: Path) -> None:
    catalog = QuestCatalog.from_directory(tmp_path / "nope")

    assert len(catalog) == 0
