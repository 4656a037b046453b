"""Decision scripts: immutable quest definitions loaded once from YAML."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal

import yaml
from jsonschema import Draft7Validator
from pydantic import BaseModel, ConfigDict, Field, model_validator

from .data import NotFoundError

logger = logging.getLogger(__name__)

OPTION_KEYS = ("A", "B", "C")
ROUND_COUNT = 3

OptionKey = Literal["A", "B", "C"]

_OPTION_SCHEMA = {
    "type": "object",
    "required": ["title"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "impact": {"type": "string"},
        "tradeoff": {"type": "string"},
    },
}

QUEST_SCHEMA = {
    "type": "object",
    "required": ["name", "decisions"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "questType": {"enum": ["DECISION_ROOM", "FORM", "SURVEY"]},
        "minMembers": {"type": "integer", "minimum": 1},
        "maxMembers": {"type": "integer", "minimum": 1},
        "durationMinutes": {"type": "integer", "minimum": 1},
        "decisions": {
            "type": "array",
            "minItems": ROUND_COUNT,
            "maxItems": ROUND_COUNT,
            "items": {
                "type": "object",
                "required": ["title", "options"],
                "properties": {
                    "number": {"type": "integer", "minimum": 1, "maximum": ROUND_COUNT},
                    "title": {"type": "string", "minLength": 1},
                    "context": {"type": "string"},
                    "options": {
                        "type": "object",
                        "required": list(OPTION_KEYS),
                        "additionalProperties": False,
                        "properties": {key: _OPTION_SCHEMA for key in OPTION_KEYS},
                    },
                },
            },
        },
    },
}


class QuestOption(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key: OptionKey
    title: str
    description: str = ""
    impact: str = ""
    tradeoff: str = ""


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    number: int = Field(..., ge=1, le=ROUND_COUNT)
    title: str
    context: str = ""
    options: Dict[str, QuestOption]

    @model_validator(mode="after")
    def _check_options(self) -> "Decision":
        if tuple(sorted(self.options)) != OPTION_KEYS:
            raise ValueError(f"Decision {self.number} must define exactly options {', '.join(OPTION_KEYS)}")
        return self

    def option(self, key: str) -> QuestOption:
        return self.options[key]


class Quest(BaseModel):
    """Immutable decision script: exactly three decisions of three options each."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    description: str = ""
    quest_type: Literal["DECISION_ROOM", "FORM", "SURVEY"] = Field("DECISION_ROOM", alias="questType")
    min_members: int = Field(2, ge=1, alias="minMembers")
    max_members: int = Field(3, ge=1, alias="maxMembers")
    duration_minutes: int = Field(30, ge=1, alias="durationMinutes")
    decisions: tuple[Decision, ...]

    @model_validator(mode="after")
    def _check_script(self) -> "Quest":
        if len(self.decisions) != ROUND_COUNT:
            raise ValueError(f"Quest {self.id} must have exactly {ROUND_COUNT} decisions")
        numbers = [d.number for d in self.decisions]
        if numbers != list(range(1, ROUND_COUNT + 1)):
            raise ValueError(f"Quest {self.id} decisions must be numbered 1..{ROUND_COUNT} in order")
        if self.min_members > self.max_members:
            raise ValueError(f"Quest {self.id} has minMembers > maxMembers")
        return self

    @property
    def final_round(self) -> int:
        return ROUND_COUNT

    def decision(self, round_number: int) -> Decision:
        if not 1 <= round_number <= len(self.decisions):
            raise NotFoundError(f"Decision {round_number} not found for quest {self.id}")
        return self.decisions[round_number - 1]


class QuestValidationError(ValueError):
    """Raised when a decision script file is malformed."""


def parse_quest(raw: dict[str, Any], *, default_id: str) -> Quest:
    """Validate raw YAML content and build a :class:`Quest`."""

    errors = sorted(Draft7Validator(QUEST_SCHEMA).iter_errors(raw), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        location = ".".join(str(p) for p in first.path) or "<root>"
        raise QuestValidationError(f"{default_id}: {first.message} at {location}")
    payload = {k: v for k, v in raw.items() if k != "decisions"}
    payload.setdefault("id", default_id)
    try:
        decisions = []
        for idx, raw_decision in enumerate(raw["decisions"], start=1):
            options = {
                key: QuestOption(key=key, **raw_decision["options"][key])
                for key in OPTION_KEYS
            }
            decisions.append(
                Decision(
                    number=raw_decision.get("number", idx),
                    title=raw_decision["title"],
                    context=raw_decision.get("context") or raw_decision["title"],
                    options=options,
                )
            )
        return Quest.model_validate({**payload, "decisions": tuple(decisions)})
    except ValueError as exc:
        raise QuestValidationError(f"{default_id}: {exc}") from exc


class QuestCatalog:
    """Read-only lookup of decision scripts keyed by quest id."""

    def __init__(self, quests: Iterable[Quest] = ()) -> None:
        self._quests: Dict[str, Quest] = {}
        for quest in quests:
            self.add(quest)

    @classmethod
    def from_directory(cls, path: Path) -> "QuestCatalog":
        catalog = cls()
        if not path.exists():
            logger.warning("Quest catalog directory %s does not exist", path)
            return catalog
        for file_path in sorted(path.glob("*.yaml")):
            with file_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            catalog.add(parse_quest(raw, default_id=file_path.stem))
        logger.info("Loaded %d quests from %s", len(catalog), path)
        return catalog

    def add(self, quest: Quest) -> None:
        if quest.id in self._quests:
            raise QuestValidationError(f"Duplicate quest id {quest.id}")
        self._quests[quest.id] = quest

    def get(self, quest_id: str) -> Quest:
        try:
            return self._quests[quest_id]
        except KeyError as exc:
            raise NotFoundError(f"Quest {quest_id} not found") from exc

    def list_quests(self) -> List[Quest]:
        return list(self._quests.values())

    def __len__(self) -> int:
        return len(self._quests)

    def __contains__(self, quest_id: object) -> bool:
        return quest_id in self._quests
