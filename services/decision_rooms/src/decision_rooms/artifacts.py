"""Artifact generation: one rendered decision map per completed room."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from .badges import BadgeScheduler
from .data import ROOM_COMPLETED, ArtifactRecord, DataStoreProtocol
from .exceptions import DataIntegrityError, DuplicateSuppressed, StateConflict
from .quests import OPTION_KEYS, QuestCatalog

logger = logging.getLogger(__name__)


@dataclass
class TeamMember:
    name: str
    organisation: Optional[str] = None
    role: Optional[str] = None
    country: Optional[str] = None


@dataclass
class Justification:
    name: str
    option: str
    text: str


@dataclass
class RoundSummary:
    number: int
    title: str
    context: str
    option: str
    option_title: str
    option_description: str
    impact: str
    tradeoff: str
    tally: Dict[str, int]
    summary: str
    justifications: List[Justification] = field(default_factory=list)


@dataclass
class ArtifactBundle:
    """Everything a formatter needs; formatters never touch the store."""

    room_id: str
    room_code: str
    quest_name: str
    completed_at: Optional[datetime]
    team: List[TeamMember]
    rounds: List[RoundSummary]


@dataclass(frozen=True)
class RenderedDocument:
    content: str
    media_type: str


class DocumentFormatter(Protocol):
    def render(self, bundle: ArtifactBundle) -> RenderedDocument: ...


def summarize_tally(tally: Dict[str, int]) -> str:
    """Format a tally as e.g. ``"2 chose A, 1 chose B"`` (largest first)."""

    parts = [
        f"{count} chose {key}"
        for key, count in sorted(tally.items(), key=lambda kv: (-kv[1], kv[0]))
        if count
    ]
    return ", ".join(parts) if parts else "No votes recorded"


class HtmlDecisionMapFormatter:
    """Default formatter: a self-contained HTML page."""

    media_type = "text/html"

    def render(self, bundle: ArtifactBundle) -> RenderedDocument:
        esc = html.escape
        lines: List[str] = [
            "<!DOCTYPE html>",
            '<html lang="en">',
            "<head>",
            '<meta charset="utf-8">',
            f"<title>Decision Map: {esc(bundle.quest_name)}</title>",
            "</head>",
            "<body>",
            f"<h1>{esc(bundle.quest_name)}</h1>",
            f'<p class="room">Room {esc(bundle.room_code)}</p>',
        ]
        if bundle.completed_at is not None:
            lines.append(f'<p class="completed">Completed {esc(bundle.completed_at.isoformat())}</p>')

        lines.append('<section class="team"><h2>Team</h2><ul>')
        for member in bundle.team:
            details = ", ".join(esc(v) for v in (member.role, member.organisation, member.country) if v)
            suffix = f" ({details})" if details else ""
            lines.append(f"<li>{esc(member.name)}{suffix}</li>")
        lines.append("</ul></section>")

        for summary in bundle.rounds:
            lines.extend(
                [
                    f'<section class="decision" data-round="{summary.number}">',
                    f"<h2>Decision {summary.number}: {esc(summary.title)}</h2>",
                    f"<p>{esc(summary.context)}</p>",
                    f"<h3>Chosen: {esc(summary.option)}. {esc(summary.option_title)}</h3>",
                    f"<p>{esc(summary.option_description)}</p>",
                    f"<p><strong>Impact:</strong> {esc(summary.impact)}</p>",
                    f"<p><strong>Trade-off:</strong> {esc(summary.tradeoff)}</p>",
                    f'<p class="tally">{esc(summary.summary)}</p>',
                    "<ul>",
                ]
            )
            for item in summary.justifications:
                lines.append(f"<li><strong>{esc(item.name)}</strong> ({esc(item.option)}): {esc(item.text)}</li>")
            lines.extend(["</ul>", "</section>"])

        lines.extend(["</body>", "</html>"])
        return RenderedDocument(content="\n".join(lines), media_type=self.media_type)


class ArtifactGenerator:
    def __init__(
        self,
        store: DataStoreProtocol,
        catalog: QuestCatalog,
        *,
        formatter: Optional[DocumentFormatter] = None,
        badges: Optional[BadgeScheduler] = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._formatter = formatter or HtmlDecisionMapFormatter()
        self._badges = badges

    def build_bundle(self, room_id: str) -> ArtifactBundle:
        room = self._store.get_room(room_id)
        if room.status != ROOM_COMPLETED:
            raise StateConflict(f"Room {room_id} is {room.status}, artifacts need a COMPLETED room")
        quest = self._catalog.get(room.quest_id)
        commits = {c.round: c for c in self._store.list_commits(room_id)}
        missing = [d.number for d in quest.decisions if d.number not in commits]
        if missing:
            raise DataIntegrityError(
                f"quest not completed correctly: room {room_id} has no commit for decision(s) "
                + ", ".join(str(n) for n in missing)
            )

        members = self._store.list_members(room_id)
        participants = self._store.list_participants(m.participant_id for m in members)

        def _name(participant_id: str) -> str:
            record = participants.get(participant_id)
            return record.display_name if record else participant_id

        team: List[TeamMember] = []
        for member in members:
            record = participants.get(member.participant_id)
            if record is None:
                team.append(TeamMember(name=member.participant_id))
                continue
            team.append(
                TeamMember(
                    name=record.display_name,
                    organisation=record.organisation,
                    role=record.role,
                    country=record.country,
                )
            )

        votes = self._store.list_votes(room_id)
        rounds: List[RoundSummary] = []
        for decision in quest.decisions:
            commit = commits[decision.number]
            chosen = decision.option(commit.option)
            round_votes = [v for v in votes if v.round == decision.number]
            tally = {key: 0 for key in OPTION_KEYS}
            for vote in round_votes:
                tally[vote.option] = tally.get(vote.option, 0) + 1
            rounds.append(
                RoundSummary(
                    number=decision.number,
                    title=decision.title,
                    context=decision.context,
                    option=commit.option,
                    option_title=chosen.title,
                    option_description=chosen.description,
                    impact=chosen.impact,
                    tradeoff=chosen.tradeoff,
                    tally=tally,
                    summary=summarize_tally(tally),
                    justifications=[
                        Justification(name=_name(v.participant_id), option=v.option, text=v.justification)
                        for v in round_votes
                    ],
                )
            )

        return ArtifactBundle(
            room_id=room.id,
            room_code=room.room_code,
            quest_name=quest.name,
            completed_at=room.completed_at,
            team=team,
            rounds=rounds,
        )

    def generate(self, room_id: str) -> ArtifactRecord:
        """Render and persist the room's artifact, or return the one that already exists.

        Safe to call concurrently from several workers: the store accepts only
        the first insert per room and the losers read the winner's row.
        """

        existing = self._store.find_artifact_for_room(room_id)
        if existing is not None:
            return existing

        bundle = self.build_bundle(room_id)
        document = self._formatter.render(bundle)
        try:
            record = self._store.insert_artifact(
                room_id=room_id,
                content=document.content,
                media_type=document.media_type,
            )
        except DuplicateSuppressed:
            logger.info("Artifact for room=%s generated concurrently, returning existing", room_id)
            existing = self._store.find_artifact_for_room(room_id)
            if existing is None:
                raise DataIntegrityError(f"Artifact for room {room_id} reported as duplicate but not found")
            return existing

        logger.info("Artifact %s generated for room=%s", record.id, room_id)
        if self._badges is not None:
            self._badges.schedule(room_id)
        return record
