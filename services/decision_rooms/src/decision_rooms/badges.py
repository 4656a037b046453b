"""Badge engine: achievement predicates evaluated after a room completes.

Evaluation is re-runnable. Every award goes through the store's
insert-if-absent ``award_badge``, so running the engine twice for the same room
(for example once on the final commit and again after the artifact appears)
never produces a duplicate award.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from .data import (
    ROOM_COMPLETED,
    ROOM_IN_PROGRESS,
    BadgeAwardRecord,
    DataStoreProtocol,
    NotFoundError,
)
from .quests import QuestCatalog

logger = logging.getLogger(__name__)

TEAM_SIZE = 3
STORYTELLER_MIN_VOTES = 3
STORYTELLER_MIN_JUSTIFICATION = 50
CONSENSUS_MIN_VOTES = 3
DIVERSITY_MIN_COUNTRIES = 3
QUEST_MASTER_MIN_COMPLETED = 5
SOCIAL_CONNECTOR_MIN_TEAMMATES = 10


class BadgeType(str, Enum):
    FIRST_QUEST_COMPLETE = "FIRST_QUEST_COMPLETE"
    TEAM_PLAYER = "TEAM_PLAYER"
    COLLABORATOR = "COLLABORATOR"
    STORYTELLER = "STORYTELLER"
    DECISION_MAKER = "DECISION_MAKER"
    ARTIFACT_CREATOR = "ARTIFACT_CREATOR"
    QUEST_MASTER = "QUEST_MASTER"
    SOCIAL_CONNECTOR = "SOCIAL_CONNECTOR"
    PERFECT_TEAM = "PERFECT_TEAM"
    CONSENSUS_BUILDER = "CONSENSUS_BUILDER"
    DIVERSITY_CHAMPION = "DIVERSITY_CHAMPION"


@dataclass(frozen=True)
class BadgeDefinition:
    badge_type: BadgeType
    name: str
    description: str
    icon: str
    rarity: str


BADGE_CATALOG: Dict[BadgeType, BadgeDefinition] = {
    d.badge_type: d
    for d in (
        BadgeDefinition(BadgeType.FIRST_QUEST_COMPLETE, "First Steps", "Completed your first quest", "🎯", "common"),
        BadgeDefinition(BadgeType.TEAM_PLAYER, "Team Player", "Completed a collaborative decision room", "🤝", "common"),
        BadgeDefinition(BadgeType.COLLABORATOR, "Collaborator", "Voted in all decisions of a room", "💬", "common"),
        BadgeDefinition(
            BadgeType.STORYTELLER, "Storyteller", "Provided detailed justifications in 3+ decisions", "📖", "rare"
        ),
        BadgeDefinition(
            BadgeType.DECISION_MAKER, "Decision Maker", "Committed to the final decision in a room", "⚡", "common"
        ),
        BadgeDefinition(BadgeType.ARTIFACT_CREATOR, "Artifact Creator", "Generated a decision map artifact", "🗺️", "common"),
        BadgeDefinition(BadgeType.QUEST_MASTER, "Quest Master", "Completed 5+ quests", "🏆", "epic"),
        BadgeDefinition(BadgeType.SOCIAL_CONNECTOR, "Social Connector", "Teamed with 10+ different people", "🌐", "rare"),
        BadgeDefinition(BadgeType.PERFECT_TEAM, "Perfect Team", "All team members voted and committed", "✨", "rare"),
        BadgeDefinition(BadgeType.CONSENSUS_BUILDER, "Consensus Builder", "Team reached unanimous votes", "🎯", "rare"),
        BadgeDefinition(
            BadgeType.DIVERSITY_CHAMPION,
            "Diversity Champion",
            "Teamed with people from 3+ different countries",
            "🌍",
            "epic",
        ),
    )
}


@dataclass
class AwardedBadge:
    award: BadgeAwardRecord
    definition: BadgeDefinition


@dataclass
class BadgeStats:
    total: int
    by_rarity: Dict[str, int] = field(default_factory=dict)
    recent: List[AwardedBadge] = field(default_factory=list)


class BadgeScheduler(Protocol):
    def schedule(self, room_id: str) -> None: ...


class BadgeEngine:
    def __init__(self, store: DataStoreProtocol, catalog: QuestCatalog) -> None:
        self._store = store
        self._catalog = catalog

    def evaluate(self, room_id: str) -> List[BadgeAwardRecord]:
        """Award every satisfied achievement for the members of a completed room.

        Returns only the awards created by this run. Errors are logged and an
        empty list is returned; nothing propagates to the caller.
        """

        try:
            return self._evaluate(room_id)
        except Exception:
            logger.exception("Badge evaluation failed for room=%s", room_id)
            return []

    def _award(
        self,
        awarded: List[BadgeAwardRecord],
        participant_id: str,
        badge_type: BadgeType,
        *,
        room_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        record = self._store.award_badge(
            participant_id=participant_id,
            badge_type=badge_type.value,
            room_id=room_id,
            metadata=metadata,
        )
        if record is not None:
            logger.info("badge=%s awarded participant=%s room=%s", badge_type.value, participant_id, room_id)
            awarded.append(record)

    def _evaluate(self, room_id: str) -> List[BadgeAwardRecord]:
        try:
            room = self._store.get_room(room_id)
        except NotFoundError:
            logger.warning("Badge evaluation skipped, room=%s not found", room_id)
            return []
        if room.status != ROOM_COMPLETED:
            return []

        quest = self._catalog.get(room.quest_id)
        members = self._store.list_members(room_id)
        participants = self._store.list_participants(m.participant_id for m in members)
        votes = self._store.list_votes(room_id)
        commits = self._store.list_commits(room_id)
        committed_rounds = {c.round for c in commits}
        final_commit = next((c for c in commits if c.round == quest.final_round), None)
        has_artifact = self._store.find_artifact_for_room(room_id) is not None
        all_members_voted = all(any(v.participant_id == m.participant_id for v in votes) for m in members)

        unanimous_round: Optional[int] = None
        for number in sorted(committed_rounds):
            round_votes = [v for v in votes if v.round == number]
            if len(round_votes) >= CONSENSUS_MIN_VOTES and len({v.option for v in round_votes}) == 1:
                unanimous_round = number
                break

        countries = sorted({p.country for p in participants.values() if p.country})

        awarded: List[BadgeAwardRecord] = []
        for member in members:
            pid = member.participant_id
            own_votes = [v for v in votes if v.participant_id == pid]

            if self._store.count_completed_memberships(pid) == 1:
                self._award(awarded, pid, BadgeType.FIRST_QUEST_COMPLETE, room_id=room_id)

            if quest.quest_type == "DECISION_ROOM" and len(members) >= TEAM_SIZE:
                self._award(awarded, pid, BadgeType.TEAM_PLAYER, room_id=room_id)

            if commits and len(own_votes) == len(commits):
                self._award(
                    awarded,
                    pid,
                    BadgeType.COLLABORATOR,
                    room_id=room_id,
                    metadata={"decisionsParticipated": len(commits)},
                )

            if len(own_votes) >= STORYTELLER_MIN_VOTES and all(
                len(v.justification) >= STORYTELLER_MIN_JUSTIFICATION for v in own_votes
            ):
                self._award(
                    awarded,
                    pid,
                    BadgeType.STORYTELLER,
                    room_id=room_id,
                    metadata={"justificationCount": len(own_votes)},
                )

            if final_commit is not None:
                self._award(
                    awarded,
                    pid,
                    BadgeType.DECISION_MAKER,
                    room_id=room_id,
                    metadata={"finalDecision": final_commit.option},
                )

            if has_artifact:
                self._award(awarded, pid, BadgeType.ARTIFACT_CREATOR, room_id=room_id)

            if (
                len(members) == TEAM_SIZE
                and all_members_voted
                and committed_rounds == set(range(1, quest.final_round + 1))
            ):
                self._award(
                    awarded,
                    pid,
                    BadgeType.PERFECT_TEAM,
                    room_id=room_id,
                    metadata={"teamSize": TEAM_SIZE},
                )

            if unanimous_round is not None:
                self._award(
                    awarded,
                    pid,
                    BadgeType.CONSENSUS_BUILDER,
                    room_id=room_id,
                    metadata={"unanimousDecision": unanimous_round},
                )

            if len(countries) >= DIVERSITY_MIN_COUNTRIES:
                self._award(
                    awarded,
                    pid,
                    BadgeType.DIVERSITY_CHAMPION,
                    room_id=room_id,
                    metadata={"uniqueCountries": countries},
                )

        for member in members:
            awarded.extend(self.evaluate_global(member.participant_id))
        return awarded

    def evaluate_global(self, participant_id: str) -> List[BadgeAwardRecord]:
        """Check achievements that span the participant's whole history."""

        awarded: List[BadgeAwardRecord] = []
        completed = self._store.count_completed_memberships(participant_id)
        if completed >= QUEST_MASTER_MIN_COMPLETED:
            self._award(
                awarded,
                participant_id,
                BadgeType.QUEST_MASTER,
                room_id=None,
                metadata={"questsCompleted": completed},
            )
        teammates = self._store.list_teammate_ids(participant_id, statuses=(ROOM_COMPLETED, ROOM_IN_PROGRESS))
        if len(teammates) >= SOCIAL_CONNECTOR_MIN_TEAMMATES:
            self._award(
                awarded,
                participant_id,
                BadgeType.SOCIAL_CONNECTOR,
                room_id=None,
                metadata={"uniqueTeammates": len(teammates)},
            )
        return awarded

    def list_badges(self, participant_id: str) -> List[AwardedBadge]:
        badges: List[AwardedBadge] = []
        for award in self._store.list_badge_awards(participant_id):
            try:
                definition = BADGE_CATALOG[BadgeType(award.badge_type)]
            except ValueError:
                logger.warning("Unknown badge type %s for participant=%s", award.badge_type, participant_id)
                continue
            badges.append(AwardedBadge(award=award, definition=definition))
        return badges

    def badge_stats(self, participant_id: str) -> BadgeStats:
        badges = self.list_badges(participant_id)
        by_rarity: Dict[str, int] = {}
        for badge in badges:
            by_rarity[badge.definition.rarity] = by_rarity.get(badge.definition.rarity, 0) + 1
        return BadgeStats(total=len(badges), by_rarity=by_rarity, recent=badges[:5])


class BadgeDispatcher:
    """Runs badge evaluation on a small worker pool, off the request path."""

    def __init__(self, engine: BadgeEngine, *, max_workers: int = 2) -> None:
        self._engine = engine
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="badge-eval")

    def schedule(self, room_id: str) -> None:
        future = self._executor.submit(self._engine.evaluate, room_id)
        future.add_done_callback(lambda f: self._log_result(room_id, f))

    @staticmethod
    def _log_result(room_id: str, future: Future) -> None:
        if future.cancelled():
            logger.warning("Badge evaluation for room=%s was cancelled", room_id)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Badge evaluation for room=%s failed: %s", room_id, exc)
            return
        logger.debug("Badge evaluation for room=%s awarded %d badges", room_id, len(future.result()))

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class InlineBadgeDispatcher:
    """Evaluates immediately in the calling thread (tests, BADGE_WORKERS=0)."""

    def __init__(self, engine: BadgeEngine) -> None:
        self._engine = engine

    def schedule(self, room_id: str) -> None:
        self._engine.evaluate(room_id)

    def shutdown(self, *, wait: bool = True) -> None:
        return None
