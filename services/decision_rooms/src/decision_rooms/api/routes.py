"""Decision Rooms API routes."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from ..auth.dependencies import get_current_participant, get_data_store, require_operator
from ..badges import BADGE_CATALOG, AwardedBadge, BadgeDefinition, BadgeEngine
from ..completion import CompletionCoordinator
from ..config import HealthPayload, Settings, get_settings
from ..data import DataStoreProtocol, ParticipantRecord
from ..matchmaking import Matchmaker, require_membership
from ..models import (
    AcknowledgeResponse,
    ArtifactPayload,
    BadgeDefinitionPayload,
    BadgePayload,
    BadgesResponse,
    BadgeStatsPayload,
    CloseInactiveRequest,
    CloseInactiveResponse,
    CommitPayload,
    CommitRequest,
    CommitResponse,
    DecisionPayload,
    JoinRequest,
    JoinResponse,
    MemberPayload,
    QuestOptionPayload,
    QuestSummary,
    RoomStatePayload,
    RoundPayload,
    StartRequest,
    VotePayload,
    VoteRequest,
    VoteResponse,
)
from ..quests import Quest, QuestCatalog
from ..rate_limit import rate_limit
from ..session import DecisionSession, RoomState
from ..sweeper import close_inactive_rooms

router = APIRouter()


def _state_service(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"{name} unavailable")
    return service


def _catalog(request: Request) -> QuestCatalog:
    return _state_service(request, "quest_catalog")


def _matchmaker(request: Request) -> Matchmaker:
    return _state_service(request, "matchmaker")


def _session(request: Request) -> DecisionSession:
    return _state_service(request, "decision_session")


def _completion(request: Request) -> CompletionCoordinator:
    return _state_service(request, "completion_coordinator")


def _badges(request: Request) -> BadgeEngine:
    return _state_service(request, "badge_engine")


def _quest_summary(quest: Quest) -> QuestSummary:
    return QuestSummary(
        id=quest.id,
        name=quest.name,
        description=quest.description,
        quest_type=quest.quest_type,
        min_members=quest.min_members,
        max_members=quest.max_members,
        duration_minutes=quest.duration_minutes,
    )


def _decision_payloads(quest: Quest) -> list[DecisionPayload]:
    return [
        DecisionPayload(
            number=d.number,
            title=d.title,
            context=d.context,
            options=[QuestOptionPayload.model_validate(o.model_dump()) for o in d.options.values()],
        )
        for d in quest.decisions
    ]


def _room_state_payload(state: RoomState) -> RoomStatePayload:
    members = []
    for member in state.members:
        profile = state.participants.get(member.participant_id)
        members.append(
            MemberPayload(
                participant_id=member.participant_id,
                display_name=profile.display_name if profile else member.participant_id,
                organisation=profile.organisation if profile else None,
                role=profile.role if profile else None,
                country=profile.country if profile else None,
                joined_at=member.joined_at,
                acknowledged=member.acknowledged_at is not None,
            )
        )
    votes = [
        VotePayload(
            participant_id=v.participant_id,
            round=v.round,
            option=v.option,
            justification=v.justification,
            updated_at=v.updated_at,
        )
        for r in state.rounds
        for v in r.votes
    ]
    rounds = [
        RoundPayload(
            number=r.number,
            title=r.title,
            phase=r.phase.value,
            vote_count=len(r.votes),
            commit=CommitPayload(
                round=r.commit.round,
                option=r.commit.option,
                committed_by=r.commit.committed_by,
                committed_at=r.commit.committed_at,
            )
            if r.commit
            else None,
        )
        for r in state.rounds
    ]
    return RoomStatePayload(
        id=state.room.id,
        room_code=state.room.room_code,
        status=state.room.status,
        phase=state.phase.value,
        current_round=state.current_round,
        all_voted=state.all_voted,
        quest=_quest_summary(state.quest),
        decisions=_decision_payloads(state.quest),
        members=members,
        votes=votes,
        rounds=rounds,
        artifact_id=state.artifact_id,
        last_activity_at=state.room.last_activity_at,
        started_at=state.room.started_at,
        completed_at=state.room.completed_at,
    )


def _definition_payload(definition: BadgeDefinition) -> BadgeDefinitionPayload:
    return BadgeDefinitionPayload(
        badge_type=definition.badge_type.value,
        name=definition.name,
        description=definition.description,
        icon=definition.icon,
        rarity=definition.rarity,
    )


def _badge_payload(badge: AwardedBadge) -> BadgePayload:
    return BadgePayload(
        **_definition_payload(badge.definition).model_dump(),
        room_id=badge.award.room_id,
        metadata=badge.award.metadata,
        awarded_at=badge.award.awarded_at,
    )


@router.get("/health", response_model=HealthPayload, tags=["system"])
def read_health(settings: Settings = Depends(get_settings)) -> HealthPayload:
    """Liveness probe."""

    return HealthPayload(status="ok", api_version=settings.api_version)


@router.get("/v1/quests", tags=["quests"])
def list_quests(request: Request) -> dict[str, Any]:
    items = [_quest_summary(q).model_dump(by_alias=True) for q in _catalog(request).list_quests()]
    return {"items": items}


@router.post("/v1/rooms/join", tags=["rooms"])
def join_room(
    payload: JoinRequest,
    request: Request,
    participant: ParticipantRecord = Depends(get_current_participant),
    _rl: None = Depends(rate_limit),
) -> dict[str, Any]:
    result = _matchmaker(request).join(participant.id, payload.quest_id, event_id=participant.event_id)
    response = JoinResponse(room_id=result.room_id, room_code=result.room_code, joined=result.joined)
    return response.model_dump(by_alias=True)


@router.get("/v1/rooms/{room_id}", tags=["rooms"])
def read_room(
    room_id: str,
    request: Request,
    participant: ParticipantRecord = Depends(get_current_participant),
) -> dict[str, Any]:
    state = _session(request).room_state(room_id, participant.id)
    return _room_state_payload(state).model_dump(by_alias=True)


@router.post("/v1/rooms/{room_id}/start", tags=["rooms"])
def start_room(
    room_id: str,
    request: Request,
    payload: Optional[StartRequest] = None,
    participant: ParticipantRecord = Depends(get_current_participant),
    _rl: None = Depends(rate_limit),
) -> dict[str, Any]:
    room = _matchmaker(request).start(room_id, participant.id, force=bool(payload and payload.force))
    return {"roomId": room.id, "status": room.status, "currentRound": room.current_round}


@router.post("/v1/rooms/{room_id}/votes", tags=["decisions"])
def cast_vote(
    room_id: str,
    payload: VoteRequest,
    request: Request,
    participant: ParticipantRecord = Depends(get_current_participant),
    _rl: None = Depends(rate_limit),
) -> dict[str, Any]:
    vote = _session(request).vote(
        room_id,
        participant.id,
        payload.round,
        payload.option,
        payload.justification,
    )
    response = VoteResponse(round=vote.round, option=vote.option, updated_at=vote.updated_at)
    return response.model_dump(by_alias=True)


@router.post("/v1/rooms/{room_id}/commits", tags=["decisions"])
def commit_decision(
    room_id: str,
    payload: CommitRequest,
    request: Request,
    participant: ParticipantRecord = Depends(get_current_participant),
    _rl: None = Depends(rate_limit),
) -> dict[str, Any]:
    result = _session(request).commit(room_id, participant.id, payload.round, payload.option)
    response = CommitResponse(is_complete=result.is_complete, current_round=result.current_round)
    return response.model_dump(by_alias=True)


@router.post("/v1/rooms/{room_id}/complete", tags=["rooms"])
def acknowledge_completion(
    room_id: str,
    request: Request,
    participant: ParticipantRecord = Depends(get_current_participant),
    _rl: None = Depends(rate_limit),
) -> dict[str, Any]:
    result = _completion(request).acknowledge_completion(room_id, participant.id)
    response = AcknowledgeResponse(all_completed=result.all_completed, artifact_id=result.artifact_id)
    return response.model_dump(by_alias=True)


@router.get("/v1/artifacts/{artifact_id}", tags=["artifacts"])
def read_artifact(
    artifact_id: str,
    participant: ParticipantRecord = Depends(get_current_participant),
    store: DataStoreProtocol = Depends(get_data_store),
) -> dict[str, Any]:
    artifact = store.get_artifact(artifact_id)
    require_membership(store, room_id=artifact.room_id, participant_id=participant.id)
    payload = ArtifactPayload(
        id=artifact.id,
        room_id=artifact.room_id,
        media_type=artifact.media_type,
        content=artifact.content,
        created_at=artifact.created_at,
    )
    return payload.model_dump(by_alias=True)


@router.get("/v1/artifacts/{artifact_id}/content", tags=["artifacts"])
def read_artifact_content(
    artifact_id: str,
    participant: ParticipantRecord = Depends(get_current_participant),
    store: DataStoreProtocol = Depends(get_data_store),
) -> Response:
    """Rendered document as-is, for download or printing."""

    artifact = store.get_artifact(artifact_id)
    require_membership(store, room_id=artifact.room_id, participant_id=participant.id)
    return Response(content=artifact.content, media_type=artifact.media_type)


def _badges_response(engine: BadgeEngine, participant_id: str) -> dict[str, Any]:
    stats = engine.badge_stats(participant_id)
    response = BadgesResponse(
        items=[_badge_payload(b) for b in engine.list_badges(participant_id)],
        stats=BadgeStatsPayload(
            total=stats.total,
            by_rarity=stats.by_rarity,
            recent=[_badge_payload(b) for b in stats.recent],
        ),
    )
    return response.model_dump(by_alias=True)


@router.get("/v1/badges", tags=["badges"])
def read_badges(
    request: Request,
    participant: ParticipantRecord = Depends(get_current_participant),
) -> dict[str, Any]:
    return _badges_response(_badges(request), participant.id)


@router.get("/v1/badges/catalog", tags=["badges"])
def read_badge_catalog() -> dict[str, Any]:
    return {"items": [_definition_payload(d).model_dump(by_alias=True) for d in BADGE_CATALOG.values()]}


@router.get("/v1/badges/{participant_id}", tags=["badges"])
def read_participant_badges(
    participant_id: str,
    request: Request,
    _caller: ParticipantRecord = Depends(get_current_participant),
) -> dict[str, Any]:
    """Public badge profile of any participant, e.g. a teammate."""

    return _badges_response(_badges(request), participant_id)


@router.post("/v1/ops/rooms/close-inactive", tags=["ops"])
def sweep_inactive_rooms(
    payload: Optional[CloseInactiveRequest] = None,
    _op: None = Depends(require_operator),
    settings: Settings = Depends(get_settings),
    store: DataStoreProtocol = Depends(get_data_store),
) -> dict[str, Any]:
    closed = close_inactive_rooms(store, inactive_days=(payload and payload.inactive_days) or settings.inactive_room_days)
    return CloseInactiveResponse(closed_room_ids=closed, count=len(closed)).model_dump(by_alias=True)
