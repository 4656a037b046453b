"""Pydantic models of the public API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

OptionLiteral = Literal["A", "B", "C"]


class JoinRequest(BaseModel):
    """Join (or re-enter) a room for a quest."""

    model_config = ConfigDict(populate_by_name=True)

    quest_id: str = Field(..., alias="questId", min_length=1)


class JoinResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(..., alias="roomId")
    room_code: str = Field(..., alias="roomCode")
    joined: bool


class StartRequest(BaseModel):
    force: bool = Field(False, description="Start below the quest's minimum team size")


class VoteRequest(BaseModel):
    """A member's vote for the current decision."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    round: int = Field(..., ge=1, le=3)
    option: OptionLiteral
    justification: str = Field(..., min_length=1, max_length=160)


class VoteResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    round: int
    option: OptionLiteral
    updated_at: datetime = Field(..., alias="updatedAt")


class CommitRequest(BaseModel):
    round: int = Field(..., ge=1, le=3)
    option: OptionLiteral


class CommitResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    is_complete: bool = Field(..., alias="isComplete")
    current_round: int = Field(..., alias="currentRound")


class AcknowledgeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    all_completed: bool = Field(..., alias="allCompleted")
    artifact_id: Optional[str] = Field(None, alias="artifactId")


class QuestOptionPayload(BaseModel):
    key: OptionLiteral
    title: str
    description: str = ""
    impact: str = ""
    tradeoff: str = ""


class DecisionPayload(BaseModel):
    number: int
    title: str
    context: str = ""
    options: List[QuestOptionPayload]


class QuestSummary(BaseModel):
    """Quest as listed in the catalog."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    description: str = ""
    quest_type: str = Field(..., alias="questType")
    min_members: int = Field(..., alias="minMembers")
    max_members: int = Field(..., alias="maxMembers")
    duration_minutes: int = Field(..., alias="durationMinutes")


class MemberPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    participant_id: str = Field(..., alias="participantId")
    display_name: str = Field(..., alias="displayName")
    organisation: Optional[str] = None
    role: Optional[str] = None
    country: Optional[str] = None
    joined_at: datetime = Field(..., alias="joinedAt")
    acknowledged: bool = False


class VotePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    participant_id: str = Field(..., alias="participantId")
    round: int
    option: OptionLiteral
    justification: str
    updated_at: datetime = Field(..., alias="updatedAt")


class CommitPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    round: int
    option: OptionLiteral
    committed_by: Optional[str] = Field(None, alias="committedBy")
    committed_at: datetime = Field(..., alias="committedAt")


class RoundPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    number: int
    title: str
    phase: str
    vote_count: int = Field(..., alias="voteCount")
    commit: Optional[CommitPayload] = None


class RoomStatePayload(BaseModel):
    """Room snapshot returned to polling clients."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    room_code: str = Field(..., alias="roomCode")
    status: str
    phase: str
    current_round: int = Field(..., alias="currentRound")
    all_voted: bool = Field(..., alias="allVoted")
    quest: QuestSummary
    decisions: List[DecisionPayload]
    members: List[MemberPayload]
    votes: List[VotePayload]
    rounds: List[RoundPayload]
    artifact_id: Optional[str] = Field(None, alias="artifactId")
    last_activity_at: datetime = Field(..., alias="lastActivityAt")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")


class ArtifactPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    room_id: str = Field(..., alias="roomId")
    media_type: str = Field(..., alias="mediaType")
    content: str
    created_at: datetime = Field(..., alias="createdAt")


class BadgeDefinitionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    badge_type: str = Field(..., alias="badgeType")
    name: str
    description: str
    icon: str
    rarity: str


class BadgePayload(BadgeDefinitionPayload):
    room_id: Optional[str] = Field(None, alias="roomId")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    awarded_at: datetime = Field(..., alias="awardedAt")


class BadgeStatsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int
    by_rarity: Dict[str, int] = Field(default_factory=dict, alias="byRarity")
    recent: List[BadgePayload] = Field(default_factory=list)


class BadgesResponse(BaseModel):
    items: List[BadgePayload]
    stats: BadgeStatsPayload


class CloseInactiveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    inactive_days: Optional[int] = Field(None, ge=1, alias="inactiveDays")


class CloseInactiveResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    closed_room_ids: List[str] = Field(default_factory=list, alias="closedRoomIds")
    count: int
