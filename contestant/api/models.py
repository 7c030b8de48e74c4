from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from contestant.infra.fusion import EventSummary
from contestant.notices import Notice
from contestant.quiz.evaluation import Answer
from contestant.quiz.state import QuizRuntimeState, SubmissionResult
from contestant.session_store import User
from contestant.stages import ScoreRecord, StageConfig, TeamProfile
from contestant.transport import ConnectionStatus


class LoginRequest(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str | None = None
    team: str | None = None


class SelectionRequest(BaseModel):
    value: Answer | None = None


class SubmitRequest(BaseModel):
    # Falls back to the tracked selection when omitted.
    value: Answer | None = None
    allow_empty: bool = False


class CommandRequest(BaseModel):
    command: str = Field(..., min_length=1, max_length=200)


class JudgementRequest(BaseModel):
    result: Literal["correct", "wrong"]


class StageSummary(BaseModel):
    selected_event: EventSummary | None = None
    stages: list[StageConfig] = Field(default_factory=list)
    current_stage: StageConfig | None = None
    team_profile: TeamProfile | None = None
    score_record: ScoreRecord | None = None
    remaining_count: int | None = None
    waiting_for_stage_start: bool = False
    is_loading: bool = False
    error: str | None = None
    command_log: list[str] = Field(default_factory=list)


class StationState(BaseModel):
    user: User | None = None
    is_leader: bool
    connection: ConnectionStatus
    runtime: QuizRuntimeState
    selection: Answer | None = None
    stage: StageSummary


class SubmitResponse(BaseModel):
    accepted: bool
    result: SubmissionResult | None = None
    state: QuizRuntimeState


class BuzzResponse(BaseModel):
    accepted: bool
    state: QuizRuntimeState


class NoticeListResponse(BaseModel):
    notices: list[Notice]


class PresenceResponse(BaseModel):
    client_id: str
    status: str | None = None
