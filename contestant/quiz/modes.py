from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict


class ContestModeId(StrEnum):
    qa = "qa"
    last_stand = "last-stand"
    speed_run = "speed-run"
    ocean_adventure = "ocean-adventure"
    ultimate_challenge = "ultimate-challenge"


class ContestModeFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    has_hp: bool = False
    initial_hp: int | None = None
    hp_loss_per_wrong: int = 1
    requires_buzzer: bool = False
    allows_delegation: bool = False
    supports_timer: bool = False
    auto_advance: bool = False
    local_question_cache: bool = False
    time_limit_seconds: int | None = None


class ContestMode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: ContestModeId
    name: str
    description: str
    channel: Literal["mqtt", "api", "hybrid"]
    question_flow: Literal["push", "pull", "local"]
    answer_flow: Literal["immediate", "batched", "external"]
    question_format: Literal["standard", "custom"]
    features: ContestModeFeatures

    @property
    def is_buzzer(self) -> bool:
        return self.features.requires_buzzer


SPEED_RUN_TIME_LIMIT_S = 5 * 60
OCEAN_TIME_LIMIT_S = 12 * 60


CONTEST_MODES: dict[ContestModeId, ContestMode] = {
    ContestModeId.qa: ContestMode(
        id=ContestModeId.qa,
        name="有问必答",
        description="Host pushes one question at a time over the broker; answers are judged immediately.",
        channel="mqtt",
        question_flow="push",
        answer_flow="immediate",
        question_format="standard",
        features=ContestModeFeatures(),
    ),
    ContestModeId.last_stand: ContestMode(
        id=ContestModeId.last_stand,
        name="一站到底",
        description="Pushed questions with 3 HP; every wrong answer costs one until elimination.",
        channel="mqtt",
        question_flow="push",
        answer_flow="immediate",
        question_format="standard",
        features=ContestModeFeatures(has_hp=True, initial_hp=3, hp_loss_per_wrong=1),
    ),
    ContestModeId.speed_run: ContestMode(
        id=ContestModeId.speed_run,
        name="争分夺秒",
        description="Whole question pack fetched once and answered locally against a global countdown.",
        channel="api",
        question_flow="local",
        answer_flow="immediate",
        question_format="standard",
        features=ContestModeFeatures(
            supports_timer=True,
            auto_advance=True,
            local_question_cache=True,
            time_limit_seconds=SPEED_RUN_TIME_LIMIT_S,
        ),
    ),
    ContestModeId.ocean_adventure: ContestMode(
        id=ContestModeId.ocean_adventure,
        name="题海遨游",
        description="Questions grabbed one by one from a shared pool, custom format, 2 HP.",
        channel="api",
        question_flow="pull",
        answer_flow="immediate",
        question_format="custom",
        features=ContestModeFeatures(
            has_hp=True,
            initial_hp=2,
            hp_loss_per_wrong=1,
            supports_timer=True,
            auto_advance=True,
            time_limit_seconds=OCEAN_TIME_LIMIT_S,
        ),
    ),
    ContestModeId.ultimate_challenge: ContestMode(
        id=ContestModeId.ultimate_challenge,
        name="终极挑战",
        description="Buzzer round with answer delegation, paced by the host over the broker.",
        channel="hybrid",
        question_flow="push",
        answer_flow="external",
        question_format="standard",
        features=ContestModeFeatures(requires_buzzer=True, allows_delegation=True, supports_timer=True),
    ),
}

DEFAULT_MODE = CONTEST_MODES[ContestModeId.qa]


def resolve_mode(mode_id: str | None) -> ContestMode:
    if not mode_id:
        return DEFAULT_MODE
    try:
        return CONTEST_MODES[ContestModeId(mode_id)]
    except ValueError:
        return DEFAULT_MODE
