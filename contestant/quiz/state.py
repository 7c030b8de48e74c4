from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, computed_field

from contestant.quiz.evaluation import Outcome
from contestant.quiz.fsm import BuzzerPhase
from contestant.quiz.modes import CONTEST_MODES, ContestMode, ContestModeId
from contestant.quiz.questions import NormalizedQuestion, Question, StandardQuestion


class QuizRuntimeState(BaseModel):
    mode: ContestModeId
    question: Question | None = None
    question_index: int = -1
    total_questions: int | None = None
    hp: int | None = None
    max_hp: int | None = None
    time_remaining: int | None = None
    time_elapsed: int | None = None
    awaiting_host: bool = False
    delegation_target_id: str | None = None
    phase: BuzzerPhase | None = None
    finished: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def answering_enabled(self) -> bool:
        if self.question is None or self.question_index < 0:
            return False
        if self.finished or self.awaiting_host:
            return False
        mode = CONTEST_MODES[self.mode]
        if mode.features.has_hp and (self.hp or 0) <= 0:
            return False
        if mode.is_buzzer:
            return self.phase == BuzzerPhase.answer
        return True


def initial_state(mode: ContestMode) -> QuizRuntimeState:
    hp = (mode.features.initial_hp or 0) if mode.features.has_hp else None
    return QuizRuntimeState(
        mode=mode.id,
        question_index=-1 if mode.question_flow == "push" else 0,
        hp=hp,
        max_hp=hp,
        awaiting_host=mode.question_flow != "local",
        phase=BuzzerPhase.waiting if mode.is_buzzer else None,
    )


class SubmissionResult(BaseModel):
    outcome: Outcome
    raw_result: str | None = None
    hp_after_answer: int | None = None
    correct_answer: str | list[str] | None = None
    score: dict[str, Any] | None = None
    stats: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class SubmissionContext:
    """Everything score bookkeeping needs about one judged standard-question submission."""

    mode: ContestModeId
    question: StandardQuestion
    source: NormalizedQuestion | None
    question_index: int
    sheet_answer: str
    outcome: Outcome
    duration_ms: int | None
    hp_after_answer: int | None
