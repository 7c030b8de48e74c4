from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel, Field

from contestant.infra.fusion import EventSummary, FusionClient
from contestant.infra.http import ApiError
from contestant.infra.pool import GrabResult, PoolClient
from contestant.infra.question_bank import QuestionBankClient
from contestant.quiz.modes import ContestModeId
from contestant.quiz.questions import NormalizedQuestion
from contestant.stages import (
    ScoreRecord,
    StageConfig,
    StageKind,
    TeamProfile,
    extract_display_name,
    find_record_by_identifier,
    to_stage_config,
)

logger = logging.getLogger(__name__)

COMMAND_LOG_LIMIT = 30
# One initial attempt, then one retry after each delay.
QUESTION_FETCH_RETRY_DELAYS_S = (1.0, 2.0, 4.0)
GENERAL_STAGE_ID = "0"


class StageStore(BaseModel):
    """Event/stage context of the running contest. Replaced piecewise by StageWorkflow only."""

    events: list[EventSummary] = Field(default_factory=list)
    stages: list[StageConfig] = Field(default_factory=list)
    selected_event: EventSummary | None = None
    current_stage: StageConfig | None = None
    team_profile: TeamProfile | None = None
    score_record: ScoreRecord | None = None
    questions: list[NormalizedQuestion] = Field(default_factory=list)
    remaining_count: int | None = None
    waiting_for_stage_start: bool = False
    is_loading: bool = False
    error: str | None = None
    command_log: list[str] = Field(default_factory=list)

    def log_command(self, command: str) -> None:
        self.command_log.append(command)
        if len(self.command_log) > COMMAND_LOG_LIMIT:
            del self.command_log[: len(self.command_log) - COMMAND_LOG_LIMIT]

    def reset(self) -> None:
        for name, field in StageStore.model_fields.items():
            setattr(self, name, field.get_default(call_default_factory=True))


class StageWorkflow:
    """Event selection and stage activation against the datasheet service.

    Contract:
      - activation resolves questions, team profile and score record independently;
        one failing never blocks the others
      - the question fetch retries with QUESTION_FETCH_RETRY_DELAYS_S; exhausting them
        stores an error and still releases the waiting-for-start gate
    """

    def __init__(
        self,
        *,
        fusion: FusionClient,
        pool: PoolClient | None = None,
        question_bank: QuestionBankClient | None = None,
        store: StageStore | None = None,
        retry_delays_s: tuple[float, ...] = QUESTION_FETCH_RETRY_DELAYS_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.fusion = fusion
        self.pool = pool
        self.question_bank = question_bank
        self.store = store or StageStore()
        self.retry_delays_s = retry_delays_s
        self._sleep = sleep

    @property
    def waiting_for_stage_start(self) -> bool:
        return self.store.waiting_for_stage_start

    def find_stage(self, stage_id: str) -> StageConfig | None:
        return next((s for s in self.store.stages if s.stage_id == stage_id), None)

    async def load_events(self) -> list[EventSummary]:
        store = self.store
        store.is_loading = True
        store.error = None
        try:
            events = await self.fusion.fetch_events()
        except Exception:
            store.error = "赛事列表获取失败"
            raise
        finally:
            store.is_loading = False
        store.events = events
        logger.info("Loaded %d event(s)", len(events))
        return events

    async def select_event_by_ordinal(self, ordinal: int, user_id: str | None = None) -> list[StageConfig]:
        store = self.store
        if ordinal < 0 or ordinal >= len(store.events):
            raise ValueError(f"未找到编号为 {ordinal} 的赛事")
        event = store.events[ordinal]

        store.is_loading = True
        store.error = None
        try:
            records = await self.fusion.fetch_records(event.id)
        except Exception:
            store.error = "赛事配置获取失败"
            raise
        finally:
            store.is_loading = False

        stages = [s for s in (to_stage_config(r, i) for i, r in enumerate(records)) if s is not None]
        store.selected_event = event
        store.stages = stages
        store.current_stage = None
        store.team_profile = None
        store.score_record = None
        store.waiting_for_stage_start = False
        logger.info("Selected event %s (%s) with %d stage(s)", event.name, event.id, len(stages))

        if user_id:
            general = next((s for s in stages if s.stage_id == GENERAL_STAGE_ID and s.general_sheet_id), None)
            if general is not None and general.general_sheet_id:
                await self.refresh_team_profile(general.general_sheet_id, user_id)
        return stages

    async def activate_stage(self, stage_id: str, user_id: str) -> StageConfig:
        store = self.store
        stage = self.find_stage(stage_id)
        if stage is None:
            raise ValueError(f"未找到环节 {stage_id}")

        store.current_stage = stage
        store.waiting_for_stage_start = stage.kind == StageKind.grab
        store.questions = []
        store.remaining_count = None
        store.error = None
        logger.info("Activating stage %s (%s, kind=%s)", stage.stage_id, stage.name, stage.kind.value)

        if stage.kind == StageKind.standard and stage.question_sheet_id:
            store.is_loading = True
            try:
                questions = await self._fetch_questions_with_retry(stage.question_sheet_id)
            finally:
                store.is_loading = False
            if questions is None:
                store.waiting_for_stage_start = False
            else:
                store.questions = questions

        if stage.general_sheet_id:
            try:
                await self.refresh_team_profile(stage.general_sheet_id, user_id)
            except (ApiError, httpx.HTTPError) as e:
                logger.warning("Team profile lookup failed for stage %s: %s", stage.stage_id, e)

        if stage.score_sheet_id:
            try:
                await self.refresh_score_record(stage.score_sheet_id, user_id)
            except (ApiError, httpx.HTTPError) as e:
                logger.warning("Score record lookup failed for stage %s: %s", stage.stage_id, e)

        return stage

    async def _fetch_questions_with_retry(self, sheet_id: str) -> list[NormalizedQuestion] | None:
        attempts = len(self.retry_delays_s) + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self.fusion.fetch_normalized_questions(sheet_id)
            except (ApiError, httpx.HTTPError) as e:
                if attempt == attempts:
                    logger.error("Question fetch for %s failed after %d attempts: %s", sheet_id, attempt, e)
                    break
                delay = self.retry_delays_s[attempt - 1]
                logger.warning("Question fetch for %s failed (attempt %d), retrying in %.0fs: %s", sheet_id, attempt, delay, e)
                await self._sleep(delay)
        self.store.error = "环节数据加载失败"
        return None

    async def refresh_team_profile(self, general_sheet_id: str, user_id: str) -> TeamProfile | None:
        records = await self.fusion.fetch_records(general_sheet_id)
        match = find_record_by_identifier(records, user_id)
        if match is None or not match.fields:
            return None
        profile = TeamProfile(
            record_id=str(match.record_id or ""),
            identifier=user_id,
            display_name=extract_display_name(match.fields),
            fields=dict(match.fields),
        )
        self.store.team_profile = profile
        return profile

    async def refresh_score_record(self, score_sheet_id: str, user_id: str) -> ScoreRecord | None:
        records = await self.fusion.fetch_records(score_sheet_id)
        match = find_record_by_identifier(records, user_id)
        if match is None or not match.fields:
            return None
        record = ScoreRecord(record_id=str(match.record_id or ""), fields=dict(match.fields))
        self.store.score_record = record
        return record

    def open_stage_gate(self) -> bool:
        """Release the waiting-for-start gate of a grab stage; False when there is nothing to release."""

        store = self.store
        stage = store.current_stage
        if stage is None or stage.kind != StageKind.grab or not store.waiting_for_stage_start:
            return False
        store.waiting_for_stage_start = False
        return True

    async def grab_next_question(self, user_id: str) -> GrabResult:
        if self.pool is None:
            raise ApiError(-1, "题海服务未配置")
        result = await self.pool.grab_next_question(user_id)
        question = result.question
        if question is not None:
            store = self.store
            for i, existing in enumerate(store.questions):
                if existing.id == question.id:
                    store.questions[i] = question
                    break
            else:
                store.questions.append(question)
            store.remaining_count = result.remaining_count
            store.waiting_for_stage_start = False
        return result

    async def load_mode_questions(self, mode: ContestModeId) -> list[NormalizedQuestion]:
        if self.question_bank is None:
            return []
        questions = await self.question_bank.fetch_mode_questions(mode.value)
        self.store.questions = questions
        return questions
