from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from contestant.infra.fusion import FusionClient
from contestant.quiz.evaluation import FILL_PLACEHOLDER, UNANSWERED, Outcome
from contestant.quiz.modes import ContestModeId
from contestant.quiz.questions import NormalizedQuestion, QuestionType
from contestant.quiz.state import SubmissionContext
from contestant.session_store import SessionStore
from contestant.stage_workflow import StageStore

logger = logging.getLogger(__name__)

STATUS_FIELD_CANDIDATES = ("状态", "血量", "生命值", "status", "Status")
SCORE_FIELD_CANDIDATES = ("number", "Number", "题号", "序号", "题目编号")


def resolve_status_field(fields: dict[str, Any] | None) -> str:
    if fields:
        for key in STATUS_FIELD_CANDIDATES:
            if key in fields:
                return key
    return STATUS_FIELD_CANDIDATES[0]


def resolve_score_field(source: NormalizedQuestion | None, fallback_index: int) -> str | None:
    """Column of the score sheet for a question: its number field, else its 1-based position."""

    raw = (source.raw if source is not None else None) or {}
    for key in SCORE_FIELD_CANDIDATES:
        candidate = raw.get(key)
        if candidate is None:
            continue
        value = str(candidate).strip()
        if value:
            return value
    if fallback_index >= 0:
        return str(fallback_index + 1)
    return None


class ScoreSync:
    """Writes judged standard-question answers back to the stage's datasheets.

    Two independent patches: the raw answer on the question sheet (one column per
    contestant) and the judged result on the contestant's score-sheet row. Unknown
    outcomes are not written as wrong; fill questions are always marked for manual review.
    """

    def __init__(self, *, fusion: FusionClient, store: StageStore, session: SessionStore) -> None:
        self.fusion = fusion
        self.store = store
        self.session = session

    async def __call__(self, context: SubmissionContext) -> None:
        stage = self.store.current_stage
        if stage is None:
            return
        user_id = self.session.user_id
        tasks: list[Awaitable[None]] = []

        source = context.source
        record_id = (source.record_id if source is not None else None) or context.question.record_id
        if stage.question_sheet_id and record_id and user_id:
            tasks.append(
                self.fusion.patch_records(
                    stage.question_sheet_id,
                    [{"recordId": str(record_id), "fields": {user_id: context.sheet_answer or UNANSWERED}}],
                )
            )

        score_fields = self._score_fields(context)
        score_record = self.store.score_record
        if stage.score_sheet_id and score_record is not None and score_record.record_id and score_fields:
            tasks.append(
                self.fusion.patch_records(
                    stage.score_sheet_id,
                    [{"recordId": score_record.record_id, "fields": score_fields}],
                )
            )

        if not tasks:
            return
        await asyncio.gather(*tasks)
        logger.info("Synced answer for %s (%s)", context.question.id, context.outcome.value)

    def _score_fields(self, context: SubmissionContext) -> dict[str, Any] | None:
        is_fill = context.question.type == QuestionType.fill
        if context.outcome == Outcome.unknown and not is_fill:
            return None
        field = resolve_score_field(context.source, context.question_index)
        if field is None:
            return None

        correct = context.outcome == Outcome.correct
        fields: dict[str, Any] = {
            field: FILL_PLACEHOLDER if is_fill else ("1" if correct else "0"),
            "light": "1" if correct else "0",
        }
        if context.mode == ContestModeId.speed_run and context.duration_ms is not None:
            fields["time"] = round(context.duration_ms / 1000)
        if context.mode == ContestModeId.last_stand and context.hp_after_answer is not None:
            score_record = self.store.score_record
            status_field = resolve_status_field(score_record.fields if score_record is not None else None)
            fields[status_field] = str(max(0, int(context.hp_after_answer)))
        return fields
