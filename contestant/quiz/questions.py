from __future__ import annotations

import re
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field


class QuestionType(StrEnum):
    single = "single"
    multiple = "multiple"
    indeterminate = "indeterminate"
    boolean = "boolean"
    fill = "fill"
    wordbank = "wordbank"


_TYPE_ALIASES: dict[str, QuestionType] = {
    "single": QuestionType.single,
    "single-choice": QuestionType.single,
    "单选": QuestionType.single,
    "单选题": QuestionType.single,
    "multiple": QuestionType.multiple,
    "multiple-choice": QuestionType.multiple,
    "多选": QuestionType.multiple,
    "多选题": QuestionType.multiple,
    "indeterminate": QuestionType.indeterminate,
    "indeterminate-choice": QuestionType.indeterminate,
    "不定项选择": QuestionType.indeterminate,
    "不定项选择题": QuestionType.indeterminate,
    "boolean": QuestionType.boolean,
    "true-false": QuestionType.boolean,
    "判断": QuestionType.boolean,
    "判断题": QuestionType.boolean,
    "fill": QuestionType.fill,
    "fill-in": QuestionType.fill,
    "fill-in-the-blank": QuestionType.fill,
    "text": QuestionType.fill,
    "填空": QuestionType.fill,
    "填空题": QuestionType.fill,
    "wordbank": QuestionType.wordbank,
    "word-bank": QuestionType.wordbank,
    "word-bank-fill": QuestionType.wordbank,
    "wordbank-fill": QuestionType.wordbank,
    "pick": QuestionType.wordbank,
    "pick-fill": QuestionType.wordbank,
    "选词填空": QuestionType.wordbank,
    "选词填空题": QuestionType.wordbank,
    "点选填空": QuestionType.wordbank,
    "点选题": QuestionType.wordbank,
}


def map_question_type(raw: str | None) -> QuestionType:
    """Map a free-form type label from a question bank onto QuestionType (default: single)."""

    if not raw:
        return QuestionType.single
    return _TYPE_ALIASES.get(str(raw).strip().lower(), QuestionType.single)


class QuestionOption(BaseModel):
    value: str
    label: str


class StandardQuestion(BaseModel):
    kind: Literal["standard"] = "standard"
    id: str
    title: str
    type: QuestionType = QuestionType.single
    options: list[QuestionOption] = Field(default_factory=list)
    correct_answer: str | list[str] | None = None
    record_id: str | None = None
    time_limit_seconds: int | None = None


class OceanOption(BaseModel):
    id: str
    label: str
    meta: dict[str, Any] = Field(default_factory=dict)


class OceanQuestion(BaseModel):
    kind: Literal["ocean"] = "ocean"
    question_key: str
    stem: str
    categories: list[str] = Field(default_factory=list)
    option_pool: list[OceanOption] = Field(default_factory=list)
    correct_answer_ids: list[str] = Field(default_factory=list)
    extra: dict[str, Any] | None = None


Question = Annotated[StandardQuestion | OceanQuestion, Field(discriminator="kind")]


def question_key(question: StandardQuestion | OceanQuestion) -> str:
    if isinstance(question, OceanQuestion):
        return question.question_key
    return question.id


class RawOption(BaseModel):
    value: str = ""
    text: str = ""


class NormalizedQuestion(BaseModel):
    """Source-agnostic question as fetched from the datasheet or the question pool."""

    id: str
    type: str = ""
    content: str = ""
    options: list[RawOption] = Field(default_factory=list)
    answer: list[str] = Field(default_factory=list)
    explanation: str | None = None
    difficulty: float | None = None
    pack_id: str | None = None
    audio_url: str | None = None
    record_id: str | None = None
    raw: dict[str, Any] | None = None
    source: Literal["pool", "datasheet"] = "datasheet"


_OPTION_LINE = re.compile(r"^([A-Z])、?(.*)$")


def parse_option_lines(raw: str | None) -> list[RawOption]:
    """Parse "A、text" lines (one option per line) from a datasheet cell."""

    if not raw:
        return []
    out: list[RawOption] = []
    for line in raw.split("\n"):
        if not line:
            continue
        m = _OPTION_LINE.match(line)
        if m:
            out.append(RawOption(value=m.group(1), text=m.group(2).strip()))
        else:
            out.append(RawOption(value="", text=line.strip()))
    return out


def _split_answer(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value if str(v)]
    return [ch for ch in str(value if value is not None else "") if ch]


def _first_url(items: Any) -> str | None:
    if not isinstance(items, list):
        return None
    for item in items:
        if isinstance(item, dict) and item.get("url"):
            return str(item["url"])
    return None


def normalize_datasheet_records(records: list[dict[str, Any]]) -> list[NormalizedQuestion]:
    out: list[NormalizedQuestion] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        fields = record.get("fields") if isinstance(record.get("fields"), dict) else {}
        record_id = record.get("recordId")
        options_cell = fields.get("options")
        audio = _first_url(fields.get("audio")) if isinstance(fields.get("audio"), list) else fields.get("url")
        out.append(
            NormalizedQuestion(
                id=str(fields.get("ID", record_id if record_id is not None else "")),
                type=str(fields.get("type") or ""),
                content=str(fields.get("stem") or ""),
                options=parse_option_lines(options_cell if isinstance(options_cell, str) else None),
                answer=_split_answer(fields.get("answer") or ""),
                audio_url=str(audio) if audio else None,
                record_id=(
                    str(record_id)
                    if record_id is not None
                    else (str(fields["ID"]) if fields.get("ID") is not None else None)
                ),
                raw=dict(fields),
                source="datasheet",
            )
        )
    return out


def normalize_pool_payload(payload: dict[str, Any]) -> NormalizedQuestion | None:
    """Normalize a grab-with-details response; returns None when it carries no question."""

    q = payload.get("question")
    if not isinstance(q, dict):
        return None
    qid = q.get("id", payload.get("questionId"))
    options = q.get("options") if isinstance(q.get("options"), list) else []
    difficulty = q.get("difficulty")
    return NormalizedQuestion(
        id=str(qid if qid is not None else ""),
        type=str(q.get("type") or ""),
        content=str(q.get("title") or ""),
        options=[
            RawOption(value=str(o.get("value", "")), text=str(o.get("text", "")))
            for o in options
            if isinstance(o, dict)
        ],
        answer=_split_answer(q.get("answer") or ""),
        explanation=q.get("explanation") if isinstance(q.get("explanation"), str) else None,
        difficulty=difficulty if isinstance(difficulty, (int, float)) else None,
        pack_id=str(q["packId"]) if q.get("packId") else None,
        audio_url=q.get("audioUrl") if isinstance(q.get("audioUrl"), str) else None,
        record_id=str(qid) if qid not in (None, "") else None,
        raw=dict(q),
        source="pool",
    )


def to_standard_question(question: NormalizedQuestion) -> StandardQuestion:
    answers = [a for a in question.answer if a]
    correct: str | list[str] | None = None
    if len(answers) == 1:
        correct = answers[0]
    elif len(answers) > 1:
        correct = list(answers)

    return StandardQuestion(
        id=question.id,
        title=question.content,
        type=map_question_type(question.type),
        options=[
            QuestionOption(
                value=opt.value or chr(65 + i),
                label=opt.text or opt.value or f"选项{i + 1}",
            )
            for i, opt in enumerate(question.options)
        ],
        correct_answer=correct,
        record_id=question.record_id,
    )


def to_ocean_question(question: NormalizedQuestion) -> OceanQuestion:
    raw = question.raw or {}
    categories = raw.get("categories")
    return OceanQuestion(
        question_key=question.id,
        stem=question.content,
        categories=[str(c) for c in categories] if isinstance(categories, list) else [],
        option_pool=[
            OceanOption(
                id=opt.value or chr(65 + i),
                label=opt.text or opt.value or f"选项{i + 1}",
                meta=opt.model_dump(),
            )
            for i, opt in enumerate(question.options)
        ],
        correct_answer_ids=[str(a) for a in question.answer],
        extra=dict(raw) if question.raw is not None else None,
    )
