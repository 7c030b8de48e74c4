from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from contestant.quiz.questions import OceanQuestion, QuestionType, StandardQuestion

Answer = str | list[str]

UNANSWERED = "未选"
FILL_PLACEHOLDER = "填空"


class Outcome(StrEnum):
    correct = "correct"
    incorrect = "incorrect"
    # No configured answer; never counted as wrong.
    unknown = "unknown"


class EmptyAnswerError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class PreparedSubmission:
    value: Answer
    # What gets written to the question sheet (None for ocean questions).
    sheet_answer: str | None


def _as_list(selection: Answer | None) -> list[str]:
    if isinstance(selection, list):
        return [str(v) for v in selection]
    if isinstance(selection, str) and selection:
        return [selection]
    return []


def _option_letter(question: StandardQuestion, value: str) -> str:
    for i, opt in enumerate(question.options):
        if opt.value == value:
            return chr(65 + i)
    return value.upper()


def format_sheet_answer(question: StandardQuestion, selection: Answer | None) -> str:
    """Render a selection the way the question sheet stores it (option letters, sorted)."""

    if question.type == QuestionType.fill:
        return FILL_PLACEHOLDER

    if question.type == QuestionType.wordbank:
        if not isinstance(selection, list):
            return UNANSWERED
        labels = {opt.value: opt.label for opt in question.options}
        picked = [labels.get(v, v) for v in selection if v]
        return "/".join(picked) if picked else UNANSWERED

    if isinstance(selection, list):
        letters = sorted(x for x in (_option_letter(question, v).strip().upper() for v in selection) if x)
        return "".join(letters) or UNANSWERED

    if not selection:
        return UNANSWERED
    return _option_letter(question, selection).strip().upper() or UNANSWERED


def prepare_submission(
    question: StandardQuestion | OceanQuestion,
    selection: Answer | None,
    *,
    allow_empty: bool = False,
) -> PreparedSubmission:
    """Shape a raw selection for `question`.

    Raises EmptyAnswerError when nothing was selected and `allow_empty` is false. Host-forced
    submissions pass allow_empty=True so whatever is selected (possibly nothing) goes through.
    """

    if isinstance(question, OceanQuestion):
        values = _as_list(selection)
        if not allow_empty and not values:
            raise EmptyAnswerError("请至少选择一个选项")
        return PreparedSubmission(value=values, sheet_answer=None)

    qtype = question.type
    if qtype in (QuestionType.multiple, QuestionType.indeterminate):
        values = _as_list(selection)
        if not allow_empty and not values:
            raise EmptyAnswerError("请至少选择一个选项")
        return PreparedSubmission(value=values, sheet_answer=format_sheet_answer(question, values or None))

    if qtype == QuestionType.wordbank:
        values = _as_list(selection)
        if not allow_empty and (not values or any(not v for v in values)):
            raise EmptyAnswerError("请完成所有填空")
        return PreparedSubmission(value=values, sheet_answer=format_sheet_answer(question, values))

    if qtype == QuestionType.fill:
        value = selection.strip() if isinstance(selection, str) else ""
        if not allow_empty and not value:
            raise EmptyAnswerError("请使用画板功能作答")
        return PreparedSubmission(value=value, sheet_answer=value or "空画板")

    value = selection if isinstance(selection, str) else ""
    if not allow_empty and not value:
        raise EmptyAnswerError("请选择一个选项")
    return PreparedSubmission(value=value, sheet_answer=format_sheet_answer(question, value or None))


def _same_items(expected: list[str], actual: list[str]) -> bool:
    return len(expected) == len(actual) and sorted(expected) == sorted(actual)


def evaluate(question: StandardQuestion | OceanQuestion, value: Answer) -> Outcome:
    if isinstance(question, OceanQuestion):
        if not question.correct_answer_ids:
            return Outcome.unknown
        actual = value if isinstance(value, list) else [value]
        return Outcome.correct if _same_items(question.correct_answer_ids, actual) else Outcome.incorrect

    correct = question.correct_answer
    if not correct:
        return Outcome.unknown

    if question.type == QuestionType.wordbank:
        if not isinstance(correct, list) or not isinstance(value, list):
            return Outcome.incorrect
        return Outcome.correct if correct == value else Outcome.incorrect

    if question.type in (QuestionType.multiple, QuestionType.indeterminate):
        expected = correct if isinstance(correct, list) else [correct]
        return Outcome.correct if _same_items(expected, _as_list(value)) else Outcome.incorrect

    if isinstance(correct, list):
        if not isinstance(value, list):
            return Outcome.incorrect
        return Outcome.correct if _same_items(correct, value) else Outcome.incorrect

    if isinstance(value, list):
        return Outcome.incorrect
    return Outcome.correct if value == correct else Outcome.incorrect
