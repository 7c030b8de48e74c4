from __future__ import annotations

import pytest

from contestant.quiz.evaluation import (
    FILL_PLACEHOLDER,
    UNANSWERED,
    EmptyAnswerError,
    Outcome,
    evaluate,
    format_sheet_answer,
    prepare_submission,
)
from contestant.quiz.questions import (
    NormalizedQuestion,
    OceanOption,
    OceanQuestion,
    QuestionOption,
    QuestionType,
    RawOption,
    StandardQuestion,
    map_question_type,
    normalize_datasheet_records,
    normalize_pool_payload,
    parse_option_lines,
    to_ocean_question,
    to_standard_question,
)

ABCD = [QuestionOption(value=v, label=f"option {v}") for v in "ABCD"]


def _q(qtype: QuestionType, correct: str | list[str] | None, options: list[QuestionOption] = ABCD) -> StandardQuestion:
    return StandardQuestion(id="q1", title="stem", type=qtype, options=options, correct_answer=correct)


def test_single_choice_exact_match() -> None:
    q = _q(QuestionType.single, "B")

    assert evaluate(q, "B") == Outcome.correct
    assert evaluate(q, "A") == Outcome.incorrect


def test_single_choice_empty_selection_is_rejected_before_evaluation() -> None:
    q = _q(QuestionType.single, "B")

    with pytest.raises(EmptyAnswerError):
        prepare_submission(q, None)
    with pytest.raises(EmptyAnswerError):
        prepare_submission(q, "")


def test_empty_selection_passes_when_allowed() -> None:
    prepared = prepare_submission(_q(QuestionType.single, "B"), None, allow_empty=True)

    assert prepared.value == ""
    assert prepared.sheet_answer == UNANSWERED


def test_multiple_choice_is_order_independent() -> None:
    q = _q(QuestionType.multiple, ["A", "C"])

    assert evaluate(q, ["C", "A"]) == Outcome.correct
    assert evaluate(q, ["A"]) == Outcome.incorrect
    assert evaluate(q, ["A", "C", "D"]) == Outcome.incorrect


def test_indeterminate_accepts_single_configured_answer() -> None:
    q = _q(QuestionType.indeterminate, "D")

    assert evaluate(q, ["D"]) == Outcome.correct
    assert evaluate(q, ["D", "A"]) == Outcome.incorrect


def test_wordbank_position_matters() -> None:
    options = [QuestionOption(value="x", label="ex"), QuestionOption(value="y", label="why")]
    q = _q(QuestionType.wordbank, ["x", "y"], options)

    assert evaluate(q, ["x", "y"]) == Outcome.correct
    assert evaluate(q, ["y", "x"]) == Outcome.incorrect


def test_no_configured_answer_is_unknown_not_incorrect() -> None:
    for qtype in QuestionType:
        assert evaluate(_q(qtype, None), "A") == Outcome.unknown

    ocean = OceanQuestion(question_key="o1", stem="stem")
    assert evaluate(ocean, ["A"]) == Outcome.unknown


def test_ocean_requires_exact_id_set() -> None:
    ocean = OceanQuestion(
        question_key="o1",
        stem="stem",
        option_pool=[OceanOption(id=i, label=i) for i in ("a", "b", "c")],
        correct_answer_ids=["a", "c"],
    )

    assert evaluate(ocean, ["c", "a"]) == Outcome.correct
    assert evaluate(ocean, ["a"]) == Outcome.incorrect
    assert evaluate(ocean, ["a", "b", "c"]) == Outcome.incorrect


def test_scalar_answer_never_matches_array_and_vice_versa() -> None:
    assert evaluate(_q(QuestionType.single, "A"), ["A"]) == Outcome.incorrect
    assert evaluate(_q(QuestionType.single, ["A", "B"]), "A") == Outcome.incorrect


@pytest.mark.parametrize(
    ("qtype", "selection", "message"),
    [
        (QuestionType.multiple, [], "请至少选择一个选项"),
        (QuestionType.wordbank, ["x", ""], "请完成所有填空"),
        (QuestionType.fill, "  ", "请使用画板功能作答"),
    ],
)
def test_empty_answers_rejected_per_type(qtype: QuestionType, selection: object, message: str) -> None:
    with pytest.raises(EmptyAnswerError, match=message):
        prepare_submission(_q(qtype, None), selection)  # type: ignore[arg-type]


def test_sheet_answer_formats() -> None:
    assert format_sheet_answer(_q(QuestionType.multiple, None), ["C", "A"]) == "AC"
    assert format_sheet_answer(_q(QuestionType.single, None), "b") == "B"
    assert format_sheet_answer(_q(QuestionType.fill, None), "token") == FILL_PLACEHOLDER

    options = [QuestionOption(value="x", label="ex"), QuestionOption(value="y", label="why")]
    assert format_sheet_answer(_q(QuestionType.wordbank, None, options), ["y", "x"]) == "why/ex"


def test_fill_submission_keeps_token_and_marks_empty_board() -> None:
    q = _q(QuestionType.fill, None)

    assert prepare_submission(q, "att-token").sheet_answer == "att-token"
    assert prepare_submission(q, None, allow_empty=True).sheet_answer == "空画板"


def test_ocean_submission_has_no_sheet_answer() -> None:
    prepared = prepare_submission(OceanQuestion(question_key="o1", stem="s"), "a")

    assert prepared.value == ["a"]
    assert prepared.sheet_answer is None


def test_type_aliases_default_to_single() -> None:
    assert map_question_type("多选题") == QuestionType.multiple
    assert map_question_type("Word-Bank") == QuestionType.wordbank
    assert map_question_type("matching") == QuestionType.single
    assert map_question_type(None) == QuestionType.single


def test_option_lines_parse_letter_prefix() -> None:
    options = parse_option_lines("A、苹果\nB香蕉\n\n自由文本")

    assert [(o.value, o.text) for o in options] == [("A", "苹果"), ("B", "香蕉"), ("", "自由文本")]


def test_datasheet_records_normalize_to_questions() -> None:
    records = [
        {
            "recordId": "rec1",
            "fields": {"ID": "Q1", "type": "多选", "stem": "Pick two", "options": "A、one\nB、two\nC、three", "answer": "AC", "题号": 7},
        }
    ]

    (nq,) = normalize_datasheet_records(records)
    assert nq.id == "Q1"
    assert nq.record_id == "rec1"
    assert nq.answer == ["A", "C"]
    assert nq.raw is not None and nq.raw["题号"] == 7

    sq = to_standard_question(nq)
    assert sq.type == QuestionType.multiple
    assert sq.correct_answer == ["A", "C"]
    assert [o.label for o in sq.options] == ["one", "two", "three"]


def test_pool_payload_without_question_is_none() -> None:
    assert normalize_pool_payload({"remainingCount": 0}) is None


def test_pool_payload_converts_to_ocean_question() -> None:
    nq = normalize_pool_payload(
        {
            "question": {
                "id": 42,
                "type": "multiple",
                "title": "Which live in the sea?",
                "options": [{"value": "a", "text": "whale"}, {"value": "b", "text": "camel"}],
                "answer": ["a"],
                "categories": ["ocean"],
            },
            "remainingCount": 9,
        }
    )
    assert nq is not None and nq.source == "pool"

    ocean = to_ocean_question(nq)
    assert ocean.question_key == "42"
    assert ocean.categories == ["ocean"]
    assert [o.id for o in ocean.option_pool] == ["a", "b"]
    assert ocean.correct_answer_ids == ["a"]


def test_standard_conversion_fills_missing_option_values() -> None:
    nq = NormalizedQuestion(id="q", options=[RawOption(text="first"), RawOption(text="second")], answer=["B"])

    sq = to_standard_question(nq)
    assert [o.value for o in sq.options] == ["A", "B"]
    assert sq.correct_answer == "B"
