from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from contestant.infra.fusion import DatasheetRecord
from contestant.quiz.modes import ContestModeId

STAGE_ID_FIELD = "ID"
STAGE_NAME_FIELD = "环节名称"
QUESTION_SHEET_FIELD = "题库表ID"
SCORE_SHEET_FIELD = "分数表ID"
GENERAL_SHEET_FIELD = "通用表ID"

IDENTIFIER_KEYS = ("ID", "id", "编号", "school", "学校", "city-id", "cityId", "选手ID", "选手编号")
DISPLAY_NAME_KEYS = ("名称", "name", "队伍名称", "school", "学校", "city")

MODE_FIELD_KEYS = ("模式", "Mode", "mode", "模式ID", "ModeId", "modeId", "答题模式", "答题模式ID", "答题模式Id")

MODE_ALIASES: dict[str, ContestModeId] = {
    "qa": ContestModeId.qa,
    "有问必答": ContestModeId.qa,
    "问答": ContestModeId.qa,
    "问答赛": ContestModeId.qa,
    "last-stand": ContestModeId.last_stand,
    "laststand": ContestModeId.last_stand,
    "一站到底": ContestModeId.last_stand,
    "1v1": ContestModeId.last_stand,
    "speed-run": ContestModeId.speed_run,
    "speedrun": ContestModeId.speed_run,
    "争分夺秒": ContestModeId.speed_run,
    "速答": ContestModeId.speed_run,
    "冲刺": ContestModeId.speed_run,
    "ocean-adventure": ContestModeId.ocean_adventure,
    "oceanadventure": ContestModeId.ocean_adventure,
    "题海遨游": ContestModeId.ocean_adventure,
    "题海": ContestModeId.ocean_adventure,
    "ultimate-challenge": ContestModeId.ultimate_challenge,
    "ultimate": ContestModeId.ultimate_challenge,
    "终极挑战": ContestModeId.ultimate_challenge,
}

# Substring of the stage name -> mode, checked in order.
MODE_NAME_KEYWORDS: tuple[tuple[tuple[str, ...], ContestModeId], ...] = (
    (("题海",), ContestModeId.ocean_adventure),
    (("终极",), ContestModeId.ultimate_challenge),
    (("争分", "速答", "冲刺"), ContestModeId.speed_run),
    (("一站",), ContestModeId.last_stand),
)


class StageKind(StrEnum):
    meta = "meta"
    standard = "standard"
    grab = "grab"
    unknown = "unknown"


_KIND_BY_NAME = {
    "学校信息": StageKind.meta,
    "题海遨游": StageKind.grab,
    "有问必答": StageKind.standard,
    "一站到底": StageKind.standard,
    "争分夺秒": StageKind.standard,
    "终极挑战": StageKind.standard,
}


def resolve_stage_kind(name: str | None) -> StageKind:
    return _KIND_BY_NAME.get(name or "", StageKind.unknown)


class StageConfig(BaseModel):
    order: int
    stage_id: str
    record_id: str
    name: str
    question_sheet_id: str | None = None
    score_sheet_id: str | None = None
    general_sheet_id: str | None = None
    kind: StageKind = StageKind.unknown
    raw_fields: dict[str, Any] = Field(default_factory=dict)


class TeamProfile(BaseModel):
    record_id: str
    identifier: str
    display_name: str | None = None
    fields: dict[str, Any] = Field(default_factory=dict)


class ScoreRecord(BaseModel):
    record_id: str
    fields: dict[str, Any] = Field(default_factory=dict)


def _str_field(fields: dict[str, Any], key: str) -> str | None:
    value = fields.get(key)
    return value if isinstance(value, str) else None


def to_stage_config(record: DatasheetRecord, order: int) -> StageConfig | None:
    fields = record.fields
    if not fields:
        return None
    name = str(fields.get(STAGE_NAME_FIELD, f"环节{order}"))
    return StageConfig(
        order=order,
        stage_id=str(fields.get(STAGE_ID_FIELD, order)),
        record_id=str(record.record_id or ""),
        name=name,
        question_sheet_id=_str_field(fields, QUESTION_SHEET_FIELD),
        score_sheet_id=_str_field(fields, SCORE_SHEET_FIELD),
        general_sheet_id=_str_field(fields, GENERAL_SHEET_FIELD),
        kind=resolve_stage_kind(name),
        raw_fields=dict(fields),
    )


def find_record_by_identifier(records: list[DatasheetRecord], identifier: str) -> DatasheetRecord | None:
    """First record whose identifier fields (in priority order) or any string field equals `identifier`."""

    target = identifier.strip()
    for record in records:
        fields = record.fields
        if not fields:
            continue
        for key in IDENTIFIER_KEYS:
            value = fields.get(key)
            if value is not None and str(value).strip() == target:
                return record
        if any(isinstance(v, str) and v.strip() == target for v in fields.values()):
            return record
    return None


def extract_display_name(fields: dict[str, Any]) -> str | None:
    for key in DISPLAY_NAME_KEYS:
        value = fields.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    for value in fields.values():
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve_mode_alias(candidate: Any) -> ContestModeId | None:
    if not isinstance(candidate, str):
        return None
    trimmed = candidate.strip()
    if not trimmed:
        return None
    lower = trimmed.lower()
    for key in (trimmed, lower, "".join(lower.split())):
        if key in MODE_ALIASES:
            return MODE_ALIASES[key]
    return None


def _mode_from_fields(fields: dict[str, Any]) -> ContestModeId | None:
    for key in MODE_FIELD_KEYS:
        value = fields.get(key)
        if value is None:
            continue
        candidates = value if isinstance(value, list) else [value]
        for item in candidates:
            resolved = resolve_mode_alias(item)
            if resolved is not None:
                return resolved
    return None


def resolve_mode_for_stage(stage: StageConfig | None) -> ContestModeId | None:
    """Pick the quiz mode for a stage: explicit mode field, then the name, then the stage kind."""

    if stage is None:
        return None
    explicit = _mode_from_fields(stage.raw_fields)
    if explicit is not None:
        return explicit
    from_name = resolve_mode_alias(stage.name)
    if from_name is not None:
        return from_name

    name = stage.name.strip().lower()
    if name:
        for keywords, mode_id in MODE_NAME_KEYWORDS:
            if any(k in name for k in keywords):
                return mode_id

    if stage.kind == StageKind.grab:
        return ContestModeId.ocean_adventure
    if stage.kind == StageKind.standard and name:
        return ContestModeId.qa
    return None
