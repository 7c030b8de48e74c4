from __future__ import annotations

import httpx
import pytest
from fakes import EVENTS_PATH, FakeServices, fusion_ok, record, records_path, seed_contest

from contestant.config import Settings
from contestant.infra.fusion import DatasheetRecord
from contestant.infra.http import ApiError
from contestant.quiz.modes import ContestModeId
from contestant.stage_workflow import COMMAND_LOG_LIMIT, StageStore, StageWorkflow
from contestant.stages import (
    StageConfig,
    StageKind,
    find_record_by_identifier,
    resolve_mode_for_stage,
    resolve_stage_kind,
)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def workflow(settings: Settings, services: FakeServices, sleeps: SleepRecorder) -> StageWorkflow:
    seed_contest(services)
    return StageWorkflow(
        fusion=services.fusion(settings),
        pool=services.pool(settings),
        question_bank=services.question_bank(settings),
        sleep=sleeps,
    )


async def _select(workflow: StageWorkflow) -> None:
    await workflow.load_events()
    await workflow.select_event_by_ordinal(0, "team-1")


@pytest.mark.asyncio
async def test_select_event_loads_stages_and_team_profile(workflow: StageWorkflow) -> None:
    events = await workflow.load_events()
    assert [e.id for e in events] == ["dst-event-1", "dst-event-2"]
    assert events[1].name == "赛事2"

    stages = await workflow.select_event_by_ordinal(0, "team-1")

    assert [(s.stage_id, s.kind) for s in stages] == [
        ("0", StageKind.meta),
        ("1", StageKind.standard),
        ("2", StageKind.grab),
    ]
    store = workflow.store
    assert store.selected_event is not None and store.selected_event.id == "dst-event-1"
    assert store.team_profile is not None
    assert store.team_profile.record_id == "recT1"
    assert store.team_profile.display_name == "Harbor High"


@pytest.mark.asyncio
async def test_unknown_ordinal_is_rejected(workflow: StageWorkflow) -> None:
    await workflow.load_events()

    with pytest.raises(ValueError, match="未找到编号为 5 的赛事"):
        await workflow.select_event_by_ordinal(5)


@pytest.mark.asyncio
async def test_event_list_failure_is_stored_and_raised(settings: Settings, services: FakeServices) -> None:
    services.on("GET", EVENTS_PATH, {"code": 401, "success": False, "message": "token invalid"})
    workflow = StageWorkflow(fusion=services.fusion(settings))

    with pytest.raises(ApiError, match="token invalid"):
        await workflow.load_events()

    assert workflow.store.error == "赛事列表获取失败"
    assert not workflow.store.is_loading


@pytest.mark.asyncio
async def test_standard_stage_activation_loads_everything(workflow: StageWorkflow, sleeps: SleepRecorder) -> None:
    await _select(workflow)

    stage = await workflow.activate_stage("1", "team-1")

    store = workflow.store
    assert store.current_stage == stage
    assert not store.waiting_for_stage_start
    assert [q.id for q in store.questions] == ["Q1"]
    assert store.questions[0].record_id == "recQ1"
    assert store.score_record is not None and store.score_record.record_id == "recSc1"
    assert sleeps.delays == []


@pytest.mark.asyncio
async def test_grab_stage_waits_for_start_signal(workflow: StageWorkflow) -> None:
    await _select(workflow)

    await workflow.activate_stage("2", "team-1")
    assert workflow.waiting_for_stage_start
    assert workflow.store.questions == []

    assert workflow.open_stage_gate() is True
    assert not workflow.waiting_for_stage_start
    assert workflow.open_stage_gate() is False


@pytest.mark.asyncio
async def test_gate_only_opens_for_grab_stages(workflow: StageWorkflow) -> None:
    await _select(workflow)
    await workflow.activate_stage("1", "team-1")

    assert workflow.open_stage_gate() is False


@pytest.mark.asyncio
async def test_unknown_stage_is_rejected(workflow: StageWorkflow) -> None:
    await _select(workflow)

    with pytest.raises(ValueError, match="未找到环节 9"):
        await workflow.activate_stage("9", "team-1")


@pytest.mark.asyncio
async def test_question_fetch_retries_with_backoff_then_gives_up(
    workflow: StageWorkflow, services: FakeServices, sleeps: SleepRecorder
) -> None:
    await _select(workflow)
    services.on("GET", records_path("dst-q1"), lambda _req: httpx.Response(503, text="busy"))

    await workflow.activate_stage("1", "team-1")

    assert sleeps.delays == [1.0, 2.0, 4.0]
    assert len(services.calls("GET", records_path("dst-q1"))) == 4
    store = workflow.store
    assert store.error == "环节数据加载失败"
    assert not store.waiting_for_stage_start
    assert store.questions == []
    # Other lookups still ran.
    assert store.score_record is not None


@pytest.mark.asyncio
async def test_question_fetch_stops_retrying_after_success(
    workflow: StageWorkflow, services: FakeServices, sleeps: SleepRecorder
) -> None:
    await _select(workflow)
    attempts = {"n": 0}

    def flaky(_req: httpx.Request) -> httpx.Response:
        attempts["n"] += 1
        if attempts["n"] == 1:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json=fusion_ok({"records": [record("recQ1", ID="Q1", answer="A")]}))

    services.on("GET", records_path("dst-q1"), flaky)

    await workflow.activate_stage("1", "team-1")

    assert sleeps.delays == [1.0]
    assert [q.id for q in workflow.store.questions] == ["Q1"]
    assert workflow.store.error is None


@pytest.mark.asyncio
async def test_team_lookup_failure_does_not_block_score_record(workflow: StageWorkflow, services: FakeServices) -> None:
    await _select(workflow)
    services.on("GET", records_path("dst-general"), lambda _req: httpx.Response(500, text="boom"))

    await workflow.activate_stage("1", "team-1")

    assert workflow.store.score_record is not None
    assert [q.id for q in workflow.store.questions] == ["Q1"]


@pytest.mark.asyncio
async def test_grab_appends_new_and_replaces_known_questions(workflow: StageWorkflow, services: FakeServices) -> None:
    await _select(workflow)
    await workflow.activate_stage("2", "team-1")
    grabs = iter(
        [
            {"success": True, "question": {"id": 7, "title": "first"}, "remainingCount": 4},
            {"success": True, "question": {"id": 7, "title": "again"}, "remainingCount": 3},
            {"success": True, "question": {"id": 8, "title": "second"}, "remainingCount": 2},
        ]
    )
    services.on("POST", "/api/grab-with-details", lambda _req: httpx.Response(200, json=next(grabs)))

    await workflow.grab_next_question("team-1")
    await workflow.grab_next_question("team-1")
    result = await workflow.grab_next_question("team-1")

    store = workflow.store
    assert [(q.id, q.content) for q in store.questions] == [("7", "again"), ("8", "second")]
    assert store.remaining_count == 2 == result.remaining_count
    assert not store.waiting_for_stage_start


@pytest.mark.asyncio
async def test_grab_without_pool_is_an_error(settings: Settings, services: FakeServices) -> None:
    workflow = StageWorkflow(fusion=services.fusion(settings))

    with pytest.raises(ApiError):
        await workflow.grab_next_question("team-1")


@pytest.mark.asyncio
async def test_mode_questions_come_from_the_question_bank(workflow: StageWorkflow, services: FakeServices) -> None:
    services.on(
        "GET",
        "/api/questions",
        {"code": 200, "data": {"records": [record("r1", ID="S1", answer="A"), record("r2", ID="S2", answer="B")]}},
    )

    questions = await workflow.load_mode_questions(ContestModeId.speed_run)

    assert [q.id for q in questions] == ["S1", "S2"]
    assert workflow.store.questions == questions
    (request,) = services.calls("GET", "/api/questions")
    assert request.url.params["mode"] == "speed-run"


def test_command_log_keeps_the_latest_entries() -> None:
    store = StageStore()
    for i in range(COMMAND_LOG_LIMIT + 5):
        store.log_command(f"cmd-{i}")

    assert len(store.command_log) == COMMAND_LOG_LIMIT
    assert store.command_log[0] == "cmd-5"
    assert store.command_log[-1] == f"cmd-{COMMAND_LOG_LIMIT + 4}"


def test_store_reset_restores_defaults() -> None:
    store = StageStore(waiting_for_stage_start=True, error="x", command_log=["race-1"])

    store.reset()

    assert store == StageStore()


def test_stage_kind_by_name() -> None:
    assert resolve_stage_kind("学校信息") == StageKind.meta
    assert resolve_stage_kind("题海遨游") == StageKind.grab
    assert resolve_stage_kind("终极挑战") == StageKind.standard
    assert resolve_stage_kind("茶歇") == StageKind.unknown
    assert resolve_stage_kind(None) == StageKind.unknown


def _stage(name: str, kind: StageKind = StageKind.unknown, **fields: object) -> StageConfig:
    return StageConfig(order=1, stage_id="1", record_id="rec", name=name, kind=kind, raw_fields=dict(fields))


def test_mode_for_stage_prefers_explicit_field_then_name_then_kind() -> None:
    assert resolve_mode_for_stage(_stage("有问必答", StageKind.standard, 模式="speedrun")) == ContestModeId.speed_run
    assert resolve_mode_for_stage(_stage("一站到底", StageKind.standard)) == ContestModeId.last_stand
    assert resolve_mode_for_stage(_stage("决赛终极对决")) == ContestModeId.ultimate_challenge
    assert resolve_mode_for_stage(_stage("第二轮", StageKind.grab)) == ContestModeId.ocean_adventure
    assert resolve_mode_for_stage(_stage("第三轮", StageKind.standard)) == ContestModeId.qa
    assert resolve_mode_for_stage(_stage("茶歇")) is None
    assert resolve_mode_for_stage(None) is None


def test_record_lookup_by_identifier() -> None:
    records = [
        DatasheetRecord(record_id="a", fields={}),
        DatasheetRecord(record_id="b", fields={"编号": "team-2 "}),
        DatasheetRecord(record_id="c", fields={"备注": "team-3"}),
    ]

    assert find_record_by_identifier(records, "team-2") is records[1]
    assert find_record_by_identifier(records, "team-3") is records[2]
    assert find_record_by_identifier(records, "team-4") is None
