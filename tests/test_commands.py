from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass, field

import fakeredis
import httpx
import pytest
from fakes import FakeServices, records_path, seed_contest

from contestant.commands import (
    CommandDispatcher,
    CommandKind,
    parse_command,
    parse_control_action,
    parse_question_select_command,
    parse_race_command,
    parse_stage_start_command,
    parse_winner_id,
)
from contestant.config import Settings
from contestant.notices import NoticeBoard
from contestant.quiz.fsm import BuzzerPhase
from contestant.quiz.modes import ContestModeId
from contestant.quiz.questions import NormalizedQuestion
from contestant.quiz.runtime import QuizRuntime
from contestant.session_store import SessionStore, User
from contestant.stage_workflow import COMMAND_LOG_LIMIT, StageWorkflow
from contestant.transport import Message


@pytest.mark.parametrize(
    ("command", "expected"),
    [("race-1", 0), ("RACE-3", 2), ("race-0", None), ("race-", None), ("racing-1", None)],
)
def test_parse_race_command(command: str, expected: int | None) -> None:
    assert parse_race_command(command) == expected


def test_parse_stage_and_question_commands() -> None:
    assert parse_stage_start_command("3-start") == "3"
    assert parse_stage_start_command("3-stop") is None

    assert parse_question_select_command("q2") == 1
    assert parse_question_select_command("question 3") == 2
    assert parse_question_select_command(" 5 ") == 4
    assert parse_question_select_command("0") is None
    assert parse_question_select_command("q") is None


def test_parse_command_kinds() -> None:
    kinds = {c: parse_command(c).kind for c in ("Refresh", "home", "submit", "START", "pool-start", "race-2", "1-start", "q4", "hello")}

    assert kinds == {
        "Refresh": CommandKind.refresh,
        "home": CommandKind.home,
        "submit": CommandKind.submit,
        "START": CommandKind.pool_start,
        "pool-start": CommandKind.pool_start,
        "race-2": CommandKind.race,
        "1-start": CommandKind.stage_start,
        "q4": CommandKind.question_select,
        "hello": CommandKind.unknown,
    }
    assert parse_command(" race-2 ").ordinal == 1
    assert parse_command("1-start").stage_id == "1"


def test_parse_control_action() -> None:
    assert parse_control_action("start_buzzing") == "start_buzzing"
    assert parse_control_action('{"action": "START_BUZZING"}') == "start_buzzing"
    assert parse_control_action('{"type": "pause"}') == "pause"
    assert parse_control_action("   ") is None


def test_parse_winner_id() -> None:
    assert parse_winner_id('{"winnerId": 12}') == "12"
    assert parse_winner_id('{"winner_id": "team-2"}') == "team-2"
    assert parse_winner_id('{"winnerID": "  "}') is None
    assert parse_winner_id("team-2") is None
    assert parse_winner_id("[1]") is None


async def _no_sleep(_seconds: float) -> None:
    return None


@dataclass
class Station:
    dispatcher: CommandDispatcher
    workflow: StageWorkflow
    runtime: QuizRuntime
    session: SessionStore
    notices: NoticeBoard
    refreshes: list[int] = field(default_factory=list)

    def messages(self) -> list[str]:
        return [n.message for n in self.notices.recent()]


@pytest.fixture()
def station(settings: Settings, services: FakeServices, r: fakeredis.FakeRedis) -> Generator[Station, None, None]:
    seed_contest(services)
    services.on(
        "POST",
        "/api/grab-with-details",
        {"success": True, "question": {"id": "p1", "title": "Sea?", "options": [{"value": "a", "text": "whale"}]}, "remainingCount": 3},
    )
    session = SessionStore(r=r)
    session.set_user(User(id="team-1"))
    notices = NoticeBoard()
    workflow = StageWorkflow(fusion=services.fusion(settings), pool=services.pool(settings), sleep=_no_sleep)
    runtime = QuizRuntime(session=session, notices=notices, pool=services.pool(settings), feed=workflow)
    refreshes: list[int] = []
    dispatcher = CommandDispatcher(
        workflow=workflow,
        runtime=runtime,
        session=session,
        notices=notices,
        on_refresh=lambda: refreshes.append(1),
    )
    st = Station(dispatcher, workflow, runtime, session, notices, refreshes)
    yield st
    runtime.close()


@pytest.mark.asyncio
async def test_race_command_selects_event(station: Station) -> None:
    await station.dispatcher.handle_command("race-1")

    assert station.workflow.store.selected_event is not None
    assert station.workflow.store.selected_event.id == "dst-event-1"
    assert station.workflow.store.command_log == ["race-1"]
    assert station.messages() == ["已切换到赛事 1"]


@pytest.mark.asyncio
async def test_failed_race_command_becomes_a_notice(station: Station) -> None:
    parsed = await station.dispatcher.handle_command("race-9")

    assert parsed is not None and parsed.kind == CommandKind.race
    assert station.messages() == ["赛事切换失败: 未找到编号为 8 的赛事"]


@pytest.mark.asyncio
async def test_stage_start_then_host_selects_question(station: Station) -> None:
    await station.dispatcher.handle_command("race-1")
    await station.dispatcher.handle_command("1-start")

    runtime = station.runtime
    assert runtime.mode.id == ContestModeId.qa
    assert [q.id for q in runtime.questions] == ["Q1"]  # type: ignore[union-attr]
    assert runtime.state.question is None

    await station.dispatcher.handle_command("1")
    assert runtime.state.question_index == 0
    assert runtime.state.answering_enabled


@pytest.mark.asyncio
async def test_stage_start_without_contestant_is_ignored(station: Station) -> None:
    await station.dispatcher.handle_command("race-1")
    station.session.logout()

    await station.dispatcher.handle_command("1-start")

    assert station.workflow.store.current_stage is None


@pytest.mark.asyncio
async def test_stage_start_failures_surface_as_notices(station: Station, services: FakeServices) -> None:
    await station.dispatcher.handle_command("race-1")
    services.on("GET", records_path("dst-q1"), lambda _req: httpx.Response(503, text="busy"))

    await station.dispatcher.handle_command("1-start")
    await station.dispatcher.handle_command("7-start")

    assert station.messages()[-2:] == ["环节数据加载失败", "环节启动失败: 未找到环节 7"]


@pytest.mark.asyncio
async def test_pool_start_releases_the_grab_stage(station: Station, services: FakeServices) -> None:
    await station.dispatcher.handle_command("race-1")
    await station.dispatcher.handle_command("2-start")

    runtime = station.runtime
    assert runtime.mode.id == ContestModeId.ocean_adventure
    assert station.workflow.waiting_for_stage_start
    assert runtime.state.question is None

    await station.dispatcher.handle_command("start")

    assert not station.workflow.waiting_for_stage_start
    assert runtime.state.question is not None
    assert runtime.state.total_questions == 4
    assert len(services.calls("POST", "/api/grab-with-details")) == 1


@pytest.mark.asyncio
async def test_pool_start_without_waiting_stage_is_ignored(station: Station, services: FakeServices) -> None:
    await station.dispatcher.handle_command("pool-start")

    assert services.calls("POST", "/api/grab-with-details") == []


@pytest.mark.asyncio
async def test_forced_submit_uses_current_selection(station: Station) -> None:
    await station.dispatcher.handle_command("race-1")
    await station.dispatcher.handle_command("1-start")
    await station.dispatcher.handle_command("1")
    station.runtime.set_selection("B")

    await station.dispatcher.handle_command("submit")

    record = station.session.answer_for("Q1")
    assert record is not None and record.value == "B"
    assert record.metadata["outcome"] == "correct"


@pytest.mark.asyncio
async def test_forced_submit_accepts_an_empty_selection(station: Station) -> None:
    await station.dispatcher.handle_command("race-1")
    await station.dispatcher.handle_command("1-start")
    await station.dispatcher.handle_command("1")

    await station.dispatcher.handle_command("submit")

    record = station.session.answer_for("Q1")
    assert record is not None and record.value == ""


@pytest.mark.asyncio
async def test_refresh_resets_everything(station: Station) -> None:
    await station.dispatcher.handle_command("race-1")
    await station.dispatcher.handle_command("1-start")

    await station.dispatcher.handle_command("refresh")

    assert not station.session.is_authenticated
    assert station.workflow.store.selected_event is None
    assert station.workflow.store.command_log == []
    assert station.runtime.mode.id == ContestModeId.qa
    assert station.runtime.questions == []
    assert station.refreshes == [1]
    assert station.messages()[-1] == "选手端已重置"


@pytest.mark.asyncio
async def test_home_and_unknown_commands(station: Station) -> None:
    await station.dispatcher.handle_command("home")
    await station.dispatcher.handle_command("dance")
    assert await station.dispatcher.handle_command("   ") is None

    assert station.messages() == ["已返回等待页"]
    assert station.workflow.store.command_log == ["home", "dance"]


@pytest.mark.asyncio
async def test_command_log_is_bounded(station: Station) -> None:
    for i in range(COMMAND_LOG_LIMIT + 3):
        await station.dispatcher.handle_command(f"noop-{i}")

    log = station.workflow.store.command_log
    assert len(log) == COMMAND_LOG_LIMIT
    assert log[-1] == f"noop-{COMMAND_LOG_LIMIT + 2}"


@pytest.mark.asyncio
async def test_duplicate_deliveries_are_dropped(station: Station) -> None:
    await station.dispatcher.handle_message(Message(topic="cmd", payload="home", timestamp=5))
    await station.dispatcher.handle_message(Message(topic="cmd", payload="home", timestamp=5))
    await station.dispatcher.handle_message(Message(topic="cmd", payload="home", timestamp=6))

    assert station.workflow.store.command_log == ["home", "home"]


async def _ultimate_round(station: Station) -> QuizRuntime:
    runtime = station.runtime
    runtime.switch_mode("ultimate-challenge")
    runtime.load_questions([NormalizedQuestion(id="u1", answer=["A"])])
    await station.dispatcher.handle_command("1")
    return runtime


@pytest.mark.asyncio
async def test_buzz_result_for_this_team_opens_answering(station: Station) -> None:
    runtime = await _ultimate_round(station)
    assert runtime.state.phase == BuzzerPhase.buzz

    await station.dispatcher.handle_control(Message(topic="quiz/control", payload='{"action":"start_buzzing"}', timestamp=1))
    assert runtime.buzzing_open

    await station.dispatcher.handle_result(Message(topic="quiz/result", payload='{"winnerId":"team-1"}', timestamp=1))

    assert runtime.state.phase == BuzzerPhase.answer
    assert runtime.state.answering_enabled
    assert station.messages()[-1] == "抢答成功，开始作答"


@pytest.mark.asyncio
async def test_buzz_result_for_another_team_locks(station: Station) -> None:
    runtime = await _ultimate_round(station)

    await station.dispatcher.handle_result(Message(topic="quiz/result", payload='{"winnerId":"team-2"}', timestamp=1))

    assert runtime.state.phase == BuzzerPhase.locked
    assert runtime.state.delegation_target_id == "team-2"
    assert station.messages()[-1] == "本题由其他队伍抢答成功"


@pytest.mark.asyncio
async def test_buzz_result_ignored_outside_buzzer_modes(station: Station) -> None:
    await station.dispatcher.handle_result(Message(topic="quiz/result", payload='{"winnerId":"team-1"}', timestamp=1))

    assert station.runtime.state.delegation_target_id is None
    assert station.messages() == []
