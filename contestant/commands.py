from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from contestant.notices import NoticeBoard
from contestant.quiz.evaluation import EmptyAnswerError
from contestant.quiz.fsm import BuzzerPhase
from contestant.quiz.runtime import QuizRuntime
from contestant.session_store import SessionStore
from contestant.stage_workflow import StageWorkflow
from contestant.stages import StageKind, resolve_mode_for_stage
from contestant.transport import Message

logger = logging.getLogger(__name__)

_RACE_RE = re.compile(r"^race-(\d+)$", re.IGNORECASE)
_STAGE_START_RE = re.compile(r"^(\d+)-start$", re.IGNORECASE)
_QUESTION_SELECT_RE = re.compile(r"^(?:q(?:uestion)?)[-\s]?(\d+)$", re.IGNORECASE)
_DIGITS_RE = re.compile(r"^([0-9]+)$")

START_BUZZING = "start_buzzing"


class CommandKind(StrEnum):
    race = "race"
    stage_start = "stage_start"
    pool_start = "pool_start"
    question_select = "question_select"
    submit = "submit"
    refresh = "refresh"
    home = "home"
    unknown = "unknown"


@dataclass(frozen=True, slots=True)
class ParsedCommand:
    kind: CommandKind
    raw: str
    # Zero-based for race and question_select.
    ordinal: int | None = None
    stage_id: str | None = None


def parse_race_command(command: str) -> int | None:
    match = _RACE_RE.match(command)
    if not match:
        return None
    ordinal = int(match.group(1))
    return ordinal - 1 if ordinal > 0 else None


def parse_stage_start_command(command: str) -> str | None:
    match = _STAGE_START_RE.match(command)
    return match.group(1) if match else None


def parse_question_select_command(command: str) -> int | None:
    trimmed = command.strip()
    match = _QUESTION_SELECT_RE.match(trimmed) or _DIGITS_RE.match(trimmed)
    if not match:
        return None
    ordinal = int(match.group(1))
    return ordinal - 1 if ordinal > 0 else None


def parse_command(payload: str) -> ParsedCommand:
    command = payload.strip()
    lower = command.lower()
    if lower == "refresh":
        return ParsedCommand(CommandKind.refresh, command)
    if lower == "home":
        return ParsedCommand(CommandKind.home, command)
    if lower == "submit":
        return ParsedCommand(CommandKind.submit, command)
    if lower in ("start", "pool-start"):
        return ParsedCommand(CommandKind.pool_start, command)

    race = parse_race_command(command)
    if race is not None:
        return ParsedCommand(CommandKind.race, command, ordinal=race)
    stage_id = parse_stage_start_command(command)
    if stage_id is not None:
        return ParsedCommand(CommandKind.stage_start, command, stage_id=stage_id)
    question = parse_question_select_command(command)
    if question is not None:
        return ParsedCommand(CommandKind.question_select, command, ordinal=question)
    return ParsedCommand(CommandKind.unknown, command)


def parse_control_action(payload: str) -> str | None:
    """Action name of a control message: plain text, or JSON with action/type/command."""

    raw = payload.strip()
    if not raw:
        return None
    action: str | None = None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        action = raw
    else:
        if isinstance(parsed, dict):
            for key in ("action", "type", "command"):
                candidate = parsed.get(key)
                if candidate is not None:
                    action = candidate if isinstance(candidate, str) else None
                    break
    return (action or raw).strip().lower()


def parse_winner_id(payload: str) -> str | None:
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Failed to parse buzz result payload: %r", payload)
        return None
    if not isinstance(parsed, dict):
        return None
    for key in ("winnerId", "winner_id", "winnerID"):
        candidate = parsed.get(key)
        if candidate is not None:
            winner = str(candidate).strip()
            return winner or None
    return None


class CommandDispatcher:
    """Turns broker traffic on the command, control and result topics into actions.

    Every failure is logged and surfaced as a notice; the dispatcher keeps running.
    Each topic drops deliveries whose timestamp is not newer than the last handled one.
    """

    def __init__(
        self,
        *,
        workflow: StageWorkflow,
        runtime: QuizRuntime,
        session: SessionStore,
        notices: NoticeBoard,
        on_refresh: Callable[[], Awaitable[None] | None] | None = None,
    ) -> None:
        self.workflow = workflow
        self.runtime = runtime
        self.session = session
        self.notices = notices
        self.on_refresh = on_refresh
        self._last_timestamps: dict[str, int] = {}

    def _is_duplicate(self, message: Message) -> bool:
        last = self._last_timestamps.get(message.topic)
        if last is not None and message.timestamp <= last:
            logger.debug("Dropping duplicate delivery on %s (ts=%s)", message.topic, message.timestamp)
            return True
        self._last_timestamps[message.topic] = message.timestamp
        return False

    # ---- command topic ----

    async def handle_message(self, message: Message) -> None:
        if self._is_duplicate(message):
            return
        await self.handle_command(message.payload)

    async def handle_command(self, payload: str) -> ParsedCommand | None:
        command = payload.strip()
        if not command:
            return None
        self.workflow.store.log_command(command)
        parsed = parse_command(command)
        logger.info("Command %r -> %s", command, parsed.kind.value)
        try:
            await self._dispatch(parsed)
        except Exception as e:
            logger.exception("Failed to handle command %r", command)
            self.notices.error(f"{_FAILURE_NOTICES.get(parsed.kind, '指令处理失败')}: {e}")
        return parsed

    async def _dispatch(self, parsed: ParsedCommand) -> None:
        kind = parsed.kind
        if kind == CommandKind.refresh:
            await self._refresh()
        elif kind == CommandKind.home:
            self.notices.info("已返回等待页")
        elif kind == CommandKind.race and parsed.ordinal is not None:
            await self._select_race(parsed.ordinal)
        elif kind == CommandKind.stage_start and parsed.stage_id is not None:
            await self._start_stage(parsed.stage_id)
        elif kind == CommandKind.pool_start:
            await self._start_pool()
        elif kind == CommandKind.question_select and parsed.ordinal is not None:
            self._select_question(parsed.ordinal)
        elif kind == CommandKind.submit:
            await self._forced_submit()
        else:
            logger.debug("Ignoring unrecognized command %r", parsed.raw)

    async def _refresh(self) -> None:
        self.runtime.switch_mode(None)
        self.workflow.store.reset()
        self.session.logout()
        self.notices.success("选手端已重置")
        if self.on_refresh is not None:
            result = self.on_refresh()
            if result is not None:
                await result

    async def _select_race(self, ordinal: int) -> None:
        workflow = self.workflow
        if not workflow.store.events:
            await workflow.load_events()
        await workflow.select_event_by_ordinal(ordinal, self.session.user_id)
        self.notices.success(f"已切换到赛事 {ordinal + 1}")

    async def _start_stage(self, stage_id: str) -> None:
        user_id = self.session.user_id
        if not user_id:
            logger.info("Ignoring stage start %s: no contestant logged in", stage_id)
            return
        workflow = self.workflow
        stage = await workflow.activate_stage(stage_id, user_id)
        self.runtime.switch_mode(resolve_mode_for_stage(stage))

        store = workflow.store
        if store.questions:
            self.runtime.load_questions(store.questions, remaining_count=store.remaining_count)
        if store.error:
            self.notices.error(store.error)

    async def _start_pool(self) -> None:
        store = self.workflow.store
        stage = store.current_stage
        if stage is None or stage.kind != StageKind.grab or not store.waiting_for_stage_start:
            logger.info("Ignoring pool start: no grab stage waiting to start")
            return
        if not self.session.user_id:
            return
        self.workflow.open_stage_gate()
        await self.runtime.fetch_next_question()

    def _select_question(self, index: int) -> None:
        runtime = self.runtime
        if not runtime.jump_to_question(index):
            return
        if runtime.mode.is_buzzer:
            runtime.reset_round()

    async def _forced_submit(self) -> None:
        runtime = self.runtime
        if runtime.mode.question_flow != "push":
            return
        try:
            await runtime.submit_answer(allow_empty=True)
        except EmptyAnswerError as e:
            self.notices.warning(str(e))

    # ---- control topic ----

    async def handle_control(self, message: Message) -> None:
        if self._is_duplicate(message):
            return
        action = parse_control_action(message.payload)
        if action != START_BUZZING:
            return
        if self.runtime.signal_start_buzzing():
            logger.info("Buzzing opened")

    # ---- result topic ----

    async def handle_result(self, message: Message) -> None:
        if self._is_duplicate(message):
            return
        runtime = self.runtime
        if not runtime.mode.is_buzzer:
            return
        if runtime.state.phase not in (BuzzerPhase.buzz, BuzzerPhase.decision):
            return
        winner_id = parse_winner_id(message.payload)
        if winner_id is None:
            return

        user_id = self.session.user_id
        if user_id and winner_id == str(user_id):
            if runtime.delegate_answer_to(winner_id, is_self=True):
                runtime.set_selection(None)
                self.notices.success("抢答成功，开始作答")
            else:
                self.notices.warning("当前不可进入作答阶段")
            return
        if runtime.delegate_answer_to(winner_id, is_self=False):
            self.notices.info("本题由其他队伍抢答成功")


_FAILURE_NOTICES = {
    CommandKind.race: "赛事切换失败",
    CommandKind.stage_start: "环节启动失败",
    CommandKind.pool_start: "获取题目失败",
    CommandKind.submit: "答案提交失败",
}
