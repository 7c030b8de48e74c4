from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable
from typing import Literal, Protocol

import httpx
from statemachine.exceptions import TransitionNotAllowed

from contestant.infra.http import ApiError
from contestant.infra.pool import POOL_EMPTY_MESSAGE, GrabResult, PoolClient, PoolSubmission, is_pool_empty
from contestant.lease import now_ms
from contestant.notices import NoticeBoard
from contestant.quiz.evaluation import Answer, Outcome, evaluate, prepare_submission
from contestant.quiz.fsm import BuzzerFSM, BuzzerPhase
from contestant.quiz.modes import ContestMode, ContestModeId, resolve_mode
from contestant.quiz.questions import (
    NormalizedQuestion,
    OceanQuestion,
    StandardQuestion,
    question_key,
    to_ocean_question,
    to_standard_question,
)
from contestant.quiz.state import QuizRuntimeState, SubmissionContext, SubmissionResult, initial_state
from contestant.scheduling import PeriodicTask
from contestant.session_store import SessionStore

logger = logging.getLogger(__name__)

TIMER_TICK_S = 0.25

StateListener = Callable[[QuizRuntimeState], None]
SubmissionHook = Callable[[SubmissionContext], Awaitable[None]]


class QuestionFeed(Protocol):
    """Where the runtime pulls questions from when it needs more on its own."""

    @property
    def waiting_for_stage_start(self) -> bool:  # pragma: no cover
        ...

    async def grab_next_question(self, user_id: str) -> GrabResult:  # pragma: no cover
        ...

    async def load_mode_questions(self, mode: ContestModeId) -> list[NormalizedQuestion]:  # pragma: no cover
        ...


class QuizRuntime:
    """Single owner of the contestant's quiz state for the active mode.

    Contract:
      - `state.answering_enabled` is derived, never stored; every operation that would
        record an answer first checks it and is a no-op when it is false
      - switching modes or resetting bumps a generation counter; results of HTTP calls
        started under an older generation are dropped
      - the buzzer phase only moves along waiting -> buzz -> decision -> answer|locked -> waiting
    """

    def __init__(
        self,
        *,
        session: SessionStore,
        notices: NoticeBoard,
        pool: PoolClient | None = None,
        feed: QuestionFeed | None = None,
        on_submitted: SubmissionHook | None = None,
        mode: str | None = None,
        clock_ms: Callable[[], int] = now_ms,
        tick_interval_s: float = TIMER_TICK_S,
    ) -> None:
        self.session = session
        self.notices = notices
        self.pool = pool
        self.feed = feed
        self.on_submitted = on_submitted
        self._clock_ms = clock_ms
        self._listeners: list[StateListener] = []
        self._timer = PeriodicTask(name="quiz-timer", interval_s=tick_interval_s, callback=self.tick)

        self.mode: ContestMode = resolve_mode(mode)
        self.state: QuizRuntimeState = initial_state(self.mode)
        self._generation = 0
        self._init_round_state()

    def _init_round_state(self) -> None:
        self._questions: list[StandardQuestion | OceanQuestion] = []
        self._sources: list[NormalizedQuestion] = []
        self._cursor = 0
        self._remaining_count: int | None = None
        self._gate_open = False
        self._fsm: BuzzerFSM | None = BuzzerFSM() if self.mode.is_buzzer else None
        self._buzzing_open_for: str | None = None
        self._deadline_ms: int | None = None
        self._started_ms: int | None = None
        self._question_started_ms: int | None = None
        self._timer_initialized = False
        self._submitting = False
        self._fetching = False
        self._pool_empty_handled = False
        self.selection: Answer | None = None

    # ---- observation ----

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("Runtime listener failed")

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def questions(self) -> list[StandardQuestion | OceanQuestion]:
        return list(self._questions)

    @property
    def timer_running(self) -> bool:
        return self._timer.running

    @property
    def buzzing_open(self) -> bool:
        q = self.state.question
        return q is not None and self._buzzing_open_for == question_key(q)

    # ---- mode lifecycle ----

    def _reset_local(self) -> None:
        self.stop_timer()
        self._generation += 1
        self._init_round_state()
        self.state = initial_state(self.mode)

    def switch_mode(self, mode_id: str | None) -> ContestMode:
        self.mode = resolve_mode(mode_id)
        logger.info("Quiz mode -> %s", self.mode.id.value)
        self._reset_local()
        self.session.clear_answers()
        self.session.set_current_question(None)
        self._notify()
        return self.mode

    async def reset(self) -> None:
        self.session.clear_answers()
        self._reset_local()
        self.session.set_current_question(None)
        self._notify()

        if self.mode.question_flow == "local":
            await self._load_local_questions()
        elif self.mode.question_flow == "pull":
            if self.feed is None or not self.feed.waiting_for_stage_start:
                await self.fetch_next_question()

    async def _load_local_questions(self) -> None:
        if self.feed is None:
            return
        generation = self._generation
        try:
            items = await self.feed.load_mode_questions(self.mode.id)
        except (ApiError, httpx.HTTPError) as e:
            logger.error("Failed to load questions for %s: %s", self.mode.id.value, e)
            self.notices.error("题目加载失败")
            return
        if generation != self._generation:
            logger.debug("Dropping stale question list")
            return
        self.load_questions(items)

    # ---- questions ----

    def _convert(self, item: NormalizedQuestion) -> StandardQuestion | OceanQuestion:
        if self.mode.question_format == "custom":
            return to_ocean_question(item)
        return to_standard_question(item)

    def load_questions(
        self,
        items: list[NormalizedQuestion],
        *,
        remaining_count: int | None = None,
        index: int = 0,
    ) -> None:
        """Replace the question list (stage activation, local fetch) and show the current one."""

        self._sources = list(items)
        self._questions = [self._convert(i) for i in items]
        self._remaining_count = remaining_count
        self._cursor = index
        self._assign_current()
        self._maybe_start_mode_timer()
        self._notify()

    def push_question(self, item: NormalizedQuestion, *, remaining_count: int | None = None) -> None:
        """Add one grabbed question and make it current."""

        converted = self._convert(item)
        for i, existing in enumerate(self._sources):
            if existing.id == item.id:
                self._sources[i] = item
                self._questions[i] = converted
                self._cursor = i
                break
        else:
            self._sources.append(item)
            self._questions.append(converted)
            self._cursor = len(self._questions) - 1
        self._remaining_count = remaining_count
        self._gate_open = True
        self._assign_current()
        self._maybe_start_mode_timer()
        self._notify()

    def jump_to_question(self, index: int) -> bool:
        """Host selected a question by position; opens the question gate for push flows."""

        if not self._questions:
            logger.warning("Ignoring jump to question %s: no questions loaded", index + 1)
            return False
        self._cursor = min(max(index, 0), len(self._questions) - 1)
        self._gate_open = True
        self._assign_current()
        self._notify()
        return True

    def _total(self) -> int:
        fetched = len(self._questions)
        if self.mode.id == ContestModeId.ocean_adventure:
            remaining = max(0, self._remaining_count or 0)
            return fetched + remaining
        return fetched

    def _assign_current(self) -> None:
        st = self.state
        hold = self.mode.question_flow == "push" and not self._gate_open
        if not self._questions:
            index = -1
            question = None
        else:
            index = min(max(self._cursor, 0), len(self._questions) - 1)
            question = self._questions[index]
        if hold:
            question = None
        if self.mode.features.has_hp and (st.hp or 0) <= 0:
            question = None

        st.question = question
        st.question_index = -1 if hold else index
        st.total_questions = self._total()
        self.selection = None
        st.delegation_target_id = None
        st.awaiting_host = (hold or question is None) if self.mode.question_flow != "local" else False

        if self._fsm is not None:
            self._buzzing_open_for = None
            if self._fsm.phase != BuzzerPhase.waiting:
                self._fsm.reset_round()
            if question is not None:
                self._fsm.question_ready()
            st.phase = self._fsm.phase
            self._question_started_ms = None
        elif question is not None:
            self._question_started_ms = self._clock_ms()

        self.session.set_current_question(question_key(question) if question is not None else None)

    async def request_next_question(self) -> None:
        if self.mode.features.has_hp and (self.state.hp or 0) <= 0:
            return
        if self.mode.question_flow == "local":
            if self._cursor + 1 < len(self._questions):
                self._cursor += 1
                self._assign_current()
                self._notify()
            return
        if self.mode.id == ContestModeId.ocean_adventure:
            await self.fetch_next_question()

    async def fetch_next_question(self) -> None:
        user_id = self.session.user_id
        if not user_id or self.feed is None or self._fetching:
            return
        generation = self._generation
        self._fetching = True
        try:
            result = await self.feed.grab_next_question(user_id)
        except ApiError as e:
            if is_pool_empty(e):
                self._handle_pool_empty()
                return
            logger.error("Failed to grab next question: %s", e)
            self.notices.error("获取题目失败")
            return
        except httpx.HTTPError as e:
            logger.error("Failed to grab next question: %s", e)
            self.notices.error("获取题目失败")
            return
        finally:
            self._fetching = False

        if generation != self._generation:
            logger.debug("Dropping stale grabbed question")
            return
        if result.question is None:
            self._handle_pool_empty()
            return
        self.push_question(result.question, remaining_count=result.remaining_count)

    def _handle_pool_empty(self) -> None:
        if self._pool_empty_handled:
            return
        self._pool_empty_handled = True
        self.notices.info(POOL_EMPTY_MESSAGE)
        self.stop_timer()
        self.state.finished = True
        self._notify()

    # ---- timer ----

    def _maybe_start_mode_timer(self) -> None:
        limit = self.mode.features.time_limit_seconds
        if not limit or self._timer_initialized or not self._questions:
            return
        self._timer_initialized = True
        self.start_timer(limit)

    def start_timer(self, seconds: int | None = None) -> None:
        seconds = seconds if seconds is not None else self.mode.features.time_limit_seconds
        self.stop_timer()
        if not seconds or seconds <= 0:
            return
        now = self._clock_ms()
        self._deadline_ms = now + seconds * 1000
        self._started_ms = now
        self._question_started_ms = now
        self.state.time_remaining = seconds
        self.state.time_elapsed = 0
        self._timer.start()
        self._notify()

    def stop_timer(self) -> None:
        self._timer.cancel()
        self._deadline_ms = None
        self._started_ms = None

    def tick(self) -> None:
        deadline, started = self._deadline_ms, self._started_ms
        if deadline is None or started is None:
            return
        now = self._clock_ms()
        remaining = max(math.ceil((deadline - now) / 1000), 0)
        elapsed = max(math.floor((now - started) / 1000), 0)
        st = self.state

        if remaining <= 0:
            self.stop_timer()
            st.time_remaining = 0
            st.time_elapsed = elapsed
            st.finished = True
            if self.mode.id == ContestModeId.ocean_adventure and self.mode.features.has_hp:
                # Running out of time locks the ocean result.
                st.hp = 0
                st.awaiting_host = True
            logger.info("Quiz timer expired after %ss", elapsed)
            self._notify()
            return

        if st.time_remaining == remaining and st.time_elapsed == elapsed:
            return
        st.time_remaining = remaining
        st.time_elapsed = elapsed
        self._notify()

    # ---- answering ----

    def _duration_ms(self) -> int | None:
        if self._question_started_ms is None:
            return None
        return self._clock_ms() - self._question_started_ms

    def _source_for(self, question: StandardQuestion | OceanQuestion) -> NormalizedQuestion | None:
        key = question_key(question)
        return next((s for s in self._sources if s.id == key), None)

    def set_selection(self, value: Answer | None) -> None:
        """Track what the contestant currently has selected (used by host-forced submits)."""

        self.selection = value

    async def submit_answer(
        self,
        selection: Answer | None = None,
        *,
        allow_empty: bool = False,
    ) -> SubmissionResult | None:
        """Record, judge and apply one answer for the current question.

        Returns None without touching anything when answering is disabled or another
        submission is still in flight. Raises EmptyAnswerError for an empty selection
        unless `allow_empty` is set.
        """

        if self._submitting:
            logger.info("Submission already in flight; ignoring")
            return None
        st = self.state
        question = st.question
        if not st.answering_enabled or question is None:
            return None

        if selection is None:
            selection = self.selection
        prepared = prepare_submission(question, selection, allow_empty=allow_empty)
        index = st.question_index
        generation = self._generation
        self._submitting = True
        try:
            pool_result: PoolSubmission | None = None
            if self.mode.id == ContestModeId.ocean_adventure and isinstance(question, OceanQuestion):
                pool_result = await self._submit_to_pool(question, prepared.value)
                if pool_result is None or generation != self._generation:
                    return None

            outcome = self._judge(question, prepared.value, pool_result)
            duration_ms = self._duration_ms()
            self.session.set_answer(
                question_key(question),
                prepared.value,
                duration_ms=duration_ms,
                metadata={"mode": self.mode.id.value, "index": index, "outcome": outcome.value},
            )

            hp_after = self._apply_outcome_to_hp(outcome)
            self._advance_after_submit(index, hp_after)
            self._notify()

            result = SubmissionResult(
                outcome=outcome,
                raw_result=pool_result.result if pool_result is not None else None,
                hp_after_answer=hp_after,
                correct_answer=pool_result.correct_answer if pool_result is not None else None,
                score=pool_result.score if pool_result is not None else None,
                stats=pool_result.stats if pool_result is not None else None,
            )

            if isinstance(question, StandardQuestion) and prepared.sheet_answer is not None:
                await self._sync(
                    SubmissionContext(
                        mode=self.mode.id,
                        question=question,
                        source=self._source_for(question),
                        question_index=index,
                        sheet_answer=prepared.sheet_answer,
                        outcome=outcome,
                        duration_ms=duration_ms,
                        hp_after_answer=hp_after,
                    )
                )
            return result
        finally:
            self._submitting = False

    async def _submit_to_pool(self, question: OceanQuestion, value: Answer) -> PoolSubmission | None:
        user_id = self.session.user_id
        if not user_id:
            self.notices.warning("缺少选手 ID，无法提交答案")
            return None
        if self.pool is None:
            logger.error("No question pool configured for %s", self.mode.id.value)
            self.notices.error("答案提交失败")
            return None
        answer: Answer = value[0] if isinstance(value, list) and len(value) == 1 else value
        try:
            return await self.pool.submit_answer(user_id=user_id, question_id=question.question_key, answer=answer)
        except (ApiError, httpx.HTTPError) as e:
            logger.error("Pool submission failed: %s", e)
            self.notices.error("答案提交失败")
            return None

    @staticmethod
    def _judge(
        question: StandardQuestion | OceanQuestion,
        value: Answer,
        pool_result: PoolSubmission | None,
    ) -> Outcome:
        if pool_result is not None and isinstance(pool_result.result, str):
            raw = pool_result.result.lower()
            if raw == "correct":
                return Outcome.correct
            if raw == "wrong":
                return Outcome.incorrect
        return evaluate(question, value)

    def _apply_outcome_to_hp(self, outcome: Outcome) -> int | None:
        features = self.mode.features
        if not features.has_hp:
            return None
        hp = self.state.hp or 0
        if outcome == Outcome.incorrect:
            hp = max(hp - features.hp_loss_per_wrong, 0)
            self.state.hp = hp
            if hp <= 0:
                self.stop_timer()
        return hp

    def _advance_after_submit(self, index: int, hp_after: int | None) -> None:
        st = self.state
        mode_id = self.mode.id
        if mode_id in (ContestModeId.qa, ContestModeId.last_stand):
            st.awaiting_host = True
        elif mode_id == ContestModeId.ultimate_challenge:
            self._question_started_ms = None
            if self._fsm is not None:
                self._fsm.answered()
                st.phase = self._fsm.phase
            st.awaiting_host = True
        elif mode_id == ContestModeId.speed_run:
            next_index = index + 1
            if next_index >= len(self._questions):
                self.stop_timer()
                st.finished = True
            else:
                self._cursor = next_index
                self._assign_current()
        elif mode_id == ContestModeId.ocean_adventure:
            st.awaiting_host = True
            if hp_after is not None and hp_after <= 0:
                st.question = None
                self.stop_timer()

    async def _sync(self, context: SubmissionContext) -> None:
        if self.on_submitted is None:
            return
        try:
            await self.on_submitted(context)
        except Exception as e:
            # Local state stays as is; only the bookkeeping write failed.
            logger.error("Failed to sync answer for %s: %s", context.question.id, e)
            self.notices.error("答题结果同步失败")

    # ---- host-driven adjustments ----

    def apply_host_judgement(self, result: Literal["correct", "wrong"]) -> None:
        features = self.mode.features
        if not features.has_hp or result == "correct":
            return
        hp = max((self.state.hp or 0) - features.hp_loss_per_wrong, 0)
        self.state.hp = hp
        if hp <= 0:
            self.stop_timer()
        self._notify()

    def signal_start_buzzing(self) -> bool:
        """Host opened buzzing for the question currently on screen."""

        q = self.state.question
        if self._fsm is None or q is None or self._fsm.phase != BuzzerPhase.buzz:
            return False
        self._buzzing_open_for = question_key(q)
        self._notify()
        return True

    def trigger_buzzer(self) -> bool:
        q = self.state.question
        if self._fsm is None or q is None or self._fsm.phase != BuzzerPhase.buzz:
            return False
        if self._buzzing_open_for != question_key(q):
            logger.info("Buzz rejected: buzzing not open for question %s", question_key(q))
            return False
        self._fsm.buzzed()
        self._buzzing_open_for = None
        self.state.phase = self._fsm.phase
        self.state.awaiting_host = False
        self._notify()
        return True

    def delegate_answer_to(self, target_id: str, *, is_self: bool = False) -> bool:
        st = self.state
        if self._fsm is None:
            st.delegation_target_id = target_id
            self._notify()
            return True

        try:
            if self._fsm.phase == BuzzerPhase.buzz:
                # The host picked a winner; the round is decided.
                self._fsm.buzzed()
            if is_self:
                self._fsm.delegate_self()
            else:
                self._fsm.delegate_other()
        except TransitionNotAllowed:
            logger.info("Ignoring delegation to %s in phase %s", target_id, self._fsm.phase.value)
            return False

        self._buzzing_open_for = None
        self._question_started_ms = self._clock_ms() if is_self else None
        st.delegation_target_id = target_id
        st.awaiting_host = False
        st.phase = self._fsm.phase
        self._notify()
        return True

    def reset_round(self) -> None:
        if self._fsm is None:
            return
        self._question_started_ms = None
        self._buzzing_open_for = None
        if self._fsm.phase != BuzzerPhase.waiting:
            self._fsm.reset_round()
        if self.state.question is not None:
            self._fsm.question_ready()
        st = self.state
        st.awaiting_host = True
        st.delegation_target_id = None
        st.phase = self._fsm.phase
        self._notify()

    def close(self) -> None:
        self.stop_timer()
        self._listeners.clear()
