from __future__ import annotations

from enum import StrEnum

from statemachine import State, StateMachine


class BuzzerPhase(StrEnum):
    waiting = "waiting"
    buzz = "buzz"
    decision = "decision"
    locked = "locked"
    answer = "answer"


class BuzzerFSM(StateMachine):
    """Phase machine of the buzzer round.

    waiting -> buzz -> decision -> {answer | locked} -> waiting. The runtime owns the
    guards (start-buzzing signal, answering rules); the FSM only rejects out-of-order moves.
    """

    waiting = State(BuzzerPhase.waiting.value, value=BuzzerPhase.waiting.value, initial=True)
    buzz = State(BuzzerPhase.buzz.value, value=BuzzerPhase.buzz.value)
    decision = State(BuzzerPhase.decision.value, value=BuzzerPhase.decision.value)
    locked = State(BuzzerPhase.locked.value, value=BuzzerPhase.locked.value)
    answer = State(BuzzerPhase.answer.value, value=BuzzerPhase.answer.value)

    question_ready = waiting.to(buzz)
    buzzed = buzz.to(decision)
    delegate_self = decision.to(answer)
    delegate_other = decision.to(locked)
    answered = answer.to(waiting)
    reset_round = buzz.to(waiting) | decision.to(waiting) | locked.to(waiting) | answer.to(waiting)

    def __init__(self, phase: BuzzerPhase = BuzzerPhase.waiting):
        super().__init__(start_value=phase.value)

    @property
    def phase(self) -> BuzzerPhase:
        return BuzzerPhase(str(self.current_state.value))
