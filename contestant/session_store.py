from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import redis
from pydantic import BaseModel, Field

SESSION_KEY = "contestant-app:app-storage"


def _now() -> datetime:
    return datetime.now(tz=UTC)


class User(BaseModel):
    id: str
    name: str | None = None
    team: str | None = None


class AnswerRecord(BaseModel):
    value: str | list[str]
    submitted_at: datetime
    duration_ms: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    user: User | None = None
    is_authenticated: bool = False
    current_question_id: str | None = None
    answers: dict[str, AnswerRecord] = Field(default_factory=dict)


def load_session(*, r: redis.Redis, key: str = SESSION_KEY) -> Session:
    raw = r.get(key)
    if not raw:
        return Session()
    return Session.model_validate_json(raw)


def save_session(*, r: redis.Redis, session: Session, key: str = SESSION_KEY) -> None:
    r.set(key, session.model_dump_json())


class SessionStore:
    """Contestant identity and answer history, persisted so it survives a restart.

    Every mutation writes the whole session back; there is a single writer per tab.
    """

    def __init__(self, *, r: redis.Redis, key: str = SESSION_KEY) -> None:
        self.r = r
        self.key = key
        self.session = load_session(r=r, key=key)

    @property
    def user(self) -> User | None:
        return self.session.user

    @property
    def user_id(self) -> str | None:
        return self.session.user.id if self.session.user else None

    @property
    def is_authenticated(self) -> bool:
        return self.session.is_authenticated and self.session.user is not None

    def _save(self) -> None:
        save_session(r=self.r, session=self.session, key=self.key)

    def reload(self) -> Session:
        self.session = load_session(r=self.r, key=self.key)
        return self.session

    def set_user(self, user: User) -> None:
        if not user.id.strip():
            raise ValueError("User id must not be empty")
        self.session.user = user
        self.session.is_authenticated = True
        self._save()

    def logout(self) -> None:
        self.session = Session()
        self._save()

    def set_current_question(self, question_id: str | None) -> None:
        if self.session.current_question_id == question_id:
            return
        self.session.current_question_id = question_id
        self._save()

    def set_answer(
        self,
        question_id: str,
        value: str | list[str],
        *,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AnswerRecord:
        # A resubmission replaces the previous record for the same question.
        record = AnswerRecord(
            value=value,
            submitted_at=_now(),
            duration_ms=duration_ms,
            metadata=metadata or {},
        )
        self.session.answers[question_id] = record
        self._save()
        return record

    def answer_for(self, question_id: str) -> AnswerRecord | None:
        return self.session.answers.get(question_id)

    def clear_answers(self) -> None:
        if not self.session.answers:
            return
        self.session.answers = {}
        self._save()
