from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from contestant.infra.http import ApiError, create_http_client, json_or_none, message_of
from contestant.quiz.questions import NormalizedQuestion, normalize_pool_payload

POOL_EMPTY_MESSAGE = "题库已空"


class GrabResult(BaseModel):
    question: NormalizedQuestion | None = None
    remaining_count: int | None = None


class PoolSubmission(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    success: bool = True
    message: str | None = None
    result: str | None = None
    correct_answer: str | list[str] | None = Field(default=None, alias="correctAnswer")
    score: dict[str, Any] | None = None
    stats: dict[str, Any] | None = None


def is_pool_empty(err: Exception) -> bool:
    return isinstance(err, ApiError) and POOL_EMPTY_MESSAGE in (err.message or "")


class PoolClient:
    """Shared question pool: questions are grabbed one at a time and judged server-side."""

    def __init__(self, *, base_url: str, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or create_http_client(base_url=base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any], *, fallback: str) -> dict[str, Any]:
        response = await self._client.post(path, json=payload)
        data = json_or_none(response)
        if response.is_error:
            raise ApiError(response.status_code, message_of(data, response.reason_phrase or "请求失败"), data)
        if isinstance(data, dict) and data.get("success") is False:
            raise ApiError(response.status_code, message_of(data, fallback), data)
        return data if isinstance(data, dict) else {}

    async def grab_next_question(self, user_id: str) -> GrabResult:
        data = await self._post("/grab-with-details", {"userId": user_id}, fallback="题海取题失败")
        remaining = data.get("remainingCount")
        return GrabResult(
            question=normalize_pool_payload(data),
            remaining_count=int(remaining) if isinstance(remaining, (int, float)) else None,
        )

    async def submit_answer(self, *, user_id: str, question_id: str, answer: str | list[str]) -> PoolSubmission:
        data = await self._post(
            "/submit-answer",
            {"userId": user_id, "questionId": question_id, "answer": answer},
            fallback="题海答题提交失败",
        )
        if not data:
            return PoolSubmission()
        return PoolSubmission.model_validate(data)
