from __future__ import annotations

import httpx

from contestant.infra.http import ApiError, create_http_client, json_or_none, message_of
from contestant.quiz.questions import NormalizedQuestion, normalize_datasheet_records


class QuestionBankClient:
    """Fallback question pack per mode, used when no stage has supplied questions."""

    def __init__(self, *, url: str, client: httpx.AsyncClient | None = None) -> None:
        self.url = url
        self._client = client or create_http_client()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_mode_questions(self, mode: str) -> list[NormalizedQuestion]:
        response = await self._client.get(self.url, params={"mode": mode})
        body = json_or_none(response)
        if response.is_error:
            raise ApiError(response.status_code, message_of(body, response.reason_phrase or "请求失败"), body)
        if not isinstance(body, dict):
            return []
        code = body.get("code")
        if code is not None and code not in (0, 200):
            raise ApiError(code if isinstance(code, int) else -1, message_of(body, "题目加载失败"), body.get("data"))
        data = body.get("data")
        records = data.get("records") if isinstance(data, dict) else None
        return normalize_datasheet_records(records if isinstance(records, list) else [])
