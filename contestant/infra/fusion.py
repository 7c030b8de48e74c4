from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from contestant.config import FusionSettings
from contestant.infra.http import ApiError, create_http_client, json_or_none, message_of
from contestant.quiz.questions import NormalizedQuestion, normalize_datasheet_records

logger = logging.getLogger(__name__)

DEFAULT_ATTACHMENT_NAME = "sketch-answer.png"


class EventSummary(BaseModel):
    id: str
    name: str
    type: str = ""
    index: int


class DatasheetRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    record_id: str | None = Field(default=None, alias="recordId")
    fields: dict[str, Any] = Field(default_factory=dict)


class AttachmentUpload(BaseModel):
    token: str
    url: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


def _first_text(*candidates: Any) -> str | None:
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c.strip()
    return None


class FusionClient:
    """Datasheet service holding events, stages, question banks and score sheets.

    Every JSON response is wrapped as {code, success, message, data}; `success: false`
    is turned into ApiError just like a non-2xx status.
    """

    def __init__(self, *, settings: FusionSettings, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._client = client or create_http_client(
            base_url=settings.base_url,
            headers={"Authorization": f"Bearer {settings.token}"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, path, **kwargs)
        if response.is_error:
            raise ApiError(response.status_code, response.text or response.reason_phrase)
        body = json_or_none(response)
        if not isinstance(body, dict) or not body.get("success"):
            code = body.get("code", -1) if isinstance(body, dict) else -1
            raise ApiError(code, message_of(body, "Fusion API Error"), body)
        return body.get("data")

    async def fetch_events(self) -> list[EventSummary]:
        path = f"/v1/spaces/{self.settings.space_id}/nodes/{self.settings.event_node_id}"
        data = await self._request("GET", path)
        children = data.get("children") if isinstance(data, dict) else None
        if not isinstance(children, list):
            return []
        return [
            EventSummary(
                id=str(item.get("id") or ""),
                name=str(item.get("name") or f"赛事{index + 1}"),
                type=str(item.get("type") or ""),
                index=index,
            )
            for index, item in enumerate(children)
            if isinstance(item, dict)
        ]

    async def fetch_records(self, datasheet_id: str, *, params: dict[str, str] | None = None) -> list[DatasheetRecord]:
        data = await self._request(
            "GET",
            f"/v1/datasheets/{datasheet_id}/records",
            params=params or {"fieldKey": "name"},
        )
        records = data.get("records") if isinstance(data, dict) else None
        if not isinstance(records, list):
            return []
        return [DatasheetRecord.model_validate(r) for r in records if isinstance(r, dict)]

    async def patch_records(self, datasheet_id: str, records: list[dict[str, Any]]) -> None:
        logger.debug("Patching %d record(s) in %s", len(records), datasheet_id)
        await self._request("PATCH", f"/v1/datasheets/{datasheet_id}/records", json={"records": records})

    async def fetch_normalized_questions(self, datasheet_id: str) -> list[NormalizedQuestion]:
        records = await self.fetch_records(datasheet_id)
        return normalize_datasheet_records([r.model_dump(by_alias=True) for r in records])

    async def upload_attachment(
        self,
        datasheet_id: str,
        content: bytes,
        *,
        filename: str = DEFAULT_ATTACHMENT_NAME,
        content_type: str = "image/png",
    ) -> AttachmentUpload:
        """Upload a rendered answer image; the returned token is used as a fill-in answer."""

        if not datasheet_id:
            raise ValueError("缺少题库表 ID，无法上传附件")
        response = await self._client.post(
            f"/v1/datasheets/{datasheet_id}/attachments",
            files={"file": (filename, content, content_type)},
            headers={"Accept": "application/json"},
        )
        if response.is_error:
            raise ApiError(response.status_code, response.text or response.reason_phrase)

        payload = json_or_none(response)
        payload = payload if isinstance(payload, dict) else {}
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        token = _first_text(data.get("token"), data.get("url"), payload.get("token"), payload.get("url"))
        if token is None:
            raise ApiError(payload.get("code", 200), "附件上传成功但未返回 token", payload)
        return AttachmentUpload(token=token, url=_first_text(data.get("url"), payload.get("url")), data=data)
