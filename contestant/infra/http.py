from __future__ import annotations

from typing import Any

import httpx

DEFAULT_TIMEOUT_S = 15.0


class ApiError(RuntimeError):
    """A collaborating HTTP service refused or failed a request."""

    def __init__(self, status: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.data = data


def create_http_client(*, base_url: str = "", headers: dict[str, str] | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=DEFAULT_TIMEOUT_S)


def json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def message_of(payload: Any, fallback: str) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message
    return fallback
