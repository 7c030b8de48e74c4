from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel

logger = logging.getLogger(__name__)

NOTICE_CAPACITY = 50

NoticeLevel = Literal["info", "success", "warning", "error"]
NoticeListener = Callable[["Notice"], None]


class Notice(BaseModel):
    level: NoticeLevel
    message: str
    created_at: datetime


class NoticeBoard:
    """Transient user-facing messages (the contestant screen shows them as toasts)."""

    def __init__(self, *, capacity: int = NOTICE_CAPACITY) -> None:
        self._items: deque[Notice] = deque(maxlen=capacity)
        self._listeners: list[NoticeListener] = []

    def add_listener(self, listener: NoticeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def push(self, level: NoticeLevel, message: str) -> Notice:
        notice = Notice(level=level, message=message, created_at=datetime.now(tz=UTC))
        self._items.append(notice)
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Notice listener failed")
        return notice

    def info(self, message: str) -> Notice:
        return self.push("info", message)

    def success(self, message: str) -> Notice:
        return self.push("success", message)

    def warning(self, message: str) -> Notice:
        return self.push("warning", message)

    def error(self, message: str) -> Notice:
        return self.push("error", message)

    def recent(self, limit: int | None = None) -> list[Notice]:
        items = list(self._items)
        return items if limit is None else items[-limit:]

    def clear(self) -> None:
        self._items.clear()
