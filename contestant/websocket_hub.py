from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket

from contestant.notices import Notice
from contestant.quiz.state import QuizRuntimeState

if TYPE_CHECKING:
    from contestant.client import ContestantClient

logger = logging.getLogger(__name__)


class StationScreens:
    """WebSocket fan-out to the screens attached to this station.

    Every screen sees the same feed: `runtime_updated`, `notice` and `leadership`
    events, sent as JSON objects with a `type` key. Listeners on the client fire from
    sync code, so events are queued as tasks on the running loop.
    """

    def __init__(self) -> None:
        self._screens: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def screen_count(self) -> int:
        return len(self._screens)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._screens.add(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._screens.discard(websocket)

    async def send(self, event: dict[str, object]) -> None:
        async with self._lock:
            screens = list(self._screens)

        gone: list[WebSocket] = []
        for ws in screens:
            try:
                await ws.send_json(event)
            except Exception:
                gone.append(ws)

        if gone:
            logger.debug("Dropping %s closed screen(s)", len(gone))
            async with self._lock:
                self._screens.difference_update(gone)

    def _queue(self, event: dict[str, object]) -> None:
        if not self._screens:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; dropping %s event", event.get("type"))
            return
        task = loop.create_task(self.send(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def runtime_updated(self, state: QuizRuntimeState) -> None:
        self._queue({"type": "runtime_updated", "state": state.model_dump(mode="json")})

    def notice(self, notice: Notice) -> None:
        self._queue({"type": "notice", "notice": notice.model_dump(mode="json")})

    def leadership(self, is_leader: bool) -> None:
        self._queue({"type": "leadership", "is_leader": is_leader})

    def attach(self, client: ContestantClient) -> Callable[[], None]:
        """Forward the client's runtime, notices and leadership to the screens."""

        removers = [
            client.runtime.add_listener(self.runtime_updated),
            client.notices.add_listener(self.notice),
            client.elector.add_listener(self.leadership),
        ]

        def _detach() -> None:
            for remove in removers:
                remove()

        return _detach


screens = StationScreens()
