from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[None] | None]


class PeriodicTask:
    """A cancellable fixed-interval loop owned by the component that starts it.

    The callback may be sync or async. Exceptions raised by a tick are logged and
    the loop keeps running.
    """

    def __init__(self, *, name: str, interval_s: float, callback: Tick) -> None:
        self.name = name
        self.interval_s = interval_s
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    def restart(self, *, interval_s: float | None = None) -> None:
        self.cancel()
        if interval_s is not None:
            self.interval_s = interval_s
        self.start()

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                result = self._callback()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
