from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from uuid import uuid4

from contestant.lease import LeaseStore
from contestant.scheduling import PeriodicTask

logger = logging.getLogger(__name__)

LEADER_RENEW_INTERVAL_S = 1.0
FOLLOWER_CHECK_INTERVAL_S = 1.5
WATCH_POLL_INTERVAL_S = 0.05

LeadershipListener = Callable[[bool], None]


class LeaderElector:
    """Elect one tab per station to own the broker connection.

    Contract:
      - the leader renews its lease every LEADER_RENEW_INTERVAL_S (well inside the TTL)
      - followers poll every FOLLOWER_CHECK_INTERVAL_S and force-acquire only when the
        lease is missing or expired
      - change notifications demote a follower immediately and trigger an immediate
        acquisition attempt when the lease vanishes

    Two tabs may both believe they lead for a moment around a simultaneous expiry.
    The next notification settles it (last writer wins).
    """

    def __init__(
        self,
        *,
        store: LeaseStore,
        tab_id: str | None = None,
        renew_interval_s: float = LEADER_RENEW_INTERVAL_S,
        follower_check_interval_s: float = FOLLOWER_CHECK_INTERVAL_S,
    ) -> None:
        self.store = store
        self.tab_id = tab_id or str(uuid4())
        self.renew_interval_s = renew_interval_s
        self.follower_check_interval_s = follower_check_interval_s
        self.is_leader = False
        self._listeners: list[LeadershipListener] = []
        self._ticker = PeriodicTask(
            name=f"leader-tick:{self.tab_id}",
            interval_s=follower_check_interval_s,
            callback=self.tick,
        )
        self._watcher: asyncio.Task[None] | None = None

    def add_listener(self, listener: LeadershipListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _set_leader(self, value: bool) -> None:
        if value == self.is_leader:
            return
        self.is_leader = value
        logger.info("Tab %s is now %s", self.tab_id, "leader" if value else "follower")
        if self._ticker.running:
            self._ticker.restart(interval_s=self.renew_interval_s if value else self.follower_check_interval_s)
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                logger.exception("Leadership listener failed")

    def acquire(self, *, force: bool = False) -> bool:
        now = self.store.clock()
        current = self.store.read()
        if force or current is None or current.expired(now) or current.tab_id == self.tab_id:
            self.store.write(tab_id=self.tab_id)
            self._set_leader(True)
            return True
        if self.is_leader and current.tab_id != self.tab_id:
            self._set_leader(False)
        return False

    def renew(self) -> bool:
        if not self.is_leader:
            return False
        current = self.store.read()
        if current is not None and current.tab_id != self.tab_id and not current.expired(self.store.clock()):
            # Someone took over while we were not looking.
            self._set_leader(False)
            return False
        self.store.write(tab_id=self.tab_id)
        return True

    def tick(self) -> None:
        if self.is_leader:
            self.renew()
            return
        current = self.store.read()
        if current is None or current.expired(self.store.clock()):
            self.acquire(force=True)

    def handle_lease_change(self, raw: str | None) -> None:
        # Notifications can arrive out of order; the stored lease is authoritative.
        logger.debug("Lease change on %s: %s", self.tab_id, raw)
        current = self.store.read()
        if current is None:
            self._set_leader(False)
            self.acquire(force=True)
            return
        if current.tab_id != self.tab_id:
            self._set_leader(False)

    def on_visible(self) -> None:
        self.acquire()

    def release(self) -> None:
        if self.is_leader:
            self.store.remove_if_owner(tab_id=self.tab_id)
        self._set_leader(False)

    async def start(self) -> None:
        self.acquire()
        self._ticker.interval_s = self.renew_interval_s if self.is_leader else self.follower_check_interval_s
        self._ticker.start()
        if self._watcher is None:
            self._watcher = asyncio.get_running_loop().create_task(self._watch(), name=f"leader-watch:{self.tab_id}")

    async def stop(self) -> None:
        self._ticker.cancel()
        if self._watcher is not None:
            self._watcher.cancel()
            self._watcher = None
        self.release()

    async def _watch(self) -> None:
        pubsub = self.store.r.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(self.store.channel)
        try:
            while True:
                msg = pubsub.get_message(timeout=0.0)
                if msg is None:
                    await asyncio.sleep(WATCH_POLL_INTERVAL_S)
                    continue
                if msg.get("type") != "message":
                    continue
                try:
                    self.handle_lease_change(msg.get("data") or None)
                except Exception:
                    logger.exception("Failed to apply lease change")
        finally:
            try:
                pubsub.close()
            except Exception:
                # Some redis client versions don't require explicit close.
                pass
