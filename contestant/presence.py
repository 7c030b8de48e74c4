from __future__ import annotations

import logging
from typing import Literal

from contestant.infra.broker import LastWill
from contestant.scheduling import PeriodicTask
from contestant.transport import ConnectionStatus, Message, PresenceTransport, TransportError, Unsubscribe

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_S = 45.0
WILL_DELAY_S = 5

PresenceStatus = Literal["online", "offline"]


def make_last_will(*, state_topic: str, delay_s: int = WILL_DELAY_S) -> LastWill:
    return LastWill(topic=state_topic, payload="offline", retain=True, delay_s=delay_s)


class PresenceAnnouncer:
    """Retained online/offline flag for one client id, refreshed by a heartbeat.

    Once the self-presence subscription succeeds we publish "online" and republish it
    every HEARTBEAT_INTERVAL_S. Losing the connection stops the heartbeat; the broker's
    last will covers the ungraceful case.
    """

    def __init__(
        self,
        *,
        transport: PresenceTransport,
        state_topic: str,
        heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S,
    ) -> None:
        self.transport = transport
        self.state_topic = state_topic
        self.announced_online = False
        self._unsubscribe: Unsubscribe | None = None
        self._heartbeat = PeriodicTask(
            name=f"heartbeat:{state_topic}",
            interval_s=heartbeat_interval_s,
            callback=self._beat,
        )
        self._remove_status_listener = transport.on_status_change(self._on_status)

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat.running

    def _on_status(self, status: ConnectionStatus) -> None:
        if status != ConnectionStatus.connected:
            self.announced_online = False
            self._heartbeat.cancel()

    def _on_state_message(self, message: Message) -> None:
        # The retained presence echo needs no handling; the subscription gates the announcement.
        logger.debug("Presence echo on %s: %s", message.topic, message.payload)

    async def start(self) -> bool:
        subscribed = False

        def _ok() -> None:
            nonlocal subscribed
            subscribed = True

        def _failed(err: Exception) -> None:
            logger.error("Presence channel subscription failed: %s", err)

        if self._unsubscribe is None:
            self._unsubscribe = await self.transport.subscribe(
                self.state_topic,
                self._on_state_message,
                qos=0,
                on_success=_ok,
                on_error=_failed,
            )
        else:
            subscribed = True

        if not subscribed:
            self._unsubscribe = None
            return False

        await self.publish_presence("online")
        self._heartbeat.start()
        return True

    async def _beat(self) -> None:
        await self.publish_presence("online")

    async def publish_presence(self, status: PresenceStatus) -> bool:
        if not self.transport.is_connected():
            if status == "offline":
                self.announced_online = False
            return False
        try:
            ok = await self.transport.publish(self.state_topic, status, qos=0, retain=True)
        except TransportError as e:
            logger.warning("Failed to publish %s presence payload: %s", status, e)
            return False
        if ok:
            self.announced_online = status == "online"
        return ok

    async def stop(self) -> None:
        """Best-effort goodbye: publish offline and stop the heartbeat."""

        self._heartbeat.cancel()
        if self.announced_online:
            await self.publish_presence("offline")
        self.announced_online = False
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            await unsubscribe()

    def close(self) -> None:
        self._heartbeat.cancel()
        self._remove_status_listener()
