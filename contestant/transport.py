from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from contestant.infra.broker import Broker, BrokerMessage, LastWill

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 35.0
RECONNECT_PERIOD_S = 1.0
MAX_RECONNECT_ATTEMPTS = 5


class TransportError(RuntimeError):
    pass


class ConnectionStatus(StrEnum):
    disconnected = "disconnected"
    connecting = "connecting"
    connected = "connected"
    reconnecting = "reconnecting"


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    client_id: str
    will: LastWill | None = None
    connect_timeout_s: float = CONNECT_TIMEOUT_S
    reconnect_period_s: float = RECONNECT_PERIOD_S
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS


@dataclass(frozen=True, slots=True)
class Message:
    topic: str
    payload: str
    # Strictly increasing per delivery; consumers use it to drop duplicates.
    timestamp: int


Handler = Callable[[Message], Awaitable[None] | None]
StatusListener = Callable[[ConnectionStatus], None]
Unsubscribe = Callable[[], Awaitable[None]]


class PresenceTransport:
    """Owns the single physical broker connection of a tab.

    Contract:
      - at most one connect attempt is in flight; concurrent callers await it,
        including an automatic reconnect already under way
      - subscriptions are reference-counted per topic: the first handler issues the
        network subscribe, the last unsubscribe issues the network unsubscribe
      - failures before the first successful connect raise TransportError; failures
        after that only show up as status transitions while reconnection runs
    """

    def __init__(
        self,
        *,
        broker_factory: Callable[[], Broker],
        clock_ns: Callable[[], int] = time.time_ns,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._broker_factory = broker_factory
        self._clock_ns = clock_ns
        self._sleep = sleep
        self._broker: Broker | None = None
        self._config: ConnectionConfig | None = None
        self._status = ConnectionStatus.disconnected
        self._status_listeners: list[StatusListener] = []
        self._connecting: asyncio.Task[None] | None = None
        self._reconnecting: asyncio.Task[None] | None = None
        self._listener: asyncio.Task[None] | None = None
        self._subscribers: dict[str, list[Handler]] = {}
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self._last_timestamp = 0

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def is_connected(self) -> bool:
        return self._status == ConnectionStatus.connected and self._broker is not None

    def on_status_change(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def _remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return _remove

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self._status:
            return
        logger.info("Broker connection %s -> %s", self._status.value, status.value)
        self._status = status
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed")

    # ---- connection lifecycle ----

    async def connect(self, config: ConnectionConfig) -> None:
        if self.is_connected():
            logger.debug("Broker already connected")
            return
        if self._reconnecting is not None:
            logger.info("Broker reconnect in progress, waiting for it")
            await asyncio.wait({self._reconnecting})
            if self.is_connected():
                return
        if self._connecting is not None:
            logger.warning("Broker connection already in progress")
            await asyncio.shield(self._connecting)
            return

        self._connecting = asyncio.get_running_loop().create_task(self._connect_once(config))
        try:
            await asyncio.shield(self._connecting)
        finally:
            self._connecting = None

    async def _open(self, config: ConnectionConfig) -> Broker:
        broker = self._broker_factory()
        try:
            await asyncio.wait_for(
                broker.connect(client_id=config.client_id, will=config.will),
                timeout=config.connect_timeout_s,
            )
        except BaseException:
            await self._close_quietly(broker)
            raise
        return broker

    async def _connect_once(self, config: ConnectionConfig) -> None:
        self._set_status(ConnectionStatus.connecting)
        try:
            broker = await self._open(config)
        except asyncio.TimeoutError as e:
            self._set_status(ConnectionStatus.disconnected)
            raise TransportError("Broker connection timeout") from e
        except Exception as e:
            self._set_status(ConnectionStatus.disconnected)
            raise TransportError(f"Broker connection failed: {e}") from e

        self._broker = broker
        self._config = config
        await self._resubscribe_all(broker)
        self._start_listener(broker)
        self._set_status(ConnectionStatus.connected)

    async def disconnect(self) -> None:
        reconnecting, self._reconnecting = self._reconnecting, None
        if reconnecting is not None and reconnecting is not asyncio.current_task():
            reconnecting.cancel()
        if self._listener is not None:
            self._listener.cancel()
            self._listener = None
        broker = self._broker
        self._broker = None
        self._config = None
        self._subscribers.clear()
        if broker is not None:
            await self._close_quietly(broker)
        self._set_status(ConnectionStatus.disconnected)

    @staticmethod
    async def _close_quietly(broker: Broker) -> None:
        try:
            await broker.close()
        except Exception:
            logger.debug("Ignoring error while closing broker", exc_info=True)

    def _start_listener(self, broker: Broker) -> None:
        if self._listener is not None:
            self._listener.cancel()
        self._listener = asyncio.get_running_loop().create_task(self._listen(broker), name="broker-listener")

    async def _listen(self, broker: Broker) -> None:
        try:
            async for msg in broker.messages():
                self._deliver(msg)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Broker connection lost: %s", e)
            self._listener = None
            self._reconnecting = asyncio.current_task()
            try:
                await self._reconnect()
            finally:
                if self._reconnecting is asyncio.current_task():
                    self._reconnecting = None

    async def _reconnect(self) -> None:
        config = self._config
        old = self._broker
        self._broker = None
        if old is not None:
            await self._close_quietly(old)
        if config is None:
            self._set_status(ConnectionStatus.disconnected)
            return

        self._set_status(ConnectionStatus.reconnecting)
        for attempt in range(1, config.max_reconnect_attempts + 1):
            await self._sleep(config.reconnect_period_s)
            logger.info("Broker reconnecting... (attempt %s)", attempt)
            try:
                broker = await self._open(config)
            except Exception as e:
                logger.warning("Reconnect attempt %s failed: %s", attempt, e)
                continue
            self._broker = broker
            try:
                await self._resubscribe_all(broker)
            except Exception as e:
                logger.warning("Resubscribe after reconnect failed: %s", e)
                self._broker = None
                await self._close_quietly(broker)
                continue
            self._start_listener(broker)
            self._set_status(ConnectionStatus.connected)
            return

        logger.warning("Max reconnection attempts reached, stopping reconnect")
        self._config = None
        self._subscribers.clear()
        self._set_status(ConnectionStatus.disconnected)

    async def _resubscribe_all(self, broker: Broker) -> None:
        for topic in list(self._subscribers):
            await broker.subscribe(topic, qos=0)

    # ---- messaging ----

    def _next_timestamp(self) -> int:
        ts = max(self._clock_ns(), self._last_timestamp + 1)
        self._last_timestamp = ts
        return ts

    def _deliver(self, raw: BrokerMessage) -> None:
        handlers = self._subscribers.get(raw.topic)
        if not handlers:
            return
        message = Message(topic=raw.topic, payload=raw.payload, timestamp=self._next_timestamp())
        for handler in list(handlers):
            try:
                result = handler(message)
            except Exception:
                logger.exception("Handler for %s failed", raw.topic)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.get_running_loop().create_task(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task[Any]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async handler failed", exc_info=exc)

    async def subscribe(
        self,
        topic: str,
        handler: Handler,
        *,
        qos: int = 0,
        on_success: Callable[[], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> Unsubscribe:
        broker = self._broker
        if broker is None:
            raise TransportError("Broker client not connected")

        handlers = self._subscribers.get(topic)
        if handlers is None:
            handlers = [handler]
            self._subscribers[topic] = handlers
            try:
                await broker.subscribe(topic, qos=qos)
            except Exception as e:
                logger.error("Failed to subscribe to %s: %s", topic, e)
                self._subscribers.pop(topic, None)
                if on_error is not None:
                    on_error(e)

                async def _noop() -> None:
                    return None

                return _noop
            if on_success is not None:
                on_success()
        else:
            handlers.append(handler)
            # Already subscribed on the wire; callers can proceed straight away.
            if on_success is not None:
                on_success()

        async def _unsubscribe() -> None:
            current = self._subscribers.get(topic)
            if current is None or handler not in current:
                return
            current.remove(handler)
            if current:
                return
            self._subscribers.pop(topic, None)
            if self._broker is None:
                return
            try:
                await self._broker.unsubscribe(topic)
            except Exception as e:
                logger.error("Failed to unsubscribe from %s: %s", topic, e)
                if on_error is not None:
                    on_error(e)

        return _unsubscribe

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    async def publish(self, topic: str, payload: str, *, qos: int = 0, retain: bool = False) -> bool:
        broker = self._broker
        if broker is None:
            raise TransportError("Broker client not connected")
        if self._status != ConnectionStatus.connected:
            logger.warning("Cannot publish to %s: no connection to broker", topic)
            return False
        try:
            await broker.publish(topic, payload, qos=qos, retain=retain)
        except Exception as e:
            logger.error("Failed to publish to %s: %s", topic, e)
            return False
        return True

    async def read_retained(self, topic: str) -> str | None:
        broker = self._broker
        if broker is None:
            raise TransportError("Broker client not connected")
        return await broker.read_retained(topic)
