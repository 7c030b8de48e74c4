from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as aioredis

from contestant.infra.redis_client import create_async_redis

logger = logging.getLogger(__name__)

RETAINED_KEY_PREFIX = "broker:retained:"  # + {topic}
WILL_KEY_PREFIX = "broker:will:"  # + {topic}

# A retained record published under a last will lapses after this long without a heartbeat.
DEFAULT_WILL_GRACE_S = 2 * 45


@dataclass(frozen=True, slots=True)
class LastWill:
    topic: str
    payload: str
    retain: bool = True
    delay_s: int = 0


@dataclass(frozen=True, slots=True)
class BrokerMessage:
    topic: str
    payload: str


class Broker(Protocol):
    """One physical broker connection."""

    async def connect(self, *, client_id: str, will: LastWill | None) -> None:  # pragma: no cover
        ...

    async def subscribe(self, topic: str, *, qos: int = 0) -> None:  # pragma: no cover
        ...

    async def unsubscribe(self, topic: str) -> None:  # pragma: no cover
        ...

    async def publish(self, topic: str, payload: str, *, qos: int = 0, retain: bool = False) -> None:  # pragma: no cover
        ...

    def messages(self) -> AsyncIterator[BrokerMessage]:  # pragma: no cover
        ...

    async def read_retained(self, topic: str) -> str | None:  # pragma: no cover
        ...

    async def close(self) -> None:  # pragma: no cover
        ...


def _retained_key(topic: str) -> str:
    return f"{RETAINED_KEY_PREFIX}{topic}"


def _will_key(topic: str) -> str:
    return f"{WILL_KEY_PREFIX}{topic}"


class RedisBroker:
    """Broker connection on top of Redis pub/sub.

    Redis has no retained messages or last wills, so both live in plain keys:
      - a retained publish also SETs `broker:retained:{topic}`
      - the last will is stored under `broker:will:{topic}`; a retained record on the
        will topic carries a TTL, and once it lapses readers fall back to the will
        payload (the client vanished without saying goodbye)
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        username: str | None = None,
        password: str | None = None,
        will_grace_s: int = DEFAULT_WILL_GRACE_S,
        redis_factory: Callable[[], aioredis.Redis] | None = None,
    ) -> None:
        self._factory = redis_factory or (lambda: create_async_redis(url, username=username, password=password))
        self.will_grace_s = will_grace_s
        self._client: aioredis.Redis | None = None
        self._pubsub: aioredis.client.PubSub | None = None
        self._will: LastWill | None = None
        self.client_id: str | None = None

    async def connect(self, *, client_id: str, will: LastWill | None) -> None:
        client = self._factory()
        await client.ping()
        self._client = client
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self.client_id = client_id
        self._will = will
        if will is not None:
            await client.set(_will_key(will.topic), will.payload)

    def _require(self) -> aioredis.Redis:
        if self._client is None:
            raise ConnectionError("Broker not connected")
        return self._client

    async def subscribe(self, topic: str, *, qos: int = 0) -> None:
        self._require()
        assert self._pubsub is not None
        await self._pubsub.subscribe(topic)

    async def unsubscribe(self, topic: str) -> None:
        self._require()
        assert self._pubsub is not None
        await self._pubsub.unsubscribe(topic)

    async def publish(self, topic: str, payload: str, *, qos: int = 0, retain: bool = False) -> None:
        client = self._require()
        if retain:
            if self._will is not None and self._will.topic == topic:
                ttl_s = self.will_grace_s + self._will.delay_s
                await client.set(_retained_key(topic), payload, ex=ttl_s)
            else:
                await client.set(_retained_key(topic), payload)
        await client.publish(topic, payload)

    async def read_retained(self, topic: str) -> str | None:
        client = self._require()
        value = await client.get(_retained_key(topic))
        if value is not None:
            return value
        return await client.get(_will_key(topic))

    async def messages(self) -> AsyncIterator[BrokerMessage]:
        self._require()
        assert self._pubsub is not None
        pubsub = self._pubsub
        while True:
            if not pubsub.subscribed:
                # get_message needs an active subscription connection.
                await asyncio.sleep(0.1)
                continue
            msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if msg is None or msg.get("type") != "message":
                continue
            yield BrokerMessage(topic=str(msg["channel"]), payload=str(msg["data"]))

    async def close(self) -> None:
        pubsub, client = self._pubsub, self._client
        self._pubsub = None
        self._client = None
        if pubsub is not None:
            try:
                await pubsub.aclose()
            except Exception:
                logger.debug("Ignoring error while closing pubsub", exc_info=True)
        if client is not None:
            try:
                await client.aclose()
            except Exception:
                logger.debug("Ignoring error while closing redis client", exc_info=True)
