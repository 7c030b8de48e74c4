from __future__ import annotations

import os

import redis
import redis.asyncio as aioredis


def get_redis_url() -> str:
    return os.environ.get("REDIS_URL", "redis://localhost:6379/0")


def create_redis(url: str | None = None) -> redis.Redis:
    # decode_responses=True => strings in/out instead of bytes
    return redis.Redis.from_url(url or get_redis_url(), decode_responses=True)


def create_async_redis(url: str | None = None, *, username: str | None = None, password: str | None = None) -> aioredis.Redis:
    kwargs: dict[str, str] = {}
    if username:
        kwargs["username"] = username
    if password:
        kwargs["password"] = password
    return aioredis.Redis.from_url(url or get_redis_url(), decode_responses=True, **kwargs)
