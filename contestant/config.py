from __future__ import annotations

import os
from dataclasses import dataclass


def _normalize_topic(value: str | None, fallback: str) -> str:
    value = (value or "").strip()
    if not value:
        return fallback
    return value.strip("/")


def _normalize_base_url(value: str | None, fallback: str) -> str:
    value = (value or "").strip()
    if not value:
        return fallback
    return value.rstrip("/")


@dataclass(frozen=True, slots=True)
class BrokerSettings:
    enabled: bool
    url: str
    username: str | None
    password: str | None


@dataclass(frozen=True, slots=True)
class TopicSettings:
    command: str
    control: str
    result: str
    buzz: str
    state_prefix: str

    def state_for_client(self, client_id: str) -> str:
        segments = [s.strip("/") for s in (self.state_prefix, client_id) if s and s.strip("/")]
        return "/".join(segments)


@dataclass(frozen=True, slots=True)
class FusionSettings:
    base_url: str
    token: str
    space_id: str
    event_node_id: str


@dataclass(frozen=True, slots=True)
class Settings:
    redis_url: str
    broker: BrokerSettings
    topics: TopicSettings
    fusion: FusionSettings
    pool_base_url: str
    questions_url: str


def settings_from_env() -> Settings:
    """Read the client configuration from the environment.

    Broker traffic can be switched off entirely with CONTESTANT_BROKER_ENABLED=false;
    the client then runs without real-time commands.
    """

    return Settings(
        redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
        broker=BrokerSettings(
            enabled=os.environ.get("CONTESTANT_BROKER_ENABLED", "true").strip().lower() != "false",
            url=os.environ.get("CONTESTANT_BROKER_URL", os.environ.get("REDIS_URL", "redis://localhost:6379/0")),
            username=os.environ.get("CONTESTANT_BROKER_USERNAME"),
            password=os.environ.get("CONTESTANT_BROKER_PASSWORD"),
        ),
        topics=TopicSettings(
            command=_normalize_topic(os.environ.get("CONTESTANT_TOPIC_COMMAND"), "cmd"),
            control=_normalize_topic(os.environ.get("CONTESTANT_TOPIC_CONTROL"), "quiz/control"),
            result=_normalize_topic(os.environ.get("CONTESTANT_TOPIC_RESULT"), "quiz/result"),
            buzz=_normalize_topic(os.environ.get("CONTESTANT_TOPIC_BUZZ"), "quiz/buzz"),
            state_prefix=_normalize_topic(os.environ.get("CONTESTANT_TOPIC_STATE_PREFIX"), "state"),
        ),
        fusion=FusionSettings(
            base_url=_normalize_base_url(os.environ.get("FUSION_API_BASE"), "https://api.ohvfx.com/fusion"),
            token=os.environ.get("FUSION_API_TOKEN", ""),
            space_id=os.environ.get("FUSION_SPACE_ID", ""),
            event_node_id=os.environ.get("FUSION_EVENT_NODE_ID", ""),
        ),
        pool_base_url=_normalize_base_url(os.environ.get("POOL_API_BASE"), "https://fn.ohvfx.com/quiz-pool/api"),
        questions_url=_normalize_base_url(os.environ.get("QUESTIONS_API_URL"), "https://api.ohvfx.com/api/questions"),
    )
